import threading
import time


class TokenCache:
    """Caches a token and refreshes it single-flight.

    Callers that find the token missing or expired queue on one lock; the
    first one fetches and the rest reuse its result instead of issuing their
    own refresh. A failed fetch propagates to the caller that ran it and the
    next caller tries again.
    """

    def __init__(self, fetch, ttl: float, clock=time.monotonic):
        self._fetch = fetch
        self._ttl = ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._token = None
        self._expires_at = 0.0

    def _cached(self):
        if self._token is not None and self._clock() < self._expires_at:
            return self._token
        return None

    def get(self):
        token = self._cached()
        if token is not None:
            return token

        with self._lock:
            token = self._cached()
            if token is not None:
                return token
            token = self._fetch()
            self._token = token
            self._expires_at = self._clock() + self._ttl
            return token

    def invalidate(self, token=None):
        """Drop the cached token, only if it is still ``token`` when one is given."""
        with self._lock:
            if token is None or token == self._token:
                self._token = None
                self._expires_at = 0.0
