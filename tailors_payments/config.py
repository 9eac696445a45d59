import os
from dataclasses import dataclass
from pathlib import Path
from dotenv import load_dotenv

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")

DATABASE_URL = os.getenv("DATABASE_URL")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
DEFAULT_CURRENCY = os.getenv("PAYMENT_CURRENCY", "EGP")
GATEWAY_TIMEOUT = float(os.getenv("GATEWAY_TIMEOUT", "30"))


@dataclass(frozen=True)
class FawryConfig:
    merchant_code: str = ""
    security_key: str = ""
    api_url: str = "https://atfawry.fawrystaging.com/ECommerceWeb/api/orders/"
    plugin_url: str = "https://atfawry.fawrystaging.com/atfawry/plugin/"
    refund_url: str = "https://atfawry.fawrystaging.com/ECommerceWeb/Fawry/payments/refund"

    @classmethod
    def from_env(cls):
        return cls(
            merchant_code=os.getenv("FAWRY_MERCHANT_CODE", ""),
            security_key=os.getenv("FAWRY_SECURITY_KEY", ""),
            api_url=os.getenv("FAWRY_API_URL", cls.api_url),
            refund_url=os.getenv("FAWRY_REFUND_URL", cls.refund_url),
        )

    @property
    def configured(self) -> bool:
        return bool(self.merchant_code and self.security_key)


@dataclass(frozen=True)
class PayMobConfig:
    api_key: str = ""
    integration_id: str = ""
    iframe_id: str = ""
    api_url: str = "https://accept.paymobsolutions.com/api/"
    iframe_url: str = "https://accept.paymob.com/api/acceptance/iframes/"
    # PayMob auth tokens expire after an hour
    token_ttl: int = 3000

    @classmethod
    def from_env(cls):
        return cls(
            api_key=os.getenv("PAYMOB_API_KEY", ""),
            integration_id=os.getenv("PAYMOB_INTEGRATION_ID", ""),
            iframe_id=os.getenv("PAYMOB_IFRAME_ID", ""),
            api_url=os.getenv("PAYMOB_API_URL", cls.api_url),
            token_ttl=int(os.getenv("PAYMOB_TOKEN_TTL", str(cls.token_ttl))),
        )

    @property
    def configured(self) -> bool:
        return bool(self.api_key)


@dataclass(frozen=True)
class PayTabsConfig:
    profile_id: str = ""
    server_key: str = ""
    api_url: str = "https://secure.paytabs.sa/payment/request"

    @classmethod
    def from_env(cls):
        return cls(
            profile_id=os.getenv("PAYTABS_PROFILE_ID", ""),
            server_key=os.getenv("PAYTABS_SERVER_KEY", ""),
            api_url=os.getenv("PAYTABS_API_URL", cls.api_url),
        )

    @property
    def query_url(self) -> str:
        return self.api_url.replace("request", "query")

    @property
    def configured(self) -> bool:
        return bool(self.profile_id and self.server_key)
