"""Clients for the regional payment gateways (Fawry, PayMob, PayTabs).

Each client exposes the same three calls used by ``PaymentService``:
``create_payment(checkout)``, ``verify_payment(reference)`` and
``refund(transaction_id, amount, reason, currency)``. Amounts cross this
boundary in minor units. Vendor failures are raised as ``GatewayError``
with the vendor's message; nothing here retries.
"""
import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import uuid4

import requests

from tailors_payments.config import GATEWAY_TIMEOUT, FawryConfig, PayMobConfig, PayTabsConfig
from tailors_payments.errors import GatewayError, InvalidCheckout
from tailors_payments.money import format_amount, to_major, to_minor
from tailors_payments.singleflight import TokenCache

logger = logging.getLogger(__name__)

STATUS_SUCCESS = "success"
STATUS_PENDING = "pending"
STATUS_FAILED = "failed"
STATUS_UNKNOWN = "unknown"


@dataclass
class Checkout:
    order_id: str
    amount: int                     # minor units
    customer_name: str
    customer_phone: str
    customer_email: str = ""
    currency: str = "EGP"
    description: str = ""
    return_url: Optional[str] = None
    payment_method: str = "CARD"    # Fawry: CARD, WALLET or CASH


@dataclass
class GatewayPayment:
    gateway: str
    reference: str
    status: str
    payment_url: Optional[str] = None
    expires_at: Optional[datetime] = None
    transaction_id: Optional[str] = None
    details: dict = field(default_factory=dict)


@dataclass
class PaymentVerification:
    gateway: str
    reference: str
    status: str
    gateway_status: Optional[str] = None
    amount: Optional[int] = None
    paid_at: Optional[datetime] = None
    transaction_id: Optional[str] = None
    raw: dict = field(default_factory=dict)


@dataclass
class GatewayRefund:
    refund_id: str
    transaction_id: str
    amount: int
    raw: dict = field(default_factory=dict)


FAWRY_STATUSES = {
    "PAID": STATUS_SUCCESS,
    "DELIVERED": STATUS_SUCCESS,
    "NEW": STATUS_PENDING,
    "UNPAID": STATUS_PENDING,
    "CANCELED": STATUS_FAILED,
    "REFUNDED": STATUS_FAILED,
    "EXPIRED": STATUS_FAILED,
}

PAYTABS_STATUSES = {
    "A": STATUS_SUCCESS,
    "H": STATUS_PENDING,
    "D": STATUS_FAILED,
    "E": STATUS_FAILED,
    "V": STATUS_FAILED,
}


def map_fawry_status(status) -> str:
    return FAWRY_STATUSES.get((status or "").upper(), STATUS_UNKNOWN)


def map_paytabs_status(status) -> str:
    return PAYTABS_STATUSES.get((status or "").upper(), STATUS_UNKNOWN)


def _sha256(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def _parse_time(value) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, (int, float)):
        # Fawry reports epoch milliseconds
        return datetime.fromtimestamp(value / 1000, timezone.utc)
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


def vendor_message(exc: Exception) -> str:
    """Best-effort extraction of the provider's own error message."""
    if isinstance(exc, KeyError):
        return f"missing {exc.args[0]} in gateway response"
    response = getattr(exc, "response", None)
    if response is not None:
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            for key in ("message", "detail", "statusDescription", "result"):
                if body.get(key):
                    return str(body[key])
    return str(exc)


class FawryGateway:
    name = "fawry"

    def __init__(self, config: Optional[FawryConfig] = None, timeout: float = GATEWAY_TIMEOUT):
        self.config = config or FawryConfig.from_env()
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return self.config.configured

    def payment_signature(self, merchant_ref: str, customer_phone: str, amount: int) -> str:
        return _sha256(
            self.config.merchant_code
            + merchant_ref
            + customer_phone
            + format_amount(amount)
            + self.config.security_key
        )

    def create_payment(self, checkout: Checkout) -> GatewayPayment:
        merchant_ref = checkout.order_id
        expires_at = datetime.now(timezone.utc) + timedelta(hours=24)
        price = float(to_major(checkout.amount))

        payload = {
            "merchantCode": self.config.merchant_code,
            "merchantRefNum": merchant_ref,
            "customerProfileId": checkout.customer_phone,
            "customerName": checkout.customer_name,
            "customerMobile": checkout.customer_phone,
            "customerEmail": checkout.customer_email or "",
            "paymentMethod": checkout.payment_method,
            "amount": price,
            "currencyCode": checkout.currency,
            "description": checkout.description,
            "paymentExpiry": int(expires_at.timestamp()),
            "chargeItems": [
                {
                    "itemId": merchant_ref,
                    "description": checkout.description,
                    "price": price,
                    "quantity": 1,
                }
            ],
            "signature": self.payment_signature(merchant_ref, checkout.customer_phone, checkout.amount),
        }

        try:
            response = requests.post(
                f"{self.config.api_url}createCardToken", json=payload, timeout=self.timeout
            )
            response.raise_for_status()
            data = response.json()
        except requests.RequestException as exc:
            logger.error("Fawry payment creation failed for order %s: %s", merchant_ref, exc)
            raise GatewayError("Failed to create Fawry payment: " + vendor_message(exc)) from exc

        if data.get("statusCode") != 200:
            logger.error("Fawry rejected payment for order %s: %s", merchant_ref, data)
            raise GatewayError(
                "Failed to create Fawry payment: " + str(data.get("statusDescription") or data.get("statusCode"))
            )

        # Fawry's status API is keyed by our merchant reference; refunds use its reference number
        return GatewayPayment(
            gateway=self.name,
            reference=merchant_ref,
            status=STATUS_SUCCESS,
            payment_url=f"{self.config.plugin_url}{self.config.merchant_code}/{merchant_ref}",
            expires_at=expires_at,
            transaction_id=data.get("referenceNumber"),
            details={"merchantRefNum": merchant_ref, "referenceNumber": data.get("referenceNumber")},
        )

    def verify_payment(self, reference: str) -> PaymentVerification:
        params = {
            "merchantCode": self.config.merchant_code,
            "merchantRefNumber": reference,
            "signature": _sha256(self.config.merchant_code + reference + self.config.security_key),
        }
        try:
            response = requests.get(f"{self.config.api_url}status", params=params, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except requests.RequestException as exc:
            logger.error("Fawry verification failed for %s: %s", reference, exc)
            raise GatewayError("Failed to verify Fawry payment: " + vendor_message(exc)) from exc

        gateway_status = data.get("paymentStatus") or "UNKNOWN"
        try:
            amount = to_minor(data["paymentAmount"]) if data.get("paymentAmount") is not None else None
        except ValueError as exc:
            raise GatewayError(f"Failed to verify Fawry payment: invalid amount {data.get('paymentAmount')!r}") from exc
        return PaymentVerification(
            gateway=self.name,
            reference=reference,
            status=map_fawry_status(gateway_status),
            gateway_status=gateway_status,
            amount=amount,
            paid_at=_parse_time(data.get("paymentTime")),
            transaction_id=data.get("fawryRefNumber"),
            raw=data,
        )

    def refund(self, transaction_id: str, amount: int, reason: str, currency: str = "EGP") -> GatewayRefund:
        refund_amount = format_amount(amount)
        payload = {
            "merchantCode": self.config.merchant_code,
            "referenceNumber": transaction_id,
            "refundAmount": refund_amount,
            "reason": reason or "",
            "signature": _sha256(
                self.config.merchant_code
                + transaction_id
                + refund_amount
                + (reason or "")
                + self.config.security_key
            ),
        }
        try:
            response = requests.post(self.config.refund_url, json=payload, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except requests.RequestException as exc:
            logger.error("Fawry refund failed for %s: %s", transaction_id, exc)
            raise GatewayError("Fawry refund failed: " + vendor_message(exc)) from exc

        if data.get("statusCode") != 200:
            raise GatewayError("Fawry refund failed: " + str(data.get("statusDescription") or data))

        return GatewayRefund(
            refund_id=str(data.get("refundReferenceNumber") or f"fawry_refund_{uuid4().hex}"),
            transaction_id=transaction_id,
            amount=amount,
            raw=data,
        )


class PayMobGateway:
    name = "paymob"

    def __init__(self, config: Optional[PayMobConfig] = None, timeout: float = GATEWAY_TIMEOUT):
        self.config = config or PayMobConfig.from_env()
        self.timeout = timeout
        self.tokens = TokenCache(self._authenticate, ttl=self.config.token_ttl)

    @property
    def configured(self) -> bool:
        return self.config.configured

    def _authenticate(self) -> str:
        logger.debug("Requesting a new PayMob auth token")
        response = requests.post(
            f"{self.config.api_url}auth/tokens",
            json={"api_key": self.config.api_key},
            timeout=self.timeout,
        )
        response.raise_for_status()
        return response.json()["token"]

    def _request(self, method: str, path: str, token: str, **kwargs) -> dict:
        response = requests.request(method, f"{self.config.api_url}{path}", timeout=self.timeout, **kwargs)
        if response.status_code == 401:
            self.tokens.invalidate(token)
        response.raise_for_status()
        return response.json()

    def create_payment(self, checkout: Checkout) -> GatewayPayment:
        names = checkout.customer_name.split(" ")
        try:
            token = self.tokens.get()
            order = self._request(
                "POST",
                "ecommerce/orders",
                token,
                json={
                    "auth_token": token,
                    "delivery_needed": False,
                    "amount_cents": checkout.amount,
                    "currency": checkout.currency,
                    "items": [
                        {
                            "name": checkout.description,
                            "amount_cents": checkout.amount,
                            "description": checkout.description,
                            "quantity": "1",
                        }
                    ],
                    "merchant_order_id": checkout.order_id,
                },
            )
            payment_key = self._request(
                "POST",
                "acceptance/payment_keys",
                token,
                json={
                    "auth_token": token,
                    "amount_cents": checkout.amount,
                    "expiration": 3600,
                    "order_id": order["id"],
                    "billing_data": {
                        "apartment": "NA",
                        "email": checkout.customer_email or "NA",
                        "floor": "NA",
                        "first_name": names[0],
                        "street": "NA",
                        "building": "NA",
                        "phone_number": checkout.customer_phone,
                        "shipping_method": "NA",
                        "postal_code": "NA",
                        "city": "NA",
                        "country": "EG",
                        "last_name": names[1] if len(names) > 1 else "NA",
                        "state": "NA",
                    },
                    "currency": checkout.currency,
                    "integration_id": self.config.integration_id,
                },
            )
            reference = str(order["id"])
            payment_token = payment_key["token"]
        except (requests.RequestException, KeyError) as exc:
            logger.error("PayMob payment creation failed for order %s: %r", checkout.order_id, exc)
            raise GatewayError("Failed to create PayMob payment: " + vendor_message(exc)) from exc

        return GatewayPayment(
            gateway=self.name,
            reference=reference,
            status=STATUS_SUCCESS,
            payment_url=f"{self.config.iframe_url}{self.config.iframe_id}?payment_token={payment_token}",
            expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
            details={"paymentKey": payment_token},
        )

    def verify_payment(self, reference: str) -> PaymentVerification:
        try:
            token = self.tokens.get()
            order = self._request(
                "GET", f"ecommerce/orders/{reference}", token, headers={"Authorization": token}
            )
        except (requests.RequestException, KeyError) as exc:
            logger.error("PayMob verification failed for %s: %s", reference, exc)
            raise GatewayError("Failed to verify PayMob payment: " + vendor_message(exc)) from exc

        status = STATUS_PENDING
        transaction = None
        for candidate in order.get("transactions") or []:
            if candidate.get("success") is True:
                status = STATUS_SUCCESS
                transaction = candidate
                break

        delivery = order.get("delivery_status") or {}
        if isinstance(delivery, dict) and delivery.get("status") == "DELIVERED":
            status = STATUS_SUCCESS

        return PaymentVerification(
            gateway=self.name,
            reference=reference,
            status=status,
            amount=order.get("amount_cents"),
            paid_at=_parse_time(transaction.get("created_at")) if transaction else None,
            transaction_id=str(transaction["id"]) if transaction and transaction.get("id") is not None else None,
            raw=order,
        )

    def refund(self, transaction_id: str, amount: int, reason: str, currency: str = "EGP") -> GatewayRefund:
        try:
            token = self.tokens.get()
            data = self._request(
                "POST",
                "acceptance/void_refund/refund",
                token,
                json={"auth_token": token, "transaction_id": transaction_id, "amount_cents": amount},
            )
        except (requests.RequestException, KeyError) as exc:
            logger.error("PayMob refund failed for %s: %s", transaction_id, exc)
            raise GatewayError("PayMob refund failed: " + vendor_message(exc)) from exc

        if data.get("success") is False:
            raise GatewayError("PayMob refund failed: " + str(data.get("data", {}).get("message") or data))

        return GatewayRefund(
            refund_id=str(data.get("id") or f"paymob_refund_{uuid4().hex}"),
            transaction_id=transaction_id,
            amount=amount,
            raw=data,
        )


class PayTabsGateway:
    name = "paytabs"

    def __init__(self, config: Optional[PayTabsConfig] = None, timeout: float = GATEWAY_TIMEOUT):
        self.config = config or PayTabsConfig.from_env()
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return self.config.configured

    def _post(self, url: str, payload: dict) -> dict:
        response = requests.post(
            url,
            json=payload,
            headers={"Authorization": self.config.server_key, "Content-Type": "application/json"},
            timeout=self.timeout,
        )
        response.raise_for_status()
        return response.json()

    def create_payment(self, checkout: Checkout) -> GatewayPayment:
        if not checkout.customer_email:
            raise InvalidCheckout("Customer email is required for PayTabs payments")
        if not checkout.return_url:
            raise InvalidCheckout("Return URL is required for PayTabs payments")

        payload = {
            "profile_id": self.config.profile_id,
            "tran_type": "sale",
            "tran_class": "ecom",
            "cart_id": checkout.order_id,
            "cart_description": checkout.description,
            "cart_currency": checkout.currency,
            "cart_amount": float(to_major(checkout.amount)),
            "callback": checkout.return_url,
            "return": checkout.return_url,
            "customer_details": {
                "name": checkout.customer_name,
                "email": checkout.customer_email,
                "phone": checkout.customer_phone,
                "street1": "NA",
                "city": "NA",
                "country": "EG",
            },
        }
        try:
            data = self._post(self.config.api_url, payload)
            if not data.get("redirect_url"):
                raise GatewayError("Failed to create PayTabs payment: no payment URL returned")
            tran_ref = data["tran_ref"]
        except (requests.RequestException, KeyError) as exc:
            logger.error("PayTabs payment creation failed for order %s: %r", checkout.order_id, exc)
            raise GatewayError("Failed to create PayTabs payment: " + vendor_message(exc)) from exc

        return GatewayPayment(
            gateway=self.name,
            reference=tran_ref,
            status=STATUS_SUCCESS,
            payment_url=data["redirect_url"],
            expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
            transaction_id=tran_ref,
        )

    def verify_payment(self, reference: str) -> PaymentVerification:
        try:
            data = self._post(
                self.config.query_url, {"profile_id": self.config.profile_id, "tran_ref": reference}
            )
        except requests.RequestException as exc:
            logger.error("PayTabs verification failed for %s: %s", reference, exc)
            raise GatewayError("Failed to verify PayTabs payment: " + vendor_message(exc)) from exc

        result = data.get("payment_result") or {}
        gateway_status = result.get("response_status")
        try:
            amount = to_minor(data["cart_amount"]) if data.get("cart_amount") else None
        except ValueError as exc:
            raise GatewayError(f"Failed to verify PayTabs payment: invalid amount {data.get('cart_amount')!r}") from exc
        return PaymentVerification(
            gateway=self.name,
            reference=reference,
            status=map_paytabs_status(gateway_status),
            gateway_status=gateway_status,
            amount=amount,
            paid_at=_parse_time(result.get("transaction_time") or result.get("created_date")),
            transaction_id=data.get("tran_ref") or reference,
            raw=data,
        )

    def refund(self, transaction_id: str, amount: int, reason: str, currency: str = "EGP") -> GatewayRefund:
        payload = {
            "profile_id": self.config.profile_id,
            "tran_type": "refund",
            "tran_class": "ecom",
            "cart_id": f"refund-{transaction_id}",
            "cart_currency": currency,
            "cart_amount": float(to_major(amount)),
            "cart_description": reason or "Refund",
            "tran_ref": transaction_id,
        }
        try:
            data = self._post(self.config.api_url, payload)
        except requests.RequestException as exc:
            logger.error("PayTabs refund failed for %s: %s", transaction_id, exc)
            raise GatewayError("PayTabs refund failed: " + vendor_message(exc)) from exc

        result = data.get("payment_result") or {}
        if map_paytabs_status(result.get("response_status")) != STATUS_SUCCESS:
            raise GatewayError(
                "PayTabs refund failed: " + str(result.get("response_message") or "refund not authorised")
            )

        return GatewayRefund(
            refund_id=str(data.get("tran_ref")),
            transaction_id=transaction_id,
            amount=amount,
            raw=data,
        )
