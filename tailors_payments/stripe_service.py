import logging
import os
from datetime import datetime, timezone

import stripe

from tailors_payments.config import STRIPE_SECRET_KEY
from tailors_payments.errors import GatewayError
from tailors_payments.gateways import (
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_SUCCESS,
    STATUS_UNKNOWN,
    Checkout,
    GatewayPayment,
    GatewayRefund,
    PaymentVerification,
)

logger = logging.getLogger(__name__)

stripe.api_key = STRIPE_SECRET_KEY

STRIPE_STATUSES = {
    "succeeded": STATUS_SUCCESS,
    "processing": STATUS_PENDING,
    "requires_payment_method": STATUS_PENDING,
    "requires_confirmation": STATUS_PENDING,
    "requires_action": STATUS_PENDING,
    "requires_capture": STATUS_PENDING,
    "canceled": STATUS_FAILED,
}


def map_stripe_status(status) -> str:
    return STRIPE_STATUSES.get(status or "", STATUS_UNKNOWN)


def create_payment(amount: int, currency: str, idempotency_key: str):
    return stripe.PaymentIntent.create(
        amount=amount,
        currency=currency.lower(),
        automatic_payment_methods={"enabled": True},
        metadata={"order_id": idempotency_key},
        idempotency_key=idempotency_key
    )


def retrieve_payment(payment_intent_id: str):
    return stripe.PaymentIntent.retrieve(payment_intent_id)


def refund_payment(payment_intent_id: str, amount: int = None, reason: str = None):
    params = {"payment_intent": payment_intent_id}
    if amount is not None:
        params["amount"] = amount
    if reason:
        params["metadata"] = {"reason": reason}
    return stripe.Refund.create(**params)


def construct_event(payload: bytes, signature: str):
    return stripe.Webhook.construct_event(
        payload,
        signature,
        os.getenv("STRIPE_WEBHOOK_SECRET")
    )


class StripeGateway:
    """Card payments through Stripe PaymentIntents."""

    name = "stripe"

    @property
    def configured(self) -> bool:
        return bool(stripe.api_key)

    def create_payment(self, checkout: Checkout) -> GatewayPayment:
        try:
            intent = create_payment(checkout.amount, checkout.currency, checkout.order_id)
        except stripe.StripeError as exc:
            logger.error("Stripe payment creation failed for order %s: %s", checkout.order_id, exc)
            raise GatewayError("Failed to create Stripe payment: " + (exc.user_message or str(exc))) from exc

        return GatewayPayment(
            gateway=self.name,
            reference=intent.id,
            status=STATUS_SUCCESS,
            transaction_id=intent.id,
            details={"clientSecret": intent.client_secret},
        )

    def verify_payment(self, reference: str) -> PaymentVerification:
        try:
            intent = retrieve_payment(reference)
        except stripe.StripeError as exc:
            logger.error("Stripe verification failed for %s: %s", reference, exc)
            raise GatewayError("Failed to verify Stripe payment: " + (exc.user_message or str(exc))) from exc

        status = map_stripe_status(intent.status)
        created = getattr(intent, "created", None)
        return PaymentVerification(
            gateway=self.name,
            reference=reference,
            status=status,
            gateway_status=intent.status,
            amount=getattr(intent, "amount_received", None) or getattr(intent, "amount", None),
            paid_at=datetime.fromtimestamp(created, timezone.utc) if created and status == STATUS_SUCCESS else None,
            transaction_id=reference,
        )

    def refund(self, transaction_id: str, amount: int, reason: str, currency: str = "EGP") -> GatewayRefund:
        try:
            refund = refund_payment(transaction_id, amount=amount, reason=reason)
        except stripe.StripeError as exc:
            logger.error("Stripe refund failed for %s: %s", transaction_id, exc)
            raise GatewayError("Stripe refund failed: " + (exc.user_message or str(exc))) from exc

        return GatewayRefund(refund_id=refund.id, transaction_id=transaction_id, amount=amount)
