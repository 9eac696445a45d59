import logging

from tailors_payments.errors import InvalidRefundAmount, UnsupportedGateway
from tailors_payments.gateways import (
    Checkout,
    FawryGateway,
    GatewayPayment,
    GatewayRefund,
    PaymentVerification,
    PayMobGateway,
    PayTabsGateway,
)
from tailors_payments.stripe_service import StripeGateway

logger = logging.getLogger(__name__)


class PaymentService:
    """Routes payment, verification and refund calls to a gateway by name."""

    def __init__(self, gateways=None):
        if gateways is None:
            gateways = [FawryGateway(), PayMobGateway(), PayTabsGateway(), StripeGateway()]
        self.gateways = {gateway.name: gateway for gateway in gateways}

    def gateway(self, name: str):
        gateway = self.gateways.get((name or "").lower())
        if gateway is None:
            raise UnsupportedGateway(name)
        return gateway

    def supported_gateways(self):
        return [name for name, gateway in self.gateways.items() if gateway.configured]

    def create_fawry_payment(self, checkout: Checkout) -> GatewayPayment:
        return self.gateway("fawry").create_payment(checkout)

    def create_paymob_payment(self, checkout: Checkout) -> GatewayPayment:
        return self.gateway("paymob").create_payment(checkout)

    def create_paytabs_payment(self, checkout: Checkout) -> GatewayPayment:
        return self.gateway("paytabs").create_payment(checkout)

    def create_stripe_payment(self, checkout: Checkout) -> GatewayPayment:
        return self.gateway("stripe").create_payment(checkout)

    def create_payment(self, gateway: str, checkout: Checkout) -> GatewayPayment:
        logger.info("Creating %s payment for order %s", gateway, checkout.order_id)
        return self.gateway(gateway).create_payment(checkout)

    def verify_payment(self, gateway: str, reference: str) -> PaymentVerification:
        verification = self.gateway(gateway).verify_payment(reference)
        logger.info("Verified %s payment %s: %s", gateway, reference, verification.status)
        return verification

    def process_refund(
        self, gateway: str, transaction_id: str, amount: int, reason: str, currency: str = "EGP"
    ) -> GatewayRefund:
        if not transaction_id or not amount:
            raise InvalidRefundAmount("Missing required refund information")
        client = self.gateway(gateway)
        logger.info("Refunding %s on %s transaction %s", amount, gateway, transaction_id)
        return client.refund(transaction_id, amount, reason, currency)


_default_service = None


def get_payment_service() -> PaymentService:
    global _default_service
    if _default_service is None:
        _default_service = PaymentService()
    return _default_service
