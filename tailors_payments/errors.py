class PaymentError(Exception):
    """Base class for errors the HTTP layer turns into an error envelope."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class PaymentNotFound(PaymentError):
    status_code = 404

    def __init__(self, message: str = "No payment found for this order"):
        super().__init__(message)


class OrderNotFound(PaymentError):
    status_code = 404

    def __init__(self, message: str = "Order not found"):
        super().__init__(message)


class AlreadyRefunded(PaymentError):
    status_code = 400

    def __init__(self, message: str = "Payment has already been fully refunded"):
        super().__init__(message)


class InvalidRefundAmount(PaymentError):
    status_code = 400


class InvalidCheckout(PaymentError):
    status_code = 400


class UnsupportedGateway(PaymentError):
    status_code = 400

    def __init__(self, gateway: str):
        super().__init__(f"Unsupported payment gateway: {gateway}")
        self.gateway = gateway


class NotAuthorized(PaymentError):
    status_code = 403


class GatewayError(PaymentError):
    """A payment provider rejected or failed a call; message is the vendor's."""

    status_code = 502


class InvalidOrderState(PaymentError):
    status_code = 409


class InvalidPaymentState(PaymentError):
    status_code = 400
