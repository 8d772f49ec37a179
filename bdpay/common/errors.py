"""Error taxonomy for payment initiation and gateway interaction.

Validation and rate-limit errors are raised before any persistence or network
side effect. Everything that goes wrong talking to the gateway surfaces as a
`GatewayError` (or one of its subclasses).
"""


class PaymentError(Exception):
    """Base exception for payment errors."""

    def __init__(self, message: str, code: str):
        super().__init__(message)
        self.message = message
        self.code = code


class InvalidAmount(PaymentError):
    def __init__(self, message: str = "Invalid order amount"):
        super().__init__(message, "INVALID_AMOUNT")


class AmountExceedsLimit(PaymentError):
    def __init__(self, message: str = "Order amount exceeds maximum limit"):
        super().__init__(message, "AMOUNT_EXCEEDS_LIMIT")


class MissingOrderId(PaymentError):
    def __init__(self, message: str = "Order ID is required"):
        super().__init__(message, "MISSING_ORDER_ID")


class RateLimited(PaymentError):
    def __init__(self, message: str = "Too many payment requests. Please try again later."):
        super().__init__(message, "RATE_LIMITED")


class OrderNotFound(PaymentError):
    def __init__(self, order_id: str):
        super().__init__(f"Order not found: {order_id}", "ORDER_NOT_FOUND")


class TransactionNotFound(PaymentError):
    def __init__(self, order_number: str):
        super().__init__(f"Transaction record not found for order {order_number}", "TRANSACTION_NOT_FOUND")
        self.order_number = order_number


class GatewayError(PaymentError):
    """Gateway call failed; `gateway_message` is the gateway's own text, if any."""

    def __init__(
        self,
        message: str = "Payment gateway error. Please try again.",
        status_code: int | None = None,
        gateway_message: str | None = None,
        code: str = "GATEWAY_ERROR",
    ):
        super().__init__(message, code)
        self.status_code = status_code
        self.gateway_message = gateway_message


class GatewayTimeout(GatewayError):
    def __init__(self, timeout_seconds: float):
        super().__init__(
            f"Payment gateway did not respond within {timeout_seconds:g}s",
            code="GATEWAY_TIMEOUT",
        )


class MalformedResponse(GatewayError):
    def __init__(self, message: str = "Invalid response format from payment gateway", status_code: int | None = None):
        super().__init__(message, status_code=status_code, code="MALFORMED_RESPONSE")


class EnvelopeError(Exception):
    """Base for signed/encrypted envelope failures."""


class SignatureInvalid(EnvelopeError):
    pass


class DecryptionFailed(EnvelopeError):
    pass
