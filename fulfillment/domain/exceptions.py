from decimal import Decimal
from typing import Optional


class FulfillmentError(Exception):
    """Base class for every error raised by the fulfillment pipeline."""


class EventVerificationError(FulfillmentError):
    """The webhook payload is unsigned, wrongly signed or not parseable."""


class PayloadValidationError(FulfillmentError):
    """Cart, totals or addresses carried by the payment are unusable."""


class InsufficientStockError(FulfillmentError):
    """A conditional decrement matched nothing: unknown product or not enough stock."""

    def __init__(self, product_id: str, source: str, quantity: int):
        self.product_id = product_id
        self.source = source
        self.quantity = quantity
        super().__init__(f"Insufficient stock for {source} {product_id} (requested {quantity})")


class ClaimLostError(FulfillmentError):
    """Another delivery of the same payment finalised the order first."""


class OrderNotFoundError(FulfillmentError):
    def __init__(self, order_id: int):
        self.order_id = order_id
        super().__init__(f"Order {order_id} not found")


class RefundConflictError(FulfillmentError):
    def __init__(self, message: str, refundable: Decimal):
        self.refundable = refundable
        super().__init__(message)


class GatewayError(FulfillmentError):
    """The payment gateway rejected or failed a call."""

    def __init__(self, message: str, code: Optional[str] = None):
        self.code = code
        super().__init__(message)


class NotificationError(FulfillmentError):
    """The e-mail transport could not deliver a message."""
