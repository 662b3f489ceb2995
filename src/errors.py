from typing import Optional


class OrderSyncError(Exception):
    """Base class for everything the engine raises on purpose."""


class ValidationError(OrderSyncError):
    """Rejected locally, before any network call."""


class ParseEmptyError(ValidationError):
    """A correction text produced no items."""

    def __init__(self, order_id: str):
        super().__init__(f"correction for order {order_id} has no items")
        self.order_id = order_id


class TransportError(OrderSyncError):
    """The order backend could not be reached or answered with a non-success status."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code
