"""Exceptions raised by the order, payment, refund and payout engines."""


class SettlementError(Exception):
    """Base exception; status_code is the HTTP status the API answers with."""

    status_code = 400

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(SettlementError):
    """Raised when a request is missing fields or carries invalid values."""

    status_code = 400


class NotFoundError(SettlementError):
    """Raised when an order, payment, refund, payout or seller does not exist."""

    status_code = 404

    def __init__(self, kind: str, ref):
        self.kind = kind
        self.ref = ref
        super().__init__(f"{kind} not found: {ref}")


class AuthenticationError(SettlementError):
    status_code = 401


class AuthorizationError(SettlementError):
    """Raised when the acting user may not touch the resource."""

    status_code = 403


class StateConflictError(SettlementError):
    """Raised on an invalid state transition. Never retried automatically."""

    status_code = 400

    def __init__(self, message: str, current_status: str | None = None):
        self.current_status = current_status
        if current_status:
            message = f"{message} (current status: {current_status})"
        super().__init__(message)


class InsufficientStockError(SettlementError):
    """Raised before any stock mutation when a line asks for more than is available."""

    status_code = 400

    def __init__(self, product_id: int, product_name: str, requested: int, available: int | None = None):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        message = f"Insufficient stock for {product_name}: requested {requested}"
        if available is not None:
            message = f"{message}, available {available}"
        super().__init__(message)


class GatewayError(SettlementError):
    """Raised when the payment provider rejects or fails a call."""

    status_code = 502
