"""Settlement errors shared by the catalog, orders and payments apps."""


class SettlementError(Exception):
    """Base exception for checkout, payment and refund failures."""

    code = "error"
    http_status = 400


class ValidationError(SettlementError):
    """Raised when a cart or a request is rejected before any mutation."""

    code = "validation_error"

    def __init__(self, message: str, errors: list[str] | None = None):
        self.errors = errors or [message]
        super().__init__(message)


class OutOfStock(SettlementError):
    """Raised when a reservation asks for more than the sellable stock."""

    code = "out_of_stock"
    http_status = 409

    def __init__(self, book_id: int, requested: int, available: int | None = None):
        self.book_id = book_id
        self.requested = requested
        self.available = available
        msg = f"Insufficient stock for book {book_id}: requested {requested}"
        if available is not None:
            msg = f"{msg}, available {available}"
        super().__init__(msg)


class OrderLimitExceeded(SettlementError):
    """Raised when a user already has too many unpaid orders."""

    code = "order_limit"
    http_status = 429

    def __init__(self, limit: int):
        self.limit = limit
        super().__init__(f"Too many unpaid orders (limit {limit}). Pay or cancel one first.")


class InvalidTransition(SettlementError):
    """Raised when a state change is not allowed by the state machine."""

    code = "invalid_transition"
    http_status = 409

    def __init__(self, entity: str, current: str, target: str, reason: str | None = None):
        self.entity = entity
        self.current = current
        self.target = target
        msg = f"{entity} cannot move from {current} to {target}"
        if reason:
            msg = f"{msg} ({reason})"
        super().__init__(msg)


class NotFound(SettlementError):
    code = "not_found"
    http_status = 404


class CallbackRejected(SettlementError):
    """Base for inbound gateway callbacks that must not touch any state."""

    code = "callback_rejected"


class SignatureInvalid(CallbackRejected):
    code = "signature_invalid"


class UnknownTransaction(CallbackRejected):
    code = "unknown_transaction"

    def __init__(self, txn_ref: str):
        self.txn_ref = txn_ref
        super().__init__(f"Unknown transaction reference: {txn_ref}")


class AmountMismatch(CallbackRejected):
    code = "amount_mismatch"

    def __init__(self, txn_ref: str, expected, received):
        self.txn_ref = txn_ref
        self.expected = expected
        self.received = received
        super().__init__(f"Amount mismatch for {txn_ref}: expected {expected}, got {received}")


class GatewayUnavailable(SettlementError):
    """Raised when an outbound gateway call times out, errors or is refused."""

    code = "gateway_unavailable"
    http_status = 503

    def __init__(self, message: str, response: dict | None = None):
        self.response = response or {}
        super().__init__(message)
