"""Error taxonomy for material request lifecycle operations."""

from __future__ import annotations

from uuid import UUID

# purpose: give callers a specific, machine-readable reason for every rejected operation
# status: active


class MaterialRequestError(RuntimeError):
    """Base error for the request lifecycle and fulfillment core."""

    code = "material_request_error"
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(MaterialRequestError):
    """Raised for malformed input such as missing fields or non-positive quantities."""

    code = "validation_error"
    status_code = 400


class PermissionDeniedError(MaterialRequestError):
    """Raised when the acting identity lacks rights for the attempted transition."""

    code = "permission_denied"
    status_code = 403


class InvalidStateError(MaterialRequestError):
    """Raised when an operation is not legal from the current lifecycle state."""

    code = "invalid_state"
    status_code = 409


class OutOfOrderApprovalError(MaterialRequestError):
    """Raised when an approval level is acted on before all earlier levels approved."""

    code = "out_of_order_approval"
    status_code = 409


class AlreadyProcessedError(MaterialRequestError):
    """Raised when an approval level has already been decided."""

    code = "already_processed"
    status_code = 409


class NotFoundError(MaterialRequestError):
    """Raised when a referenced request, item, approval or comment is absent."""

    code = "not_found"
    status_code = 404


class InsufficientQuantityError(MaterialRequestError):
    """Raised when the ledger cannot satisfy a reservation."""

    code = "insufficient_quantity"
    status_code = 409

    def __init__(self, item_id: UUID, requested: int, available: int):
        super().__init__(
            f"Insufficient quantity for item {item_id}: requested {requested}, available {available}"
        )
        self.item_id = item_id
        self.requested = requested
        self.available = available
