"""
Exception taxonomy for the rental core.

Every engine-level failure is one of these types. Boundary callers map
them to responses with ``to_dict()`` and ``http_status``:

- ValidationError: bad input, rejected before any transaction opens
- ConflictError: entity not in the state required by the transition
- NotFoundError: entity or tenant absent
- StorageUnavailableError: transient database failure, retry the operation
- SettlementFailedError: processor call failed, database rolled back
- TenantScopeError: partition invalid or not selectable, fails closed
"""

from typing import Any, Dict, Optional


class RentalError(Exception):
    """
    Base exception for all rental core errors.

    Carries:
    - Error code (for client handling)
    - User message (safe to show to users)
    - Internal message (for logs)
    - HTTP status code (for API responses)
    """

    error_code = "rental_error"
    http_status = 500
    default_user_message = "An error occurred. Please try again."

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        user_message: Optional[str] = None,
        http_status: Optional[int] = None,
        **kwargs: Any,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.error_code
        self.user_message = user_message or self.default_user_message
        self.http_status = http_status or self.http_status
        self.metadata = kwargs

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for API responses"""
        return {
            "error": {
                "code": self.error_code,
                "message": self.user_message,
                "type": self.__class__.__name__,
            }
        }


# ============================================================================
# INPUT ERRORS
# ============================================================================

class ValidationError(RentalError):
    """Bad input. Raised before any transaction opens, no side effects."""

    error_code = "validation_error"
    http_status = 400
    default_user_message = "The request is invalid."

    def __init__(self, message: str, field: Optional[str] = None, **kwargs: Any):
        kwargs.setdefault("user_message", message)
        super().__init__(message, field=field, **kwargs)
        self.field = field


class InvalidTransitionError(ValidationError):
    """A status change that the transition table does not allow."""

    error_code = "invalid_transition"

    def __init__(
        self, message: str, current: Optional[str] = None, event: Optional[str] = None
    ):
        super().__init__(message, field="status", current=current, event=event)
        self.current = current
        self.event = event


class WebhookRejectedError(RentalError):
    """Processor event could not be verified or parsed."""

    error_code = "webhook_rejected"
    http_status = 400
    default_user_message = "Webhook rejected."


# ============================================================================
# STATE CONFLICTS
# ============================================================================

class ConflictError(RentalError):
    """
    Entity is not in the state the operation requires.

    The transaction is rolled back; the caller may retry with fresh state.
    """

    error_code = "conflict"
    http_status = 409
    default_user_message = "The resource was modified by another request."


class AssetUnavailableError(ConflictError):
    """Car observed as not available under the row lock."""

    error_code = "asset_unavailable"
    default_user_message = "Car is not available."

    def __init__(self, car_id: Any, status: str):
        super().__init__(
            f"Car {car_id} is not available (status={status})",
            car_id=str(car_id),
            status=status,
        )
        self.car_id = car_id
        self.status = status


class InvalidStateError(ConflictError):
    """Booking or payment is not in a state that permits the operation."""

    error_code = "invalid_state"
    default_user_message = "Operation not allowed in the current state."

    def __init__(
        self, message: str, current: Optional[str] = None, event: Optional[str] = None
    ):
        super().__init__(message, current=current, event=event)
        self.current = current
        self.event = event


# ============================================================================
# LOOKUP ERRORS
# ============================================================================

class NotFoundError(RentalError):
    """Entity absent in the current tenant partition."""

    error_code = "not_found"
    http_status = 404
    default_user_message = "Not found."

    def __init__(self, entity: str, identifier: Any, **kwargs: Any):
        super().__init__(
            f"{entity} {identifier} not found",
            entity=entity,
            identifier=str(identifier),
            **kwargs,
        )
        self.entity = entity
        self.identifier = identifier


class TenantNotFoundError(NotFoundError):
    """Identity does not map to any tenant in the directory."""

    error_code = "tenant_not_found"
    default_user_message = "Unknown tenant."

    def __init__(self, identity: Any):
        super().__init__("Tenant", identity)


# ============================================================================
# INFRASTRUCTURE ERRORS
# ============================================================================

class TenantScopeError(RentalError):
    """
    Partition name failed validation or could not be selected.

    Never falls back to an unscoped or default partition.
    """

    error_code = "tenant_scope_error"
    http_status = 400
    default_user_message = "Tenant could not be selected."

    def __init__(self, message: str, schema_name: Optional[str] = None):
        super().__init__(message, schema_name=schema_name)
        self.schema_name = schema_name


class StorageUnavailableError(RentalError):
    """Connection, begin, commit or lock wait failed. Nothing was made durable."""

    error_code = "storage_unavailable"
    http_status = 503
    default_user_message = "Service temporarily unavailable. Please retry."


class SettlementFailedError(RentalError):
    """
    Processor authorization, capture or void failed.

    Database state is rolled back to before the attempt. Retrying is safe
    because processor calls carry booking-derived idempotency keys.
    """

    error_code = "settlement_failed"
    http_status = 502
    default_user_message = "Payment could not be processed. Please retry."

    def __init__(self, message: str, booking_id: Any = None, **kwargs: Any):
        super().__init__(
            message,
            booking_id=str(booking_id) if booking_id is not None else None,
            **kwargs,
        )
        self.booking_id = booking_id
