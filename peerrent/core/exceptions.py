"""Custom application exceptions.

Every rejection raised by the rental and dispute state machines carries a
machine-readable ``code`` so callers can distinguish a wrong actor from a
wrong source state, an unsatisfied time gate or a frozen payout.
"""

from enum import Enum
from typing import Any

from fastapi import HTTPException, status


class ErrorCode(str, Enum):
    """Structured failure reasons returned to API callers."""

    INVALID_ACTOR = "invalid_actor"
    INVALID_SOURCE_STATE = "invalid_source_state"
    TIME_GATE_NOT_SATISFIED = "time_gate_not_satisfied"
    PAYOUT_FROZEN = "payout_frozen"
    EXTERNAL_PROCESSOR_FAILURE = "external_processor_failure"
    RECORD_NOT_FOUND = "record_not_found"
    VALIDATION_ERROR = "validation_error"
    CONCURRENT_UPDATE = "concurrent_update"
    AUTHENTICATION_FAILED = "authentication_failed"
    RATE_LIMITED = "rate_limited"
    INTERNAL_ERROR = "internal_error"


class AppException(HTTPException):
    """Base application exception."""

    code: ErrorCode = ErrorCode.INTERNAL_ERROR
    retryable: bool = False

    def __init__(
        self,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail: str = "An unexpected error occurred",
        headers: dict[str, str] | None = None,
    ) -> None:
        super().__init__(status_code=status_code, detail=detail, headers=headers)


class ValidationError(AppException):
    """Validation error exception."""

    code = ErrorCode.VALIDATION_ERROR

    def __init__(self, detail: str = "Validation failed", errors: list[dict[str, Any]] | None = None) -> None:
        self.errors = errors
        super().__init__(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=detail)


class RecordNotFound(AppException):
    """Referenced rental, dispute, proposal or refund does not exist."""

    code = ErrorCode.RECORD_NOT_FOUND

    def __init__(self, resource: str = "Record", identifier: str | None = None) -> None:
        detail = f"{resource} not found"
        if identifier:
            detail = f"{resource} with ID '{identifier}' not found"
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail=detail)


class AuthenticationError(AppException):
    """Authentication failed exception."""

    code = ErrorCode.AUTHENTICATION_FAILED

    def __init__(self, detail: str = "Authentication failed") -> None:
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            headers={"WWW-Authenticate": "Bearer"},
        )


class InvalidActor(AppException):
    """Caller is not the party allowed to perform the action."""

    code = ErrorCode.INVALID_ACTOR

    def __init__(self, detail: str = "You are not allowed to perform this action") -> None:
        super().__init__(status_code=status.HTTP_403_FORBIDDEN, detail=detail)


class AuthorizationError(InvalidActor):
    """Authorization denied exception."""

    def __init__(self, detail: str = "You don't have permission to access this resource") -> None:
        super().__init__(detail=detail)


class InvalidSourceState(AppException):
    """Transition attempted from a state that does not permit it."""

    code = ErrorCode.INVALID_SOURCE_STATE

    def __init__(
        self,
        entity: str = "Record",
        current: str | None = None,
        action: str | None = None,
        detail: str | None = None,
    ) -> None:
        self.entity = entity
        self.current = current
        self.action = action
        if detail is None:
            detail = f"Cannot {action or 'change'} {entity.lower()} in status '{current}'"
        super().__init__(status_code=status.HTTP_409_CONFLICT, detail=detail)


class TimeGateNotSatisfied(AppException):
    """A time-gated transition was attempted outside its window."""

    code = ErrorCode.TIME_GATE_NOT_SATISFIED

    def __init__(self, detail: str = "This action is not allowed at this time") -> None:
        super().__init__(status_code=status.HTTP_409_CONFLICT, detail=detail)


class CancellationWindowClosed(TimeGateNotSatisfied):
    """Cancellation attempted inside the cutoff before the rental starts."""

    def __init__(self, cutoff_hours: int, hours_until_start: float) -> None:
        self.cutoff_hours = cutoff_hours
        self.hours_until_start = hours_until_start
        super().__init__(
            f"Cancellation closes {cutoff_hours} hours before the rental starts "
            f"({max(hours_until_start, 0):.1f} hours remaining)"
        )


class RentalStillInProgress(TimeGateNotSatisfied):
    """Completion requested before the rental end date."""

    def __init__(self, hours_remaining: float) -> None:
        self.hours_remaining = hours_remaining
        super().__init__(
            f"Rental has not ended yet ({hours_remaining:.1f} hours remaining)"
        )


class PayoutFrozen(AppException):
    """Payout is blocked by an unresolved dispute."""

    code = ErrorCode.PAYOUT_FROZEN

    def __init__(self, detail: str = "Payout is frozen by an open dispute") -> None:
        super().__init__(status_code=status.HTTP_409_CONFLICT, detail=detail)


class ConcurrentUpdate(AppException):
    """Record changed underneath the caller; the operation may be retried."""

    code = ErrorCode.CONCURRENT_UPDATE
    retryable = True

    def __init__(self, resource: str = "Record", identifier: str | None = None) -> None:
        detail = f"{resource} was modified concurrently"
        if identifier:
            detail = f"{resource} '{identifier}' was modified concurrently"
        super().__init__(status_code=status.HTTP_409_CONFLICT, detail=detail)


class ExternalProcessorFailure(AppException):
    """Payment processor call failed; local state was left unchanged."""

    code = ErrorCode.EXTERNAL_PROCESSOR_FAILURE
    retryable = True

    def __init__(self, operation: str, detail: str | None = None) -> None:
        self.operation = operation
        message = f"Payment processor failed during {operation}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=message)


class RateLimitExceeded(AppException):
    """Rate limit exceeded exception."""

    code = ErrorCode.RATE_LIMITED

    def __init__(self, detail: str = "Too many requests. Please try again later.") -> None:
        super().__init__(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=detail)
