"""Core utilities: exceptions, security and persistence guards."""

from peerrent.core.exceptions import (
    AppException,
    AuthenticationError,
    AuthorizationError,
    CancellationWindowClosed,
    ConcurrentUpdate,
    ErrorCode,
    ExternalProcessorFailure,
    InvalidActor,
    InvalidSourceState,
    PayoutFrozen,
    RecordNotFound,
    RentalStillInProgress,
    TimeGateNotSatisfied,
    ValidationError,
)
from peerrent.core.security import (
    Actor,
    ActorRole,
    actor_from_token,
    create_access_token,
    create_actor_token,
    verify_token,
)

__all__ = [
    "AppException",
    "AuthenticationError",
    "AuthorizationError",
    "CancellationWindowClosed",
    "ConcurrentUpdate",
    "ErrorCode",
    "ExternalProcessorFailure",
    "InvalidActor",
    "InvalidSourceState",
    "PayoutFrozen",
    "RecordNotFound",
    "RentalStillInProgress",
    "TimeGateNotSatisfied",
    "ValidationError",
    "Actor",
    "ActorRole",
    "actor_from_token",
    "create_access_token",
    "create_actor_token",
    "verify_token",
]
