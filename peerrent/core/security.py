"""Bearer token handling.

Identity verification happens upstream; this service only trusts signed
access tokens whose claims name the caller (``sub``, ``name``, ``role``).
"""

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any
from uuid import UUID

from jose import JWTError, jwt

from peerrent.config import settings
from peerrent.core.exceptions import AuthenticationError


class ActorRole(str, Enum):
    """Platform-level role carried in the token."""

    USER = "user"
    ADMIN = "admin"
    SYSTEM = "system"


@dataclass(frozen=True)
class Actor:
    """The authenticated caller of an operation."""

    id: UUID
    name: str
    role: ActorRole = ActorRole.USER

    @property
    def is_admin(self) -> bool:
        return self.role == ActorRole.ADMIN

    @property
    def is_system(self) -> bool:
        return self.role == ActorRole.SYSTEM


SYSTEM_ACTOR = Actor(id=UUID(int=0), name="PeerRent Scheduler", role=ActorRole.SYSTEM)


def create_access_token(
    data: dict[str, Any],
    expires_delta: timedelta | None = None,
) -> str:
    """Create a JWT access token."""
    to_encode = data.copy()
    expire = datetime.now(UTC) + (
        expires_delta or timedelta(minutes=settings.access_token_expire_minutes)
    )
    to_encode.update({"exp": expire, "type": "access"})
    return jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def create_actor_token(actor: Actor, expires_delta: timedelta | None = None) -> str:
    """Create an access token describing ``actor``."""
    return create_access_token(
        {"sub": str(actor.id), "name": actor.name, "role": actor.role.value},
        expires_delta=expires_delta,
    )


def verify_token(token: str, token_type: str = "access") -> dict[str, Any]:
    """Verify and decode a JWT token."""
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
        )
    except JWTError as e:
        raise AuthenticationError(f"Token validation failed: {str(e)}") from e
    if payload.get("type") != token_type:
        raise AuthenticationError("Invalid token type")
    return payload


def actor_from_token(token: str) -> Actor:
    """Decode a bearer token into an :class:`Actor`."""
    payload = verify_token(token, token_type="access")
    subject = payload.get("sub")
    if not subject:
        raise AuthenticationError("Invalid token payload")
    try:
        actor_id = UUID(subject)
        role = ActorRole(payload.get("role", ActorRole.USER.value))
    except ValueError as e:
        raise AuthenticationError("Invalid token payload") from e
    return Actor(id=actor_id, name=payload.get("name") or "", role=role)
