from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import bcrypt
import jwt

from expense_manager.errors import AuthenticationInvalid, AuthenticationRequired, Forbidden, ValidationFailed

logger = logging.getLogger(__name__)

TOKEN_ALGORITHM = "HS256"
MAX_PASSWORD_BYTES = 72


@dataclass(frozen=True)
class Identity:
    id: int
    email: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def password_too_long(password: str) -> bool:
    return len(password.encode("utf-8")) > MAX_PASSWORD_BYTES


def hash_password(password: str) -> str:
    if password_too_long(password):
        raise ValidationFailed(f"Password cannot be longer than {MAX_PASSWORD_BYTES} bytes.")
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed_password: str) -> bool:
    # bcrypt rejects long input outright; such a password can never match a stored hash
    if password_too_long(password):
        return False
    return bcrypt.checkpw(password.encode("utf-8"), hashed_password.encode("utf-8"))


def issue_token(identity: Identity, secret: str, ttl: timedelta, now: datetime | None = None) -> str:
    issued_at = now or datetime.now(timezone.utc)
    claims = {
        "id": identity.id,
        "email": identity.email,
        "role": identity.role,
        "iat": issued_at,
        "exp": issued_at + ttl,
    }
    return jwt.encode(claims, secret, algorithm=TOKEN_ALGORITHM)


def decode_token(token: str, secret: str) -> Identity:
    try:
        claims = jwt.decode(token, secret, algorithms=[TOKEN_ALGORITHM])
    except jwt.ExpiredSignatureError as exc:
        raise AuthenticationInvalid("Token expired.") from exc
    except jwt.InvalidTokenError as exc:
        raise AuthenticationInvalid("Invalid token.") from exc
    try:
        return Identity(id=int(claims["id"]), email=str(claims["email"]), role=str(claims["role"]))
    except (KeyError, TypeError, ValueError) as exc:
        raise AuthenticationInvalid("Invalid token.") from exc


def parse_bearer_token(authorization: str | None) -> str:
    if not authorization:
        raise AuthenticationRequired("Authentication required.")
    scheme, _, token = authorization.strip().partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token:
        raise AuthenticationRequired("Authentication required.")
    return token


def can_modify(caller: Identity, owner_id: int | None) -> bool:
    if caller.is_admin:
        return True
    return owner_id is not None and owner_id == caller.id


def ensure_can_modify(caller: Identity, owner_id: int | None) -> None:
    if not can_modify(caller, owner_id):
        logger.warning("User %s denied access to a record owned by %s", caller.id, owner_id)
        raise Forbidden("Not authorized.")


def require_admin(caller: Identity) -> None:
    if not caller.is_admin:
        logger.warning("User %s denied admin-only action", caller.id)
        raise Forbidden("Admin access required.")
