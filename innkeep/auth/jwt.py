"""JWT access token creation and verification.

Accounts live in an external identity service; Innkeep only needs to know who
is calling (``sub``) and whether they are front-desk staff (``role``).
"""

from datetime import datetime, timedelta, timezone

from jose import jwt

from innkeep.config import settings

ROLE_STAFF = "staff"
ROLE_GUEST = "guest"
VALID_ROLES = {ROLE_STAFF, ROLE_GUEST}


def create_access_token(data: dict, expires_delta: timedelta | None = None) -> str:
    """Create a short-lived access token.

    Args:
        data: Payload data. Must include ``sub`` (actor id) and should include
            ``role`` (``staff`` or ``guest``).
        expires_delta: Custom expiration duration. Defaults to
            ``settings.jwt_access_token_expire_minutes`` minutes.

    Returns:
        Encoded JWT string.
    """
    to_encode = data.copy()
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(minutes=settings.jwt_access_token_expire_minutes))
    to_encode.update({"exp": expire, "iat": now, "type": "access"})
    return jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict:
    """Decode and verify a JWT token.

    Raises:
        jose.JWTError: If the token is invalid, expired, or malformed.
    """
    return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])


def create_actor_token(actor_id: str, role: str = ROLE_GUEST) -> str:
    """Access token for an actor, as issued by the account service (and tests)."""
    if role not in VALID_ROLES:
        raise ValueError(f"Unknown role {role!r}")
    return create_access_token({"sub": actor_id, "role": role})
