"""FastAPI authentication dependencies for route protection."""

from dataclasses import dataclass

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError

from innkeep.auth.jwt import ROLE_STAFF, VALID_ROLES, decode_token

# Strict bearer: raises 403 automatically if no token provided
_bearer_scheme = HTTPBearer()


@dataclass(frozen=True)
class Actor:
    """The authenticated caller, as recorded in the audit log."""

    id: str
    role: str

    @property
    def is_staff(self) -> bool:
        return self.role == ROLE_STAFF


async def get_current_actor(
    credentials: HTTPAuthorizationCredentials = Depends(_bearer_scheme),
) -> Actor:
    """Extract and validate the Bearer token, then return the caller.

    Raises:
        HTTPException 401: If the token is invalid, expired, of the wrong type, or has no subject.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    try:
        payload = decode_token(credentials.credentials)
    except JWTError:
        raise credentials_exception from None

    if payload.get("type") != "access":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token type",
            headers={"WWW-Authenticate": "Bearer"},
        )

    sub: str | None = payload.get("sub")
    role: str | None = payload.get("role")
    if not sub or role not in VALID_ROLES:
        raise credentials_exception

    return Actor(id=sub, role=role)


async def require_staff(actor: Actor = Depends(get_current_actor)) -> Actor:
    """Allow only front-desk staff.

    Raises:
        HTTPException 403: If the caller is not staff.
    """
    if not actor.is_staff:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Staff access required",
        )
    return actor
