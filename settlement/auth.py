from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header
from jose import JWTError, jwt

from settlement.config import get_settings
from settlement.errors import AuthenticationError, AuthorizationError


@dataclass(frozen=True)
class CurrentUser:
    id: str
    role: str = "buyer"                 # buyer | seller | admin
    seller_id: Optional[int] = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def verify_token(authorization: Optional[str] = Header(None)) -> CurrentUser:
    settings = get_settings()
    try:
        scheme, token = (authorization or "").split()
        if scheme.lower() != "bearer":
            raise ValueError("unsupported scheme")
        claims = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
        return CurrentUser(
            id=str(claims["sub"]),
            role=claims.get("role", "buyer"),
            seller_id=claims.get("seller_id"),
        )
    except (ValueError, KeyError, JWTError):
        raise AuthenticationError("Invalid or missing token")


def require_admin(user: CurrentUser = Depends(verify_token)) -> CurrentUser:
    if not user.is_admin:
        raise AuthorizationError("Admin privileges required")
    return user


def ensure_owner_or_admin(user: CurrentUser, owner_id: str, what: str = "order"):
    if user.is_admin or user.id == owner_id:
        return
    raise AuthorizationError(f"Not allowed to access this {what}")
