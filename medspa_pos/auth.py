from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException
from jose import JWTError, jwt

from medspa_pos.config import JWT_ALGORITHM, JWT_SECRET

ROLES = ("admin", "provider", "reception", "client")


@dataclass(frozen=True)
class Principal:
    """The authenticated caller, resolved once per request from the bearer token."""
    subject: str
    role: str
    client_id: Optional[int] = None


def verify_token(authorization: str = Header(None)) -> Principal:
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("unsupported scheme")
        claims = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
        role = claims.get("role")
        if role not in ROLES:
            raise ValueError("unknown role")
        client_id = claims.get("client_id")
        return Principal(
            subject=str(claims["sub"]),
            role=role,
            client_id=int(client_id) if client_id is not None else None,
        )
    except (AttributeError, KeyError, TypeError, ValueError, JWTError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")


def require_roles(*roles):
    def checker(principal: Principal = Depends(verify_token)) -> Principal:
        if principal.role not in roles:
            raise HTTPException(status_code=403, detail="Access denied")
        return principal
    return checker


def ensure_client_access(principal: Principal, client_id: int):
    # Clients only see and pay for their own record
    if principal.role == "client" and principal.client_id != client_id:
        raise HTTPException(status_code=403, detail="Access denied")
