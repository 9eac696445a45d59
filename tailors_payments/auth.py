import os
from dataclasses import dataclass

from fastapi import Depends, Header, HTTPException
from jose import JWTError, jwt

from tailors_payments.config import JWT_ALGORITHM


@dataclass(frozen=True)
class CurrentUser:
    id: str
    role: str = "buyer"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def verify_token(authorization: str = Header(None)) -> CurrentUser:
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("Unsupported authorization scheme")
        claims = jwt.decode(token, os.getenv("JWT_SECRET"), algorithms=[JWT_ALGORITHM])
    except (AttributeError, ValueError, JWTError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")

    user_id = claims.get("sub") or claims.get("id")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid or missing token")
    return CurrentUser(id=str(user_id), role=claims.get("role") or "buyer")


def require_role(*roles):
    def dependency(user: CurrentUser = Depends(verify_token)) -> CurrentUser:
        if user.role not in roles:
            raise HTTPException(status_code=403, detail="Access denied, insufficient permission")
        return user

    return dependency
