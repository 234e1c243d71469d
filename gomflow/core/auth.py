"""
GOMFLOW Authentication

JWT bearer tokens for GOMs and buyers; a shared service secret for the bot
and order services calling internal endpoints.
"""

import hmac
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt
from fastapi import Depends, Header, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from gomflow.core.config import AuthSettings
from gomflow.di.container import container

ROLES = {"gom", "buyer", "service"}

# Bearer token security
security = HTTPBearer(auto_error=False)


class TokenData(BaseModel):
    """JWT token payload."""
    user_id: str
    role: str
    exp: datetime


def _auth_settings(settings: Optional[AuthSettings] = None) -> AuthSettings:
    return settings or container.settings().auth


def create_access_token(
    user_id: str,
    role: str,
    expires_delta: Optional[timedelta] = None,
    settings: Optional[AuthSettings] = None,
) -> str:
    """Create a JWT access token. For GOMs ``user_id`` is the gom id; for buyers, the buyer identity."""
    if role not in ROLES:
        raise ValueError(f"unknown role {role}")
    auth = _auth_settings(settings)
    if expires_delta is None:
        expires_delta = timedelta(minutes=auth.access_token_expire_minutes)

    now = datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "role": role,
        "exp": now + expires_delta,
        "iat": now,
        "type": "access",
    }
    return jwt.encode(payload, auth.secret_key, algorithm=auth.algorithm)


def decode_token(token: str, settings: Optional[AuthSettings] = None) -> Dict[str, Any]:
    """Decode and validate a JWT token."""
    auth = _auth_settings(settings)
    try:
        return jwt.decode(token, auth.secret_key, algorithms=[auth.algorithm])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token has expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> TokenData:
    if not credentials or not credentials.credentials:
        raise HTTPException(status_code=401, detail="Not authenticated. Provide a Bearer token.")

    payload = decode_token(credentials.credentials)
    if payload.get("type") != "access" or payload.get("role") not in ROLES:
        raise HTTPException(status_code=401, detail="Invalid token type")
    return TokenData(
        user_id=payload["sub"],
        role=payload["role"],
        exp=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
    )


def require_gom(user: TokenData = Depends(get_current_user)) -> TokenData:
    if user.role != "gom":
        raise HTTPException(status_code=403, detail=f"Role '{user.role}' not authorized. Required: gom")
    return user


def require_service_secret(
    x_service_secret: Optional[str] = Header(None, alias="X-Service-Secret"),
) -> None:
    """Internal endpoints: bot services and the order service share one secret."""
    expected = container.settings().auth.service_secret
    if not expected:
        raise HTTPException(status_code=503, detail="Service secret not configured")
    if not x_service_secret or not hmac.compare_digest(x_service_secret, expected):
        raise HTTPException(status_code=401, detail="Invalid service secret")
