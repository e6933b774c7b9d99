from __future__ import annotations

"""Participant identity from bearer JWTs.

Accounts are managed elsewhere; this service trusts any token signed with
``JWT_SECRET`` (HS256) and maps its claims onto a ``User``:
``sub`` -> user_id, ``name`` -> display_name, optional ``email``.
Tokens live ``JWT_EXPIRES_MIN`` minutes (60 by default).
"""

import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, EmailStr


logger = logging.getLogger(__name__)
_bearer = HTTPBearer(auto_error=False)

_DEV_SECRET = "dev-secret-change-me"


@dataclass
class JwtConfig:
    secret: str
    algorithm: str = "HS256"
    expires_min: int = 60

    @staticmethod
    def from_env() -> "JwtConfig":
        return JwtConfig(
            secret=os.getenv("JWT_SECRET") or _DEV_SECRET,
            expires_min=int(os.getenv("JWT_EXPIRES_MIN", "60")),
        )


class User(BaseModel):
    user_id: str
    display_name: str
    email: Optional[EmailStr] = None


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


def create_access_token(user: User, cfg: Optional[JwtConfig] = None) -> str:
    cfg = cfg or JwtConfig.from_env()
    issued = int(time.time())
    claims: Dict[str, Any] = {
        "sub": user.user_id,
        "name": user.display_name,
        "iat": issued,
        "exp": issued + cfg.expires_min * 60,
    }
    if user.email:
        claims["email"] = str(user.email)
    return jwt.encode(claims, cfg.secret, algorithm=cfg.algorithm)


def decode_token(token: str, cfg: Optional[JwtConfig] = None) -> User:
    cfg = cfg or JwtConfig.from_env()
    try:
        claims = jwt.decode(token, cfg.secret, algorithms=[cfg.algorithm])
    except jwt.ExpiredSignatureError:
        raise _unauthorized("Token expired")
    except jwt.InvalidTokenError:
        raise _unauthorized("Invalid token")
    email = claims.get("email")
    name = claims.get("name") or (email.split("@")[0] if email else "") or "Participant"
    try:
        return User(user_id=str(claims["sub"]), display_name=name, email=email)
    except (KeyError, ValueError):
        raise _unauthorized("Invalid token")


def get_current_user(creds: Optional[HTTPAuthorizationCredentials] = Depends(_bearer)) -> User:
    if creds is None or (creds.scheme or "").lower() != "bearer":
        raise _unauthorized("Missing bearer token")
    return decode_token(creds.credentials)


def user_from_query_token(token: Optional[str]) -> Optional[User]:
    """WebSocket variant: browsers cannot set headers, so the token rides in the query."""
    if not token:
        return None
    try:
        return decode_token(token)
    except HTTPException:
        logger.info("ws_token_rejected")
        return None
