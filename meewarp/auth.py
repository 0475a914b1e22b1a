# meewarp/auth.py
from __future__ import annotations
import logging
import time
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import jwt
from fastapi import Depends, HTTPException, Request, status

from .config import Settings

logger = logging.getLogger(__name__)

ROLE_SUPERADMIN = "superadmin"
ROLE_MANAGER = "manager"
ROLES = (ROLE_SUPERADMIN, ROLE_MANAGER)

JWT_ALGORITHM = "HS256"


@dataclass
class AdminPrincipal:
    email: str
    role: str
    store_id: Optional[str]


def issue_token(
    settings: Settings, *, email: str, role: str,
    store_id: Optional[str] = None, now: Optional[float] = None,
) -> str:
    if role not in ROLES:
        raise ValueError(f"unknown role: {role}")
    now = time.time() if now is None else now
    claims = {
        "sub": email,
        "role": role,
        "iat": int(now),
        "exp": int(now + settings.jwt_expires_seconds),
    }
    if store_id:
        claims["storeId"] = store_id
    return jwt.encode(claims, settings.jwt_secret, algorithm=JWT_ALGORITHM)


def _unauthorized(code: str, message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": code, "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def decode_token(settings: Settings, token: str) -> AdminPrincipal:
    try:
        claims = jwt.decode(
            token, settings.jwt_secret, algorithms=[JWT_ALGORITHM],
            options={"require": ["exp", "sub"]},
        )
    except jwt.ExpiredSignatureError:
        # the client drops its session and sends the user back to login
        raise _unauthorized("session_expired", "Session expired")
    except jwt.InvalidTokenError:
        raise _unauthorized("invalid_token", "Invalid token")
    role = claims.get("role") or ROLE_SUPERADMIN
    if role not in ROLES:
        raise _unauthorized("invalid_token", "Invalid token")
    return AdminPrincipal(
        email=claims["sub"], role=role, store_id=claims.get("storeId"),
    )


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def require_admin(
    request: Request, settings: Settings = Depends(get_settings)
) -> AdminPrincipal:
    header = request.headers.get("authorization") or ""
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise _unauthorized("unauthorized", "Unauthorized")
    return decode_token(settings, token.strip())


def require_role(*allowed: str):
    def _dep(
        principal: AdminPrincipal = Depends(require_admin),
    ) -> AdminPrincipal:
        if principal.role not in allowed:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN,
                                detail="Forbidden")
        return principal

    return _dep


def store_scope(request: Request, principal: AdminPrincipal) -> str:
    """
    The store an admin request acts on: fixed by the token for managers,
    chosen per request via `x-store-id` (or `storeId`) for superadmins.
    """
    if principal.role == ROLE_SUPERADMIN:
        store_id = (request.headers.get("x-store-id")
                    or request.query_params.get("storeId"))
        if not store_id:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="storeId is required for this action",
            )
        return store_id
    if not principal.store_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN,
                            detail="Store context is required")
    return principal.store_id


# ----------------------------
# Login rate limiting
# ----------------------------
class LoginRateLimiter:
    """Fixed window per client key, in process memory."""

    def __init__(self, max_attempts: int, window_seconds: float) -> None:
        self.max_attempts = max_attempts
        self.window = window_seconds
        self._hits: Dict[str, Tuple[float, int]] = {}
        self._pruned_at = 0.0

    def _prune(self, now: float) -> None:
        # at most once per window
        if now - self._pruned_at < self.window:
            return
        self._pruned_at = now
        stale = [k for k, (start, _) in self._hits.items()
                 if now - start >= self.window]
        for k in stale:
            del self._hits[k]

    def hit(self, key: str, now: Optional[float] = None) -> bool:
        """Record an attempt. False once `key` is over the limit."""
        now = time.time() if now is None else now
        self._prune(now)
        start, count = self._hits.get(key, (now, 0))
        if now - start >= self.window:
            start, count = now, 0
        count += 1
        self._hits[key] = (start, count)
        if count > self.max_attempts:
            logger.warning("login rate limit hit for %s", key)
            return False
        return True

    def reset(self, key: str) -> None:
        self._hits.pop(key, None)


def client_key(request: Request) -> str:
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    if request.client:
        return request.client.host
    return "unknown"
