"""
auth/dependencies.py -- FastAPI Depends() helpers for opaque access tokens.

Access tokens arrive as `Authorization: Bearer <token>`. They carry no claims;
the only way to learn who holds one is a store lookup through the guard.

try_get_current_user() is the soft variant (returns None on failure).
get_current_user() wraps it and raises HTTP 401 if unauthenticated.

Layer rule: no imports from api/. This module may import fastapi because it
is part of the dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.errors import InvalidAccessToken
from auth.models import User


def bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


def try_get_current_user(request: Request) -> User | None:
    """Resolve the Bearer access token to a User. Never raises."""
    token = bearer_token(request)
    if not token:
        return None
    try:
        return request.app.state.guard.authenticate(token)
    except InvalidAccessToken:
        return None


def get_current_user(request: Request) -> User:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(user: User = Depends(get_current_user)): ...
    """
    user = try_get_current_user(request)
    if user is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return user
