"""Identifies the caller of each request from the identity provider's bearer token.

A missing or invalid token leaves the request anonymous; routes that need a caller
reject it through ``require_caller``.
"""

from __future__ import annotations

from typing import Optional

from fastapi import HTTPException, Request

from contentpilot.auth.jwt import AuthContext, decode_access_token


CALLER_STATE_KEY = "caller"


def _bearer_token(request: Request) -> Optional[str]:
    authorization = request.headers.get("authorization")
    if not authorization:
        return None

    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


def attach_caller(request: Request) -> Optional[AuthContext]:
    """Decode the token once per request and keep the caller on ``request.state``."""
    caller: Optional[AuthContext] = None
    token = _bearer_token(request)
    if token:
        try:
            caller = decode_access_token(token)
        except HTTPException:
            caller = None
    setattr(request.state, CALLER_STATE_KEY, caller)
    return caller
