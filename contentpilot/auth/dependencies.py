"""Route guards: any signed-in caller for their own billing, usage and posts; admins for the plan catalogue."""

from __future__ import annotations

from typing import Optional

from fastapi import Depends, HTTPException, Request, status

from contentpilot.auth.jwt import ROLE_ADMIN, AuthContext
from contentpilot.auth.middleware import CALLER_STATE_KEY


def current_caller(request: Request) -> Optional[AuthContext]:
    return getattr(request.state, CALLER_STATE_KEY, None)


def require_caller(caller: Optional[AuthContext] = Depends(current_caller)) -> AuthContext:
    if caller is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Sign in to manage subscriptions, usage and posts",
        )
    return caller


def require_admin(caller: AuthContext = Depends(require_caller)) -> AuthContext:
    if caller.role != ROLE_ADMIN:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only administrators can change pricing plans",
        )
    return caller
