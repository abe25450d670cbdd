"""
auth.py — Shared-secret authentication for internal callers (bot, admin tools).
The secret is INTERNAL_API_SECRET and travels in the X-Internal header.
"""
from __future__ import annotations

import hmac

from fastapi import Header, HTTPException, Request, status


def verify_secret(provided: str | None, expected: str) -> bool:
    if not expected or not provided:
        return False
    return hmac.compare_digest(provided.encode(), expected.encode())


def require_internal(
    request: Request,
    x_internal: str | None = Header(default=None, alias="X-Internal"),
) -> str:
    """FastAPI dependency — raises 401 if the X-Internal secret is missing or wrong."""
    if not verify_secret(x_internal, request.app.state.secret):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid X-Internal secret",
        )
    return "internal"
