"""
Caller identity for self-service endpoints.

Authentication/session handling is done upstream; by the time a request
reaches these routes the gateway has set request.state.user_id or forwarded
the X-User-Id header.
"""
from typing import Optional

from fastapi import Header, HTTPException, Request


def get_current_user_id(request: Request, x_user_id: Optional[str] = Header(None)) -> str:
    """FastAPI dependency resolving the calling user's id or raising 401."""
    user_id = getattr(request.state, "user_id", None) or x_user_id
    if not user_id or not user_id.strip():
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user_id.strip()
