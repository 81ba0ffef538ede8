"""
Caller identity for the task API.

Authentication is handled upstream; by the time a request reaches these
routes the gateway has resolved the user and forwards their id in the
``X-User-Id`` header. Every task operation is scoped by that id.
"""

from __future__ import annotations

import uuid

from fastapi import Header, HTTPException


async def get_current_user_id(
    x_user_id: str | None = Header(default=None, alias="X-User-Id"),
) -> uuid.UUID:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    try:
        return uuid.UUID(x_user_id)
    except ValueError:
        raise HTTPException(status_code=401, detail="Malformed X-User-Id header")
