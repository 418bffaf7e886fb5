from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Depends, Header, HTTPException, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from accessreview.persistence.db import get_session
from accessreview.providers.permissions.base import PermissionSource
from accessreview.providers.permissions.factory import get_permission_source
from accessreview.services.decisions import Reviewer


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


class Principal(BaseModel):
    # Authentication happens upstream; the gateway forwards the caller identity as headers.
    user_id: str
    email: str | None = None

    def as_reviewer(self) -> Reviewer:
        return Reviewer(id=self.user_id, email=self.email)


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
    )


async def get_current_principal(
    x_user_id: str | None = Header(default=None, alias="X-User-Id", max_length=256),
    x_user_email: str | None = Header(default=None, alias="X-User-Email", max_length=320),
) -> Principal:
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise _auth_error("X-User-Id header is required")
    email = (x_user_email or "").strip() or None
    return Principal(user_id=user_id, email=email)


async def get_source(
    _principal: Principal = Depends(get_current_principal),
) -> AsyncGenerator[PermissionSource, None]:
    # Close HTTP-backed sources after the request; the fake source has nothing to release.
    source = get_permission_source()
    try:
        yield source
    finally:
        aclose = getattr(source, "aclose", None)
        if aclose is not None:
            await aclose()
