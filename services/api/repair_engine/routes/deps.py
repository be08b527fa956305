"""Shared route helpers: caller identity and error translation.

Identity comes from headers set by the upstream auth layer; this service
trusts them as-is.
"""

from typing import NoReturn

from fastapi import Header, HTTPException, Request

from repair_engine.schemas.common import error_body
from repair_engine.services.errors import EngineError


def raise_http(e: EngineError) -> NoReturn:
    """Re-raise a domain error as an HTTPException with the error envelope."""
    raise HTTPException(status_code=e.status_code, detail=error_body(e.code, e.message, e.detail)) from e


async def current_user_id(x_user_id: int = Header(alias="X-User-Id", ge=1)) -> int:
    return x_user_id


async def current_shop_id(x_shop_id: int = Header(alias="X-Shop-Id", ge=1)) -> int:
    return x_shop_id


def client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    return request.client.host if request.client else None
