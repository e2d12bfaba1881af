"""
Route guards, used as FastAPI dependencies.

- require_api_key: x-api-key on public routes, only when WA_API_KEY is set.
- require_admin_key: x-admin-key on /admin routes; 500 when WA_ADMIN_KEY is not set at all.
- limit_public: per-client sliding window (429 with retry_after_seconds).
- require_connected: 503 with the connection status while WhatsApp is not open.
"""

from __future__ import annotations

import hmac

from fastapi import Depends, Header, HTTPException, Request

from context import AppContext, get_context


def secrets_match(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def require_api_key(
    ctx: AppContext = Depends(get_context),
    x_api_key: str | None = Header(None, alias="x-api-key"),
) -> None:
    if not ctx.api_key:
        return
    if not x_api_key or not secrets_match(x_api_key, ctx.api_key):
        raise HTTPException(status_code=401, detail={"error": "Unauthorized"})


def require_admin_key(
    ctx: AppContext = Depends(get_context),
    x_admin_key: str | None = Header(None, alias="x-admin-key"),
) -> None:
    if not ctx.admin_key:
        raise HTTPException(status_code=500, detail={"error": "WA_ADMIN_KEY not configured"})
    if not x_admin_key or not secrets_match(x_admin_key, ctx.admin_key):
        raise HTTPException(status_code=401, detail={"error": "Unauthorized (admin)"})


def limit_public(
    request: Request,
    ctx: AppContext = Depends(get_context),
    x_api_key: str | None = Header(None, alias="x-api-key"),
) -> None:
    client_id = x_api_key or (request.client.host if request.client else "unknown")
    allowed, retry_after = ctx.http_limiter.check(client_id)
    if not allowed:
        raise HTTPException(
            status_code=429,
            detail={
                "error": "Too many requests. Retry later.",
                "retry_after_seconds": int(retry_after) if retry_after is not None else 60,
            },
        )


def require_connected(ctx: AppContext = Depends(get_context)) -> None:
    if not ctx.client.is_open:
        raise HTTPException(
            status_code=503,
            detail={"error": "WhatsApp not connected", "status": ctx.client.status},
        )
