"""
Local stand-in for the automation webhook, mounted only when DEV_CALLBACK_RECEIVER=1.

Set the automations webhook_url to http://localhost:8000/dev/callback-receiver and every
forwarded event lands here. Each capture records whether the relay secret and signature
headers check out against the current shared secret, which is the quickest way to see
what an automation backend would accept.
"""

from __future__ import annotations

import json
from collections import deque
from typing import Any

from fastapi import APIRouter, Depends, Header, Request

from context import AppContext, get_context
from forward_dispatch import compute_signature
from rate_gate import now_ms
from security import secrets_match

MAX_CAPTURED = 100

router = APIRouter(prefix="/dev/callback-receiver", tags=["dev"])

_captured: deque[dict[str, Any]] = deque(maxlen=MAX_CAPTURED)


def check_headers(secret: str, body: bytes, relay_secret: str | None, signature: str | None) -> dict[str, bool] | None:
    if not secret:
        return None
    return {
        "relay_secret": secrets_match(relay_secret or "", secret),
        "signature": secrets_match(signature or "", f"sha256={compute_signature(secret, body)}"),
    }


@router.post("")
async def capture(
    request: Request,
    ctx: AppContext = Depends(get_context),
    x_relay_secret: str | None = Header(None, alias="X-Relay-Secret"),
    x_signature: str | None = Header(None, alias="X-Signature"),
):
    body = await request.body()
    try:
        event = json.loads(body) if body else {}
    except json.JSONDecodeError:
        event = {"_raw": body.decode("utf-8", errors="replace")}

    summary = event if isinstance(event, dict) else {}
    _captured.append(
        {
            "received_at": now_ms(),
            "event_id": summary.get("event_id"),
            "chat_jid": summary.get("chat_jid"),
            "auth": check_headers(ctx.automations.shared_secret, body, x_relay_secret, x_signature),
            "event": event,
        }
    )
    return {"ok": True, "captured": len(_captured)}


@router.get("")
def list_captured(limit: int = MAX_CAPTURED):
    """Newest first."""
    items = list(reversed(_captured))[: max(0, limit)]
    return {"ok": True, "count": len(items), "events": items}


@router.delete("")
def clear():
    removed = len(_captured)
    _captured.clear()
    return {"ok": True, "removed": removed}
