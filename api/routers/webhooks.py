"""
Bridge webhook: POST /webhooks/wa.

The bridge pushes every event here. When WA_WEBHOOK_TOKEN is set the request must carry
it in X-Webhook-Token. Handled events:
- messages.upsert: inbound messages -> InboundPipeline
- connection.update: connection state -> EvolutionClient.set_status
Anything else is acknowledged and ignored so the bridge does not retry it.
"""

import logging

from fastapi import APIRouter, Depends, Header, HTTPException

from context import AppContext, get_context
from schemas import WebhookEvent
from security import secrets_match

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def _event_name(raw: str) -> str:
    # The bridge sends either "messages.upsert" or "MESSAGES_UPSERT"
    return (raw or "").strip().lower().replace("_", ".")


@router.post("/wa")
async def bridge_webhook(
    body: WebhookEvent,
    ctx: AppContext = Depends(get_context),
    x_webhook_token: str | None = Header(None, alias="X-Webhook-Token"),
) -> dict:
    if ctx.webhook_token:
        if not x_webhook_token or not secrets_match(x_webhook_token, ctx.webhook_token):
            raise HTTPException(status_code=401, detail={"error": "Unauthorized"})

    event = _event_name(body.event)
    if event == "messages.upsert":
        stored = ctx.inbound.handle_upsert(body.data)
        return {"ok": True, "event": event, "stored": len(stored)}

    if event == "connection.update":
        data = body.data if isinstance(body.data, dict) else {}
        status = await ctx.client.set_status(data.get("state") or data.get("connection"))
        return {"ok": True, "event": event, "status": status}

    logger.debug("webhook event ignored event=%s", event)
    return {"ok": True, "event": event, "ignored": True}
