"""
Automation (webhook forwarding) config.

The shared secret is never returned in plaintext: responses show "***". Posting "***"
back, or leaving the field out, keeps the stored secret.
"""

import logging
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException

from context import AppContext, get_context
from security import require_admin_key

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/admin/automations",
    tags=["admin-automations"],
    dependencies=[Depends(require_admin_key)],
)


def _object_body(body: Any) -> dict[str, Any]:
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail={"error": "JSON object body required"})
    return body


@router.get("")
def get_automations(ctx: AppContext = Depends(get_context)) -> dict:
    return {"ok": True, "automations": ctx.automations.masked()}


@router.post("")
def update_automations(body: Any = Body(...), ctx: AppContext = Depends(get_context)) -> dict:
    ctx.automations.update(_object_body(body))
    logger.info("automations config updated enabled=%s", ctx.automations.config.get("enabled"))
    return {"ok": True, "automations": ctx.automations.masked()}


@router.post("/chat/{chat_jid}")
def update_chat_rule(
    chat_jid: str,
    body: Any = Body(...),
    ctx: AppContext = Depends(get_context),
) -> dict:
    jid = chat_jid.strip()
    if not jid:
        raise HTTPException(status_code=400, detail={"error": "jid required"})
    rule = ctx.automations.set_chat_rule(jid, _object_body(body))
    logger.info("automation chat rule updated chat=%s", jid)
    return {"ok": True, "jid": jid, "rule": rule}


@router.delete("/chat/{chat_jid}")
def delete_chat_rule(chat_jid: str, ctx: AppContext = Depends(get_context)) -> dict:
    removed = ctx.automations.delete_chat_rule(chat_jid)
    return {"ok": True, "jid": chat_jid, "removed": removed, "automations": ctx.automations.masked()}
