"""
Chat list and per-chat history for the admin UI, served from the in-memory mirror.

The UI polls GET /admin/messages/chat/{jid}?since=<latest_ts> and gets every record
created or status-changed after the cursor, plus the next cursor.
"""

from fastapi import APIRouter, Depends, Query

from context import AppContext, get_context
from message_store import DEFAULT_HISTORY_LIMIT
from security import require_admin_key

router = APIRouter(
    prefix="/admin/messages",
    tags=["admin-messages"],
    dependencies=[Depends(require_admin_key)],
)


@router.get("/chats")
def list_chats(ctx: AppContext = Depends(get_context)) -> dict:
    chats = ctx.messages.chat_summaries(500)
    return {"ok": True, "count": len(chats), "chats": chats}


@router.get("/chat/{chat_jid}")
def chat_messages(
    chat_jid: str,
    since: int = Query(0, ge=0),
    limit: int = Query(DEFAULT_HISTORY_LIMIT),
    ctx: AppContext = Depends(get_context),
) -> dict:
    msgs, latest = ctx.messages.recent_for_chat(chat_jid, since=since, limit=limit)
    return {
        "ok": True,
        "chat_jid": chat_jid,
        "count": len(msgs),
        "latest_ts": latest,
        "messages": msgs,
    }
