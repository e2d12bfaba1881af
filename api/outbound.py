"""Queue an outbound message: a `queued` record in the message store plus a delivery job."""

from __future__ import annotations

import logging
from typing import Any

from message_store import MessageStore, make_id
from rate_gate import Clock, now_ms
from recipient_resolver import is_group_jid
from send_queue import JobQueue
from wa_client import payload_type

logger = logging.getLogger(__name__)

# job id prefix per payload type
_JOB_PREFIX = {"text": "job_txt", "image": "job_img", "document": "job_doc"}
_MSG_PREFIX = {"text": "out_txt", "image": "out_img", "document": "out_doc"}


def record_text(payload: dict[str, Any]) -> str:
    kind = payload_type(payload)
    if kind == "text":
        return str(payload.get("text") or "")
    if kind == "image":
        return str(payload.get("caption") or "").strip() or "[image]"
    if kind == "document":
        name = payload.get("file_name")
        return f"[document] {name}" if name else "[document]"
    return ""


def record_media(payload: dict[str, Any]) -> dict[str, Any] | None:
    kind = payload_type(payload)
    if kind not in ("image", "document"):
        return None
    return {
        "url": payload[kind].get("url"),
        "mimetype": payload.get("mimetype"),
        "file_name": payload.get("file_name"),
    }


class Outbox:
    def __init__(self, messages: MessageStore, queue: JobQueue, clock: Clock = now_ms) -> None:
        self.messages = messages
        self.queue = queue
        self._clock = clock

    def queue_message(
        self,
        jid: str,
        payload: dict[str, Any],
        *,
        msg_prefix: str | None = None,
        job_prefix: str | None = None,
    ) -> tuple[str, str]:
        """Store the outbound record as `queued` and enqueue its job. Returns (job_id, msg_id)."""
        kind = payload_type(payload)
        msg_id = make_id(msg_prefix or _MSG_PREFIX.get(kind, "out"))
        self.messages.append(
            {
                "id": msg_id,
                "direction": "out",
                "ts": self._clock(),
                "chat_jid": jid,
                "sender_jid": "me",
                "is_group": is_group_jid(jid),
                "type": kind,
                "text": record_text(payload),
                "media": record_media(payload),
                "status": "queued",
            }
        )
        job_id = self.queue.enqueue(
            make_id(job_prefix or _JOB_PREFIX.get(kind, "job")),
            jid,
            payload,
            message_id=msg_id,
            chat_jid=jid,
        )
        return job_id, msg_id
