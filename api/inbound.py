"""
Inbound message handling for bridge `messages.upsert` events.

normalize_upsert() turns one bridge message into a Message Record (or None when it is ours,
empty, or malformed). InboundPipeline then stores it, offers it to the automation webhook,
and runs the auto reply. Neither forwarding nor auto reply can fail the webhook call.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from auto_reply import AutoReplier
from automation_config import AutomationConfigStore
from automation_rules import ForwardRateLimiter, should_forward
from forward_dispatch import ForwardDispatcher, build_forward_event
from message_store import MessageStore, make_id
from outbound import Outbox
from rate_gate import Clock, now_ms
from recipient_resolver import is_group_jid

logger = logging.getLogger(__name__)

# Media we record but never download: placeholder text when there is no caption
_OTHER_MEDIA = {
    "videoMessage": "[video]",
    "audioMessage": "[audio]",
    "stickerMessage": "[sticker]",
}


def _unwrap(message: dict[str, Any]) -> dict[str, Any]:
    # documentWithCaptionMessage / ephemeralMessage wrap the real message one level down
    for wrapper in ("ephemeralMessage", "viewOnceMessage", "documentWithCaptionMessage"):
        inner = message.get(wrapper)
        if isinstance(inner, dict) and isinstance(inner.get("message"), dict):
            return inner["message"]
    return message


def extract_text(message: dict[str, Any]) -> str | None:
    ext = message.get("extendedTextMessage") or {}
    for value in (
        message.get("conversation"),
        ext.get("text") if isinstance(ext, dict) else None,
        (message.get("imageMessage") or {}).get("caption"),
        (message.get("videoMessage") or {}).get("caption"),
        (message.get("documentMessage") or {}).get("caption"),
    ):
        if value:
            return str(value)
    return None


def normalize_upsert(data: dict[str, Any], clock: Clock = now_ms) -> tuple[dict[str, Any], str] | None:
    """Return (record, raw_text) for one inbound message, or None to skip it."""
    key = data.get("key") or {}
    message = data.get("message")
    if not isinstance(key, dict) or not isinstance(message, dict) or not message:
        return None
    if key.get("fromMe"):
        return None  # outbound is recorded when queued
    chat_jid = str(key.get("remoteJid") or "")
    if not chat_jid:
        return None

    message = _unwrap(message)
    raw_text = (extract_text(message) or "").strip()
    image = message.get("imageMessage")
    document = message.get("documentMessage")
    media = None

    if isinstance(image, dict):
        msg_type = "image"
        text = str(image.get("caption") or "").strip() or "[image]"
        media = {
            "mimetype": image.get("mimetype"),
            "file_name": None,
            "url": data.get("mediaUrl") or image.get("url"),
        }
    elif isinstance(document, dict):
        msg_type = "document"
        file_name = document.get("fileName")
        text = f"[document] {file_name}" if file_name else "[document]"
        media = {
            "mimetype": document.get("mimetype"),
            "file_name": file_name,
            "url": data.get("mediaUrl") or document.get("url"),
        }
    else:
        other = next((k for k in _OTHER_MEDIA if isinstance(message.get(k), dict)), None)
        if other:
            msg_type = "unknown"
            text = raw_text or _OTHER_MEDIA[other]
        else:
            msg_type = "text"
            text = raw_text
            if not text:
                return None

    is_group = is_group_jid(chat_jid)
    record = {
        "id": str(key.get("id") or make_id("in")),
        "ts": clock(),
        "direction": "in",
        "chat_jid": chat_jid,
        "sender_jid": str(key.get("participant") or data.get("participant") or chat_jid),
        "is_group": is_group,
        "type": msg_type,
        "text": text,
        "media": media,
        "status": None,
    }
    return record, raw_text


class InboundPipeline:
    def __init__(
        self,
        messages: MessageStore,
        automations: AutomationConfigStore,
        limiter: ForwardRateLimiter,
        dispatcher: ForwardDispatcher,
        replier: AutoReplier,
        outbox: Outbox,
        clock: Clock = now_ms,
    ) -> None:
        self.messages = messages
        self.automations = automations
        self.limiter = limiter
        self.dispatcher = dispatcher
        self.replier = replier
        self.outbox = outbox
        self._clock = clock

    def handle_upsert(self, data: Any, now: datetime | None = None) -> list[dict[str, Any]]:
        """Process a `messages.upsert` body (one message or a list). Returns stored records."""
        items = data if isinstance(data, list) else [data]
        stored = []
        for item in items:
            if not isinstance(item, dict):
                continue
            normalized = normalize_upsert(item, self._clock)
            if normalized is None:
                continue
            record, raw_text = normalized
            stored.append(self.process(record, raw_text, now))
        return stored

    def process(self, record: dict[str, Any], raw_text: str, now: datetime | None = None) -> dict[str, Any]:
        saved = self.messages.append(record)
        logger.info(
            "inbound message id=%s chat=%s type=%s",
            saved["id"],
            saved["chat_jid"],
            saved["type"],
        )
        text_for_rules = saved["text"] if saved["type"] == "text" else raw_text
        self._forward(saved, text_for_rules, now)
        self._auto_reply(saved, text_for_rules)
        return saved

    def _forward(self, record: dict[str, Any], text_for_rules: str, now: datetime | None) -> None:
        try:
            if should_forward(self.automations.config, record, text_for_rules, self.limiter, now):
                rule = self.automations.rule_for(record["chat_jid"])
                self.dispatcher.enqueue(build_forward_event(record, text_for_rules, rule))
        except Exception:
            logger.exception("forward skipped message_id=%s", record.get("id"))

    def _auto_reply(self, record: dict[str, Any], text_for_rules: str) -> None:
        reply = self.replier.reply_for(record["chat_jid"], record["is_group"], text_for_rules)
        if reply is None:
            return
        job_id, msg_id = self.outbox.queue_message(
            record["chat_jid"],
            {"text": reply},
            msg_prefix="out_auto",
            job_prefix="auto_txt",
        )
        logger.info("auto reply queued chat=%s job_id=%s msg_id=%s", record["chat_jid"], job_id, msg_id)
