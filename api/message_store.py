"""
Message history: durable capped JSON log + bounded in-memory mirror for polling.

- MessageLog: whole-document JSON file, oldest entries trimmed past `max_messages`.
  Write failures are logged and swallowed; memory keeps serving until the next good write.
- RecentMessages: last N records, upsert by id, id -> index map rebuilt on eviction,
  plus a per-chat summary index updated incrementally.
- MessageStore: what the rest of the app talks to; keeps both in step.

Status changes stamp `status_ts` so pollers asking for `max(ts, status_ts) > since`
see updated records without rescanning history.
"""

from __future__ import annotations

import logging
import secrets
from pathlib import Path
from typing import Any

from config import MESSAGES_FILE, MESSAGES_MAX, MESSAGES_MEMORY_LIMIT
from json_store import read_json, write_json_atomic
from rate_gate import Clock, now_ms

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = ("sent", "failed")
MAX_HISTORY_LIMIT = 1000
DEFAULT_HISTORY_LIMIT = 200


def make_id(prefix: str = "msg") -> str:
    return f"{prefix}_{now_ms()}_{secrets.token_hex(4)}"


def normalize_record(rec: dict[str, Any], clock: Clock = now_ms) -> dict[str, Any]:
    return {
        "id": rec.get("id") or make_id("msg"),
        "ts": rec.get("ts") or clock(),
        "direction": rec.get("direction") or "in",
        "chat_jid": str(rec.get("chat_jid") or ""),
        "sender_jid": str(rec.get("sender_jid") or ""),
        "is_group": bool(rec.get("is_group")),
        "type": rec.get("type") or "text",
        "text": str(rec.get("text") or ""),
        "media": rec.get("media") or None,
        "status": rec.get("status") or None,
        "status_ts": rec.get("status_ts") or None,
    }


def activity_ts(rec: dict[str, Any]) -> int:
    return max(rec.get("ts") or 0, rec.get("status_ts") or 0)


class MessageLog:
    """Durable, append-mostly message document."""

    def __init__(self, path: str | Path = MESSAGES_FILE, max_messages: int = MESSAGES_MAX, clock: Clock = now_ms) -> None:
        self.path = Path(path)
        self.max_messages = max_messages
        self._clock = clock
        self._messages: list[dict[str, Any]] | None = None

    def _load(self) -> list[dict[str, Any]]:
        if self._messages is None:
            doc = read_json(self.path, {"messages": []})
            messages = doc.get("messages")
            self._messages = [m for m in messages if isinstance(m, dict)] if isinstance(messages, list) else []
        return self._messages

    def _write(self) -> bool:
        try:
            write_json_atomic(self.path, {"messages": self._load(), "updated_at": self._clock()})
            return True
        except (OSError, TypeError, ValueError) as e:
            logger.warning("message log write failed path=%s error=%s", self.path, e)
            return False

    def append(self, rec: dict[str, Any]) -> bool:
        messages = self._load()
        messages.append(rec)
        if len(messages) > self.max_messages:
            del messages[: len(messages) - self.max_messages]
        return self._write()

    def get(self, message_id: str) -> dict[str, Any] | None:
        for m in reversed(self._load()):
            if m.get("id") == message_id:
                return m
        return None

    def update(self, message_id: str, patch: dict[str, Any]) -> dict[str, Any] | None:
        messages = self._load()
        for i in range(len(messages) - 1, -1, -1):
            if messages[i].get("id") == message_id:
                messages[i] = {**messages[i], **patch}
                self._write()
                return messages[i]
        return None

    def tail(self, n: int) -> list[dict[str, Any]]:
        return list(self._load()[-n:]) if n > 0 else []

    def __len__(self) -> int:
        return len(self._load())


class RecentMessages:
    """Most-recent-N mirror with id index and chat summaries."""

    def __init__(self, limit: int = MESSAGES_MEMORY_LIMIT) -> None:
        self.limit = limit
        self.messages: list[dict[str, Any]] = []
        self._index: dict[str, int] = {}
        self._chats: dict[str, dict[str, Any]] = {}

    def _rebuild_index(self) -> None:
        self._index = {m["id"]: i for i, m in enumerate(self.messages)}

    def get(self, message_id: str) -> dict[str, Any] | None:
        idx = self._index.get(message_id)
        return self.messages[idx] if idx is not None else None

    def upsert(self, rec: dict[str, Any]) -> None:
        if not rec.get("chat_jid"):
            return
        idx = self._index.get(rec["id"])
        if idx is not None:
            self.messages[idx] = {**self.messages[idx], **rec}
            return

        self.messages.append(rec)
        self._index[rec["id"]] = len(self.messages) - 1
        if len(self.messages) > self.limit:
            del self.messages[: len(self.messages) - self.limit]
            self._rebuild_index()
        self._touch_chat(rec)

    def patch(self, message_id: str, fields: dict[str, Any]) -> dict[str, Any] | None:
        """Merge fields into a cached record; chat summaries are left alone."""
        idx = self._index.get(message_id)
        if idx is None:
            return None
        self.messages[idx] = {**self.messages[idx], **fields}
        return self.messages[idx]

    def _touch_chat(self, rec: dict[str, Any]) -> None:
        key = rec["chat_jid"]
        prev = self._chats.get(key) or {
            "chat_jid": key,
            "is_group": rec["is_group"],
            "count": 0,
            "last_ts": 0,
            "last_text": "",
            "last_sender_jid": "",
        }
        summary = {**prev, "is_group": rec["is_group"], "count": prev["count"] + 1}
        if rec["ts"] >= prev["last_ts"]:
            summary["last_ts"] = rec["ts"]
            summary["last_text"] = rec["text"] or prev["last_text"]
            summary["last_sender_jid"] = rec["sender_jid"] or prev["last_sender_jid"]
        self._chats[key] = summary

    def for_chat(self, chat_jid: str, since: int = 0, limit: int = DEFAULT_HISTORY_LIMIT) -> list[dict[str, Any]]:
        msgs = [m for m in self.messages if m["chat_jid"] == chat_jid]
        if since:
            msgs = [m for m in msgs if activity_ts(m) > since]
        return [dict(m) for m in msgs[-limit:]]

    def summaries(self, limit: int = 500) -> list[dict[str, Any]]:
        ordered = sorted(self._chats.values(), key=lambda c: c["last_ts"] or 0, reverse=True)
        return [dict(c) for c in ordered[:limit]]

    def __len__(self) -> int:
        return len(self.messages)


class MessageStore:
    def __init__(
        self,
        path: str | Path = MESSAGES_FILE,
        *,
        max_messages: int = MESSAGES_MAX,
        memory_limit: int = MESSAGES_MEMORY_LIMIT,
        clock: Clock = now_ms,
    ) -> None:
        self._clock = clock
        self.log = MessageLog(path, max_messages, clock=clock)
        self.recent = RecentMessages(memory_limit)

    def hydrate(self) -> int:
        """Load the newest persisted records into memory. Call once at startup."""
        try:
            tail = self.log.tail(self.recent.limit)
        except (OSError, ValueError) as e:
            logger.warning("message hydrate failed error=%s", e)
            return 0
        for m in tail:
            self.recent.upsert(normalize_record(m, self._clock))
        logger.info("hydrated %s messages into memory cache", len(tail))
        return len(tail)

    def append(self, rec: dict[str, Any]) -> dict[str, Any]:
        msg = normalize_record(rec, self._clock)
        if not msg["chat_jid"]:
            return msg
        self.log.append(msg)
        self.recent.upsert(dict(msg))
        return msg

    def get(self, message_id: str) -> dict[str, Any] | None:
        return self.recent.get(message_id) or self.log.get(message_id)

    def update_status(self, message_id: str, status: str) -> dict[str, Any] | None:
        """Set status and stamp status_ts. Records already sent/failed are left unchanged."""
        current = self.get(message_id)
        if current is None:
            return None
        if current.get("status") in TERMINAL_STATUSES:
            logger.info(
                "status change ignored message_id=%s current=%s requested=%s",
                message_id,
                current.get("status"),
                status,
            )
            return dict(current)

        patch = {"status": status, "status_ts": self._clock()}
        updated = self.log.update(message_id, patch) or {**current, **patch}
        self.recent.patch(message_id, patch)
        return dict(updated)

    def recent_for_chat(
        self,
        chat_jid: str,
        since: int = 0,
        limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> tuple[list[dict[str, Any]], int]:
        """Records of one chat changed after `since`, oldest first, plus the next `since` cursor."""
        if limit <= 0:
            limit = DEFAULT_HISTORY_LIMIT
        msgs = self.recent.for_chat(chat_jid, since, min(limit, MAX_HISTORY_LIMIT))
        latest = max((activity_ts(m) for m in msgs), default=since)
        return msgs, latest

    def chat_summaries(self, limit: int = 500) -> list[dict[str, Any]]:
        return self.recent.summaries(limit)
