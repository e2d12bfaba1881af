"""
Automation config document: loaded once, mutated by admin calls, saved atomically on
every change. Concurrent admin writes are last-writer-wins.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from automation_rules import deep_merge, default_config, rule_for_chat
from config import AUTOMATIONS_FILE
from json_store import read_json, write_json_atomic

logger = logging.getLogger(__name__)

SECRET_MASK = "***"


class AutomationConfigStore:
    def __init__(self, path: str | Path = AUTOMATIONS_FILE) -> None:
        self.path = Path(path)
        self.config: dict[str, Any] = default_config()

    def load(self) -> dict[str, Any]:
        """Read the document; missing or malformed falls back to defaults, gaps are backfilled."""
        stored = read_json(self.path, {})
        self.config = deep_merge(default_config(), stored)
        if not isinstance(self.config.get("per_chat"), dict):
            self.config["per_chat"] = {}
        return self.config

    def save(self) -> bool:
        try:
            write_json_atomic(self.path, self.config)
            return True
        except (OSError, TypeError, ValueError) as e:
            logger.warning("failed to save automations config path=%s error=%s", self.path, e)
            return False

    def masked(self) -> dict[str, Any]:
        safe = deep_merge(self.config, {})
        if safe.get("shared_secret"):
            safe["shared_secret"] = SECRET_MASK
        return safe

    def update(self, body: dict[str, Any]) -> dict[str, Any]:
        """
        Merge `body` into the current config (per-chat overrides survive), backfill missing
        fields from defaults, and save. A shared_secret of '***' or absent keeps the old one.
        """
        merged = deep_merge(self.config, body)
        nxt = deep_merge(default_config(), merged)
        incoming_secret = body.get("shared_secret")
        if incoming_secret is None or incoming_secret == SECRET_MASK:
            nxt["shared_secret"] = self.config.get("shared_secret", "")
        if not isinstance(nxt.get("per_chat"), dict):
            nxt["per_chat"] = {}
        self.config = nxt
        self.save()
        return self.config

    def set_chat_rule(self, chat_jid: str, patch: dict[str, Any]) -> dict[str, Any]:
        per_chat = self.config.setdefault("per_chat", {})
        per_chat[chat_jid] = deep_merge(per_chat.get(chat_jid) or {}, patch)
        self.save()
        return per_chat[chat_jid]

    def delete_chat_rule(self, chat_jid: str) -> bool:
        per_chat = self.config.setdefault("per_chat", {})
        removed = per_chat.pop(chat_jid, None) is not None
        self.save()
        return removed

    def rule_for(self, chat_jid: str) -> dict[str, Any]:
        return rule_for_chat(self.config, chat_jid)

    @property
    def webhook_url(self) -> str:
        return str(self.config.get("webhook_url") or "").strip()

    @property
    def shared_secret(self) -> str:
        return str(self.config.get("shared_secret") or "").strip()
