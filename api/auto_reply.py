"""
Canned reply to inbound messages that match a keyword (env configured, off by default).

Groups must address the bot with the prefix ("!bot help"); the prefix is stripped before
matching. One reply per chat per cooldown window.
"""

from __future__ import annotations

import logging
import re
from typing import Any

from automation_rules import match_prefix
from config import (
    AUTO_REPLY_COOLDOWN_MS,
    AUTO_REPLY_ENABLED,
    AUTO_REPLY_GROUP_PREFIX,
    AUTO_REPLY_MATCH_TYPE,
    AUTO_REPLY_MATCH_VALUE,
    AUTO_REPLY_SCOPE,
    AUTO_REPLY_TEXT,
)
from rate_gate import Clock, now_ms

logger = logging.getLogger(__name__)


def matches_auto_reply(text: str | None, match_type: str, match_value: str) -> bool:
    t = (text or "").strip()
    v = (match_value or "").strip()
    if not t or not v:
        return False
    if match_type == "equals":
        return t.lower() == v.lower()
    if match_type == "contains":
        return v.lower() in t.lower()
    if match_type == "regex":
        try:
            return re.search(v, t, re.IGNORECASE) is not None
        except re.error as e:
            logger.warning("auto reply regex invalid pattern=%r error=%s", v, e)
            return False
    return False


class AutoReplier:
    def __init__(
        self,
        *,
        enabled: bool = AUTO_REPLY_ENABLED,
        scope: str = AUTO_REPLY_SCOPE,
        match_type: str = AUTO_REPLY_MATCH_TYPE,
        match_value: str = AUTO_REPLY_MATCH_VALUE,
        text: str = AUTO_REPLY_TEXT,
        cooldown_ms: int = AUTO_REPLY_COOLDOWN_MS,
        group_prefix: str = AUTO_REPLY_GROUP_PREFIX,
        clock: Clock = now_ms,
    ) -> None:
        self.enabled = enabled
        self.scope = scope
        self.match_type = match_type
        self.match_value = match_value
        self.text = text
        self.cooldown_ms = cooldown_ms
        self.group_prefix = group_prefix
        self._clock = clock
        self._last_reply_ms: dict[str, int] = {}
        self._last_sweep_ms = 0

    def in_scope(self, is_group: bool) -> bool:
        if self.scope == "dm":
            return not is_group
        if self.scope == "group":
            return is_group
        return True

    def reply_for(self, chat_jid: str, is_group: bool, text: str | None) -> str | None:
        """Reply text for this inbound message, or None. Starts the chat's cooldown on a match."""
        if not self.enabled or not self.in_scope(is_group):
            return None

        candidate = (text or "").strip()
        if is_group:
            ok, candidate = match_prefix(candidate, self.group_prefix)
            if not ok or not candidate:
                return None

        if not matches_auto_reply(candidate, self.match_type, self.match_value):
            return None

        now = self._clock()
        self._sweep(now)
        last = self._last_reply_ms.get(chat_jid, 0)
        if last and now - last < self.cooldown_ms:
            logger.info("auto reply cooldown chat=%s", chat_jid)
            return None
        self._last_reply_ms[chat_jid] = now
        return self.text

    def _sweep(self, now: int) -> None:
        # Chats past their cooldown need no entry; checked at most once per cooldown
        if now - self._last_sweep_ms < self.cooldown_ms:
            return
        self._last_sweep_ms = now
        self._last_reply_ms = {jid: t for jid, t in self._last_reply_ms.items() if now - t < self.cooldown_ms}

    def tracked_chats(self) -> int:
        return len(self._last_reply_ms)

    def settings(self) -> dict[str, Any]:
        return {"enabled": self.enabled, "scope": self.scope}
