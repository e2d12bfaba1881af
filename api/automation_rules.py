"""
Forwarding rules: should an inbound message be sent to the automation webhook?

The effective rule for a chat is `deep_merge(config["defaults"], config["per_chat"][jid])`.
`should_forward` walks the checks below in order and stops at the first block:

1. automations disabled / no webhook URL
2. rule disabled for the chat
3. safety toggles (groups, DMs, media)
4. global per-type forward switches
5. quiet hours (local time in the rule's timezone)
6. per-chat rate limit
7. prefix gating

The decision only depends on config, the clock and the rate window state; the rate
window count is the one side effect.
"""

from __future__ import annotations

import copy
import logging
import re
import time
from datetime import datetime, timezone
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from config import AUTOMATION_GROUP_PREFIX, AUTOMATION_SHARED_SECRET, AUTOMATION_WEBHOOK_URL

logger = logging.getLogger(__name__)

DEFAULT_PREFIX = "!bot"
DEFAULT_TZ = "Africa/Johannesburg"
RATE_WINDOW_MS = 60_000
FORWARDED_TYPES = ("text", "image", "document")


def default_rule() -> dict[str, Any]:
    return {
        "enabled": True,
        # If false, no DMs are forwarded.
        "dm_enabled": True,
        # Every forwarded message (DM or group) must start with the prefix.
        "require_prefix_for_all": True,
        # Used when require_prefix_for_all is false: 'all' | 'prefix'
        "group_mode": "prefix",
        "group_prefix": AUTOMATION_GROUP_PREFIX,
        "quiet_hours": {"enabled": False, "start": "22:00", "end": "06:00", "tz": DEFAULT_TZ},
        "rate_limit": {"enabled": True, "max_per_minute": 30},
        "safety": {"allow_groups": True, "allow_dm": True, "block_media": False},
        # Passed through to the webhook as metadata
        "templates": [],
    }


def default_config() -> dict[str, Any]:
    return {
        "enabled": bool(AUTOMATION_WEBHOOK_URL),
        "webhook_url": AUTOMATION_WEBHOOK_URL,
        "shared_secret": AUTOMATION_SHARED_SECRET,
        "forward": {"text": True, "image": True, "document": True, "other": False},
        "defaults": default_rule(),
        "per_chat": {},
    }


def deep_merge(base: Any, override: Any) -> Any:
    """
    Return a new structure: `base` with `override` applied recursively.

    Dicts merge key by key; any other override value (lists included) replaces the base
    value as a whole. A non-dict override leaves `base` unchanged. Inputs are not mutated.
    """
    if not isinstance(override, dict):
        return copy.deepcopy(base)
    out = copy.deepcopy(base) if isinstance(base, dict) else {}
    for key, value in override.items():
        if isinstance(value, dict):
            out[key] = deep_merge(out.get(key) if isinstance(out.get(key), dict) else {}, value)
        else:
            out[key] = copy.deepcopy(value)
    return out


def rule_for_chat(config: dict[str, Any], chat_jid: str) -> dict[str, Any]:
    base = config.get("defaults") or default_rule()
    override = (config.get("per_chat") or {}).get(chat_jid) or {}
    return deep_merge(base, override)


def _minutes(hhmm: Any) -> int:
    parts = str(hhmm or "00:00").split(":")
    try:
        hours = int(parts[0])
    except ValueError:
        hours = 0
    try:
        minutes = int(parts[1]) if len(parts) > 1 else 0
    except ValueError:
        minutes = 0
    return hours * 60 + minutes


def _zone(name: str) -> ZoneInfo | timezone:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("quiet hours: unknown timezone tz=%r, using UTC", name)
        return timezone.utc


def is_within_quiet_hours(rule: dict[str, Any], now: datetime | None = None) -> bool:
    """True when the local time falls in [start, end). start == end means never quiet."""
    q = rule.get("quiet_hours") or {}
    if not q.get("enabled"):
        return False
    local = (now or datetime.now(timezone.utc)).astimezone(_zone(q.get("tz") or DEFAULT_TZ))
    current = local.hour * 60 + local.minute
    start = _minutes(q.get("start"))
    end = _minutes(q.get("end"))

    if start == end:
        return False
    if start < end:
        return start <= current < end
    # Overnight window, e.g. 22:00 -> 06:00
    return current >= start or current < end


class ForwardRateLimiter:
    """
    Per-chat forward counter over a 60s window that restarts when it expires.

    Not a sliding window: a burst straddling a reset can pass up to 2x max_per_minute
    within 60 seconds. In memory only; restarts clear it.
    """

    def __init__(self) -> None:
        self._windows: dict[str, dict[str, int]] = {}
        self._last_sweep_ms = 0

    def _sweep(self, now: int) -> None:
        """Drop expired windows, at most once per window length."""
        if now - self._last_sweep_ms < RATE_WINDOW_MS:
            return
        self._last_sweep_ms = now
        expired = [jid for jid, w in self._windows.items() if now - w["window_start_ms"] >= RATE_WINDOW_MS]
        for jid in expired:
            del self._windows[jid]

    def allow(self, chat_jid: str, rule: dict[str, Any], now_ms: int | None = None) -> bool:
        rl = rule.get("rate_limit") or {}
        if not rl.get("enabled"):
            return True
        try:
            max_per_min = max(1, int(rl.get("max_per_minute") or 30))
        except (TypeError, ValueError):
            max_per_min = 30
        now = int(time.time() * 1000) if now_ms is None else now_ms

        self._sweep(now)
        win = self._windows.setdefault(chat_jid, {"window_start_ms": now, "count": 0})
        if now - win["window_start_ms"] >= RATE_WINDOW_MS:
            win["window_start_ms"] = now
            win["count"] = 0
        if win["count"] >= max_per_min:
            return False
        win["count"] += 1
        return True

    def window(self, chat_jid: str) -> dict[str, int] | None:
        win = self._windows.get(chat_jid)
        return dict(win) if win else None

    def reset(self) -> None:
        self._windows.clear()
        self._last_sweep_ms = 0

    def __len__(self) -> int:
        return len(self._windows)


def match_prefix(text: str | None, prefix: str | None) -> tuple[bool, str]:
    """
    Check for a leading command prefix: "!bot hi", "!bot: hi", "!bot, hi", "!bot - hi",
    or exactly "!bot". Case-insensitive. Returns (matched, text after the prefix).
    An empty prefix always matches.
    """
    t = (text or "").strip()
    p = (prefix or "").strip()
    if not p:
        return True, t
    pattern = re.compile(rf"^{re.escape(p)}(?:\s|:|,|-)+", re.IGNORECASE)
    m = pattern.match(t)
    if m:
        return True, t[m.end():].strip()
    if t.lower() == p.lower():
        return True, ""
    return False, t


def _type_switch(forward: dict[str, Any], msg_type: str) -> bool:
    key = msg_type if msg_type in FORWARDED_TYPES else "other"
    return forward.get(key) is not False


def should_forward(
    config: dict[str, Any],
    record: dict[str, Any],
    text_for_rules: str | None,
    limiter: ForwardRateLimiter,
    now: datetime | None = None,
) -> bool:
    if not config.get("enabled"):
        return False
    if not (config.get("webhook_url") or "").strip():
        return False

    chat_jid = record.get("chat_jid") or ""
    rule = rule_for_chat(config, chat_jid)
    if not rule.get("enabled"):
        return False

    is_group = bool(record.get("is_group"))
    msg_type = record.get("type") or "text"
    safety = rule.get("safety") or {}
    if is_group and safety.get("allow_groups") is False:
        return False
    if not is_group and safety.get("allow_dm") is False:
        return False
    if not is_group and rule.get("dm_enabled") is False:
        return False
    if safety.get("block_media") and msg_type != "text":
        return False

    if not _type_switch(config.get("forward") or {}, msg_type):
        return False

    if is_within_quiet_hours(rule, now):
        return False

    now_ms = int((now or datetime.now(timezone.utc)).timestamp() * 1000)
    if not limiter.allow(chat_jid, rule, now_ms):
        logger.info("forward rate limited chat=%s", chat_jid)
        return False

    prefix = rule.get("group_prefix")
    if prefix is None:
        prefix = DEFAULT_PREFIX

    if rule.get("require_prefix_for_all") is not False:
        return match_prefix(text_for_rules, prefix)[0]

    if is_group:
        mode = str(rule.get("group_mode") or "prefix")
        if mode == "all":
            return True
        if mode == "prefix":
            return match_prefix(text_for_rules, prefix)[0]
    return True
