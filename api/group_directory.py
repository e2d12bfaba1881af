from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

from contacts_store import norm
from rate_gate import Clock, now_ms

logger = logging.getLogger(__name__)


class GroupDirectory:
    """Groups the account participates in, by jid and by normalized subject."""

    def __init__(self, clock: Clock = now_ms) -> None:
        self._clock = clock
        self.updated_at = 0
        self.by_jid: dict[str, dict[str, str]] = {}
        self.by_name: dict[str, list[dict[str, str]]] = {}

    def replace(self, groups: list[dict[str, Any]]) -> int:
        by_jid: dict[str, dict[str, str]] = {}
        by_name: dict[str, list[dict[str, str]]] = {}
        for g in groups:
            jid = str(g.get("jid") or "")
            if not jid:
                continue
            item = {"jid": jid, "subject": str(g.get("subject") or "").strip()}
            by_jid[jid] = item
            by_name.setdefault(norm(item["subject"]), []).append(item)
        self.by_jid, self.by_name = by_jid, by_name
        self.updated_at = self._clock()
        return len(by_jid)

    async def refresh(self, fetch: Callable[[], Awaitable[list[dict[str, Any]]]]) -> dict[str, int]:
        count = self.replace(await fetch())
        logger.info("group cache updated count=%s", count)
        return {"count": count, "updated_at": self.updated_at}

    def find_by_name(self, name: str) -> list[dict[str, str]]:
        """Exact (normalized) subject matches, else every subject containing the needle."""
        needle = norm(name)
        if not needle:
            return []
        exact = self.by_name.get(needle) or []
        if exact:
            return list(exact)
        return [g for g in self.by_jid.values() if needle in norm(g["subject"])]

    def __len__(self) -> int:
        return len(self.by_jid)
