"""Admin-managed contacts and group aliases (one JSON document)."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from config import CONTACTS_FILE
from json_store import read_json, write_json_atomic
from rate_gate import Clock, now_ms

logger = logging.getLogger(__name__)


def norm(s: Any) -> str:
    return str(s or "").strip().lower()


class ContactsStore:
    def __init__(self, path: str | Path = CONTACTS_FILE, clock: Clock = now_ms) -> None:
        self.path = Path(path)
        self._clock = clock

    def read(self) -> dict[str, Any]:
        doc = read_json(self.path, {})
        contacts = doc.get("contacts")
        groups = doc.get("groups")
        return {
            "contacts": [c for c in contacts if isinstance(c, dict)] if isinstance(contacts, list) else [],
            "groups": [g for g in groups if isinstance(g, dict)] if isinstance(groups, list) else [],
            "updated_at": doc.get("updated_at") or 0,
        }

    def write(self, store: dict[str, Any]) -> dict[str, Any]:
        nxt = {**store, "updated_at": self._clock()}
        try:
            write_json_atomic(self.path, nxt)
        except OSError as e:
            logger.warning("contacts write failed path=%s error=%s", self.path, e)
        return nxt

    def find_contact(self, name: str) -> dict[str, Any] | None:
        key = norm(name)
        return next((c for c in self.read()["contacts"] if norm(c.get("name")) == key), None)

    def find_group_alias(self, name: str) -> dict[str, Any] | None:
        key = norm(name)
        return next((g for g in self.read()["groups"] if norm(g.get("name")) == key), None)

    def upsert_contact(self, contact: dict[str, Any]) -> dict[str, Any]:
        key = norm(contact.get("name"))
        if not key:
            raise ValueError("Contact name required")
        store = self.read()
        contacts = store["contacts"]
        for i, c in enumerate(contacts):
            if norm(c.get("name")) == key:
                contacts[i] = {**c, **contact}
                break
        else:
            contacts.append(contact)
        return self.write(store)

    def delete_contact(self, name: str) -> bool:
        store = self.read()
        before = len(store["contacts"])
        store["contacts"] = [c for c in store["contacts"] if norm(c.get("name")) != norm(name)]
        self.write(store)
        return before != len(store["contacts"])

    def upsert_group_alias(self, name: str, jid: str) -> dict[str, Any]:
        key = norm(name)
        if not key:
            raise ValueError("Group alias name required")
        if not str(jid or "").endswith("@g.us"):
            raise ValueError("Group jid must end with @g.us")
        store = self.read()
        groups = store["groups"]
        group = {"name": str(name).strip(), "jid": str(jid).strip()}
        for i, g in enumerate(groups):
            if norm(g.get("name")) == key:
                groups[i] = {**g, **group}
                break
        else:
            groups.append(group)
        return self.write(store)

    def delete_group_alias(self, name: str) -> bool:
        store = self.read()
        before = len(store["groups"])
        store["groups"] = [g for g in store["groups"] if norm(g.get("name")) != norm(name)]
        self.write(store)
        return before != len(store["groups"])
