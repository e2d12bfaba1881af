"""
WhatsApp session access through an HTTP bridge (Evolution API compatible).

The bridge owns the socket, pairing and media transfer. We only need:
- send(jid, payload): raises SendError when the bridge refuses or is unreachable,
- a connection state: connecting | open | disconnected,
- the list of groups the account is in (for name resolution).

Inbound messages and connection updates are pushed by the bridge to POST /webhooks/wa.
A background poller also reads the connection state so a missed webhook cannot leave
the delivery worker waiting forever.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

import httpx

from config import (
    WA_BRIDGE_API_KEY,
    WA_BRIDGE_INSTANCE,
    WA_BRIDGE_URL,
    WA_HTTP_TIMEOUT_SEC,
    WA_STATUS_POLL_SEC,
)

logger = logging.getLogger(__name__)

CONNECTION_STATES = ("connecting", "open", "disconnected")


class SendError(Exception):
    pass


def normalize_state(state: Any) -> str:
    s = str(state or "").strip().lower()
    if s == "open":
        return "open"
    if s == "connecting":
        return "connecting"
    return "disconnected"


def payload_type(payload: dict[str, Any] | None) -> str:
    if not isinstance(payload, dict):
        return "unknown"
    if payload.get("text"):
        return "text"
    if payload.get("image"):
        return "image"
    if payload.get("document"):
        return "document"
    return "unknown"


class EvolutionClient:
    def __init__(
        self,
        base_url: str = WA_BRIDGE_URL,
        instance: str = WA_BRIDGE_INSTANCE,
        api_key: str = WA_BRIDGE_API_KEY,
        *,
        timeout: float = WA_HTTP_TIMEOUT_SEC,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.instance = instance
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport
        self.status = "disconnected"
        self._on_open: list[Callable[[], Awaitable[Any]]] = []

    @property
    def is_open(self) -> bool:
        return self.status == "open"

    def on_open(self, callback: Callable[[], Awaitable[Any]]) -> None:
        """Register a coroutine to run each time the connection becomes open."""
        self._on_open.append(callback)

    async def set_status(self, state: Any) -> str:
        previous, self.status = self.status, normalize_state(state)
        if previous != self.status:
            logger.info("whatsapp connection status %s -> %s", previous, self.status)
            if self.status == "open":
                for callback in self._on_open:
                    try:
                        await callback()
                    except Exception as e:
                        logger.warning("on_open callback failed error=%s", e)
        return self.status

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            headers={"apikey": self.api_key, "Content-Type": "application/json"},
            transport=self._transport,
        )

    async def refresh_status(self) -> str:
        try:
            async with self._client() as client:
                r = await client.get(f"/instance/connectionState/{self.instance}")
            r.raise_for_status()
            data = r.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("connection state check failed error=%s", e)
            return await self.set_status("disconnected")
        state = None
        if isinstance(data, dict):
            inner = data.get("instance")
            state = inner.get("state") if isinstance(inner, dict) else data.get("state")
        return await self.set_status(state)

    def _send_request(self, jid: str, payload: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        kind = payload_type(payload)
        if kind == "text":
            return f"/message/sendText/{self.instance}", {"number": jid, "text": str(payload["text"])}
        if kind == "image":
            body: dict[str, Any] = {
                "number": jid,
                "mediatype": "image",
                "media": payload["image"].get("url"),
            }
            if payload.get("caption"):
                body["caption"] = str(payload["caption"])
            if payload.get("mimetype"):
                body["mimetype"] = payload["mimetype"]
            return f"/message/sendMedia/{self.instance}", body
        if kind == "document":
            return f"/message/sendMedia/{self.instance}", {
                "number": jid,
                "mediatype": "document",
                "media": payload["document"].get("url"),
                "mimetype": payload.get("mimetype") or "application/octet-stream",
                "fileName": payload.get("file_name") or "file",
            }
        raise SendError(f"unsupported payload type: {kind}")

    async def send(self, jid: str, payload: dict[str, Any]) -> dict[str, Any]:
        """Send one message through the bridge. Raises SendError on any failure."""
        path, body = self._send_request(jid, payload)
        try:
            async with self._client() as client:
                r = await client.post(path, json=body)
        except httpx.HTTPError as e:
            raise SendError(f"bridge unreachable: {type(e).__name__}: {e}") from e
        if not 200 <= r.status_code < 300:
            raise SendError(f"bridge HTTP {r.status_code}: {r.text[:200]}")
        try:
            return r.json()
        except ValueError:
            return {}

    async def fetch_groups(self) -> list[dict[str, str]]:
        async with self._client() as client:
            r = await client.get(
                f"/group/fetchAllGroups/{self.instance}",
                params={"getParticipants": "false"},
            )
        r.raise_for_status()
        data = r.json()
        groups = data if isinstance(data, list) else []
        return [
            {"jid": str(g.get("id")), "subject": str(g.get("subject") or "")}
            for g in groups
            if isinstance(g, dict) and g.get("id")
        ]

    async def run_status_poller(self, interval: float = WA_STATUS_POLL_SEC) -> None:
        while True:
            await self.refresh_status()
            await asyncio.sleep(interval)
