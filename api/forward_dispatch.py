"""
Forward approved inbound messages to the automation webhook (e.g. an n8n workflow).

**Delivery model:**
Best effort. Events go into an in-process FIFO drained by a single loop, one POST at a
time. A failed POST is re-queued after min(30s, 1s * attempts^2); after
FORWARD_MAX_ATTEMPTS failures the event is dropped and logged. Nothing here ever blocks
or fails inbound message handling, and the queue does not survive restarts.

**Authentication:**
When a shared secret is configured each request carries it in X-Relay-Secret, plus an
HMAC-SHA256 of the raw body in X-Signature (`sha256=<hex>`) so receivers that prefer not
to compare plain secrets can verify the body instead.

**Media links:**
This service does not serve media. `signed_url` in a forwarded event is a relative
`/media/<name>?exp=&sig=` path for whatever host serves the bridge's downloaded files;
that host checks it with `verify_media_signature` and MEDIA_SIGNING_SECRET.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import logging
import time
from collections import deque
from typing import Any, Awaitable, Callable
from urllib.parse import quote

import httpx

from config import MEDIA_SIGNING_SECRET, MEDIA_URL_TTL_SECONDS

logger = logging.getLogger(__name__)

FORWARD_MAX_ATTEMPTS = 5
FORWARD_TIMEOUT_SEC = 15.0
FORWARD_MAX_BACKOFF_SEC = 30.0
SECRET_HEADER = "X-Relay-Secret"
SIGNATURE_HEADER = "X-Signature"

# Returns (webhook_url, shared_secret) as currently configured
TargetProvider = Callable[[], tuple[str, str]]


class ForwardError(Exception):
    pass


def compute_signature(secret: str, body: bytes) -> str:
    """HMAC-SHA256 of body with the shared secret; return hex digest ('' without a secret)."""
    raw = (secret or "").strip()
    if not raw:
        return ""
    return hmac.new(raw.encode("utf-8"), body, hashlib.sha256).hexdigest()


def build_headers_and_body(payload: dict[str, Any], secret: str) -> tuple[dict[str, str], bytes]:
    body = json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    headers: dict[str, str] = {"Content-Type": "application/json"}
    secret = (secret or "").strip()
    if secret:
        headers[SECRET_HEADER] = secret
        headers[SIGNATURE_HEADER] = f"sha256={compute_signature(secret, body)}"
    return headers, body


def sign_media_url(
    file_name: str,
    *,
    secret: str = MEDIA_SIGNING_SECRET,
    ttl_seconds: int = MEDIA_URL_TTL_SECONDS,
    now: float | None = None,
) -> str | None:
    """Time-limited link `/media/<name>?exp=&sig=` (HMAC over `name|exp`). None without a secret."""
    if not secret or not file_name:
        return None
    exp = int(now if now is not None else time.time()) + ttl_seconds
    sig = _media_sig(secret, file_name, exp)
    return f"/media/{quote(file_name, safe='')}?exp={exp}&sig={sig}"


def _media_sig(secret: str, file_name: str, exp: int) -> str:
    return hmac.new(secret.encode("utf-8"), f"{file_name}|{exp}".encode("utf-8"), hashlib.sha256).hexdigest()


def verify_media_signature(
    file_name: str,
    exp: int | str,
    sig: str,
    *,
    secret: str = MEDIA_SIGNING_SECRET,
    now: float | None = None,
) -> bool:
    """For the media host: True when `sig` matches and `exp` has not passed."""
    if not secret or not file_name or not sig:
        return False
    try:
        exp = int(exp)
    except (TypeError, ValueError):
        return False
    if exp < int(now if now is not None else time.time()):
        return False
    return hmac.compare_digest(sig.encode("utf-8"), _media_sig(secret, file_name, exp).encode("utf-8"))


def build_forward_event(record: dict[str, Any], raw_text: str | None, rule: dict[str, Any]) -> dict[str, Any]:
    media = record.get("media") or None
    event_media = None
    if media:
        event_media = {
            "file_name": media.get("file_name"),
            "mimetype": media.get("mimetype"),
            "local_path": media.get("local_path"),  # usually not reachable from the receiver
            "signed_url": sign_media_url(media.get("file_name") or ""),
            "url": media.get("url"),
        }
    return {
        "event": "inbound_message",
        "event_id": record.get("id"),
        "ts": record.get("ts"),
        "chat_jid": record.get("chat_jid"),
        "is_group": bool(record.get("is_group")),
        "sender_jid": record.get("sender_jid"),
        "type": record.get("type"),
        "text": record.get("text"),
        "raw_text": str(raw_text) if raw_text else None,
        "media": event_media,
        # safe subset only
        "rule": {
            "group_mode": rule.get("group_mode"),
            "group_prefix": rule.get("group_prefix"),
            "templates": rule.get("templates") or [],
        },
    }


class ForwardDispatcher:
    def __init__(
        self,
        target: TargetProvider,
        *,
        max_attempts: int = FORWARD_MAX_ATTEMPTS,
        timeout: float = FORWARD_TIMEOUT_SEC,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._target = target
        self.max_attempts = max_attempts
        self.timeout = timeout
        self._transport = transport
        self._sleep = sleep
        self._queue: deque[dict[str, Any]] = deque()
        self._running = False
        self._drain_task: asyncio.Task[None] | None = None
        self._retry_tasks: set[asyncio.Task[None]] = set()
        self.dropped = 0
        self.delivered = 0

    @staticmethod
    def backoff_seconds(attempts: int) -> float:
        return min(FORWARD_MAX_BACKOFF_SEC, 1.0 * attempts * attempts)

    def enqueue(self, event: dict[str, Any], attempts: int = 0) -> None:
        """Queue an event and make sure the drain loop is running. Never blocks."""
        self._queue.append({"event": event, "attempts": attempts})
        if not self._running:
            self._running = True
            self._drain_task = asyncio.create_task(self._drain())

    @property
    def pending(self) -> int:
        return len(self._queue) + len(self._retry_tasks)

    async def _drain(self) -> None:
        try:
            while self._queue:
                item = self._queue.popleft()
                try:
                    await self.post(item["event"])
                    self.delivered += 1
                except Exception as e:
                    self._on_failure(item, e)
        finally:
            self._running = False

    def _on_failure(self, item: dict[str, Any], error: Exception) -> None:
        attempts = item["attempts"] + 1
        event_id = item["event"].get("event_id")
        if attempts >= self.max_attempts:
            self.dropped += 1
            logger.error(
                "forward dropped after %s attempts event_id=%s last_error=%s",
                attempts,
                event_id,
                error,
            )
            return
        backoff = self.backoff_seconds(attempts)
        logger.warning(
            "forward attempt %s/%s failed event_id=%s retry_in=%ss error=%s",
            attempts,
            self.max_attempts,
            event_id,
            backoff,
            error,
        )
        task = asyncio.create_task(self._requeue_later(item["event"], attempts, backoff))
        self._retry_tasks.add(task)
        task.add_done_callback(self._retry_tasks.discard)

    async def _requeue_later(self, event: dict[str, Any], attempts: int, delay: float) -> None:
        await self._sleep(delay)
        self.enqueue(event, attempts)

    async def post(self, event: dict[str, Any]) -> None:
        """Single POST to the configured webhook. Raises ForwardError/httpx errors on failure."""
        url, secret = self._target()
        url = (url or "").strip()
        if not url:
            logger.info("forward skipped, no webhook configured event_id=%s", event.get("event_id"))
            return
        headers, body = build_headers_and_body(event, secret)
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            r = await client.post(url, content=body, headers=headers)
        if not 200 <= r.status_code < 300:
            raise ForwardError(f"webhook HTTP {r.status_code}: {r.text[:200]}")

    async def idle(self) -> None:
        """Wait until the queue, retries and the drain loop are all finished."""
        while self._running or self._queue or self._retry_tasks:
            pending = [t for t in (self._drain_task, *self._retry_tasks) if t is not None and not t.done()]
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            else:
                await asyncio.sleep(0)

    async def stop(self) -> None:
        for task in list(self._retry_tasks):
            task.cancel()
        if self._drain_task is not None and not self._drain_task.done():
            self._drain_task.cancel()
        tasks = [t for t in (self._drain_task, *self._retry_tasks) if t is not None]
        await asyncio.gather(*tasks, return_exceptions=True)
        self._retry_tasks.clear()
        self._queue.clear()
        self._running = False
