"""
Send pacing for the delivery worker.

**Why pace sends:**
- WhatsApp flags accounts that send bursts of messages, especially several to the same
  chat within a second or two. Pacing keeps traffic looking like a person typing.

**Layers:**
- Per-recipient gap: last send time per jid is stored in the database, so the gap holds
  across restarts. Read-then-write is not atomic; the delivery worker runs one job at a
  time, so two sends to one jid never race. When the database errors the gate logs it
  and keeps pacing from memory instead of failing the send.
- Global gap (optional): minimum gap between any two sends, in memory only.
- Post-send delay: base + random jitter after every successful send.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import Awaitable, Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from config import WA_BASE_DELAY_MS, WA_GLOBAL_MIN_GAP_MS, WA_JITTER_MS, WA_PER_JID_GAP_MS
from models.recipient_gate import RecipientGate

logger = logging.getLogger(__name__)

Clock = Callable[[], int]
Sleep = Callable[[float], Awaitable[None]]


def now_ms() -> int:
    return int(time.time() * 1000)


class RateGate:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        per_recipient_gap_ms: int = WA_PER_JID_GAP_MS,
        global_min_gap_ms: int = WA_GLOBAL_MIN_GAP_MS,
        base_delay_ms: int = WA_BASE_DELAY_MS,
        jitter_ms: int = WA_JITTER_MS,
        clock: Clock = now_ms,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._session_factory = session_factory
        self.per_recipient_gap_ms = per_recipient_gap_ms
        self.global_min_gap_ms = global_min_gap_ms
        self.base_delay_ms = base_delay_ms
        self.jitter_ms = jitter_ms
        self._clock = clock
        self._sleep = sleep
        self._last_global_send_ms = 0
        self._fallback_ms: dict[str, int] = {}

    def last_send_ms(self, recipient: str) -> int:
        """Durable last-send time, falling back to this process's memory when the database fails."""
        try:
            with self._session_factory() as db:
                row = db.get(RecipientGate, recipient)
                return row.last_send_ms if row else 0
        except SQLAlchemyError as e:
            logger.warning("rate_gate: read failed recipient=%s error=%s", recipient, e)
            return self._fallback_ms.get(recipient, 0)

    def _record_send(self, recipient: str, at_ms: int) -> None:
        # Only sends still inside the gap matter to the in-memory fallback
        self._fallback_ms = {r: t for r, t in self._fallback_ms.items() if at_ms - t < self.per_recipient_gap_ms}
        self._fallback_ms[recipient] = at_ms
        try:
            with self._session_factory() as db:
                row = db.get(RecipientGate, recipient)
                if row is None:
                    db.add(RecipientGate(recipient=recipient, last_send_ms=at_ms))
                else:
                    row.last_send_ms = at_ms
                db.commit()
        except SQLAlchemyError as e:
            logger.warning("rate_gate: write failed recipient=%s error=%s", recipient, e)

    async def acquire(self, recipient: str) -> None:
        """Wait until both the recipient gap and the global gap allow a send, then record it."""
        since = self._clock() - self.last_send_ms(recipient)
        if since < self.per_recipient_gap_ms:
            wait_ms = self.per_recipient_gap_ms - since
            logger.debug("rate_gate: recipient gap wait recipient=%s wait_ms=%s", recipient, wait_ms)
            await self._sleep(wait_ms / 1000)
        self._record_send(recipient, self._clock())

        await self._global_gate()

    async def _global_gate(self) -> None:
        if not self.global_min_gap_ms:
            return
        since = self._clock() - self._last_global_send_ms
        if since < self.global_min_gap_ms:
            await self._sleep((self.global_min_gap_ms - since) / 1000)
        self._last_global_send_ms = self._clock()

    def next_delay_ms(self) -> int:
        jitter = random.randrange(self.jitter_ms) if self.jitter_ms > 0 else 0
        return self.base_delay_ms + jitter

    async def post_send_delay(self) -> None:
        """Natural pause between successful sends."""
        await self._sleep(self.next_delay_ms() / 1000)
