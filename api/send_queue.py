"""
Durable outbound send queue backed by the `delivery_job` table.

Lifecycle per job: waiting -> active -> completed, or active -> waiting (retry scheduled
with exponential backoff) until attempts run out, then failed. The HTTP layer only
enqueues; the delivery worker claims one job at a time, so request latency never
depends on WhatsApp latency.

Jobs left `active` by a crashed process are put back to `waiting` on startup by
`recover_stalled()`; nothing is dropped because of a restart.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session, sessionmaker

from config import WA_MAX_RETRIES, WA_RETRY_BACKOFF_MS
from models.delivery_job import DeliveryJob
from rate_gate import Clock, now_ms

logger = logging.getLogger(__name__)

JOB_STATES = ("waiting", "active", "completed", "failed")
KEEP_COMPLETED = 2000
KEEP_FAILED = 5000
PRUNE_EVERY = 100


@dataclass(frozen=True)
class ClaimedJob:
    id: str
    recipient: str
    payload: dict[str, Any]
    message_id: str | None
    chat_jid: str | None
    attempts_made: int
    max_attempts: int
    created_at_ms: int

    @property
    def is_last_attempt(self) -> bool:
        return self.attempts_made + 1 >= self.max_attempts


def _snapshot(row: DeliveryJob) -> ClaimedJob:
    return ClaimedJob(
        id=row.id,
        recipient=row.recipient,
        payload=dict(row.payload or {}),
        message_id=row.message_id,
        chat_jid=row.chat_jid,
        attempts_made=row.attempts_made,
        max_attempts=row.max_attempts,
        created_at_ms=row.created_at_ms,
    )


class JobQueue:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        max_retries: int = WA_MAX_RETRIES,
        backoff_ms: int = WA_RETRY_BACKOFF_MS,
        clock: Clock = now_ms,
    ) -> None:
        self._session_factory = session_factory
        self.max_attempts = max(0, max_retries) + 1  # include first attempt
        self.backoff_ms = backoff_ms
        self._clock = clock
        self._wakeup = asyncio.Event()
        self._terminal_since_prune = 0

    def enqueue(
        self,
        job_id: str,
        recipient: str,
        payload: dict[str, Any],
        *,
        message_id: str | None = None,
        chat_jid: str | None = None,
    ) -> str:
        """Insert a waiting job. Same job_id twice is a no-op."""
        now = self._clock()
        with self._session_factory() as db:
            if db.get(DeliveryJob, job_id) is not None:
                logger.info("enqueue: duplicate job_id=%s ignored", job_id)
                return job_id
            db.add(
                DeliveryJob(
                    id=job_id,
                    recipient=recipient,
                    payload=payload,
                    message_id=message_id,
                    chat_jid=chat_jid,
                    state="waiting",
                    attempts_made=0,
                    max_attempts=self.max_attempts,
                    run_at_ms=now,
                    created_at_ms=now,
                )
            )
            db.commit()
        logger.info("enqueue: job_id=%s recipient=%s message_id=%s", job_id, recipient, message_id)
        self._wakeup.set()
        return job_id

    def claim_next(self) -> ClaimedJob | None:
        """Mark the oldest ready waiting job active and return it."""
        with self._session_factory() as db:
            stmt = (
                select(DeliveryJob)
                .where(DeliveryJob.state == "waiting", DeliveryJob.run_at_ms <= self._clock())
                .order_by(DeliveryJob.run_at_ms, DeliveryJob.created_at_ms, DeliveryJob.id)
                .limit(1)
            )
            row = db.execute(stmt).scalars().first()
            if row is None:
                return None
            row.state = "active"
            job = _snapshot(row)
            db.commit()
        return job

    def complete(self, job_id: str) -> None:
        with self._session_factory() as db:
            row = db.get(DeliveryJob, job_id)
            if row is None:
                return
            row.attempts_made += 1
            row.state = "completed"
            row.finished_at_ms = self._clock()
            row.last_error = None
            db.commit()
        self._after_terminal()

    def fail(self, job_id: str, error: str) -> str:
        """Record a failed attempt. Returns the new state: waiting (retry scheduled) or failed."""
        with self._session_factory() as db:
            row = db.get(DeliveryJob, job_id)
            if row is None:
                return "failed"
            row.attempts_made += 1
            row.last_error = (error or "")[:2000]
            if row.attempts_made >= row.max_attempts:
                row.state = "failed"
                row.finished_at_ms = self._clock()
            else:
                row.state = "waiting"
                row.run_at_ms = self._clock() + self.backoff_for(row.attempts_made)
            state = row.state
            attempts = row.attempts_made
            db.commit()
        if state == "failed":
            logger.warning("job failed (exhausted) job_id=%s attempts=%s error=%s", job_id, attempts, error)
            self._after_terminal()
        else:
            logger.info("job retry scheduled job_id=%s attempts=%s error=%s", job_id, attempts, error)
        return state

    def backoff_for(self, attempts_made: int) -> int:
        return self.backoff_ms * 2 ** max(0, attempts_made - 1)

    def recover_stalled(self) -> int:
        """Return jobs stuck in `active` (process died mid-send) to `waiting`."""
        with self._session_factory() as db:
            rows = db.execute(select(DeliveryJob).where(DeliveryJob.state == "active")).scalars().all()
            for row in rows:
                row.state = "waiting"
            db.commit()
        if rows:
            logger.warning("recovered %s stalled job(s)", len(rows))
        return len(rows)

    def next_run_at(self) -> int | None:
        """run_at of the earliest waiting job (ready or delayed), None if nothing waits."""
        with self._session_factory() as db:
            return db.execute(
                select(func.min(DeliveryJob.run_at_ms)).where(DeliveryJob.state == "waiting")
            ).scalar()

    def get(self, job_id: str) -> DeliveryJob | None:
        with self._session_factory(expire_on_commit=False) as db:
            return db.get(DeliveryJob, job_id)

    def counts(self) -> dict[str, int]:
        with self._session_factory() as db:
            rows = db.execute(
                select(DeliveryJob.state, func.count()).group_by(DeliveryJob.state)
            ).all()
        out = {s: 0 for s in JOB_STATES}
        for state, n in rows:
            out[state] = n
        return out

    def prune(self, keep_completed: int = KEEP_COMPLETED, keep_failed: int = KEEP_FAILED) -> int:
        removed = 0
        with self._session_factory() as db:
            for state, keep in (("completed", keep_completed), ("failed", keep_failed)):
                stale = (
                    select(DeliveryJob.id)
                    .where(DeliveryJob.state == state)
                    .order_by(DeliveryJob.finished_at_ms.desc())
                    .offset(keep)
                )
                ids = db.execute(stale).scalars().all()
                if ids:
                    db.execute(delete(DeliveryJob).where(DeliveryJob.id.in_(ids)))
                    removed += len(ids)
            db.commit()
        return removed

    def _after_terminal(self) -> None:
        self._terminal_since_prune += 1
        if self._terminal_since_prune >= PRUNE_EVERY:
            self._terminal_since_prune = 0
            self.prune()

    async def wait_for_work(self, timeout: float) -> None:
        """Sleep until a job is enqueued or `timeout` seconds pass."""
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout)
        except asyncio.TimeoutError:
            pass
        self._wakeup.clear()
