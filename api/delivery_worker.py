"""
Serial consumer of the send queue.

One job in flight at a time, always. For each job:
1. wait until the WhatsApp connection is open (poll; jobs are never failed because the
   socket is reconnecting),
2. pass the rate gate for the recipient,
3. send through the bridge,
4. on success mark the linked message `sent`, complete the job, then pause (base + jitter);
   on failure mark it `retrying`, or `failed` when this was the last allowed attempt, and
   hand the error to the queue so it schedules the retry or marks the job failed.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Protocol

from config import WA_CONNECT_POLL_MS
from message_store import MessageStore
from rate_gate import Clock, RateGate, now_ms
from send_queue import ClaimedJob, JobQueue

logger = logging.getLogger(__name__)

IDLE_POLL_SEC = 5.0


class NetworkClient(Protocol):
    @property
    def is_open(self) -> bool: ...

    async def send(self, jid: str, payload: dict[str, Any]) -> Any: ...


class DeliveryWorker:
    def __init__(
        self,
        queue: JobQueue,
        gate: RateGate,
        client: NetworkClient,
        messages: MessageStore,
        *,
        connect_poll_ms: int = WA_CONNECT_POLL_MS,
        idle_poll_sec: float = IDLE_POLL_SEC,
        clock: Clock = now_ms,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.queue = queue
        self.gate = gate
        self.client = client
        self.messages = messages
        self.connect_poll_ms = connect_poll_ms
        self.idle_poll_sec = idle_poll_sec
        self._clock = clock
        self._sleep = sleep
        self._task: asyncio.Task[None] | None = None
        self.errors = 0

    async def wait_until_connected(self) -> None:
        while not self.client.is_open:
            await self._sleep(self.connect_poll_ms / 1000)

    def _set_status(self, job: ClaimedJob, status: str) -> None:
        if job.message_id:
            self.messages.update_status(job.message_id, status)

    async def handle(self, job: ClaimedJob) -> None:
        """Deliver one job and mark the message sent. Raises whatever the gate or send raised."""
        await self.wait_until_connected()
        await self.gate.acquire(job.recipient)
        await self.client.send(job.recipient, job.payload)
        self._set_status(job, "sent")

    async def run_job(self, job: ClaimedJob) -> bool:
        try:
            await self.handle(job)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            state = self.queue.fail(job.id, f"{type(e).__name__}: {e}")
            self._set_status(job, "failed" if state == "failed" else "retrying")
            logger.warning(
                "send failed job_id=%s recipient=%s attempt=%s/%s next=%s",
                job.id,
                job.recipient,
                job.attempts_made + 1,
                job.max_attempts,
                state,
            )
            return False
        self.queue.complete(job.id)
        logger.info("job completed job_id=%s recipient=%s", job.id, job.recipient)
        await self.gate.post_send_delay()
        return True

    def _idle_timeout(self) -> float:
        due = self.queue.next_run_at()
        if due is None:
            return self.idle_poll_sec
        return max(0.0, min(self.idle_poll_sec, (due - self._clock()) / 1000))

    async def run(self) -> None:
        """Process jobs forever, one at a time."""
        logger.info("delivery worker started")
        while True:
            try:
                job = self.queue.claim_next()
            except Exception as e:
                self.errors += 1
                logger.exception("claim failed error=%s", e)
                await self._sleep(self.idle_poll_sec)
                continue
            if job is None:
                await self.queue.wait_for_work(self._idle_timeout())
                continue
            try:
                await self.run_job(job)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # Job stays active until recover_stalled at the next startup
                self.errors += 1
                logger.exception("job bookkeeping failed job_id=%s error=%s", job.id, e)
                await self._sleep(self.idle_poll_sec)

    async def drain(self) -> int:
        """Process until no job is waiting, sleeping through retry backoffs. Returns jobs run."""
        processed = 0
        while True:
            job = self.queue.claim_next()
            if job is not None:
                await self.run_job(job)
                processed += 1
                continue
            due = self.queue.next_run_at()
            if due is None:
                return processed
            await self._sleep(max(0, due - self._clock()) / 1000)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
