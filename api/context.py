"""
Application state: every store, cache and background component, created once and shared
by reference. Routes reach it through `get_context` (stored on `app.state.ctx`).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from fastapi import Request
from sqlalchemy.orm import Session, sessionmaker

from auto_reply import AutoReplier
from automation_config import AutomationConfigStore
from automation_rules import ForwardRateLimiter
from config import (
    ADMIN_KEY,
    API_KEY,
    AUTOMATIONS_FILE,
    CONTACTS_FILE,
    DEFAULT_COUNTRY_CODE,
    MESSAGES_FILE,
    MESSAGES_MAX,
    MESSAGES_MEMORY_LIMIT,
    WA_WEBHOOK_TOKEN,
)
from contacts_store import ContactsStore
from delivery_worker import DeliveryWorker
from forward_dispatch import ForwardDispatcher
from group_directory import GroupDirectory
from inbound import InboundPipeline
from message_store import MessageStore
from outbound import Outbox
from rate_gate import RateGate
from rate_limit import SlidingWindowLimiter
from send_queue import JobQueue
from wa_client import EvolutionClient

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    session_factory: sessionmaker[Session]
    messages: MessageStore
    automations: AutomationConfigStore
    forward_limiter: ForwardRateLimiter
    dispatcher: ForwardDispatcher
    contacts: ContactsStore
    groups: GroupDirectory
    client: EvolutionClient
    gate: RateGate
    queue: JobQueue
    worker: DeliveryWorker
    outbox: Outbox
    replier: AutoReplier
    inbound: InboundPipeline
    http_limiter: SlidingWindowLimiter
    api_key: str = API_KEY
    admin_key: str = ADMIN_KEY
    webhook_token: str = WA_WEBHOOK_TOKEN
    country_code: str = DEFAULT_COUNTRY_CODE

    async def refresh_groups(self) -> dict[str, int]:
        return await self.groups.refresh(self.client.fetch_groups)


def build_context(
    session_factory: sessionmaker[Session] | None = None,
    *,
    data_dir: str | Path | None = None,
    client: EvolutionClient | None = None,
    dispatcher: ForwardDispatcher | None = None,
    gate: RateGate | None = None,
    replier: AutoReplier | None = None,
    http_limiter: SlidingWindowLimiter | None = None,
    api_key: str = API_KEY,
    admin_key: str = ADMIN_KEY,
    webhook_token: str = WA_WEBHOOK_TOKEN,
) -> AppContext:
    """
    Wire all components from config. `data_dir` puts the three JSON documents in one
    directory (tests); otherwise their configured paths are used.
    """
    if session_factory is None:
        from database import SessionLocal

        session_factory = SessionLocal

    base = Path(data_dir) if data_dir is not None else None
    messages = MessageStore(
        base / "messages.json" if base else MESSAGES_FILE,
        max_messages=MESSAGES_MAX,
        memory_limit=MESSAGES_MEMORY_LIMIT,
    )
    automations = AutomationConfigStore(base / "automations.json" if base else AUTOMATIONS_FILE)
    automations.load()
    contacts = ContactsStore(base / "contacts.json" if base else CONTACTS_FILE)

    client = client or EvolutionClient()
    dispatcher = dispatcher or ForwardDispatcher(
        lambda: (automations.webhook_url, automations.shared_secret)
    )
    gate = gate or RateGate(session_factory)
    queue = JobQueue(session_factory)
    worker = DeliveryWorker(queue, gate, client, messages)
    outbox = Outbox(messages, queue)
    replier = replier or AutoReplier()
    limiter = ForwardRateLimiter()

    ctx = AppContext(
        session_factory=session_factory,
        messages=messages,
        automations=automations,
        forward_limiter=limiter,
        dispatcher=dispatcher,
        contacts=contacts,
        groups=GroupDirectory(),
        client=client,
        gate=gate,
        queue=queue,
        worker=worker,
        outbox=outbox,
        replier=replier,
        inbound=InboundPipeline(messages, automations, limiter, dispatcher, replier, outbox),
        http_limiter=http_limiter or SlidingWindowLimiter(),
        api_key=api_key,
        admin_key=admin_key,
        webhook_token=webhook_token,
    )
    client.on_open(ctx.refresh_groups)
    return ctx


def get_context(request: Request) -> AppContext:
    return request.app.state.ctx
