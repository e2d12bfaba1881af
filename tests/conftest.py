"""Common test fixtures for the relay tests."""

import asyncio
import os
from pathlib import Path

# Keep the module-level engine off disk; must run before anything imports config
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

import pytest
from sqlalchemy.orm import sessionmaker

from database import init_db, make_engine
from message_store import MessageStore
from wa_client import SendError


class FakeClock:
    """Epoch-ms clock that only moves when told to (or when something sleeps on it)."""

    def __init__(self, start: int = 1_700_000_000_000) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += int(ms)

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += int(round(seconds * 1000))
        await asyncio.sleep(0)


class FakeWhatsApp:
    """Stands in for EvolutionClient in worker tests: records sends, fails on demand."""

    def __init__(self, clock: FakeClock, *, status: str = "open", fail_times: int = 0, open_after_checks: int = 0):
        self.clock = clock
        self.status = status
        self.fail_times = fail_times
        self.open_after_checks = open_after_checks
        self.checks = 0
        self.attempts: list[tuple[str, dict, int]] = []
        self.sent: list[tuple[str, dict, int]] = []

    @property
    def is_open(self) -> bool:
        self.checks += 1
        if self.status != "open" and self.open_after_checks and self.checks > self.open_after_checks:
            self.status = "open"
        return self.status == "open"

    async def send(self, jid: str, payload: dict) -> dict:
        self.attempts.append((jid, payload, self.clock()))
        if self.fail_times < 0 or len(self.attempts) <= self.fail_times:
            raise SendError("bridge HTTP 500: boom")
        self.sent.append((jid, payload, self.clock()))
        return {"key": {"id": f"WA{len(self.sent)}"}}


@pytest.fixture
def temp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for test files."""
    return tmp_path


@pytest.fixture
def session_factory(temp_dir: Path):
    """Fresh SQLite queue database per test."""
    engine = make_engine(f"sqlite:///{temp_dir / 'relay.db'}")
    init_db(engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def message_store(temp_dir: Path, clock: FakeClock) -> MessageStore:
    return MessageStore(temp_dir / "messages.json", max_messages=100, memory_limit=50, clock=clock)
