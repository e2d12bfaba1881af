from typing import Any

from sqlalchemy import JSON, BigInteger, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class DeliveryJob(Base):
    """Outbound send job. Owned by the send queue from enqueue until completed/failed."""

    __tablename__ = "delivery_job"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    recipient: Mapped[str] = mapped_column(String(256), nullable=False, index=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    message_id = mapped_column(String(128), nullable=True)  # linked message record
    chat_jid = mapped_column(String(256), nullable=True)
    state: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default="waiting",
        index=True,
        comment="waiting | active | completed | failed",
    )
    attempts_made: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    run_at_ms: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        index=True,
        comment="Earliest time the job may be claimed (epoch ms)",
    )
    created_at_ms: Mapped[int] = mapped_column(BigInteger, nullable=False)
    finished_at_ms = mapped_column(BigInteger, nullable=True)
    last_error = mapped_column(Text, nullable=True)
