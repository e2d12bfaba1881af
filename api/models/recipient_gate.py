from sqlalchemy import BigInteger, String
from sqlalchemy.orm import Mapped, mapped_column

from models.delivery_job import Base


class RecipientGate(Base):
    """Last send attempt per recipient. Survives restarts so pacing holds across them."""

    __tablename__ = "recipient_gate"

    recipient: Mapped[str] = mapped_column(String(256), primary_key=True)
    last_send_ms: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
