"""Sequence counter backing invoice and receipt numbering."""

from sqlalchemy import BigInteger, String
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base


class SequenceCounter(Base):
    """One monotonically increasing counter per number prefix."""

    __tablename__ = "sequence_counters"

    name: Mapped[str] = mapped_column(String(20), primary_key=True)
    value: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    def __repr__(self) -> str:
        return f"<SequenceCounter(name={self.name}, value={self.value})>"
