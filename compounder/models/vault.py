"""
Vault model: one row per configured vault address.
"""

from datetime import datetime
from typing import Optional
from enum import Enum

from sqlalchemy import String, Integer, DateTime, Text, Index
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, TimestampMixin, as_utc


class VaultStatus(str, Enum):
    """Compounding status of a vault."""
    IDLE = "idle"
    IN_PROGRESS = "in_progress"
    FAILED = "failed"
    DEGRADED = "degraded"


class Vault(BaseModel, TimestampMixin):
    """A yield-bearing vault compounded on a fixed interval."""

    __tablename__ = "vaults"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    address: Mapped[str] = mapped_column(
        String(64),
        unique=True,
        nullable=False,
        comment="On-chain vault account address"
    )

    compound_interval_hours: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=4,
        comment="Hours between compound cycles"
    )

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=VaultStatus.IDLE.value,
        comment="Last known compounding status"
    )

    last_compounded_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="Timestamp of the last confirmed compound"
    )

    last_attempt_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="Timestamp of the last compound cycle, successful or not"
    )

    last_transaction_ref: Mapped[Optional[str]] = mapped_column(
        String(128),
        nullable=True,
        comment="Signature of the last successful compound"
    )

    last_error: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Error kind of the last failed cycle"
    )

    consecutive_failures: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0
    )

    def __repr__(self):
        return f"<Vault(id={self.id}, address={self.address}, status={self.status})>"

    @property
    def last_compounded_utc(self) -> Optional[datetime]:
        return as_utc(self.last_compounded_at)

    @property
    def last_attempt_utc(self) -> Optional[datetime]:
        return as_utc(self.last_attempt_at)


Index('idx_vaults_status', Vault.status)
