"""
Performance history models: one row per recorded compound cycle,
plus the raw price samples observed while recording.
"""

from datetime import datetime
from typing import Optional, Dict, Any, List

from sqlalchemy import String, Integer, BigInteger, Float, DateTime, ForeignKey, Index, JSON
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, utcnow


class VaultPerformance(BaseModel):
    """Append-only performance sample written after a confirmed compound."""

    __tablename__ = "vault_performance"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    vault_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("vaults.id", ondelete="CASCADE"),
        nullable=False
    )

    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        comment="Cycle timestamp"
    )

    transaction_ref: Mapped[str] = mapped_column(
        String(128),
        unique=True,
        nullable=False,
        comment="Compound transaction signature"
    )

    tvl: Mapped[Optional[float]] = mapped_column(Float, nullable=True, comment="Total value locked, token units")
    tvl_usd: Mapped[Optional[float]] = mapped_column(Float, nullable=True, comment="TVL valued with the quote feed")
    yield_rate: Mapped[Optional[float]] = mapped_column(Float, nullable=True, comment="Effective annualised yield")

    amount_earned: Mapped[Optional[int]] = mapped_column(
        BigInteger,
        nullable=True,
        comment="Assets added by this compound, base units"
    )

    prices: Mapped[Dict[str, Any]] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
        comment="feed_id -> sample or null"
    )

    failed_feeds: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    def __repr__(self):
        return f"<VaultPerformance(vault_id={self.vault_id}, timestamp={self.timestamp}, ref={self.transaction_ref})>"


class PriceData(BaseModel):
    """Price sample observed during a recorded cycle."""

    __tablename__ = "price_data"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    feed_id: Mapped[str] = mapped_column(String(80), nullable=False)
    price: Mapped[float] = mapped_column(Float, nullable=False)
    confidence: Mapped[float] = mapped_column(Float, nullable=False)
    publish_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


Index('idx_vault_performance_vault_timestamp', VaultPerformance.vault_id, VaultPerformance.timestamp)
Index('idx_price_data_feed_timestamp', PriceData.feed_id, PriceData.timestamp)
