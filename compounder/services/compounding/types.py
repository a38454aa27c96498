"""
Types for compound cycle processing.
"""

from datetime import datetime
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, List, Dict

from compounder.core.exceptions import CompoundErrorKind
from compounder.models.vault import VaultStatus
from compounder.services.solana_client import PreparedTransaction


class AttemptOutcome(Enum):
    """Outcome of a single compound attempt."""
    PENDING = "pending"
    SUCCESS = "success"
    RETRYABLE_FAILURE = "retryable_failure"
    FATAL_FAILURE = "fatal_failure"


class CycleOutcome(Enum):
    """Final outcome of one vault's compound cycle."""
    SUCCESS = "success"
    FAILED = "failed"
    DEGRADED = "degraded"
    CANCELLED = "cancelled"


@dataclass
class VaultState:
    """In-memory registry view of a vault."""
    address: str
    interval_seconds: int
    vault_id: Optional[int] = None
    last_compounded_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None
    status: VaultStatus = VaultStatus.IDLE
    last_transaction_ref: Optional[str] = None
    last_error: Optional[str] = None
    consecutive_failures: int = 0

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "vault_id": self.vault_id,
            "interval_seconds": self.interval_seconds,
            "status": self.status.value,
            "last_compounded_at": self.last_compounded_at.isoformat() if self.last_compounded_at else None,
            "last_attempt_at": self.last_attempt_at.isoformat() if self.last_attempt_at else None,
            "last_transaction_ref": self.last_transaction_ref,
            "last_error": self.last_error,
            "consecutive_failures": self.consecutive_failures,
        }


@dataclass
class SubmitResult:
    """Result of one submitter call."""
    success: bool
    reference: Optional[str] = None
    error_kind: Optional[CompoundErrorKind] = None
    error_message: str = ""
    slot: Optional[int] = None
    events: List[str] = field(default_factory=list)
    prepared: Optional[PreparedTransaction] = None

    @classmethod
    def ok(cls, reference: str, slot: Optional[int] = None, events: Optional[List[str]] = None) -> "SubmitResult":
        return cls(success=True, reference=reference, slot=slot, events=events or [])

    @classmethod
    def failed(
        cls,
        kind: CompoundErrorKind,
        message: str,
        reference: Optional[str] = None,
        prepared: Optional[PreparedTransaction] = None
    ) -> "SubmitResult":
        return cls(success=False, reference=reference, error_kind=kind, error_message=message, prepared=prepared)


class ConfirmationStatus(Enum):
    """Whether an earlier transaction reference landed on chain."""
    LANDED = "landed"
    LANDED_WITH_ERROR = "landed_with_error"
    NOT_FOUND = "not_found"
    UNKNOWN = "unknown"


@dataclass
class CompoundAttempt:
    """One submission attempt inside a cycle."""
    vault_address: str
    attempt_number: int
    started_at: datetime
    outcome: AttemptOutcome = AttemptOutcome.PENDING
    reference: Optional[str] = None
    error_kind: Optional[CompoundErrorKind] = None
    error_message: str = ""
    recovered_by_confirmation: bool = False
    resent: bool = False


@dataclass
class RetrySummary:
    """Everything the retry controller did for one cycle."""
    vault_address: str
    attempts: List[CompoundAttempt] = field(default_factory=list)
    reference: Optional[str] = None
    last_error_kind: Optional[CompoundErrorKind] = None

    @property
    def succeeded(self) -> bool:
        return self.reference is not None

    @property
    def attempt_count(self) -> int:
        return len(self.attempts)


@dataclass(frozen=True)
class PriceSample:
    """A single oracle price observation."""
    feed_id: str
    price: float
    confidence: float
    timestamp: datetime

    def to_dict(self) -> dict:
        return {
            "price": self.price,
            "confidence": self.confidence,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class PriceBatch:
    """Result of a batched price query; failing feeds map to None."""
    samples: Dict[str, Optional[PriceSample]] = field(default_factory=dict)
    failures: Dict[str, str] = field(default_factory=dict)

    def get(self, feed_id: Optional[str]) -> Optional[PriceSample]:
        if feed_id is None:
            return None
        return self.samples.get(feed_id)

    @property
    def failed_feeds(self) -> List[str]:
        return sorted(self.failures)

    def to_annotation(self) -> Dict[str, Optional[dict]]:
        return {
            feed_id: sample.to_dict() if sample else None
            for feed_id, sample in self.samples.items()
        }


@dataclass(frozen=True)
class VaultAccountData:
    """Decoded vault account state."""
    address: str
    total_assets: int
    total_shares: int
    last_compound_ts: int
    decimals: int

    @property
    def total_assets_ui(self) -> float:
        return self.total_assets / (10 ** self.decimals)


@dataclass
class VaultMetrics:
    """Performance figures derived for one compound cycle."""
    tvl: Optional[float] = None
    tvl_usd: Optional[float] = None
    yield_rate: Optional[float] = None
    amount_earned: Optional[int] = None


class RecordStatus(Enum):
    """Result of a recorder call."""
    RECORDED = "recorded"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"
    FAILED = "failed"

    @property
    def durable(self) -> bool:
        return self in (RecordStatus.RECORDED, RecordStatus.DUPLICATE)


@dataclass
class CycleResult:
    """Summary of one vault cycle as seen by the scheduler."""
    vault_address: str
    started_at: datetime
    outcome: CycleOutcome
    attempts: int = 0
    reference: Optional[str] = None
    error_kind: Optional[CompoundErrorKind] = None
    record_status: Optional[RecordStatus] = None
    failed_feeds: List[str] = field(default_factory=list)
    duration_seconds: float = 0.0
