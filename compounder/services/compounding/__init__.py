"""
Compound cycle components.
"""

from .types import (
    CycleOutcome,
    CycleResult,
    PriceBatch,
    PriceSample,
    RecordStatus,
    VaultState,
)
from .registry import VaultRegistry
from .submitter import CompoundSubmitter
from .retry import RetryController, RetryPolicy
from .recorder import PerformanceRecorder, compute_metrics
from .vault_reader import VaultStateReader

__all__ = [
    "CycleOutcome",
    "CycleResult",
    "PriceBatch",
    "PriceSample",
    "RecordStatus",
    "VaultState",
    "VaultRegistry",
    "CompoundSubmitter",
    "RetryController",
    "RetryPolicy",
    "PerformanceRecorder",
    "compute_metrics",
    "VaultStateReader",
]
