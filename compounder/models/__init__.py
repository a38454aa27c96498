"""
Database models for the vault compounder.
"""

from .base import Base, BaseModel, TimestampMixin
from .vault import Vault, VaultStatus
from .performance import VaultPerformance, PriceData

__all__ = [
    "Base",
    "BaseModel",
    "TimestampMixin",
    "Vault",
    "VaultStatus",
    "VaultPerformance",
    "PriceData",
]
