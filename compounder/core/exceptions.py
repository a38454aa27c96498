"""
Custom exception classes for the application.
Provides structured error handling across all modules.
"""

from enum import Enum
from typing import Any, Optional, Dict


class CompounderException(Exception):
    """Base exception class for the vault compounder."""

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)


class ConfigurationError(CompounderException):
    """Raised when there's a configuration error."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "CONFIGURATION_ERROR", details)


class StoreError(CompounderException):
    """Raised when the persistent store fails after retries."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "STORE_ERROR", details)


class DuplicateRecordError(StoreError):
    """Raised when a performance record for a transaction already exists."""

    def __init__(self, reference: str):
        super().__init__(
            f"Performance record already stored for transaction: {reference}",
            {"reference": reference}
        )
        self.code = "DUPLICATE_RECORD"


class OracleError(CompounderException):
    """Raised when a price feed cannot be read."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "ORACLE_ERROR", details)


class SchedulerError(CompounderException):
    """Raised when there's a scheduler error."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "SCHEDULER_ERROR", details)


class VaultNotFoundError(CompounderException):
    """Raised when a vault is not registered."""

    def __init__(self, address: str):
        super().__init__(
            f"Vault not found: {address}",
            "NOT_FOUND",
            {"address": address}
        )


class CompoundErrorKind(str, Enum):
    """Closed set of outcomes a compound submission can fail with."""
    NETWORK_ERROR = "network_error"
    TIMEOUT = "timeout"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    CONTRACT_REJECTED = "contract_rejected"
    SIGNING_ERROR = "signing_error"

    @property
    def retryable(self) -> bool:
        return self in (CompoundErrorKind.NETWORK_ERROR, CompoundErrorKind.TIMEOUT)


class CompoundError(CompounderException):
    """Raised inside the submitter; always carries a CompoundErrorKind."""

    def __init__(
        self,
        kind: CompoundErrorKind,
        message: str,
        reference: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, kind.value.upper(), details)
        self.kind = kind
        self.reference = reference


class SigningError(CompoundError):
    """Raised when the signing capability cannot produce a signature."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(CompoundErrorKind.SIGNING_ERROR, message, details=details)
