"""
Bounded retry with exponential backoff around the compound submitter.
"""

import asyncio
import random
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

import structlog

from compounder.core.exceptions import CompoundErrorKind
from compounder.services.compounding.types import (
    AttemptOutcome,
    CompoundAttempt,
    ConfirmationStatus,
    RetrySummary,
)


logger = structlog.get_logger(__name__)


@dataclass
class RetryPolicy:
    """Attempt ceiling and backoff shape."""
    max_attempts: int = 3
    base_delay_seconds: float = 2.0
    max_delay_seconds: float = 30.0

    def delay_for(self, attempt_number: int, rng: random.Random) -> float:
        """
        Delay before the attempt following `attempt_number` (1-based).

        Half of the exponential delay is fixed, the other half is jitter.
        """
        delay = min(self.max_delay_seconds, self.base_delay_seconds * (2 ** (attempt_number - 1)))
        return delay / 2 + rng.uniform(0, delay / 2)


class RetryController:
    """
    Runs submitter.compound() until success, a fatal error, or the
    attempt ceiling.

    NetworkError and Timeout are retried. Any other kind stops the cycle
    at once. When a retryable failure carries a transaction reference, the
    chain is asked whether that transaction landed. If it has not, the same
    signed transaction is handed back to the submitter, which resends it
    until its blockhash expires, so an ambiguous timeout never compounds
    twice.
    """

    def __init__(
        self,
        submitter,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)
    ):
        self.submitter = submitter
        self.policy = policy or RetryPolicy()
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._clock = clock
        self.logger = logger.bind(service="retry_controller")

    async def run(self, vault_address: str) -> RetrySummary:
        summary = RetrySummary(vault_address=vault_address)
        log = self.logger.bind(vault=vault_address)
        pending = None

        for attempt_number in range(1, self.policy.max_attempts + 1):
            attempt = CompoundAttempt(
                vault_address=vault_address,
                attempt_number=attempt_number,
                started_at=self._clock()
            )
            summary.attempts.append(attempt)
            attempt.resent = pending is not None

            result = await self.submitter.compound(vault_address, pending=pending)
            attempt.reference = result.reference

            if result.success:
                attempt.outcome = AttemptOutcome.SUCCESS
                summary.reference = result.reference
                summary.last_error_kind = None
                if attempt_number > 1:
                    log.info("Compound succeeded after retries", attempt=attempt_number, reference=result.reference)
                return summary

            attempt.error_kind = result.error_kind
            attempt.error_message = result.error_message
            summary.last_error_kind = result.error_kind

            if not result.error_kind.retryable:
                attempt.outcome = AttemptOutcome.FATAL_FAILURE
                log.error(
                    "Compound attempt failed with fatal error",
                    attempt=attempt_number,
                    error_kind=result.error_kind.value,
                    error=result.error_message
                )
                return summary

            attempt.outcome = AttemptOutcome.RETRYABLE_FAILURE

            if result.reference:
                confirmation = await self.submitter.check_confirmation(result.reference)
                if confirmation == ConfirmationStatus.LANDED:
                    attempt.outcome = AttemptOutcome.SUCCESS
                    attempt.recovered_by_confirmation = True
                    summary.reference = result.reference
                    summary.last_error_kind = None
                    log.info(
                        "Ambiguous attempt had landed, not resubmitting",
                        attempt=attempt_number,
                        reference=result.reference
                    )
                    return summary
                if confirmation == ConfirmationStatus.LANDED_WITH_ERROR:
                    attempt.outcome = AttemptOutcome.FATAL_FAILURE
                    attempt.error_kind = CompoundErrorKind.CONTRACT_REJECTED
                    summary.last_error_kind = CompoundErrorKind.CONTRACT_REJECTED
                    log.error("Ambiguous attempt landed with an error", attempt=attempt_number, reference=result.reference)
                    return summary

            # still-valid transaction of unknown outcome is resent, not replaced
            pending = result.prepared

            log.warning(
                "Compound attempt failed, will retry" if attempt_number < self.policy.max_attempts
                else "Compound attempt failed, retries exhausted",
                attempt=attempt_number,
                max_attempts=self.policy.max_attempts,
                error_kind=result.error_kind.value,
                error=result.error_message
            )

            if attempt_number < self.policy.max_attempts:
                delay = self.policy.delay_for(attempt_number, self._rng)
                await self._sleep(delay)

        return summary
