"""
Transaction Confirmation

Submit a signed transaction and confirm it against the ledger with a bounded,
exponentially backed-off poll. Exhausting the poll never means "failed": the
transaction is reported as possibly still pending and the saga surfaces an
unknown outcome.

Author: Custody Team
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from custody.config.settings import Settings, get_settings
from custody.infrastructure.venue.base import (
    LedgerQueryService,
    LedgerUnavailableError,
    SubmissionStatus,
    TransactionStatus,
    TransactionSubmitter,
    VenueError,
    venue_error_from_code,
)
from custody.utils.logger import get_logger

logger = get_logger(__name__)


class ConfirmationOutcome(str, Enum):
    CONFIRMED = "confirmed"
    FAILED = "failed"
    POSSIBLY_PENDING = "possibly_pending"


@dataclass(frozen=True)
class ConfirmationPolicy:
    """Bounded exponential backoff for confirmation polling"""
    max_attempts: int = 8
    initial_delay: float = 1.0
    max_delay: float = 15.0
    backoff_factor: float = 2.0

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "ConfirmationPolicy":
        settings = settings or get_settings()
        return cls(
            max_attempts=settings.CONFIRMATION_MAX_ATTEMPTS,
            initial_delay=settings.CONFIRMATION_INITIAL_DELAY_SECONDS,
            max_delay=settings.CONFIRMATION_MAX_DELAY_SECONDS,
            backoff_factor=settings.CONFIRMATION_BACKOFF_FACTOR,
        )

    def delays(self):
        delay = self.initial_delay
        for _ in range(self.max_attempts):
            yield delay
            delay = min(delay * self.backoff_factor, self.max_delay)


@dataclass(frozen=True)
class ConfirmationResult:
    outcome: ConfirmationOutcome
    signature: Optional[str] = None
    error: Optional[VenueError] = None
    attempts: int = 0

    @property
    def confirmed(self) -> bool:
        return self.outcome == ConfirmationOutcome.CONFIRMED


class TransactionConfirmer:
    """
    Shared submit-and-confirm plumbing for every saga step.

    Args:
        submitter: Submission service
        ledger: Ledger query service (source of truth for confirmation)
        policy: Poll policy
        sleep: Awaitable sleep (injected so tests don't wait)
    """

    def __init__(
        self,
        submitter: TransactionSubmitter,
        ledger: LedgerQueryService,
        policy: Optional[ConfirmationPolicy] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.submitter = submitter
        self.ledger = ledger
        self.policy = policy or ConfirmationPolicy.from_settings()
        self._sleep = sleep

    async def submit(
        self,
        signed_tx: str,
        confirmation_hints: Dict[str, Any],
        operation_id: str = ""
    ) -> ConfirmationResult:
        """Submit once, then poll the ledger if the submitter couldn't confirm."""
        submission = await self.submitter.submit_and_confirm(signed_tx, confirmation_hints)

        if submission.status == SubmissionStatus.CONFIRMED:
            logger.info(f"[{operation_id}] Transaction {submission.signature} confirmed on submission")
            return ConfirmationResult(ConfirmationOutcome.CONFIRMED, signature=submission.signature)

        if submission.status == SubmissionStatus.FAILED:
            error = venue_error_from_code(submission.error_code, submission.error_message or "Submission failed")
            logger.warning(f"[{operation_id}] Submission failed: {error.raw_message}")
            return ConfirmationResult(ConfirmationOutcome.FAILED, signature=submission.signature, error=error)

        if not submission.signature:
            logger.warning(f"[{operation_id}] Submission pending without a signature; cannot poll")
            return ConfirmationResult(ConfirmationOutcome.POSSIBLY_PENDING)

        return await self.poll(submission.signature, operation_id)

    async def poll(self, signature: str, operation_id: str = "") -> ConfirmationResult:
        """
        Poll the ledger for a submitted transaction. Never resubmits.

        Ledger read failures count as an unconfirmed attempt.
        """
        attempts = 0
        for delay in self.policy.delays():
            await self._sleep(delay)
            attempts += 1

            try:
                reading = await self.ledger.get_transaction_status(signature)
            except LedgerUnavailableError as e:
                logger.warning(f"[{operation_id}] Confirmation attempt {attempts} for {signature}: ledger unavailable ({e})")
                continue

            if reading.status == TransactionStatus.CONFIRMED:
                logger.info(f"[{operation_id}] Transaction {signature} confirmed after {attempts} attempt(s)")
                return ConfirmationResult(ConfirmationOutcome.CONFIRMED, signature=signature, attempts=attempts)

            if reading.status == TransactionStatus.FAILED:
                error = venue_error_from_code(reading.error_code, reading.error_message or "Transaction failed")
                logger.warning(f"[{operation_id}] Transaction {signature} failed on-ledger: {error.raw_message}")
                return ConfirmationResult(
                    ConfirmationOutcome.FAILED, signature=signature, error=error, attempts=attempts
                )

            logger.debug(f"[{operation_id}] Transaction {signature} still {reading.status.value} (attempt {attempts})")

        logger.warning(
            f"[{operation_id}] Transaction {signature} not confirmed after {attempts} attempts; possibly still pending"
        )
        return ConfirmationResult(ConfirmationOutcome.POSSIBLY_PENDING, signature=signature, attempts=attempts)
