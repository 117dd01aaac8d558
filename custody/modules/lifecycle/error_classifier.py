"""
Error Classifier

Maps failures raised inside a saga step onto the error taxonomy recorded in
the step log. Typed exceptions decide the category and retryability; the
string heuristics over raw venue messages only add a hint for the user.
"""

from typing import Optional

from custody.domain.models.lifecycle import StepError
from custody.infrastructure.venue.base import (
    LedgerUnavailableError,
    TransactionBuildError,
    VenueError,
)
from custody.shared.exceptions import ErrorCategory, PreconditionError

_RATE_LIMIT_MARKERS = (
    "-32429",
    "rate limit",
    "429",
    "too many requests",
    "timeout",
    "timed out",
    "please wait",
)

_PRICE_FEED_MARKERS = (
    "oraclenotfound",
    "oracle not found",
    "invalid oracle",
    "invalidoracle",
    "stale",
    "price feed",
)


def is_rate_limit_message(message: str) -> bool:
    lowered = (message or "").lower()
    return any(marker in lowered for marker in _RATE_LIMIT_MARKERS)


def is_transient_message(message: str) -> bool:
    """Price-feed hiccups and rate limits usually clear up within seconds."""
    lowered = (message or "").lower()
    return is_rate_limit_message(lowered) or any(marker in lowered for marker in _PRICE_FEED_MARKERS)


def explain_venue_message(message: str) -> Optional[str]:
    """
    Turn a raw venue message into a short user-facing hint.

    Returns None when nothing useful can be said.
    """
    lowered = (message or "").lower()
    if any(marker in lowered for marker in _PRICE_FEED_MARKERS):
        return "The market's price feed is temporarily unavailable. Try again in a few seconds."
    if is_rate_limit_message(lowered):
        return "The venue is rate limiting requests. Try again shortly."
    if "insufficient" in lowered and ("collateral" in lowered or "margin" in lowered):
        return "Not enough collateral on the account for this transaction."
    if "paused" in lowered:
        return "The market is paused. Try again once it resumes."
    if "reduce only" in lowered or "reduce-only" in lowered or "reduceonly" in lowered:
        return "The market only accepts orders that reduce a position."
    return None


def classify_error(exc: Exception) -> StepError:
    """Build the step-log error for an exception raised by a step."""
    if isinstance(exc, VenueError):
        # Untyped venue failures fall back to the message heuristics for retryability
        retryable = exc.retryable or (type(exc) is VenueError and is_transient_message(exc.raw_message))
        return StepError(
            category=ErrorCategory.VENUE,
            code=exc.code or type(exc).__name__,
            message=exc.raw_message,
            retryable=retryable,
            hint=explain_venue_message(exc.raw_message) or exc.classification,
        )

    if isinstance(exc, LedgerUnavailableError):
        return StepError(
            category=ErrorCategory.LEDGER,
            code="ledger_unavailable",
            message=str(exc),
            retryable=True,
            hint="Balances could not be read right now. Retry the operation.",
        )

    if isinstance(exc, TransactionBuildError):
        message = str(exc)
        return StepError(
            category=ErrorCategory.VENUE,
            code="build_failed",
            message=message,
            retryable=is_transient_message(message),
            hint=explain_venue_message(message),
        )

    if isinstance(exc, PreconditionError):
        return StepError(
            category=ErrorCategory.PRECONDITION,
            code=exc.code,
            message=exc.message,
            retryable=False,
        )

    return StepError(
        category=ErrorCategory.INTERNAL,
        code=type(exc).__name__,
        message=str(exc),
        retryable=False,
    )


def signer_error(reason: Optional[str], timed_out: bool = False) -> StepError:
    return StepError(
        category=ErrorCategory.SIGNER,
        code="signature_timed_out" if timed_out else "signature_rejected",
        message=reason or ("Signature request timed out" if timed_out else "Signature rejected"),
        retryable=True,
    )


def ambiguous_confirmation_error(signature: Optional[str]) -> StepError:
    return StepError(
        category=ErrorCategory.CONFIRMATION_AMBIGUOUS,
        code="confirmation_exhausted",
        message=f"Transaction {signature or '(no signature)'} was submitted but not confirmed",
        retryable=False,
        hint="Unknown, check ledger. Re-check the operation instead of retrying it.",
    )
