"""
Venue Collaborator Contracts

Abstract interfaces for the services the coordinator consumes but does not
implement: the ledger query service, the transaction build service, the
submission service and the signers.

Architecture Pattern: Strategy Pattern (HTTP clients in production,
in-memory fakes in tests)

Author: Custody Team
Last Updated: 2026-10-18
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional


# ==================== ENUMS ====================

class IntentKind(str, Enum):
    """Transaction intents the build service understands"""
    CLOSE_POSITION = "close_position"
    SETTLE_PNL = "settle_pnl"
    SWEEP_SUBACCOUNT = "sweep_subaccount"          # subaccount -> agent main balance
    WITHDRAW_TO_EXTERNAL = "withdraw_to_external"  # agent main balance -> external wallet
    DELETE_SUBACCOUNT = "delete_subaccount"        # reclaims the existence deposit
    TRANSFER_NATIVE = "transfer_native"            # native residual -> external wallet


class SigningAuthority(str, Enum):
    """Who has to sign a transaction"""
    USER = "user"     # external wallet owner, user-paced
    AGENT = "agent"   # custodial agent key


class SignatureStatus(str, Enum):
    SIGNED = "signed"
    REJECTED = "rejected"
    TIMED_OUT = "timed_out"
    DEFERRED = "deferred"  # user-paced: result arrives later through the API


class SubmissionStatus(str, Enum):
    CONFIRMED = "confirmed"
    STILL_PENDING = "still_pending"
    FAILED = "failed"


class TransactionStatus(str, Enum):
    CONFIRMED = "confirmed"
    PENDING = "pending"
    FAILED = "failed"
    NOT_FOUND = "not_found"


# ==================== VALUE TYPES ====================

@dataclass(frozen=True)
class SubaccountRef:
    """Address of a subaccount on the venue (index 0 is the main account)"""
    agent_address: str
    index: int


@dataclass(frozen=True)
class BalanceReading:
    """Subaccount balance read. A missing account is not a zero balance."""
    balance: Decimal
    exists: bool


@dataclass(frozen=True)
class OpenPosition:
    market: str
    base_size: Decimal
    entry_price: Decimal = Decimal("0")
    unrealized_pnl: Decimal = Decimal("0")


@dataclass(frozen=True)
class BuiltIntent:
    """Unsigned transaction plus whatever the submitter needs to confirm it"""
    kind: IntentKind
    unsigned_tx: str
    confirmation_hints: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SignatureRequest:
    operation_id: str
    kind: IntentKind
    unsigned_tx: str
    signer_address: str
    description: str = ""


@dataclass(frozen=True)
class SignatureResult:
    status: SignatureStatus
    signed_tx: Optional[str] = None
    reason: Optional[str] = None

    @classmethod
    def signed(cls, signed_tx: str) -> "SignatureResult":
        return cls(status=SignatureStatus.SIGNED, signed_tx=signed_tx)

    @classmethod
    def rejected(cls, reason: str = "User rejected the signature request") -> "SignatureResult":
        return cls(status=SignatureStatus.REJECTED, reason=reason)

    @classmethod
    def timed_out(cls, reason: str = "Signature request timed out") -> "SignatureResult":
        return cls(status=SignatureStatus.TIMED_OUT, reason=reason)

    @classmethod
    def deferred(cls) -> "SignatureResult":
        return cls(status=SignatureStatus.DEFERRED)


@dataclass(frozen=True)
class SubmissionResult:
    status: SubmissionStatus
    signature: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None


@dataclass(frozen=True)
class TransactionStatusReading:
    status: TransactionStatus
    error_code: Optional[str] = None
    error_message: Optional[str] = None


# ==================== EXCEPTIONS ====================

class VenueError(Exception):
    """
    Base exception for venue-side failures.

    Attributes:
        code: Venue error code (as reported)
        raw_message: Venue message, kept verbatim
        retryable: Whether retrying without user action can succeed
    """

    retryable = False
    classification = "Venue rejected the transaction"

    def __init__(self, raw_message: str, code: Optional[str] = None):
        self.raw_message = raw_message
        self.code = code
        super().__init__(raw_message)


class InsufficientCollateralError(VenueError):
    """Not enough collateral for the operation"""
    classification = "Insufficient collateral"


class MarketPausedError(VenueError):
    """Market or venue operations are paused"""
    retryable = True
    classification = "Market is paused"


class StalePriceFeedError(VenueError):
    """Oracle / price feed is stale or unavailable"""
    retryable = True
    classification = "Price feed is stale"


class ReduceOnlyModeError(VenueError):
    """Market only accepts reduce-only orders"""
    classification = "Market is in reduce-only mode"


class AccountNotInitializedError(VenueError):
    """Target account does not exist on the venue"""
    classification = "Account is not initialized"


class LedgerUnavailableError(Exception):
    """Ledger query failed (transient read failure)"""
    pass


class TransactionBuildError(Exception):
    """Transaction build service could not produce an intent"""
    pass


# Venue error codes -> typed exception
VENUE_ERROR_CODES = {
    "insufficient_collateral": InsufficientCollateralError,
    "market_paused": MarketPausedError,
    "stale_price_feed": StalePriceFeedError,
    "oracle_stale": StalePriceFeedError,
    "reduce_only": ReduceOnlyModeError,
    "account_not_initialized": AccountNotInitializedError,
}


def venue_error_from_code(code: Optional[str], message: str) -> VenueError:
    """Build the typed venue exception for a reported error code."""
    error_cls = VENUE_ERROR_CODES.get((code or "").lower(), VenueError)
    return error_cls(message or "Venue error", code=code)


# ==================== COLLABORATOR INTERFACES ====================

class LedgerQueryService(ABC):
    """
    Read-only, eventually consistent view of balances on the venue.
    """

    @abstractmethod
    async def query_balance(self, ref: SubaccountRef) -> BalanceReading:
        """
        Get a subaccount balance.

        Must distinguish "zero balance" from "account does not exist".

        Raises:
            LedgerUnavailableError: If the read fails
        """
        pass

    @abstractmethod
    async def query_main_balance(self, agent_address: str) -> Decimal:
        """Get the agent wallet's main (available) balance."""
        pass

    @abstractmethod
    async def query_native_balance(self, address: str) -> Decimal:
        """Get the native-asset balance held directly by an address."""
        pass

    @abstractmethod
    async def list_subaccounts(self, agent_address: str) -> List[int]:
        """List existing subaccount indexes (excluding the main account)."""
        pass

    @abstractmethod
    async def list_open_positions(self, ref: SubaccountRef) -> List[OpenPosition]:
        """List open positions on a subaccount."""
        pass

    @abstractmethod
    async def get_unsettled_pnl(self, ref: SubaccountRef) -> Decimal:
        """Get unrealized, unsettled P&L on a subaccount."""
        pass

    @abstractmethod
    async def get_transaction_status(self, signature: str) -> TransactionStatusReading:
        """Get the ledger's view of a submitted transaction."""
        pass


class TransactionBuildService(ABC):
    """Builds unsigned transactions. Deterministic for identical params."""

    @abstractmethod
    async def build_intent(self, kind: IntentKind, params: Dict[str, Any]) -> BuiltIntent:
        """
        Build an unsigned transaction for an intent.

        Raises:
            TransactionBuildError: If the intent cannot be built
            VenueError: If the venue refuses the intent up front
        """
        pass


class ExternalSigner(ABC):
    """Signs a presented transaction; may reject, time out or defer."""

    @abstractmethod
    async def sign(self, request: SignatureRequest) -> SignatureResult:
        pass


class TransactionSubmitter(ABC):
    """Broadcasts a signed transaction and reports the first confirmation view."""

    @abstractmethod
    async def submit_and_confirm(
        self,
        signed_tx: str,
        confirmation_hints: Dict[str, Any]
    ) -> SubmissionResult:
        pass
