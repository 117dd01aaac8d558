"""
Lifecycle Operation Domain Model

Persistent record of one saga instance (bot delete, account reset, agent
wallet rotation). The record is the saga: current state, ordered step log,
the unsigned transaction waiting for the user's signature, and the terminal
result. Any process can resume an operation from this record.

Author: Custody Team
Last Updated: 2026-10-18
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from custody.infrastructure.venue.base import IntentKind, SigningAuthority
from custody.shared.exceptions import ErrorCategory
from custody.shared.models import DomainModel, PyObjectId


# ==================== ENUMS ====================

class OperationKind(str, Enum):
    DELETE = "delete"
    RESET_ACCOUNT = "reset_account"
    RESET_AGENT_WALLET = "reset_agent_wallet"


class TargetType(str, Enum):
    TRADING_BOT = "trading_bot"
    AGENT_WALLET = "agent_wallet"


class OperationStatus(str, Enum):
    """Operation status lifecycle"""
    IN_PROGRESS = "in_progress"
    AWAITING_SIGNATURE = "awaiting_signature"
    AWAITING_ACKNOWLEDGEMENT = "awaiting_acknowledgement"
    SUCCESS = "success"
    PARTIAL_SUCCESS = "partial_success"
    FAILED = "failed"
    UNKNOWN = "unknown"  # confirmation ambiguous: check the ledger
    ABANDONED = "abandoned"


TERMINAL_STATUSES = frozenset({
    OperationStatus.SUCCESS,
    OperationStatus.PARTIAL_SUCCESS,
    OperationStatus.FAILED,
    OperationStatus.UNKNOWN,
    OperationStatus.ABANDONED,
})

# An unknown outcome keeps its locks: funds may still be moving
LOCK_RELEASING_STATUSES = TERMINAL_STATUSES - {OperationStatus.UNKNOWN}

RETRYABLE_STATUSES = frozenset({
    OperationStatus.PARTIAL_SUCCESS,
    OperationStatus.FAILED,
})


class StepOutcome(str, Enum):
    """Execution step outcome"""
    OK = "ok"
    FAILED = "failed"
    SKIPPED = "skipped"
    REJECTED = "rejected"  # signer declined or timed out
    UNKNOWN = "unknown"    # submitted, confirmation exhausted
    PENDING = "pending"    # waiting on signature / acknowledgement


class WithdrawPolicy(str, Enum):
    """What the reset flow does with the main balance after sweeping"""
    FULL = "full"                  # withdraw to the external wallet
    ACCOUNT_ONLY = "account_only"  # leave funds in the agent wallet


# ==================== STEP LOG ====================

class StepError(BaseModel):
    category: ErrorCategory
    message: str
    code: Optional[str] = None
    retryable: bool = False
    hint: Optional[str] = None


class StepRecord(BaseModel):
    """Single step log entry"""
    step: str
    outcome: StepOutcome
    error: Optional[StepError] = None
    tx_signatures: List[str] = Field(default_factory=list)
    detail: Dict[str, Any] = Field(default_factory=dict)
    attempt: int = 1
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None


class PendingSignature(BaseModel):
    """
    An unsigned transaction presented to a signer.

    Persisted so a user-paced signature can arrive in another request, or
    after a restart, and still resume the same step.
    """
    step: str
    kind: IntentKind
    authority: SigningAuthority
    signer_address: str
    unsigned_tx: str
    confirmation_hints: Dict[str, Any] = Field(default_factory=dict)
    amount: Optional[Decimal] = None
    subaccount_index: Optional[int] = None
    requested_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# ==================== MAIN OPERATION MODEL ====================

class LifecycleOperation(DomainModel):
    """
    Lifecycle Operation Domain Model

    Usage:
        operation = LifecycleOperation(
            target_type=TargetType.TRADING_BOT,
            target_id=bot.id,
            owner_address=bot.owner_address,
            kind=OperationKind.DELETE,
            state="requested",
        )
        operation.record_step("sweep", StepOutcome.OK, tx_signatures=[sig])
        operation = await repository.save(operation)
    """

    id: Optional[PyObjectId] = Field(None, alias="_id")
    target_type: TargetType
    target_id: str
    owner_address: str
    agent_wallet_id: Optional[str] = None
    kind: OperationKind

    state: str
    status: OperationStatus = OperationStatus.IN_PROGRESS
    steps: List[StepRecord] = Field(default_factory=list)
    result: Optional[Dict[str, Any]] = None

    pending_signature: Optional[PendingSignature] = None
    policy: Optional[WithdrawPolicy] = None
    context: Dict[str, Any] = Field(default_factory=dict)
    lock_keys: List[str] = Field(default_factory=list)

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def transition(self, state: str, status: Optional[OperationStatus] = None) -> None:
        """Move to a new saga state (domain logic only - doesn't save)."""
        self.state = state
        if status is not None:
            self.status = status
        self.updated_at = datetime.now(timezone.utc)

    def record_step(
        self,
        step: str,
        outcome: StepOutcome,
        error: Optional[StepError] = None,
        tx_signatures: Optional[List[str]] = None,
        detail: Optional[Dict[str, Any]] = None,
    ) -> StepRecord:
        """
        Append a step outcome to the log.

        A step that already ran (earlier attempt) gets a new entry with a
        bumped attempt counter; the log is append-only.
        """
        previous = self.last_record(step)
        now = datetime.now(timezone.utc)
        record = StepRecord(
            step=step,
            outcome=outcome,
            error=error,
            tx_signatures=tx_signatures or [],
            detail=detail or {},
            attempt=(previous.attempt + 1) if previous else 1,
            started_at=now,
            completed_at=None if outcome == StepOutcome.PENDING else now,
        )
        self.steps.append(record)
        self.updated_at = now
        return record

    def last_record(self, step: str) -> Optional[StepRecord]:
        for record in reversed(self.steps):
            if record.step == step:
                return record
        return None

    def step_outcomes(self) -> Dict[str, StepOutcome]:
        """Latest outcome per step, in first-seen order."""
        outcomes: Dict[str, StepOutcome] = {}
        for record in self.steps:
            outcomes[record.step] = record.outcome
        return outcomes

    def finish(self, status: OperationStatus, result: Optional[Dict[str, Any]] = None) -> None:
        now = datetime.now(timezone.utc)
        self.status = status
        self.result = result
        self.pending_signature = None
        self.completed_at = now
        self.updated_at = now
