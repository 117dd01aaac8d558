"""
Domain Models

Pure Pydantic domain models. No database dependencies; persistence lives in
custody.infrastructure.db.repositories.
"""

from custody.domain.models.agent_wallet import AgentWallet, AgentWalletStatus
from custody.domain.models.capital import CapitalSnapshot, SubaccountEntry
from custody.domain.models.lifecycle import (
    LifecycleOperation,
    OperationKind,
    OperationStatus,
    PendingSignature,
    StepError,
    StepOutcome,
    StepRecord,
    TargetType,
    WithdrawPolicy,
)
from custody.domain.models.reconciliation import DriftField, ReconciliationEvent
from custody.domain.models.subaccount import OrphanedSubaccount, OrphanStatus, SubaccountAssociation
from custody.domain.models.trading_bot import BotStats, TradingBot

__all__ = [
    "AgentWallet",
    "AgentWalletStatus",
    "BotStats",
    "CapitalSnapshot",
    "DriftField",
    "LifecycleOperation",
    "OperationKind",
    "OperationStatus",
    "OrphanedSubaccount",
    "OrphanStatus",
    "PendingSignature",
    "ReconciliationEvent",
    "StepError",
    "StepOutcome",
    "StepRecord",
    "SubaccountAssociation",
    "SubaccountEntry",
    "TargetType",
    "TradingBot",
    "WithdrawPolicy",
]
