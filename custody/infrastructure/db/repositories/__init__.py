"""
Repositories

Motor-backed persistence for the custody domain models.
"""

from custody.infrastructure.db.repositories.agent_wallet_repository import AgentWalletRepository
from custody.infrastructure.db.repositories.lifecycle_repository import LifecycleOperationRepository
from custody.infrastructure.db.repositories.reconciliation_repository import ReconciliationEventRepository
from custody.infrastructure.db.repositories.subaccount_repository import (
    OrphanedSubaccountRepository,
    SubaccountRepository,
)
from custody.infrastructure.db.repositories.trading_bot_repository import TradingBotRepository

__all__ = [
    "AgentWalletRepository",
    "LifecycleOperationRepository",
    "OrphanedSubaccountRepository",
    "ReconciliationEventRepository",
    "SubaccountRepository",
    "TradingBotRepository",
]
