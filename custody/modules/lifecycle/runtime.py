"""
Lifecycle Runtime

Everything a saga needs to run, bundled so the sagas, the Celery tasks and
the API share one wiring point.
"""

from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional

from custody.config.settings import Settings, get_settings
from custody.domain.models.agent_wallet import AgentWallet
from custody.domain.models.lifecycle import LifecycleOperation
from custody.infrastructure.db.repositories import (
    AgentWalletRepository,
    LifecycleOperationRepository,
    OrphanedSubaccountRepository,
    SubaccountRepository,
    TradingBotRepository,
)
from custody.infrastructure.venue.base import (
    ExternalSigner,
    LedgerQueryService,
    TransactionBuildService,
)
from custody.infrastructure.venue.signers import AgentKeySigner
from custody.modules.lifecycle.confirmation import TransactionConfirmer
from custody.modules.lifecycle.operation_lock import OperationLockService
from custody.utils.encryption import KeyMaterialEncryption
from custody.utils.logger import get_logger

logger = get_logger(__name__)

OperationHook = Callable[[LifecycleOperation], Awaitable[None]]


@dataclass
class LifecycleRuntime:
    """
    Collaborators and persistence shared by every saga.

    after_operation hooks run when an operation reaches a terminal status
    (on-demand snapshot refresh and reconciliation).
    """

    agent_wallets: AgentWalletRepository
    trading_bots: TradingBotRepository
    subaccounts: SubaccountRepository
    orphans: OrphanedSubaccountRepository
    operations: LifecycleOperationRepository
    locks: OperationLockService
    ledger: LedgerQueryService
    builder: TransactionBuildService
    confirmer: TransactionConfirmer
    user_signer: ExternalSigner
    encryption: Optional[KeyMaterialEncryption] = None
    settings: Settings = field(default_factory=get_settings)
    agent_signer_factory: Optional[Callable[[AgentWallet], ExternalSigner]] = None
    after_operation: List[OperationHook] = field(default_factory=list)

    def agent_signer(self, wallet: AgentWallet) -> ExternalSigner:
        if self.agent_signer_factory is not None:
            return self.agent_signer_factory(wallet)
        return AgentKeySigner(wallet.private_key_encrypted, self.encryption)

    async def notify_finished(self, operation: LifecycleOperation) -> None:
        """Run after-operation hooks. A failing hook never changes the operation's outcome."""
        for hook in self.after_operation:
            try:
                await hook(operation)
            except Exception as e:
                logger.error(f"[{operation.id}] After-operation hook failed: {str(e)}", exc_info=True)
