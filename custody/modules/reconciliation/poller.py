"""
Reconciliation Poller

Compares each active bot's cached figures with what the ledger says and
emits a ReconciliationEvent for every mismatch beyond tolerance. Read-only:
it never writes to the ledger or to the bot record.

Bots that are the target of an in-flight lifecycle operation are skipped for
the cycle; their ledger state is expected to be moving.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Awaitable, Callable, Dict, List, Optional

from custody.config.settings import Settings, get_settings
from custody.domain.models.lifecycle import LifecycleOperation, TargetType
from custody.domain.models.reconciliation import DriftField, ReconciliationEvent
from custody.domain.models.trading_bot import TradingBot
from custody.infrastructure.db.repositories import (
    AgentWalletRepository,
    ReconciliationEventRepository,
    TradingBotRepository,
)
from custody.infrastructure.venue.base import LedgerQueryService, LedgerUnavailableError, SubaccountRef
from custody.modules.lifecycle.operation_lock import OperationLockService, lock_key
from custody.utils.logger import get_logger

logger = get_logger(__name__)

ReconciliationListener = Callable[[ReconciliationEvent], Awaitable[None]]


class ReconciliationPoller:
    """Drift detector for trading bots"""

    def __init__(
        self,
        trading_bots: TradingBotRepository,
        agent_wallets: AgentWalletRepository,
        events: ReconciliationEventRepository,
        ledger: LedgerQueryService,
        locks: OperationLockService,
        settings: Optional[Settings] = None,
    ):
        self.trading_bots = trading_bots
        self.agent_wallets = agent_wallets
        self.events = events
        self.ledger = ledger
        self.locks = locks
        self.settings = settings or get_settings()
        self._listeners: List[ReconciliationListener] = []
        self._last_checked: Dict[str, datetime] = {}

    def add_listener(self, listener: ReconciliationListener) -> None:
        self._listeners.append(listener)

    def last_checked(self, bot_id: str) -> Optional[datetime]:
        return self._last_checked.get(bot_id)

    def is_stale(self, bot_id: str) -> bool:
        checked = self._last_checked.get(bot_id)
        if checked is None:
            return True
        age = datetime.now(timezone.utc) - checked
        return age > timedelta(seconds=self.settings.RECONCILE_STALE_SECONDS)

    # ==================== CYCLES ====================

    async def run_cycle(self) -> Dict[str, int]:
        """Reconcile every active bot once."""
        checked = 0
        skipped = 0
        drifted = 0

        for bot in await self.trading_bots.find_active():
            events = await self.reconcile_bot(bot)
            if events is None:
                skipped += 1
                continue
            checked += 1
            if events:
                drifted += 1

        logger.info(f"Reconciliation cycle: {checked} checked, {skipped} skipped, {drifted} with drift")
        return {"checked": checked, "skipped": skipped, "drifted": drifted}

    async def reconcile_if_stale(self, bot_id: str) -> Optional[List[ReconciliationEvent]]:
        if not self.is_stale(bot_id):
            return []
        bot = await self.trading_bots.find_by_id(bot_id)
        if bot is None or bot.is_deleted:
            return []
        return await self.reconcile_bot(bot)

    async def reconcile_after_operation(self, operation: LifecycleOperation) -> None:
        """After-operation hook: check the bots the operation touched."""
        if operation.target_type == TargetType.TRADING_BOT:
            bot = await self.trading_bots.find_by_id(operation.target_id)
            bots = [bot] if bot is not None and not bot.is_deleted else []
        else:
            bots = await self.trading_bots.find_by_agent_wallet(operation.target_id)

        for bot in bots:
            await self.reconcile_bot(bot)

    # ==================== SINGLE BOT ====================

    async def reconcile_bot(self, bot: TradingBot) -> Optional[List[ReconciliationEvent]]:
        """
        Check one bot against the ledger.

        Returns:
            The emitted events, or None if the bot was skipped this cycle
        """
        if not bot.has_subaccount:
            return None

        held = await self.locks.holders([
            lock_key(TargetType.TRADING_BOT, bot.id),
            lock_key(TargetType.AGENT_WALLET, bot.agent_wallet_id),
        ])
        if held:
            logger.debug(f"Bot {bot.id} is in flight ({', '.join(held.values())}); skipping")
            return None

        wallet = await self.agent_wallets.find_by_id(bot.agent_wallet_id)
        if wallet is None:
            logger.warning(f"Bot {bot.id} references missing agent wallet {bot.agent_wallet_id}")
            return None

        ref = SubaccountRef(agent_address=wallet.public_address, index=bot.subaccount_index)
        stats = bot.cached_stats

        try:
            reading = await self.ledger.query_balance(ref)
            positions = await self.ledger.list_open_positions(ref) if reading.exists else []
        except LedgerUnavailableError as e:
            logger.warning(f"Reconciliation of bot {bot.id} skipped, ledger unavailable: {e}")
            return None

        drift: List[ReconciliationEvent] = []

        if not reading.exists:
            drift.append(self._event(bot, DriftField.SUBACCOUNT_MISSING, stats.expected_balance, Decimal("0")))
        else:
            position_size = sum((position.base_size for position in positions), Decimal("0"))
            if abs(position_size - stats.position_base_size) > self.settings.RECONCILE_SIZE_TOLERANCE:
                drift.append(self._event(bot, DriftField.POSITION_SIZE, stats.position_base_size, position_size))
            if abs(reading.balance - stats.expected_balance) > self.settings.RECONCILE_BALANCE_TOLERANCE:
                drift.append(self._event(bot, DriftField.BALANCE, stats.expected_balance, reading.balance))

        self._last_checked[bot.id] = datetime.now(timezone.utc)

        for event in drift:
            logger.warning(
                f"Reconciliation mismatch on bot {bot.id} ({event.kind.value}): "
                f"cached={event.cached_value} ledger={event.ledger_value}"
            )
            await self.events.save(event)
            await self._notify(event)
        return drift

    def _event(self, bot: TradingBot, kind: DriftField, cached: Decimal, ledger: Decimal) -> ReconciliationEvent:
        return ReconciliationEvent(
            trading_bot_id=bot.id,
            agent_wallet_id=bot.agent_wallet_id,
            subaccount_index=bot.subaccount_index,
            kind=kind,
            cached_value=cached,
            ledger_value=ledger,
            difference=ledger - cached,
        )

    async def _notify(self, event: ReconciliationEvent) -> None:
        for listener in self._listeners:
            try:
                await listener(event)
            except Exception as e:
                logger.error(f"Reconciliation listener failed for bot {event.trading_bot_id}: {str(e)}", exc_info=True)
