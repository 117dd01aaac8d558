"""
Pytest configuration and shared fixtures.

Every test runs against in-memory fakes: FakeDatabase stands in for MongoDB
behind the real repositories, and the venue collaborators are simulated by
FakeLedger / FakeBuilder / FakeSubmitter.

Author: Custody Team
Last Updated: 2026-10-18
"""

from decimal import Decimal
from typing import Optional

import pytest
from cryptography.fernet import Fernet

from custody.config.settings import Settings
from custody.domain.models.trading_bot import TradingBot
from custody.infrastructure.db.repositories import (
    AgentWalletRepository,
    LifecycleOperationRepository,
    OrphanedSubaccountRepository,
    ReconciliationEventRepository,
    SubaccountRepository,
    TradingBotRepository,
)
from custody.infrastructure.venue.signers import DeferredUserSigner
from custody.modules.capital.aggregator import EquityAggregator
from custody.modules.capital.snapshot_store import InMemorySnapshotStore
from custody.modules.lifecycle.confirmation import ConfirmationPolicy, TransactionConfirmer
from custody.modules.lifecycle.operation_lock import OperationLockService
from custody.modules.lifecycle.runtime import LifecycleRuntime
from custody.modules.lifecycle.service import CustodyCoordinator
from custody.modules.reconciliation.poller import ReconciliationPoller
from custody.utils.encryption import KeyMaterialEncryption
from tests.fakes import OWNER, FakeBuilder, FakeDatabase, FakeLedger, FakeSubmitter


async def no_sleep(delay: float) -> None:
    return None


# ==================== FIXTURES ====================

@pytest.fixture
def settings():
    """Settings with a throwaway encryption key and short retry limits"""
    return Settings(
        ENCRYPTION_KEY=Fernet.generate_key().decode(),
        CONFIRMATION_MAX_ATTEMPTS=3,
        ORPHAN_CLEANUP_MAX_RETRIES=2,
    )


@pytest.fixture
def encryption(settings):
    return KeyMaterialEncryption(settings.ENCRYPTION_KEY)


@pytest.fixture
def db():
    return FakeDatabase()


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def builder():
    return FakeBuilder()


@pytest.fixture
def submitter(ledger, builder):
    return FakeSubmitter(ledger, builder)


@pytest.fixture
def confirmation_policy():
    return ConfirmationPolicy(max_attempts=3, initial_delay=0, max_delay=0)


@pytest.fixture
def runtime(db, ledger, builder, submitter, encryption, settings, confirmation_policy):
    """Lifecycle runtime wired to the fakes"""
    return LifecycleRuntime(
        agent_wallets=AgentWalletRepository(db),
        trading_bots=TradingBotRepository(db),
        subaccounts=SubaccountRepository(db),
        orphans=OrphanedSubaccountRepository(db),
        operations=LifecycleOperationRepository(db),
        locks=OperationLockService(db),
        ledger=ledger,
        builder=builder,
        confirmer=TransactionConfirmer(submitter, ledger, confirmation_policy, sleep=no_sleep),
        user_signer=DeferredUserSigner(),
        encryption=encryption,
        settings=settings,
    )


@pytest.fixture
def snapshot_store():
    return InMemorySnapshotStore()


@pytest.fixture
def aggregator(runtime, snapshot_store, settings):
    return EquityAggregator(
        runtime.agent_wallets, runtime.trading_bots, runtime.subaccounts,
        runtime.ledger, runtime.locks, snapshot_store, settings,
    )


@pytest.fixture
def reconciliation_events(db):
    return ReconciliationEventRepository(db)


@pytest.fixture
def poller(runtime, reconciliation_events, settings):
    return ReconciliationPoller(
        runtime.trading_bots, runtime.agent_wallets, reconciliation_events,
        runtime.ledger, runtime.locks, settings,
    )


@pytest.fixture
def coordinator(runtime, aggregator, poller):
    return CustodyCoordinator(runtime, aggregator, poller)


@pytest.fixture
async def wallet(coordinator):
    """The owner's agent wallet"""
    return await coordinator.get_or_create_agent_wallet(OWNER)


@pytest.fixture
def make_bot(coordinator, ledger):
    """
    Factory: register a bot and fund its subaccount on the ledger.

    Usage:
        bot = await make_bot(Decimal("120"))
    """
    async def factory(
        balance: Optional[Decimal] = Decimal("0"),
        name: str = "SOL momentum",
        market: str = "SOL-PERP",
        owner: str = OWNER,
        is_active: bool = True,
    ) -> TradingBot:
        bot = await coordinator.create_trading_bot(owner, name=name, market=market, is_active=is_active)
        if balance is not None:
            wallet = await coordinator.get_or_create_agent_wallet(owner)
            ledger.fund_subaccount(wallet.public_address, bot.subaccount_index, Decimal(balance))
        return bot

    return factory


@pytest.fixture
def make_legacy_bot(runtime):
    """Factory: a bot from the superseded custody scheme (no subaccount)"""
    async def factory(owner: str = OWNER, legacy_address: str = "LegacyBotAddress999") -> TradingBot:
        bot = TradingBot(owner_address=owner, name="Old bot", market="BTC-PERP", legacy_address=legacy_address)
        return await runtime.trading_bots.save(bot)

    return factory
