"""
Trading Bots Service Layer

Bot registration: every new bot gets its own subaccount index under the
owner's agent wallet.

Author: Custody Team
Last Updated: 2026-10-18
"""

from typing import List, Optional

from bson import ObjectId
from pymongo.errors import DuplicateKeyError

from custody.domain.models.agent_wallet import AgentWallet
from custody.domain.models.lifecycle import TargetType
from custody.domain.models.subaccount import SubaccountAssociation
from custody.domain.models.trading_bot import TradingBot
from custody.infrastructure.db.repositories import SubaccountRepository, TradingBotRepository
from custody.infrastructure.venue.base import LedgerQueryService, LedgerUnavailableError
from custody.modules.lifecycle.operation_lock import OperationLockService, lock_key
from custody.shared.exceptions import DatabaseError
from custody.utils.logger import get_logger

logger = get_logger(__name__)

MAX_INDEX_ALLOCATION_ATTEMPTS = 5


async def next_free_index(
    subaccounts: SubaccountRepository,
    ledger: LedgerQueryService,
    wallet: AgentWallet
) -> int:
    """
    Smallest subaccount index >= 1 used neither in the association table nor
    on the ledger. Index 0 is the wallet's main account.
    """
    taken = {row.index for row in await subaccounts.find_by_agent_wallet(wallet.id)}
    try:
        taken.update(await ledger.list_subaccounts(wallet.public_address))
    except LedgerUnavailableError as e:
        logger.warning(f"Could not list subaccounts of wallet {wallet.id}, allocating from known rows: {e}")

    index = 1
    while index in taken:
        index += 1
    return index


async def create_trading_bot(
    trading_bots: TradingBotRepository,
    subaccounts: SubaccountRepository,
    ledger: LedgerQueryService,
    locks: OperationLockService,
    wallet: AgentWallet,
    name: str,
    market: str,
    leverage: int = 1,
    is_active: bool = False
) -> TradingBot:
    """
    Register a bot and reserve its subaccount index.

    The agent wallet's lock key is held for the allocation, so a reset or
    rotation can't start between reserving the index and saving the bot.

    Raises:
        OperationInProgressError: The agent wallet is being reset or rotated
        DatabaseError: No free index could be reserved
    """
    bot_id = str(ObjectId())
    wallet_key = lock_key(TargetType.AGENT_WALLET, wallet.id)
    registration_id = f"bot-registration:{bot_id}"

    await locks.acquire([wallet_key], registration_id)
    try:
        for attempt in range(1, MAX_INDEX_ALLOCATION_ATTEMPTS + 1):
            index = await next_free_index(subaccounts, ledger, wallet)
            try:
                await subaccounts.save(SubaccountAssociation(
                    agent_wallet_id=wallet.id,
                    index=index,
                    trading_bot_id=bot_id,
                ))
                break
            except DuplicateKeyError:
                logger.info(f"Subaccount index {index} of wallet {wallet.id} taken concurrently (attempt {attempt})")
        else:
            raise DatabaseError("Could not reserve a subaccount index; please retry")

        bot = TradingBot(
            id=bot_id,
            owner_address=wallet.owner_address,
            agent_wallet_id=wallet.id,
            name=name,
            market=market,
            leverage=leverage,
            is_active=is_active,
            subaccount_index=index,
        )
        bot = await trading_bots.save(bot)
    finally:
        await locks.release([wallet_key], registration_id)

    logger.info(f"Trading bot {bot.id} created on subaccount {index} of wallet {wallet.id}")
    return bot


async def list_trading_bots(
    trading_bots: TradingBotRepository,
    owner_address: str,
    include_deleted: bool = False
) -> List[TradingBot]:
    return await trading_bots.find_by_owner(owner_address, include_deleted=include_deleted)


async def get_trading_bot(trading_bots: TradingBotRepository, bot_id: str) -> Optional[TradingBot]:
    return await trading_bots.find_by_id(bot_id)
