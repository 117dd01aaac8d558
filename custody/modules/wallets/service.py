"""
Agent Wallets Service Layer

Provisioning of the custodial agent wallet that backs an external wallet's
trading subaccounts.

Author: Custody Team
Last Updated: 2026-10-18
"""

from typing import Optional

from pymongo.errors import DuplicateKeyError

from custody.domain.models.agent_wallet import AgentWallet
from custody.infrastructure.db.repositories import AgentWalletRepository
from custody.infrastructure.venue.signers import generate_agent_keypair
from custody.shared.exceptions import DatabaseError
from custody.utils.encryption import KeyMaterialEncryption, get_encryption_service
from custody.utils.logger import get_logger

logger = get_logger(__name__)


async def get_or_create_agent_wallet(
    agent_wallets: AgentWalletRepository,
    owner_address: str,
    encryption: Optional[KeyMaterialEncryption] = None
) -> AgentWallet:
    """
    Get the owner's active agent wallet, creating it on first use.

    Args:
        agent_wallets: Agent wallet repository
        owner_address: External wallet address
        encryption: Key encryption service (defaults to the configured one)

    Returns:
        The active AgentWallet

    Example:
        wallet = await get_or_create_agent_wallet(repo, "0xabc...")
        print(wallet.public_address)
    """
    existing = await agent_wallets.find_active_by_owner(owner_address)
    if existing:
        return existing

    public_address, private_key_hex = generate_agent_keypair()
    encryption = encryption or get_encryption_service()

    wallet = AgentWallet(
        owner_address=owner_address,
        public_address=public_address,
        private_key_encrypted=encryption.encrypt_string(private_key_hex),
    )

    try:
        wallet = await agent_wallets.save(wallet)
    except DuplicateKeyError:
        # Concurrent first use: the other request's wallet wins
        existing = await agent_wallets.find_active_by_owner(owner_address)
        if existing is None:
            raise DatabaseError("Agent wallet creation conflicted but no active wallet was found")
        return existing

    logger.info(f"Agent wallet {wallet.id} created for {owner_address} ({public_address})")
    return wallet


async def get_agent_wallet(agent_wallets: AgentWalletRepository, owner_address: str) -> Optional[AgentWallet]:
    return await agent_wallets.find_active_by_owner(owner_address)
