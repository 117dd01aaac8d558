"""
Trading Bot Domain Model

A trading bot references at most one subaccount of its owner's agent wallet
by index. Bots created under the superseded custody scheme carry a
legacy_address instead and have no subaccount.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from custody.shared.models import DomainModel, PyObjectId


class BotStats(BaseModel):
    """Cached figures the reconciliation poller checks against the ledger"""
    position_base_size: Decimal = Decimal("0")
    net_deposits: Decimal = Decimal("0")
    realized_pnl: Decimal = Decimal("0")

    @property
    def expected_balance(self) -> Decimal:
        return self.net_deposits + self.realized_pnl


class TradingBot(DomainModel):
    """Trading Bot Domain Model"""

    id: Optional[PyObjectId] = Field(None, alias="_id")
    owner_address: str
    agent_wallet_id: Optional[str] = None

    name: str
    market: str
    is_active: bool = False
    leverage: int = 1

    subaccount_index: Optional[int] = None
    legacy_address: Optional[str] = None

    cached_stats: BotStats = Field(default_factory=BotStats)

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    # Soft Delete
    deleted_at: Optional[datetime] = None
    delete_tx_signature: Optional[str] = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def has_subaccount(self) -> bool:
        return self.agent_wallet_id is not None and self.subaccount_index is not None

    @property
    def is_legacy(self) -> bool:
        """Created under the old scheme: funds may sit at an address this service can't sweep."""
        return bool(self.legacy_address) and not self.has_subaccount
