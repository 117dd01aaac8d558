"""
Capital Snapshot Domain Model

Point-in-time, immutable view of an agent wallet's capital split between the
main (available) balance and its trading subaccounts (deployed). Snapshots
are published by replacement and never edited in place.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional, Tuple

from pydantic import BaseModel, ConfigDict, computed_field


class SubaccountEntry(BaseModel):
    """One subaccount's contribution to deployed capital"""

    model_config = ConfigDict(frozen=True)

    index: int
    trading_bot_id: Optional[str] = None
    balance: Decimal
    exists: bool = True
    stale: bool = False       # ledger read failed; balance is the prior value
    in_flight: bool = False   # target of a lifecycle operation in progress
    last_read_at: Optional[datetime] = None


class CapitalSnapshot(BaseModel):
    """
    Capital Snapshot

    total_equity is always available_balance plus the sum of entry balances.
    """

    model_config = ConfigDict(frozen=True)

    agent_wallet_id: str
    available_balance: Decimal
    available_stale: bool = False
    available_in_flight: bool = False
    entries: Tuple[SubaccountEntry, ...] = ()
    in_flight_targets: Tuple[str, ...] = ()
    last_updated: datetime

    @computed_field
    @property
    def deployed_balance(self) -> Decimal:
        return sum((entry.balance for entry in self.entries), Decimal("0"))

    @computed_field
    @property
    def total_equity(self) -> Decimal:
        return self.available_balance + self.deployed_balance

    @computed_field
    @property
    def is_stale(self) -> bool:
        return self.available_stale or any(entry.stale for entry in self.entries)

    def entry_for(self, index: int) -> Optional[SubaccountEntry]:
        for entry in self.entries:
            if entry.index == index:
                return entry
        return None
