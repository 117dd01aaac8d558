"""
Agent Wallet Domain Model

The custodial wallet that owns every trading subaccount of one external
wallet owner. Created at first use, never deleted, only rotated.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import Field

from custody.shared.models import DomainModel, PyObjectId


class AgentWalletStatus(str, Enum):
    """Agent wallet status"""
    ACTIVE = "active"
    RETIRED = "retired"  # replaced by a rotated identity


class AgentWallet(DomainModel):
    """
    Agent Wallet Domain Model

    available_balance is a cache of the ledger's main-account balance,
    refreshed by the equity aggregator. It is never the source of truth.
    """

    id: Optional[PyObjectId] = Field(None, alias="_id")
    owner_address: str
    public_address: str
    private_key_encrypted: str

    available_balance: Decimal = Decimal("0")
    last_synced_at: Optional[datetime] = None

    status: AgentWalletStatus = AgentWalletStatus.ACTIVE
    rotated_from_id: Optional[str] = None
    retired_at: Optional[datetime] = None

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_active(self) -> bool:
        return self.status == AgentWalletStatus.ACTIVE

    def record_balance(self, balance: Decimal, synced_at: Optional[datetime] = None) -> None:
        """Update the cached available balance (domain logic only - doesn't save)."""
        now = synced_at or datetime.now(timezone.utc)
        self.available_balance = balance
        self.last_synced_at = now
        self.updated_at = now

    def retire(self) -> None:
        """Mark this identity as superseded by a rotation."""
        now = datetime.now(timezone.utc)
        self.status = AgentWalletStatus.RETIRED
        self.retired_at = now
        self.updated_at = now
