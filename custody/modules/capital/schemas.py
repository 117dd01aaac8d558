"""
Capital Pydantic schemas.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from custody.domain.models.agent_wallet import AgentWallet, AgentWalletStatus


class AgentWalletResponse(BaseModel):
    """Public view of an agent wallet. Key material never leaves the service."""
    id: str = Field(..., description="Agent wallet ID")
    owner_address: str
    public_address: str
    available_balance: Decimal = Field(..., description="Cached main-account balance")
    last_synced_at: Optional[datetime] = None
    status: AgentWalletStatus
    rotated_from_id: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_model(cls, wallet: AgentWallet) -> "AgentWalletResponse":
        return cls(
            id=wallet.id,
            owner_address=wallet.owner_address,
            public_address=wallet.public_address,
            available_balance=wallet.available_balance,
            last_synced_at=wallet.last_synced_at,
            status=wallet.status,
            rotated_from_id=wallet.rotated_from_id,
            created_at=wallet.created_at,
        )
