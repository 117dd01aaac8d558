"""
Subaccount Domain Models

The association table between an agent wallet's subaccounts and the bots
that reference them, plus the orphan registry for subaccounts left behind by
deleted bots.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import Field

from custody.shared.models import DomainModel, PyObjectId


class SubaccountAssociation(DomainModel):
    """
    Agent wallet subaccount row.

    The agent wallet owns the subaccount; trading_bot_id is only a reference
    and is cleared when the bot is deleted or unlinked.
    """

    id: Optional[PyObjectId] = Field(None, alias="_id")
    agent_wallet_id: str
    index: int = Field(..., ge=1)
    trading_bot_id: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class OrphanStatus(str, Enum):
    PENDING = "pending"
    RESOLVED = "resolved"
    EXHAUSTED = "exhausted"  # retry limit reached, needs a manual account reset


class OrphanedSubaccount(DomainModel):
    """Empty subaccount still holding its existence deposit after its bot was deleted"""

    id: Optional[PyObjectId] = Field(None, alias="_id")
    agent_wallet_id: str
    agent_address: str
    index: int
    reason: str = "bot_deleted"
    status: OrphanStatus = OrphanStatus.PENDING
    retry_count: int = 0
    last_error: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    resolved_at: Optional[datetime] = None
