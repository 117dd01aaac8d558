"""
Reconciliation Event Domain Model

Drift between a bot's cached figures and the ledger, as detected by the
reconciliation poller. Events are informational; nothing is corrected
automatically.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import Field

from custody.shared.models import DomainModel, PyObjectId


class DriftField(str, Enum):
    POSITION_SIZE = "position_size"
    BALANCE = "balance"
    SUBACCOUNT_MISSING = "subaccount_missing"


class ReconciliationEvent(DomainModel):
    id: Optional[PyObjectId] = Field(None, alias="_id")
    trading_bot_id: str
    agent_wallet_id: Optional[str] = None
    subaccount_index: Optional[int] = None
    kind: DriftField
    cached_value: Decimal
    ledger_value: Decimal
    difference: Decimal
    detected_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
