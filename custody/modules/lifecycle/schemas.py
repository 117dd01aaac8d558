"""
Lifecycle Operations Pydantic schemas.

DTOs for API request/response validation.
"""

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from custody.domain.models.lifecycle import LifecycleOperation, WithdrawPolicy


class SubmitSignatureRequest(BaseModel):
    """Signed version of the operation's pending transaction."""
    signed_tx: str = Field(..., min_length=1, description="Signed transaction")


class RejectSignatureRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500, description="Why the signature was declined")


class AbandonOperationRequest(BaseModel):
    reason: str = Field("Abandoned by user", max_length=500)


class ResetAccountRequest(BaseModel):
    """Schema for starting an account reset."""
    policy: WithdrawPolicy = Field(
        WithdrawPolicy.FULL,
        description="full: withdraw to the external wallet; account_only: keep funds in the agent wallet",
    )


def operation_to_dict(operation: LifecycleOperation) -> Dict[str, Any]:
    """API view of an operation. Lock bookkeeping and confirmation hints stay internal."""
    data = operation.model_dump(mode="json", exclude={"lock_keys"})
    if data.get("pending_signature"):
        data["pending_signature"].pop("confirmation_hints", None)
    return data
