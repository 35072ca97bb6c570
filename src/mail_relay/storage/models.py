"""Storage models shared by the relay components and persistence backends."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, model_validator

MappingStatus = Literal["pending", "acknowledged", "completed"]
WorkflowKind = Literal["native", "api"]
Visibility = Literal["public", "private"]


class UserRecord(BaseModel):
    """Registered requester with a non-negative credit balance."""

    user_id: int
    address: str
    credits: int = Field(ge=0)
    is_approved: bool = False
    created_at: datetime


class WorkflowRecord(BaseModel):
    """Named destination that requests are routed to."""

    workflow_id: int
    name: str
    kind: WorkflowKind = "native"
    visibility: Visibility = "public"
    is_active: bool = True
    credits_per_task: int = Field(gt=0)
    # Backend mailbox for native workflows.
    execution_address: str | None = None
    instruction: str | None = None
    description: str | None = None
    owner_user_id: int | None = None

    @model_validator(mode="after")
    def _native_needs_address(self) -> "WorkflowRecord":
        if self.kind == "native" and not self.execution_address:
            raise ValueError("native workflows require an execution_address")
        return self


class MappingRecord(BaseModel):
    """Correlation and status record for one relayed request."""

    mapping_id: int
    original_message_id: str | None = None
    external_id: str | None = None
    original_sender: str
    workflow: str
    status: MappingStatus = "pending"
    credits_charged: int | None = None
    created_at: datetime
    completed_at: datetime | None = None


class TransactionRecord(BaseModel):
    """Append-only credit movement."""

    transaction_id: int
    user_id: int
    credits_delta: int
    reason: str | None = None
    mapping_id: int | None = None
    created_at: datetime


class DebitResult(BaseModel):
    """Outcome of a conditional debit."""

    applied: bool
    balance: int | None = None
    transaction: TransactionRecord | None = None


class SettlementResult(BaseModel):
    """Outcome of the commit phase for one mapping."""

    # False when another delivery already completed the mapping.
    applied: bool
    mapping: MappingRecord
    debited: bool = False
    charged: int = 0
