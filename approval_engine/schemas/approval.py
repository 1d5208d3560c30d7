"""Pydantic schemas for approval policies, steps and chain results."""
import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from approval_engine.models.approval import (
    ApprovalChainStatus,
    ApprovalModule,
    ApprovalRole,
    ApprovalStepStatus,
)


# ─── Policy schemas ───

class ApprovalLevelIn(BaseModel):
    level_order: int = Field(ge=1)
    approver_role: ApprovalRole


class ApprovalLevelOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    level_order: int
    approver_role: str


class ApprovalPolicyIn(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    module: ApprovalModule
    is_active: bool = True
    min_amount: Decimal | None = Field(default=None, ge=0)
    max_amount: Decimal | None = Field(default=None, ge=0)
    min_days: int | None = Field(default=None, ge=0)
    max_days: int | None = Field(default=None, ge=0)
    priority: int = 0
    levels: list[ApprovalLevelIn] = Field(min_length=1)

    @model_validator(mode="after")
    def check_thresholds_and_levels(self) -> "ApprovalPolicyIn":
        if self.min_amount is not None and self.max_amount is not None and self.min_amount > self.max_amount:
            raise ValueError("min_amount must not exceed max_amount")
        if self.min_days is not None and self.max_days is not None and self.min_days > self.max_days:
            raise ValueError("min_days must not exceed max_days")

        orders = sorted(level.level_order for level in self.levels)
        if orders != list(range(1, len(orders) + 1)):
            raise ValueError("level_order values must be unique and contiguous starting at 1")
        return self


class ApprovalPolicyOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    tenant_id: str
    name: str
    module: ApprovalModule
    is_active: bool
    min_amount: Decimal | None
    max_amount: Decimal | None
    min_days: int | None
    max_days: int | None
    priority: int
    levels: list[ApprovalLevelOut]
    created_at: datetime


# ─── Step / chain schemas ───

class ApproverOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str | None
    email: str


class ApprovalStepOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    tenant_id: str
    entity_type: ApprovalModule
    entity_id: str
    level_order: int
    required_role: str
    status: ApprovalStepStatus
    approver_id: uuid.UUID | None
    action_at: datetime | None
    notes: str | None
    approver: ApproverOut | None = None


class ApprovalChainSummary(BaseModel):
    total_steps: int
    completed_steps: int
    current_step: int | None
    status: ApprovalChainStatus


# ─── Decision results ───

class ApprovalAuthorization(BaseModel):
    can_approve: bool
    reason: str | None = None
    via_delegation: bool = False


class ProcessApprovalResult(BaseModel):
    success: bool
    step: ApprovalStepOut
    is_chain_complete: bool
    all_approved: bool


class EntityApprovalResult(BaseModel):
    chain_exists: bool
    is_chain_complete: bool
    step_processed: bool
    all_approved: bool = False
    error: str | None = None
    summary: ApprovalChainSummary | None = None
    # Users who can act on the next level; populated after an approval that leaves the chain open.
    next_approver_ids: list[uuid.UUID] = Field(default_factory=list)
