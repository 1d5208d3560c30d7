import enum
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, Numeric, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from approval_engine.db.base import Base, TimestampMixin, UUIDMixin
from approval_engine.models.user import User


class ApprovalModule(str, enum.Enum):
    LEAVE_REQUEST = "LEAVE_REQUEST"
    PURCHASE_REQUEST = "PURCHASE_REQUEST"
    ASSET_REQUEST = "ASSET_REQUEST"
    SPEND_REQUEST = "SPEND_REQUEST"


class ApprovalRole(str, enum.Enum):
    MANAGER = "MANAGER"
    HR = "HR"
    FINANCE = "FINANCE"
    ADMIN = "ADMIN"
    EMPLOYEE = "EMPLOYEE"


class ApprovalStepStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    SKIPPED = "SKIPPED"


class ApprovalAction(str, enum.Enum):
    APPROVE = "APPROVE"
    REJECT = "REJECT"


class ApprovalChainStatus(str, enum.Enum):
    NOT_STARTED = "NOT_STARTED"
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class ApprovalPolicy(Base, UUIDMixin, TimestampMixin):
    """Maps a module plus amount/day thresholds to an ordered list of levels."""

    __tablename__ = "approval_policies"

    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    module: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    min_amount: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    max_amount: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    min_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    levels: Mapped[list["ApprovalLevel"]] = relationship(
        "ApprovalLevel",
        back_populates="policy",
        cascade="all, delete-orphan",
        order_by="ApprovalLevel.level_order",
    )


class ApprovalLevel(Base, UUIDMixin):
    """One rung of a policy: position in the order plus the required role."""

    __tablename__ = "approval_levels"
    __table_args__ = (UniqueConstraint("policy_id", "level_order", name="uq_approval_levels_policy_order"),)

    policy_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("approval_policies.id", ondelete="CASCADE"), nullable=False, index=True
    )
    level_order: Mapped[int] = mapped_column(Integer, nullable=False)
    approver_role: Mapped[str] = mapped_column(String(50), nullable=False)

    policy: Mapped["ApprovalPolicy"] = relationship("ApprovalPolicy", back_populates="levels")


class ApprovalStep(Base, UUIDMixin, TimestampMixin):
    """Persisted state of one level for one entity instance."""

    __tablename__ = "approval_steps"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "entity_type", "entity_id", "level_order",
            name="uq_approval_steps_chain_level",
        ),
    )

    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    level_order: Mapped[int] = mapped_column(Integer, nullable=False)
    required_role: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ApprovalStepStatus.PENDING.value, index=True
    )  # PENDING, APPROVED, REJECTED, SKIPPED
    approver_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("users.id"), nullable=True
    )
    action_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    approver: Mapped[User | None] = relationship("User")
