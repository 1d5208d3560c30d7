"""Approver delegation model."""
import uuid
from datetime import date

from sqlalchemy import Boolean, Date, ForeignKey, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from approval_engine.db.base import Base, TimestampMixin, UUIDMixin
from approval_engine.models.user import User


class ApproverDelegation(Base, UUIDMixin, TimestampMixin):
    """Temporarily lets ``delegate`` act with ``delegator``'s approval role."""

    __tablename__ = "approver_delegations"

    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    delegator_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True
    )
    delegate_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True
    )
    valid_from: Mapped[date] = mapped_column(Date, nullable=False)
    valid_until: Mapped[date | None] = mapped_column(Date, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    delegator: Mapped[User] = relationship("User", foreign_keys=[delegator_id])
    delegate: Mapped[User] = relationship("User", foreign_keys=[delegate_id])
