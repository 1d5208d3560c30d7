from datetime import datetime

from sqlalchemy import Boolean, DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from approval_engine.db.base import Base, TimestampMixin, UUIDMixin

ADMIN_ROLE = "ADMIN"


class User(Base, UUIDMixin, TimestampMixin):
    """Team member as seen by the approval engine.

    ``role`` is the platform role (ADMIN can act on any step); ``approval_role``
    is the organizational role matched against ``ApprovalStep.required_role``.
    """

    __tablename__ = "users"

    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    role: Mapped[str] = mapped_column(String(50), nullable=False, default="MEMBER")
    approval_role: Mapped[str | None] = mapped_column(String(50), nullable=True, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)  # soft delete
