"""Shared fixtures: in-memory SQLite database plus user/policy/delegation factories."""
import uuid
from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import approval_engine.models  # noqa: F401  (registers every table on Base.metadata)
from approval_engine.core.config import settings
from approval_engine.db.base import Base
from approval_engine.models import ApprovalModule, ApprovalRole, ApproverDelegation, User
from approval_engine.schemas.approval import ApprovalLevelIn, ApprovalPolicyIn
from approval_engine.services.approval_policy import create_approval_policy

TENANT = settings.DEFAULT_TENANT_ID


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    SessionLocal = sessionmaker(engine, expire_on_commit=False, autoflush=False)
    with SessionLocal() as session:
        yield session


# ─── Factories ────────────────────────────────────────────────────────────────

@pytest.fixture
def make_user(db):
    def _make(
        approval_role: ApprovalRole | None = None,
        role: str = "MEMBER",
        tenant_id: str = TENANT,
        name: str | None = None,
        deleted: bool = False,
    ) -> User:
        user = User(
            tenant_id=tenant_id,
            email=f"{uuid.uuid4().hex[:10]}@example.com",
            name=name,
            role=role,
            approval_role=approval_role.value if approval_role else None,
            is_active=True,
            deleted_at=datetime.now(timezone.utc) if deleted else None,
        )
        db.add(user)
        db.commit()
        return user
    return _make


@pytest.fixture
def make_policy(db):
    def _make(
        module: ApprovalModule = ApprovalModule.LEAVE_REQUEST,
        roles: tuple[ApprovalRole, ...] = (ApprovalRole.MANAGER, ApprovalRole.ADMIN),
        priority: int = 0,
        name: str | None = None,
        tenant_id: str = TENANT,
        is_active: bool = True,
        **thresholds,
    ):
        payload = ApprovalPolicyIn(
            name=name or f"{module.value} policy {uuid.uuid4().hex[:6]}",
            module=module,
            priority=priority,
            is_active=is_active,
            levels=[
                ApprovalLevelIn(level_order=i, approver_role=role)
                for i, role in enumerate(roles, start=1)
            ],
            **thresholds,
        )
        return create_approval_policy(db, payload, tenant_id=tenant_id)
    return _make


@pytest.fixture
def make_delegation(db):
    def _make(
        delegator: User,
        delegate: User,
        valid_from: date | None = None,
        valid_until: date | None = None,
        is_active: bool = True,
        tenant_id: str = TENANT,
    ) -> ApproverDelegation:
        today = date.today()
        delegation = ApproverDelegation(
            tenant_id=tenant_id,
            delegator_id=delegator.id,
            delegate_id=delegate.id,
            valid_from=valid_from or today - timedelta(days=1),
            valid_until=valid_until if valid_until is not None else today + timedelta(days=1),
            is_active=is_active,
        )
        db.add(delegation)
        db.commit()
        return delegation
    return _make
