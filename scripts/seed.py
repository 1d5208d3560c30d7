"""Seed script: creates demo users, a delegation and tiered approval policies.

Idempotent: checks for existing records before inserting.
Run: python scripts/seed.py
"""
import logging
import os
import sys
from datetime import date, timedelta
from decimal import Decimal

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from sqlalchemy import select
from sqlalchemy.orm import Session

from approval_engine.core.config import settings
from approval_engine.core.logging import setup_logging
from approval_engine.db.base import Base
from approval_engine.db.session import SessionLocal, engine
from approval_engine.models import ApprovalModule, ApprovalPolicy, ApprovalRole, ApproverDelegation, User
from approval_engine.schemas.approval import ApprovalLevelIn, ApprovalPolicyIn
from approval_engine.services.approval_policy import create_approval_policy

logger = logging.getLogger("seed")

TENANT = settings.DEFAULT_TENANT_ID


# ─── Upsert helpers ───────────────────────────────────────────────────────────

def _upsert_user(db: Session, email: str, name: str, role: str, approval_role: str | None) -> User:
    user = db.execute(select(User).where(User.email == email)).scalars().first()
    if user:
        logger.info("  [skip] User %s", email)
        return user
    user = User(
        tenant_id=TENANT, email=email, name=name,
        role=role, approval_role=approval_role, is_active=True,
    )
    db.add(user)
    db.flush()
    logger.info("  [new]  User %s (%s/%s)", email, role, approval_role)
    return user


def _upsert_policy(db: Session, payload: ApprovalPolicyIn) -> None:
    existing = db.execute(
        select(ApprovalPolicy).where(
            ApprovalPolicy.tenant_id == TENANT,
            ApprovalPolicy.name == payload.name,
        )
    ).scalars().first()
    if existing:
        logger.info("  [skip] Policy %s", payload.name)
        return
    policy = create_approval_policy(db, payload, tenant_id=TENANT)
    logger.info("  [new]  Policy %s (%d levels)", policy.name, len(policy.levels))


def _levels(*roles: ApprovalRole) -> list[ApprovalLevelIn]:
    return [ApprovalLevelIn(level_order=i, approver_role=role) for i, role in enumerate(roles, start=1)]


POLICIES = [
    ApprovalPolicyIn(
        name="Leave: short", module=ApprovalModule.LEAVE_REQUEST,
        max_days=3, priority=10, levels=_levels(ApprovalRole.MANAGER),
    ),
    ApprovalPolicyIn(
        name="Leave: extended", module=ApprovalModule.LEAVE_REQUEST,
        min_days=4, priority=10, levels=_levels(ApprovalRole.MANAGER, ApprovalRole.HR),
    ),
    ApprovalPolicyIn(
        name="Leave: default", module=ApprovalModule.LEAVE_REQUEST,
        priority=0, levels=_levels(ApprovalRole.MANAGER),
    ),
    ApprovalPolicyIn(
        name="Purchase: small", module=ApprovalModule.PURCHASE_REQUEST,
        max_amount=Decimal("5000"), priority=10, levels=_levels(ApprovalRole.MANAGER),
    ),
    ApprovalPolicyIn(
        name="Purchase: large", module=ApprovalModule.PURCHASE_REQUEST,
        min_amount=Decimal("5000.01"), priority=10,
        levels=_levels(ApprovalRole.MANAGER, ApprovalRole.FINANCE, ApprovalRole.ADMIN),
    ),
    ApprovalPolicyIn(
        name="Asset: default", module=ApprovalModule.ASSET_REQUEST,
        priority=0, levels=_levels(ApprovalRole.MANAGER, ApprovalRole.ADMIN),
    ),
]


def main() -> None:
    setup_logging()
    Base.metadata.create_all(engine)

    with SessionLocal() as db:
        logger.info("Seeding users...")
        admin = _upsert_user(db, "admin@example.com", "Admin", "ADMIN", ApprovalRole.ADMIN.value)
        manager = _upsert_user(db, "manager@example.com", "Manager", "MEMBER", ApprovalRole.MANAGER.value)
        _upsert_user(db, "hr@example.com", "HR Lead", "MEMBER", ApprovalRole.HR.value)
        _upsert_user(db, "finance@example.com", "Finance Lead", "MEMBER", ApprovalRole.FINANCE.value)
        deputy = _upsert_user(db, "deputy@example.com", "Deputy", "MEMBER", ApprovalRole.EMPLOYEE.value)

        existing = db.execute(
            select(ApproverDelegation).where(
                ApproverDelegation.delegator_id == manager.id,
                ApproverDelegation.delegate_id == deputy.id,
            )
        ).scalars().first()
        if existing is None:
            db.add(ApproverDelegation(
                tenant_id=TENANT,
                delegator_id=manager.id,
                delegate_id=deputy.id,
                valid_from=date.today(),
                valid_until=date.today() + timedelta(days=14),
                reason="Annual leave cover",
            ))
            logger.info("  [new]  Delegation %s -> %s", manager.email, deputy.email)
        db.commit()

        logger.info("Seeding approval policies...")
        for payload in POLICIES:
            _upsert_policy(db, payload)

    logger.info("Seed complete (admin=%s).", admin.email)


if __name__ == "__main__":
    main()
