"""Approval policy lookup and administration.

Policies are configuration: the chain services only read them, and a policy
edit never touches chains that already exist (steps copy the required role).
"""
import logging
import uuid
from decimal import Decimal

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session, selectinload

from approval_engine.core.config import settings
from approval_engine.core.exceptions import PolicyNotFoundError
from approval_engine.models.approval import ApprovalLevel, ApprovalModule, ApprovalPolicy
from approval_engine.schemas.approval import ApprovalPolicyIn

logger = logging.getLogger(__name__)


# ─── Find applicable policy ───

def find_applicable_policy(
    db: Session,
    module: ApprovalModule | str,
    amount: float | Decimal | None = None,
    days: float | None = None,
    tenant_id: str | None = None,
) -> ApprovalPolicy | None:
    """Return the single policy that applies to a request, or None.

    Queries active ApprovalPolicy rows for ``module`` where, per dimension:
      - no bounds are set, or
      - a value was supplied and min <= value <= max (nulls treated as unbounded)

    A threshold-less policy therefore always matches, while a bounded policy
    only matches when the caller supplies that threshold.

    Sorted by priority descending, then created_at ascending, then id; the
    first row wins.

    Returns None when nothing matches. That means "no approval configured",
    not an error; the caller decides the fallback.
    """
    module_value = ApprovalModule(module).value

    filters = [
        ApprovalPolicy.module == module_value,
        ApprovalPolicy.is_active.is_(True),
        _range_filter(ApprovalPolicy.min_amount, ApprovalPolicy.max_amount, amount),
        _range_filter(ApprovalPolicy.min_days, ApprovalPolicy.max_days, days),
    ]
    if tenant_id:
        filters.append(ApprovalPolicy.tenant_id == tenant_id)

    stmt = (
        select(ApprovalPolicy)
        .options(selectinload(ApprovalPolicy.levels))
        .where(and_(*filters))
        .order_by(ApprovalPolicy.priority.desc(), ApprovalPolicy.created_at.asc(), ApprovalPolicy.id.asc())
        .limit(1)
    )
    policy = db.execute(stmt).scalars().first()

    if policy is None:
        logger.info(
            "find_applicable_policy: no policy for module=%s amount=%s days=%s tenant=%s",
            module_value, amount, days, tenant_id,
        )
    return policy


def _range_filter(min_col, max_col, value):
    unbounded = and_(min_col.is_(None), max_col.is_(None))
    if value is None:
        return unbounded
    return or_(
        unbounded,
        and_(
            or_(min_col.is_(None), min_col <= value),
            or_(max_col.is_(None), max_col >= value),
        ),
    )


# ─── Policy administration ───

def create_approval_policy(
    db: Session,
    payload: ApprovalPolicyIn,
    tenant_id: str | None = None,
) -> ApprovalPolicy:
    """Persist a validated policy with its levels and commit."""
    policy = ApprovalPolicy(
        tenant_id=tenant_id or settings.DEFAULT_TENANT_ID,
        name=payload.name,
        module=payload.module.value,
        is_active=payload.is_active,
        min_amount=payload.min_amount,
        max_amount=payload.max_amount,
        min_days=payload.min_days,
        max_days=payload.max_days,
        priority=payload.priority,
        levels=[
            ApprovalLevel(level_order=level.level_order, approver_role=level.approver_role.value)
            for level in sorted(payload.levels, key=lambda lvl: lvl.level_order)
        ],
    )
    db.add(policy)
    db.commit()
    db.refresh(policy)

    logger.info(
        "Approval policy created: id=%s module=%s levels=%d priority=%d",
        policy.id, policy.module, len(policy.levels), policy.priority,
    )
    return policy


def get_policy(db: Session, policy_id: uuid.UUID) -> ApprovalPolicy:
    policy = db.execute(
        select(ApprovalPolicy)
        .options(selectinload(ApprovalPolicy.levels))
        .where(ApprovalPolicy.id == policy_id)
    ).scalars().first()
    if policy is None:
        raise PolicyNotFoundError()
    return policy


def list_policies(
    db: Session,
    module: ApprovalModule | str | None = None,
    tenant_id: str | None = None,
    include_inactive: bool = False,
) -> list[ApprovalPolicy]:
    stmt = select(ApprovalPolicy).options(selectinload(ApprovalPolicy.levels))
    if module is not None:
        stmt = stmt.where(ApprovalPolicy.module == ApprovalModule(module).value)
    if tenant_id:
        stmt = stmt.where(ApprovalPolicy.tenant_id == tenant_id)
    if not include_inactive:
        stmt = stmt.where(ApprovalPolicy.is_active.is_(True))
    stmt = stmt.order_by(
        ApprovalPolicy.module,
        ApprovalPolicy.priority.desc(),
        ApprovalPolicy.created_at.asc(),
        ApprovalPolicy.id.asc(),
    )
    return list(db.execute(stmt).scalars().all())
