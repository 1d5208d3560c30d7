"""Approval chain creation and read-only chain queries.

A chain is the set of ApprovalStep rows sharing (tenant_id, entity_type,
entity_id). Query helpers take an optional ``tenant_id``; without it they
match the entity across tenants. Chain status is always derived from the
steps, never stored.
"""
import logging
import uuid
from collections.abc import Iterable
from datetime import date

from sqlalchemy import and_, delete, func, insert, or_, select
from sqlalchemy.orm import Session, selectinload

from approval_engine.core.config import settings
from approval_engine.models.approval import (
    ApprovalChainStatus,
    ApprovalModule,
    ApprovalPolicy,
    ApprovalStep,
    ApprovalStepStatus,
)
from approval_engine.models.delegation import ApproverDelegation
from approval_engine.models.user import ADMIN_ROLE, User
from approval_engine.schemas.approval import ApprovalChainSummary
from approval_engine.services import audit as audit_svc
from approval_engine.services.approval_authorizer import get_delegated_roles, get_member

logger = logging.getLogger(__name__)

PENDING = ApprovalStepStatus.PENDING.value
APPROVED = ApprovalStepStatus.APPROVED.value
REJECTED = ApprovalStepStatus.REJECTED.value
SKIPPED = ApprovalStepStatus.SKIPPED.value


def chain_filter(module: ApprovalModule | str, entity_id: str, tenant_id: str | None = None):
    """WHERE clause selecting one chain's steps; unscoped across tenants when tenant_id is None."""
    clauses = [
        ApprovalStep.entity_type == ApprovalModule(module).value,
        ApprovalStep.entity_id == str(entity_id),
    ]
    if tenant_id:
        clauses.append(ApprovalStep.tenant_id == tenant_id)
    return and_(*clauses)


def chain_tenant(
    db: Session, module: ApprovalModule | str, entity_id: str, tenant_id: str | None = None
) -> str | None:
    """Tenant owning the chain: ``tenant_id`` when given, else the single tenant holding its steps."""
    if tenant_id:
        return tenant_id
    tenants = db.execute(
        select(ApprovalStep.tenant_id).where(chain_filter(module, entity_id)).distinct()
    ).scalars().all()
    return tenants[0] if len(tenants) == 1 else None


# ─── Initialize chain ───

def initialize_approval_chain(
    db: Session,
    module: ApprovalModule | str,
    entity_id: str,
    policy: ApprovalPolicy,
    tenant_id: str | None = None,
) -> list[ApprovalStep]:
    """Create one PENDING step per policy level and commit.

    Steps are written with a single bulk INSERT. ``required_role`` is copied
    from the level so later policy edits leave in-flight chains alone.

    Not idempotent: a second call for the same entity violates the
    chain/level unique constraint. Check has_approval_chain first.

    Returns the created steps ordered by level_order.
    """
    module_value = ApprovalModule(module).value
    tenant = tenant_id or settings.DEFAULT_TENANT_ID

    rows = [
        {
            "tenant_id": tenant,
            "entity_type": module_value,
            "entity_id": str(entity_id),
            "level_order": level.level_order,
            "required_role": level.approver_role,
            "status": PENDING,
        }
        for level in sorted(policy.levels, key=lambda lvl: lvl.level_order)
    ]
    if not rows:
        logger.warning(
            "initialize_approval_chain: policy %s has no levels; no chain created for %s/%s",
            policy.id, module_value, entity_id,
        )
        return []

    db.execute(insert(ApprovalStep), rows)

    audit_svc.log(
        db=db,
        action="approval_chain.initialized",
        entity_type=module_value,
        entity_id=str(entity_id),
        tenant_id=tenant,
        after={
            "policy_id": str(policy.id),
            "levels": [{"level_order": r["level_order"], "required_role": r["required_role"]} for r in rows],
        },
        notes=f"Chain created from policy '{policy.name}'",
    )
    db.commit()

    logger.info(
        "Approval chain initialized: %s/%s policy=%s steps=%d",
        module_value, entity_id, policy.id, len(rows),
    )
    return get_approval_chain(db, module_value, entity_id, tenant_id=tenant)


# ─── Chain reads ───

def get_approval_chain(
    db: Session, module: ApprovalModule | str, entity_id: str, tenant_id: str | None = None
) -> list[ApprovalStep]:
    """Return every step of the chain ordered by level, approver loaded."""
    stmt = (
        select(ApprovalStep)
        .options(selectinload(ApprovalStep.approver))
        .where(chain_filter(module, entity_id, tenant_id))
        .order_by(ApprovalStep.level_order.asc())
        .execution_options(populate_existing=True)
    )
    return list(db.execute(stmt).scalars().all())


def has_approval_chain(
    db: Session, module: ApprovalModule | str, entity_id: str, tenant_id: str | None = None
) -> bool:
    count = db.execute(
        select(func.count()).select_from(ApprovalStep).where(chain_filter(module, entity_id, tenant_id))
    ).scalar_one()
    return count > 0


def get_current_pending_step(
    db: Session, module: ApprovalModule | str, entity_id: str, tenant_id: str | None = None
) -> ApprovalStep | None:
    """Return the PENDING step with the lowest level_order, or None."""
    stmt = (
        select(ApprovalStep)
        .where(chain_filter(module, entity_id, tenant_id), ApprovalStep.status == PENDING)
        .order_by(ApprovalStep.level_order.asc())
        .limit(1)
        .execution_options(populate_existing=True)
    )
    return db.execute(stmt).scalars().first()


def chain_statuses(
    db: Session, module: ApprovalModule | str, entity_id: str, tenant_id: str | None = None
) -> list[tuple[int, str]]:
    stmt = (
        select(ApprovalStep.level_order, ApprovalStep.status)
        .where(chain_filter(module, entity_id, tenant_id))
        .order_by(ApprovalStep.level_order.asc())
    )
    return [(row.level_order, row.status) for row in db.execute(stmt)]


def derive_chain_status(statuses: Iterable[str]) -> ApprovalChainStatus:
    """Aggregate step statuses into the chain status."""
    statuses = list(statuses)
    if not statuses:
        return ApprovalChainStatus.NOT_STARTED
    if REJECTED in statuses:
        return ApprovalChainStatus.REJECTED
    if all(s == APPROVED for s in statuses):
        return ApprovalChainStatus.APPROVED
    return ApprovalChainStatus.PENDING


def is_fully_approved(
    db: Session, module: ApprovalModule | str, entity_id: str, tenant_id: str | None = None
) -> bool:
    statuses = [status for _, status in chain_statuses(db, module, entity_id, tenant_id)]
    return derive_chain_status(statuses) is ApprovalChainStatus.APPROVED


def was_rejected(
    db: Session, module: ApprovalModule | str, entity_id: str, tenant_id: str | None = None
) -> bool:
    count = db.execute(
        select(func.count())
        .select_from(ApprovalStep)
        .where(chain_filter(module, entity_id, tenant_id), ApprovalStep.status == REJECTED)
    ).scalar_one()
    return count > 0


def get_approval_chain_summary(
    db: Session, module: ApprovalModule | str, entity_id: str, tenant_id: str | None = None
) -> ApprovalChainSummary:
    """Compact progress view of a chain.

    completed_steps counts APPROVED steps. current_step is the level of the
    first step that is neither APPROVED nor SKIPPED, so a rejected chain
    points at the rejecting level.
    """
    chain = chain_statuses(db, module, entity_id, tenant_id)
    current_step = next(
        (level for level, status in chain if status not in (APPROVED, SKIPPED)),
        None,
    )
    return ApprovalChainSummary(
        total_steps=len(chain),
        completed_steps=sum(1 for _, status in chain if status == APPROVED),
        current_step=current_step,
        status=derive_chain_status(status for _, status in chain),
    )


# ─── Per-user queue ───

def get_pending_approvals_for_user(
    db: Session,
    user_id: uuid.UUID,
    tenant_id: str | None = None,
    current_only: bool = False,
) -> list[ApprovalStep]:
    """Return PENDING steps the user may act on, newest first.

    ADMIN sees every PENDING step (within ``tenant_id`` when given). Anyone
    else sees steps whose required role is their own approval role or the
    approval role of someone actively delegating to them.

    With ``current_only`` each chain contributes at most its current step
    (the lowest PENDING level), and only if the user may act on it.
    """
    member = get_member(db, user_id)
    if member is None:
        return []

    filters = [ApprovalStep.status == PENDING]
    if tenant_id:
        filters.append(ApprovalStep.tenant_id == tenant_id)

    if member.role != ADMIN_ROLE:
        roles = get_delegated_roles(db, user_id, tenant_id=tenant_id)
        if member.approval_role:
            roles.add(member.approval_role)
        if not roles:
            return []
        filters.append(ApprovalStep.required_role.in_(sorted(roles)))

    stmt = select(ApprovalStep).where(*filters)

    if current_only:
        current = (
            select(
                ApprovalStep.tenant_id,
                ApprovalStep.entity_type,
                ApprovalStep.entity_id,
                func.min(ApprovalStep.level_order).label("level_order"),
            )
            .where(ApprovalStep.status == PENDING)
            .group_by(ApprovalStep.tenant_id, ApprovalStep.entity_type, ApprovalStep.entity_id)
            .subquery()
        )
        stmt = stmt.join(
            current,
            and_(
                current.c.tenant_id == ApprovalStep.tenant_id,
                current.c.entity_type == ApprovalStep.entity_type,
                current.c.entity_id == ApprovalStep.entity_id,
                current.c.level_order == ApprovalStep.level_order,
            ),
        )

    stmt = stmt.order_by(ApprovalStep.created_at.desc(), ApprovalStep.level_order.asc())
    return list(db.execute(stmt).scalars().all())


def get_approvers_for_role(
    db: Session,
    role: str,
    tenant_id: str | None = None,
    exclude_user_id: uuid.UUID | None = None,
) -> list[User]:
    """Active users who can act on a step requiring ``role``.

    Direct holders of the approval role plus their active delegates. Used by
    callers to decide who to notify about the next level; the requester is
    left out when ``exclude_user_id`` is given.
    """
    filters = [
        User.approval_role == role,
        User.is_active.is_(True),
        User.deleted_at.is_(None),
    ]
    if tenant_id:
        filters.append(User.tenant_id == tenant_id)
    holders = list(db.execute(select(User).where(*filters).order_by(User.email)).scalars().all())

    approvers: dict[uuid.UUID, User] = {user.id: user for user in holders}
    if holders:
        today = date.today()
        delegate_filters = [
            ApproverDelegation.delegator_id.in_([user.id for user in holders]),
            ApproverDelegation.is_active.is_(True),
            ApproverDelegation.valid_from <= today,
            or_(ApproverDelegation.valid_until.is_(None), ApproverDelegation.valid_until >= today),
            User.is_active.is_(True),
            User.deleted_at.is_(None),
        ]
        delegates = db.execute(
            select(User)
            .join(ApproverDelegation, ApproverDelegation.delegate_id == User.id)
            .where(*delegate_filters)
            .order_by(User.email)
        ).scalars().all()
        for user in delegates:
            approvers.setdefault(user.id, user)

    if exclude_user_id is not None:
        approvers.pop(exclude_user_id, None)
    return list(approvers.values())


# ─── Delete chain ───

def delete_approval_chain(
    db: Session, module: ApprovalModule | str, entity_id: str, tenant_id: str | None = None
) -> int:
    """Remove every step of the chain (entity withdrawn or deleted). Returns rows removed."""
    module_value = ApprovalModule(module).value
    owner = chain_tenant(db, module_value, entity_id, tenant_id)
    result = db.execute(delete(ApprovalStep).where(chain_filter(module_value, entity_id, tenant_id)))
    removed = result.rowcount or 0

    if removed:
        audit_svc.log(
            db=db,
            action="approval_chain.deleted",
            entity_type=module_value,
            entity_id=str(entity_id),
            tenant_id=owner,
            before={"steps": removed},
        )
    db.commit()

    logger.info("Approval chain deleted: %s/%s steps=%d", module_value, entity_id, removed)
    return removed
