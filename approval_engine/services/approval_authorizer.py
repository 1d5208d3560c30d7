"""Decides whether a user may act on an approval step.

Three independent grounds, checked in order: platform ADMIN, direct
approval-role match, and an active delegation from someone holding the
required role. The result is a plain ApprovalAuthorization value.
"""
import logging
import uuid
from datetime import date

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from approval_engine.models.approval import ApprovalStep
from approval_engine.models.delegation import ApproverDelegation
from approval_engine.models.user import ADMIN_ROLE, User
from approval_engine.schemas.approval import ApprovalAuthorization

logger = logging.getLogger(__name__)


# ─── User lookup ───

def get_member(db: Session, user_id: uuid.UUID) -> User | None:
    """Return the user record, treating soft-deleted users as missing."""
    return db.execute(
        select(User).where(User.id == user_id, User.deleted_at.is_(None))
    ).scalars().first()


# ─── Delegations ───

def _active_delegation_filters(delegate_id: uuid.UUID, today: date, tenant_id: str | None) -> list:
    filters = [
        ApproverDelegation.delegate_id == delegate_id,
        ApproverDelegation.is_active.is_(True),
        ApproverDelegation.valid_from <= today,
        or_(ApproverDelegation.valid_until.is_(None), ApproverDelegation.valid_until >= today),
        User.deleted_at.is_(None),
    ]
    if tenant_id:
        filters.append(ApproverDelegation.tenant_id == tenant_id)
    return filters


def get_active_delegation(
    db: Session,
    delegate_id: uuid.UUID,
    delegator_role: str,
    tenant_id: str | None = None,
) -> ApproverDelegation | None:
    """Return an active delegation to ``delegate_id`` from a holder of ``delegator_role``."""
    today = date.today()
    stmt = (
        select(ApproverDelegation)
        .join(User, User.id == ApproverDelegation.delegator_id)
        .where(
            *_active_delegation_filters(delegate_id, today, tenant_id),
            User.approval_role == delegator_role,
        )
        .order_by(ApproverDelegation.valid_from.asc())
    )
    return db.execute(stmt).scalars().first()


def get_delegated_roles(
    db: Session,
    delegate_id: uuid.UUID,
    tenant_id: str | None = None,
) -> set[str]:
    """Approval roles ``delegate_id`` currently holds through delegations."""
    today = date.today()
    stmt = (
        select(User.approval_role)
        .join(ApproverDelegation, User.id == ApproverDelegation.delegator_id)
        .where(
            *_active_delegation_filters(delegate_id, today, tenant_id),
            User.approval_role.is_not(None),
        )
        .distinct()
    )
    return set(db.execute(stmt).scalars().all())


# ─── Authorization ───

def can_user_approve(db: Session, user_id: uuid.UUID, step: ApprovalStep) -> ApprovalAuthorization:
    """Check whether ``user_id`` may approve or reject ``step``.

    Advisory when called on its own: process_approval runs it again right
    before writing.
    """
    member = get_member(db, user_id)
    if member is None:
        return ApprovalAuthorization(can_approve=False, reason="Member not found")

    if member.role == ADMIN_ROLE:
        return ApprovalAuthorization(can_approve=True)

    if member.approval_role == step.required_role:
        return ApprovalAuthorization(can_approve=True)

    delegation = get_active_delegation(db, user_id, step.required_role, tenant_id=step.tenant_id)
    if delegation is not None:
        logger.info(
            "can_user_approve: user=%s acts on step=%s via delegation from %s",
            user_id, step.id, delegation.delegator_id,
        )
        return ApprovalAuthorization(can_approve=True, via_delegation=True)

    return ApprovalAuthorization(
        can_approve=False,
        reason=f"Requires role {step.required_role}",
    )
