"""Approval step processing and admin bypass.

All functions accept a sync SQLAlchemy Session and commit their own unit
of work. State transitions are written as conditional UPDATEs so two actors
racing on the same step can never both succeed.
"""
import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from approval_engine.core.config import settings
from approval_engine.core.exceptions import (
    ApprovalForbiddenError,
    ChainExistsError,
    StepConflictError,
    StepNotFoundError,
)
from approval_engine.models.approval import (
    ApprovalAction,
    ApprovalChainStatus,
    ApprovalModule,
    ApprovalStep,
    ApprovalStepStatus,
)
from approval_engine.schemas.approval import (
    ApprovalStepOut,
    EntityApprovalResult,
    ProcessApprovalResult,
)
from approval_engine.services import audit as audit_svc
from approval_engine.services.approval_authorizer import can_user_approve
from approval_engine.services.approval_chain import (
    chain_filter,
    chain_statuses,
    chain_tenant,
    get_approval_chain_summary,
    get_approvers_for_role,
    get_current_pending_step,
    has_approval_chain,
    initialize_approval_chain,
)
from approval_engine.services.approval_policy import find_applicable_policy

logger = logging.getLogger(__name__)

PENDING = ApprovalStepStatus.PENDING.value
APPROVED = ApprovalStepStatus.APPROVED.value
REJECTED = ApprovalStepStatus.REJECTED.value
SKIPPED = ApprovalStepStatus.SKIPPED.value


def _coerce_action(action: ApprovalAction | str) -> ApprovalAction:
    if isinstance(action, ApprovalAction):
        return action
    try:
        return ApprovalAction(str(action).upper())
    except ValueError:
        raise ValueError(f"Invalid action '{action}'. Must be 'APPROVE' or 'REJECT'.") from None


# ─── Start a chain for a new request ───

def request_approval(
    db: Session,
    module: ApprovalModule | str,
    entity_id: str,
    amount: float | Decimal | None = None,
    days: float | None = None,
    tenant_id: str | None = None,
) -> list[ApprovalStep]:
    """Find the applicable policy and create the entity's chain.

    Returns an empty list when no policy (or a policy without levels)
    applies; the caller then handles the request without multi-level approval.

    Raises:
        ChainExistsError: The entity already has a chain.
    """
    if has_approval_chain(db, module, entity_id, tenant_id or settings.DEFAULT_TENANT_ID):
        raise ChainExistsError(f"Approval chain already exists for {ApprovalModule(module).value}/{entity_id}")

    policy = find_applicable_policy(db, module, amount=amount, days=days, tenant_id=tenant_id)
    if policy is None or not policy.levels:
        return []
    return initialize_approval_chain(db, module, entity_id, policy, tenant_id=tenant_id)


# ─── Process approval decision ───

def process_approval(
    db: Session,
    step_id: uuid.UUID,
    actor_id: uuid.UUID,
    action: ApprovalAction | str,
    notes: str | None = None,
) -> ProcessApprovalResult:
    """Apply an approve or reject decision to a single step.

    Args:
        db: Sync SQLAlchemy session.
        step_id: UUID of the ApprovalStep to act on.
        actor_id: User performing the action.
        action: "APPROVE" or "REJECT".
        notes: Optional decision notes.

    Returns:
        ProcessApprovalResult with the updated step and the chain state after
        the decision.

    Raises:
        StepNotFoundError: No step with this id.
        StepConflictError: Step is no longer PENDING, including when another
            actor wins the race between our checks and the write.
        ApprovalForbiddenError: Actor holds neither the role nor a delegation.
        ValueError: Unknown action.
    """
    action = _coerce_action(action)

    step = db.execute(
        select(ApprovalStep)
        .where(ApprovalStep.id == step_id)
        .execution_options(populate_existing=True)
    ).scalars().first()
    if step is None:
        raise StepNotFoundError()

    if step.status != PENDING:
        raise StepConflictError(step.status)

    authorization = can_user_approve(db, actor_id, step)
    if not authorization.can_approve:
        logger.warning(
            "process_approval: user=%s denied on step=%s: %s",
            actor_id, step.id, authorization.reason,
        )
        raise ApprovalForbiddenError(authorization.reason or "Not authorized to approve")

    now = datetime.now(timezone.utc)
    new_status = APPROVED if action is ApprovalAction.APPROVE else REJECTED
    skipped = 0

    try:
        # Only a row still PENDING at write time may transition.
        updated = db.execute(
            update(ApprovalStep)
            .where(ApprovalStep.id == step.id, ApprovalStep.status == PENDING)
            .values(status=new_status, approver_id=actor_id, action_at=now, notes=notes)
            .execution_options(synchronize_session=False)
        )
        if updated.rowcount == 0:
            db.rollback()
            current = db.execute(
                select(ApprovalStep.status).where(ApprovalStep.id == step_id)
            ).scalar_one_or_none()
            logger.warning(
                "process_approval: lost race on step=%s (now %s), actor=%s",
                step_id, current, actor_id,
            )
            if current is None:
                raise StepNotFoundError()
            raise StepConflictError(current)

        if action is ApprovalAction.REJECT:
            skipped = db.execute(
                update(ApprovalStep)
                .where(
                    chain_filter(step.entity_type, step.entity_id, step.tenant_id),
                    ApprovalStep.status == PENDING,
                )
                .values(status=SKIPPED)
                .execution_options(synchronize_session=False)
            ).rowcount

        audit_svc.log(
            db=db,
            action=f"approval_step.{new_status.lower()}",
            entity_type=step.entity_type,
            entity_id=step.entity_id,
            actor_id=actor_id,
            tenant_id=step.tenant_id,
            before={"step_id": str(step.id), "level_order": step.level_order, "status": PENDING},
            after={
                "step_id": str(step.id),
                "level_order": step.level_order,
                "status": new_status,
                "via_delegation": authorization.via_delegation,
                "skipped_steps": skipped,
            },
            notes=notes,
        )

        # Nothing may raise after commit.
        db.refresh(step)
        statuses = [
            status for _, status in chain_statuses(db, step.entity_type, step.entity_id, step.tenant_id)
        ]
        is_chain_complete = PENDING not in statuses
        result = ProcessApprovalResult(
            success=True,
            step=ApprovalStepOut.model_validate(step),
            is_chain_complete=is_chain_complete,
            all_approved=is_chain_complete and REJECTED not in statuses,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.expire_all()

    logger.info(
        "Approval decision: step=%s %s/%s level=%d action=%s actor=%s skipped=%d complete=%s",
        result.step.id, result.step.entity_type.value, result.step.entity_id, result.step.level_order,
        action.value, actor_id, skipped, is_chain_complete,
    )
    return result


# ─── Admin bypass ───

def admin_bypass_approval(
    db: Session,
    module: ApprovalModule | str,
    entity_id: str,
    admin_id: uuid.UUID,
    notes: str | None = None,
    tenant_id: str | None = None,
) -> None:
    """Approve every PENDING step of the chain in one statement.

    No role checks and no level ordering. Calling it again once nothing is
    PENDING updates zero rows and changes nothing. Pass ``tenant_id`` to keep
    the bypass inside one tenant when entity ids are not globally unique.
    """
    module_value = ApprovalModule(module).value
    now = datetime.now(timezone.utc)
    note = notes or settings.ADMIN_BYPASS_NOTE

    try:
        owner = chain_tenant(db, module_value, entity_id, tenant_id)
        approved = db.execute(
            update(ApprovalStep)
            .where(chain_filter(module_value, entity_id, tenant_id), ApprovalStep.status == PENDING)
            .values(status=APPROVED, approver_id=admin_id, action_at=now, notes=note)
            .execution_options(synchronize_session=False)
        ).rowcount

        if approved:
            audit_svc.log(
                db=db,
                action="approval_chain.bypassed",
                entity_type=module_value,
                entity_id=str(entity_id),
                actor_id=admin_id,
                tenant_id=owner,
                after={"approved_steps": approved},
                notes=note,
            )
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.expire_all()
    logger.info(
        "Admin bypass: %s/%s admin=%s approved_steps=%d",
        module_value, entity_id, admin_id, approved,
    )


# ─── Sequential processing of an entity ───

def process_entity_approval(
    db: Session,
    module: ApprovalModule | str,
    entity_id: str,
    actor_id: uuid.UUID,
    action: ApprovalAction | str,
    notes: str | None = None,
    requester_id: uuid.UUID | None = None,
    tenant_id: str | None = None,
) -> EntityApprovalResult:
    """Act on the entity's current pending step, level by level.

    Entities without a chain are reported as complete so the caller can
    apply its single-step flow. Authorization failures and lost races come
    back in ``error`` rather than as exceptions, since the caller maps them
    to a user-facing message either way.

    After an approval that leaves the chain open, ``next_approver_ids`` lists
    who can act on the next level (minus the requester) for notification.
    """
    action = _coerce_action(action)

    if not has_approval_chain(db, module, entity_id, tenant_id):
        return EntityApprovalResult(chain_exists=False, is_chain_complete=True, step_processed=False)

    pending_step = get_current_pending_step(db, module, entity_id, tenant_id)
    if pending_step is None:
        summary = get_approval_chain_summary(db, module, entity_id, tenant_id)
        return EntityApprovalResult(
            chain_exists=True,
            is_chain_complete=True,
            step_processed=False,
            all_approved=summary.status is ApprovalChainStatus.APPROVED,
            summary=summary,
        )

    chain_tenant_id = pending_step.tenant_id

    try:
        result = process_approval(db, pending_step.id, actor_id, action, notes=notes)
    except (ApprovalForbiddenError, StepConflictError) as exc:
        logger.warning(
            "process_entity_approval: %s/%s not processed for actor=%s: %s",
            ApprovalModule(module).value, entity_id, actor_id, exc,
        )
        return EntityApprovalResult(
            chain_exists=True,
            is_chain_complete=False,
            step_processed=False,
            error=str(exc),
            summary=get_approval_chain_summary(db, module, entity_id, chain_tenant_id),
        )

    next_approver_ids: list[uuid.UUID] = []
    if not result.is_chain_complete and action is ApprovalAction.APPROVE:
        next_step = get_current_pending_step(db, module, entity_id, chain_tenant_id)
        if next_step is not None:
            next_approver_ids = [
                user.id
                for user in get_approvers_for_role(
                    db,
                    next_step.required_role,
                    tenant_id=next_step.tenant_id,
                    exclude_user_id=requester_id,
                )
            ]

    return EntityApprovalResult(
        chain_exists=True,
        is_chain_complete=result.is_chain_complete,
        step_processed=True,
        all_approved=result.all_approved,
        summary=get_approval_chain_summary(db, module, entity_id, chain_tenant_id),
        next_approver_ids=next_approver_ids,
    )
