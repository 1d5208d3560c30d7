"""Audit log helper: append-only writes to audit_logs table."""
import json
import logging
import uuid
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from approval_engine.models.audit import AuditLog

logger = logging.getLogger(__name__)


def log(
    db: Session,
    action: str,
    entity_type: str,
    entity_id: str | None = None,
    actor_id: uuid.UUID | str | None = None,
    tenant_id: str | None = None,
    before: Any | None = None,
    after: Any | None = None,
    notes: str | None = None,
) -> AuditLog:
    """Write a single audit log entry.

    Args:
        db: Sync SQLAlchemy session.
        action: Dotted verb, e.g. 'approval_step.approved', 'approval_chain.bypassed'.
        entity_type: Approval module of the chain, e.g. 'LEAVE_REQUEST'.
        entity_id: Opaque id of the entity being approved.
        actor_id: User who performed the action (None for system actions).
        tenant_id: Owning tenant of the chain.
        before: Dict snapshot of state before the action (JSON-serialisable).
        after: Dict snapshot of state after the action.
        notes: Free-text annotation.
    """
    entry = AuditLog(
        tenant_id=tenant_id,
        actor_id=uuid.UUID(str(actor_id)) if actor_id else None,
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id) if entity_id is not None else None,
        before_state=json.dumps(before, default=str) if before is not None else None,
        after_state=json.dumps(after, default=str) if after is not None else None,
        notes=notes,
    )
    db.add(entry)
    db.flush()  # get id without committing; caller controls the transaction
    logger.debug("Audit: %s %s/%s", action, entity_type, entity_id)
    return entry


def list_for_entity(db: Session, entity_type: str, entity_id: str) -> list[AuditLog]:
    """Return the audit trail of one approval chain, oldest first."""
    stmt = (
        select(AuditLog)
        .where(AuditLog.entity_type == entity_type, AuditLog.entity_id == entity_id)
        .order_by(AuditLog.created_at.asc())
    )
    return list(db.execute(stmt).scalars().all())
