"""Tests for approval decisions, admin bypass and entity-level processing.

Tests:
  1. test_two_level_approval_flow        — MANAGER then ADMIN approve; chain APPROVED
  2. test_reject_skips_remaining_levels  — REJECT cascades PENDING -> SKIPPED
  3. test_reject_mid_chain               — earlier APPROVED levels untouched
  4. test_terminal_steps_conflict        — APPROVED / SKIPPED steps cannot be re-decided
  5. test_forbidden / not_found / invalid_action
  6. test_concurrent_decisions_one_wins  — lost race surfaces as StepConflictError
  7. test_admin_bypass_*                 — bulk approve, default note, idempotent
  8. test_process_entity_approval_*      — sequential processing + next approvers
  9. test_request_approval_*             — policy lookup + chain creation
 10. test_*_tenant*                      — chains with the same entity id in two tenants stay apart
"""
import json
import uuid

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from approval_engine.core.config import settings
from approval_engine.core.exceptions import (
    ApprovalForbiddenError,
    ChainExistsError,
    ConflictError,
    StepConflictError,
    StepNotFoundError,
)
from approval_engine.db.base import Base
from approval_engine.models import (
    ApprovalChainStatus,
    ApprovalLevel,
    ApprovalModule,
    ApprovalPolicy,
    ApprovalRole,
    User,
)
from approval_engine.schemas.approval import ApprovalLevelIn, ApprovalPolicyIn, ApprovalPolicyOut
from approval_engine.services import approval as approval_svc
from approval_engine.services import audit as audit_svc
from approval_engine.services.approval import (
    admin_bypass_approval,
    process_approval,
    process_entity_approval,
    request_approval,
)
from approval_engine.services.approval_chain import (
    get_approval_chain,
    get_approval_chain_summary,
    initialize_approval_chain,
    is_fully_approved,
    was_rejected,
)
from approval_engine.services.approval_policy import create_approval_policy

LEAVE = ApprovalModule.LEAVE_REQUEST
PURCHASE = ApprovalModule.PURCHASE_REQUEST


def _statuses(db, module, entity_id) -> list[str]:
    return [step.status for step in get_approval_chain(db, module, entity_id)]


# ─── process_approval ─────────────────────────────────────────────────────────

def test_two_level_approval_flow(db, make_user, make_policy):
    manager = make_user(ApprovalRole.MANAGER)
    admin = make_user(role="ADMIN")
    policy = make_policy(module=LEAVE, roles=(ApprovalRole.MANAGER, ApprovalRole.ADMIN))
    first, second = initialize_approval_chain(db, LEAVE, "leave-1", policy)

    result = process_approval(db, first.id, manager.id, "APPROVE", notes="Enjoy")

    assert result.success is True
    assert result.is_chain_complete is False
    assert result.all_approved is False
    assert result.step.status == "APPROVED"
    assert result.step.approver_id == manager.id
    assert result.step.action_at is not None
    assert result.step.notes == "Enjoy"
    summary = get_approval_chain_summary(db, LEAVE, "leave-1")
    assert (summary.total_steps, summary.completed_steps, summary.current_step) == (2, 1, 2)
    assert summary.status is ApprovalChainStatus.PENDING

    result = process_approval(db, second.id, admin.id, "APPROVE")

    assert result.is_chain_complete is True
    assert result.all_approved is True
    summary = get_approval_chain_summary(db, LEAVE, "leave-1")
    assert (summary.completed_steps, summary.current_step) == (2, None)
    assert summary.status is ApprovalChainStatus.APPROVED
    assert is_fully_approved(db, LEAVE, "leave-1")


def test_reject_skips_remaining_levels(db, make_user, make_policy):
    manager = make_user(ApprovalRole.MANAGER)
    policy = make_policy(module=LEAVE, roles=(ApprovalRole.MANAGER, ApprovalRole.ADMIN))
    first, _ = initialize_approval_chain(db, LEAVE, "leave-2", policy)

    result = process_approval(db, first.id, manager.id, "REJECT", notes="Busy week")

    assert result.step.status == "REJECTED"
    assert result.is_chain_complete is True
    assert result.all_approved is False
    assert _statuses(db, LEAVE, "leave-2") == ["REJECTED", "SKIPPED"]
    assert was_rejected(db, LEAVE, "leave-2")
    summary = get_approval_chain_summary(db, LEAVE, "leave-2")
    assert summary.status is ApprovalChainStatus.REJECTED
    assert summary.current_step == 1


def test_reject_mid_chain(db, make_user, make_policy):
    manager = make_user(ApprovalRole.MANAGER)
    finance = make_user(ApprovalRole.FINANCE)
    policy = make_policy(module=PURCHASE, roles=(ApprovalRole.MANAGER, ApprovalRole.FINANCE, ApprovalRole.ADMIN))
    first, second, third = initialize_approval_chain(db, PURCHASE, "po-1", policy)

    process_approval(db, first.id, manager.id, "APPROVE")
    process_approval(db, second.id, finance.id, "REJECT")

    chain = get_approval_chain(db, PURCHASE, "po-1")
    assert [s.status for s in chain] == ["APPROVED", "REJECTED", "SKIPPED"]
    assert chain[0].approver_id == manager.id
    # Skipped steps carry no decision.
    assert chain[2].approver_id is None
    assert chain[2].action_at is None


def test_reject_does_not_touch_other_chains(db, make_user, make_policy):
    manager = make_user(ApprovalRole.MANAGER)
    policy = make_policy(module=LEAVE)
    first, _ = initialize_approval_chain(db, LEAVE, "leave-a", policy)
    initialize_approval_chain(db, LEAVE, "leave-b", policy)

    process_approval(db, first.id, manager.id, "REJECT")

    assert _statuses(db, LEAVE, "leave-b") == ["PENDING", "PENDING"]


def test_terminal_steps_conflict(db, make_user, make_policy):
    manager = make_user(ApprovalRole.MANAGER)
    admin = make_user(role="ADMIN")
    first, second = initialize_approval_chain(db, LEAVE, "leave-3", make_policy(module=LEAVE))

    process_approval(db, first.id, manager.id, "APPROVE")
    with pytest.raises(StepConflictError, match="Step already approved"):
        process_approval(db, first.id, admin.id, "REJECT")

    process_approval(db, second.id, admin.id, "REJECT")
    with pytest.raises(ConflictError, match="Step already rejected"):
        process_approval(db, second.id, admin.id, "APPROVE")

    assert _statuses(db, LEAVE, "leave-3") == ["APPROVED", "REJECTED"]


def test_skipped_step_conflict(db, make_user, make_policy):
    manager = make_user(ApprovalRole.MANAGER)
    admin = make_user(role="ADMIN")
    first, second = initialize_approval_chain(db, LEAVE, "leave-4", make_policy(module=LEAVE))
    process_approval(db, first.id, manager.id, "REJECT")

    with pytest.raises(StepConflictError) as exc_info:
        process_approval(db, second.id, admin.id, "APPROVE")
    assert exc_info.value.status == "SKIPPED"


def test_forbidden_leaves_step_pending(db, make_user, make_policy):
    hr = make_user(ApprovalRole.HR)
    first, _ = initialize_approval_chain(db, LEAVE, "leave-5", make_policy(module=LEAVE))

    with pytest.raises(ApprovalForbiddenError) as exc_info:
        process_approval(db, first.id, hr.id, "APPROVE")

    assert exc_info.value.reason == "Requires role MANAGER"
    assert _statuses(db, LEAVE, "leave-5") == ["PENDING", "PENDING"]


def test_unknown_actor_forbidden(db, make_policy):
    first, _ = initialize_approval_chain(db, LEAVE, "leave-6", make_policy(module=LEAVE))

    with pytest.raises(ApprovalForbiddenError, match="Member not found"):
        process_approval(db, first.id, uuid.uuid4(), "APPROVE")


def test_step_not_found(db, make_user):
    admin = make_user(role="ADMIN")

    with pytest.raises(StepNotFoundError, match="Approval step not found"):
        process_approval(db, uuid.uuid4(), admin.id, "APPROVE")


def test_invalid_action(db, make_user, make_policy):
    admin = make_user(role="ADMIN")
    first, _ = initialize_approval_chain(db, LEAVE, "leave-7", make_policy(module=LEAVE))

    with pytest.raises(ValueError, match="Invalid action"):
        process_approval(db, first.id, admin.id, "ESCALATE")
    assert _statuses(db, LEAVE, "leave-7") == ["PENDING", "PENDING"]


def test_action_case_insensitive(db, make_user, make_policy):
    manager = make_user(ApprovalRole.MANAGER)
    first, _ = initialize_approval_chain(db, LEAVE, "leave-8", make_policy(module=LEAVE))

    assert process_approval(db, first.id, manager.id, "approve").step.status == "APPROVED"


def test_out_of_order_approval_allowed(db, make_user, make_policy):
    admin = make_user(role="ADMIN")
    _, second = initialize_approval_chain(db, LEAVE, "leave-9", make_policy(module=LEAVE))

    result = process_approval(db, second.id, admin.id, "APPROVE")

    assert result.is_chain_complete is False
    assert _statuses(db, LEAVE, "leave-9") == ["PENDING", "APPROVED"]


def test_delegate_decision_is_audited(db, make_user, make_policy, make_delegation):
    manager = make_user(ApprovalRole.MANAGER)
    deputy = make_user()
    make_delegation(manager, deputy)
    first, _ = initialize_approval_chain(db, LEAVE, "leave-10", make_policy(module=LEAVE))

    process_approval(db, first.id, deputy.id, "APPROVE", notes="Covering")

    entry = audit_svc.list_for_entity(db, "LEAVE_REQUEST", "leave-10")[-1]
    assert entry.action == "approval_step.approved"
    assert entry.actor_id == deputy.id
    assert entry.notes == "Covering"
    after = json.loads(entry.after_state)
    assert after["via_delegation"] is True
    assert after["level_order"] == 1
    assert json.loads(entry.before_state)["status"] == "PENDING"


def test_reject_audit_counts_skipped(db, make_user, make_policy):
    manager = make_user(ApprovalRole.MANAGER)
    policy = make_policy(module=LEAVE, roles=(ApprovalRole.MANAGER, ApprovalRole.HR, ApprovalRole.ADMIN))
    first, _, _ = initialize_approval_chain(db, LEAVE, "leave-11", policy)

    process_approval(db, first.id, manager.id, "REJECT")

    entry = audit_svc.list_for_entity(db, "LEAVE_REQUEST", "leave-11")[-1]
    assert entry.action == "approval_step.rejected"
    assert json.loads(entry.after_state)["skipped_steps"] == 2


def test_decision_on_level_with_custom_role(db, make_user):
    admin = make_user(role="ADMIN")
    policy = ApprovalPolicy(
        tenant_id="SYSTEM",
        name="Board sign-off",
        module=LEAVE.value,
        priority=0,
        levels=[ApprovalLevel(level_order=1, approver_role="DIRECTOR")],
    )
    db.add(policy)
    db.commit()
    step = initialize_approval_chain(db, LEAVE, "leave-director", policy)[0]

    result = process_approval(db, step.id, admin.id, "APPROVE")

    assert result.step.required_role == "DIRECTOR"
    assert result.all_approved is True
    assert ApprovalPolicyOut.model_validate(policy).levels[0].approver_role == "DIRECTOR"


def test_decision_not_persisted_when_result_fails(db, make_user, make_policy, monkeypatch):
    manager = make_user(ApprovalRole.MANAGER)
    first, _ = initialize_approval_chain(db, LEAVE, "leave-result", make_policy(module=LEAVE))

    def broken_statuses(*args, **kwargs):
        raise RuntimeError("status read failed")

    monkeypatch.setattr(approval_svc, "chain_statuses", broken_statuses)

    with pytest.raises(RuntimeError, match="status read failed"):
        process_approval(db, first.id, manager.id, "APPROVE")

    monkeypatch.undo()
    assert _statuses(db, LEAVE, "leave-result") == ["PENDING", "PENDING"]
    # The step can still be decided once the failure is gone.
    assert process_approval(db, first.id, manager.id, "APPROVE").step.status == "APPROVED"


# ─── Concurrency ──────────────────────────────────────────────────────────────

def test_concurrent_decisions_one_wins(tmp_path, monkeypatch):
    """A rival decision committed between our checks and our write wins."""
    engine = create_engine(f"sqlite:///{tmp_path / 'race.db'}")
    Base.metadata.create_all(engine)
    RaceSession = sessionmaker(engine, expire_on_commit=False, autoflush=False)

    with RaceSession() as setup:
        manager = User(tenant_id="SYSTEM", email="manager@example.com", approval_role="MANAGER")
        admin = User(tenant_id="SYSTEM", email="admin@example.com", role="ADMIN")
        setup.add_all([manager, admin])
        setup.commit()
        policy = create_approval_policy(
            setup,
            ApprovalPolicyIn(
                name="Leave",
                module=LEAVE,
                levels=[
                    ApprovalLevelIn(level_order=1, approver_role=ApprovalRole.MANAGER),
                    ApprovalLevelIn(level_order=2, approver_role=ApprovalRole.HR),
                ],
            ),
        )
        step_id = initialize_approval_chain(setup, LEAVE, "leave-race", policy)[0].id
        manager_id, admin_id = manager.id, admin.id

    original = approval_svc.can_user_approve
    rival_results = []

    def racing_authorizer(db, user_id, step):
        if not rival_results:
            rival_results.append(None)
            with RaceSession() as rival_db:
                rival_results[0] = approval_svc.process_approval(rival_db, step_id, admin_id, "REJECT")
        return original(db, user_id, step)

    monkeypatch.setattr(approval_svc, "can_user_approve", racing_authorizer)

    with RaceSession() as db:
        with pytest.raises(StepConflictError, match="Step already rejected"):
            process_approval(db, step_id, manager_id, "APPROVE")

    assert rival_results[0].step.status == "REJECTED"
    with RaceSession() as check:
        chain = get_approval_chain(check, LEAVE, "leave-race")
        assert [s.status for s in chain] == ["REJECTED", "SKIPPED"]
        assert chain[0].approver_id == admin_id

    engine.dispose()


# ─── Admin bypass ─────────────────────────────────────────────────────────────

def test_admin_bypass_approves_everything(db, make_user, make_policy):
    admin = make_user(role="ADMIN")
    policy = make_policy(module=PURCHASE, roles=(ApprovalRole.MANAGER, ApprovalRole.FINANCE, ApprovalRole.ADMIN))
    initialize_approval_chain(db, PURCHASE, "po-2", policy)

    admin_bypass_approval(db, PURCHASE, "po-2", admin.id)

    chain = get_approval_chain(db, PURCHASE, "po-2")
    assert all(s.status == "APPROVED" for s in chain)
    assert all(s.approver_id == admin.id for s in chain)
    assert all(s.notes == settings.ADMIN_BYPASS_NOTE for s in chain)
    assert is_fully_approved(db, PURCHASE, "po-2")


def test_admin_bypass_is_idempotent(db, make_user, make_policy):
    admin = make_user(role="ADMIN")
    other_admin = make_user(role="ADMIN")
    initialize_approval_chain(db, LEAVE, "leave-12", make_policy(module=LEAVE))

    admin_bypass_approval(db, LEAVE, "leave-12", admin.id, notes="Urgent")
    admin_bypass_approval(db, LEAVE, "leave-12", other_admin.id)

    chain = get_approval_chain(db, LEAVE, "leave-12")
    assert all(s.approver_id == admin.id and s.notes == "Urgent" for s in chain)
    actions = [e.action for e in audit_svc.list_for_entity(db, "LEAVE_REQUEST", "leave-12")]
    assert actions.count("approval_chain.bypassed") == 1


def test_admin_bypass_keeps_decided_steps(db, make_user, make_policy):
    manager = make_user(ApprovalRole.MANAGER)
    admin = make_user(role="ADMIN")
    policy = make_policy(module=LEAVE, roles=(ApprovalRole.MANAGER, ApprovalRole.HR, ApprovalRole.ADMIN))
    first, _, _ = initialize_approval_chain(db, LEAVE, "leave-13", policy)
    process_approval(db, first.id, manager.id, "APPROVE")

    admin_bypass_approval(db, LEAVE, "leave-13", admin.id)

    chain = get_approval_chain(db, LEAVE, "leave-13")
    assert [s.approver_id for s in chain] == [manager.id, admin.id, admin.id]
    assert is_fully_approved(db, LEAVE, "leave-13")


def test_admin_bypass_after_rejection_changes_nothing(db, make_user, make_policy):
    manager = make_user(ApprovalRole.MANAGER)
    admin = make_user(role="ADMIN")
    first, _ = initialize_approval_chain(db, LEAVE, "leave-14", make_policy(module=LEAVE))
    process_approval(db, first.id, manager.id, "REJECT")

    admin_bypass_approval(db, LEAVE, "leave-14", admin.id)

    assert _statuses(db, LEAVE, "leave-14") == ["REJECTED", "SKIPPED"]
    assert not is_fully_approved(db, LEAVE, "leave-14")


# ─── process_entity_approval ──────────────────────────────────────────────────

def test_process_entity_approval_without_chain(db, make_user):
    manager = make_user(ApprovalRole.MANAGER)

    result = process_entity_approval(db, LEAVE, "leave-none", manager.id, "APPROVE")

    assert result.chain_exists is False
    assert result.is_chain_complete is True
    assert result.step_processed is False


def test_process_entity_approval_walks_levels(db, make_user, make_policy):
    requester = make_user(ApprovalRole.HR)
    manager = make_user(ApprovalRole.MANAGER)
    hr = make_user(ApprovalRole.HR)
    policy = make_policy(module=LEAVE, roles=(ApprovalRole.MANAGER, ApprovalRole.HR))
    initialize_approval_chain(db, LEAVE, "leave-15", policy)

    result = process_entity_approval(db, LEAVE, "leave-15", manager.id, "APPROVE", requester_id=requester.id)

    assert result.step_processed is True
    assert result.is_chain_complete is False
    assert result.summary.current_step == 2
    assert result.next_approver_ids == [hr.id]

    result = process_entity_approval(db, LEAVE, "leave-15", hr.id, "APPROVE")

    assert result.is_chain_complete is True
    assert result.all_approved is True
    assert result.next_approver_ids == []
    assert result.summary.status is ApprovalChainStatus.APPROVED

    result = process_entity_approval(db, LEAVE, "leave-15", hr.id, "APPROVE")
    assert result.step_processed is False
    assert result.is_chain_complete is True
    assert result.all_approved is True


def test_process_entity_approval_reports_forbidden(db, make_user, make_policy):
    hr = make_user(ApprovalRole.HR)
    initialize_approval_chain(db, LEAVE, "leave-16", make_policy(module=LEAVE))

    result = process_entity_approval(db, LEAVE, "leave-16", hr.id, "APPROVE")

    assert result.step_processed is False
    assert result.is_chain_complete is False
    assert result.error == "Requires role MANAGER"
    assert result.summary.current_step == 1


def test_process_entity_approval_reject(db, make_user, make_policy):
    manager = make_user(ApprovalRole.MANAGER)
    initialize_approval_chain(db, LEAVE, "leave-17", make_policy(module=LEAVE))

    result = process_entity_approval(db, LEAVE, "leave-17", manager.id, "REJECT", notes="No")

    assert result.step_processed is True
    assert result.is_chain_complete is True
    assert result.all_approved is False
    assert result.summary.status is ApprovalChainStatus.REJECTED


# ─── request_approval ─────────────────────────────────────────────────────────

def test_request_approval_creates_chain(db, make_policy):
    make_policy(module=LEAVE, max_days=3, roles=(ApprovalRole.MANAGER,), priority=10)
    make_policy(module=LEAVE, min_days=4, roles=(ApprovalRole.MANAGER, ApprovalRole.HR), priority=10)

    steps = request_approval(db, LEAVE, "leave-18", days=5)

    assert [s.required_role for s in steps] == ["MANAGER", "HR"]
    with pytest.raises(ChainExistsError):
        request_approval(db, LEAVE, "leave-18", days=5)


def test_request_approval_without_policy(db):
    assert request_approval(db, PURCHASE, "po-3", amount=250) == []
    assert get_approval_chain(db, PURCHASE, "po-3") == []


# ─── Tenant isolation ─────────────────────────────────────────────────────────

def _two_tenant_chains(db, make_policy, entity_id: str):
    for tenant in ("acme", "globex"):
        policy = make_policy(module=LEAVE, tenant_id=tenant)
        steps = initialize_approval_chain(db, LEAVE, entity_id, policy, tenant_id=tenant)
        assert [s.tenant_id for s in steps] == [tenant, tenant]


def test_admin_bypass_stays_in_tenant(db, make_user, make_policy):
    admin = make_user(role="ADMIN")
    _two_tenant_chains(db, make_policy, "leave-shared")

    admin_bypass_approval(db, LEAVE, "leave-shared", admin.id, tenant_id="acme")

    assert is_fully_approved(db, LEAVE, "leave-shared", tenant_id="acme")
    assert [s.status for s in get_approval_chain(db, LEAVE, "leave-shared", tenant_id="globex")] == [
        "PENDING", "PENDING",
    ]
    bypasses = [
        e for e in audit_svc.list_for_entity(db, "LEAVE_REQUEST", "leave-shared")
        if e.action == "approval_chain.bypassed"
    ]
    assert [e.tenant_id for e in bypasses] == ["acme"]


def test_admin_bypass_audit_records_owning_tenant(db, make_user, make_policy):
    admin = make_user(role="ADMIN")
    policy = make_policy(module=LEAVE, tenant_id="acme")
    initialize_approval_chain(db, LEAVE, "leave-owned", policy, tenant_id="acme")

    admin_bypass_approval(db, LEAVE, "leave-owned", admin.id)

    entry = audit_svc.list_for_entity(db, "LEAVE_REQUEST", "leave-owned")[-1]
    assert entry.action == "approval_chain.bypassed"
    assert entry.tenant_id == "acme"


def test_reject_stays_in_tenant(db, make_user, make_policy):
    admin = make_user(role="ADMIN")
    _two_tenant_chains(db, make_policy, "leave-shared")
    acme_first = get_approval_chain(db, LEAVE, "leave-shared", tenant_id="acme")[0]

    result = process_approval(db, acme_first.id, admin.id, "REJECT")

    assert result.is_chain_complete is True
    assert [s.status for s in get_approval_chain(db, LEAVE, "leave-shared", tenant_id="acme")] == [
        "REJECTED", "SKIPPED",
    ]
    assert [s.status for s in get_approval_chain(db, LEAVE, "leave-shared", tenant_id="globex")] == [
        "PENDING", "PENDING",
    ]


def test_process_entity_approval_in_tenant(db, make_user, make_policy):
    manager = make_user(ApprovalRole.MANAGER, tenant_id="globex")
    _two_tenant_chains(db, make_policy, "leave-shared")

    result = process_entity_approval(db, LEAVE, "leave-shared", manager.id, "APPROVE", tenant_id="globex")

    assert result.step_processed is True
    assert result.summary.completed_steps == 1
    assert get_approval_chain_summary(db, LEAVE, "leave-shared", tenant_id="acme").completed_steps == 0
