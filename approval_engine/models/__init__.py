from approval_engine.models.user import User
from approval_engine.models.approval import (
    ApprovalAction,
    ApprovalChainStatus,
    ApprovalLevel,
    ApprovalModule,
    ApprovalPolicy,
    ApprovalRole,
    ApprovalStep,
    ApprovalStepStatus,
)
from approval_engine.models.delegation import ApproverDelegation
from approval_engine.models.audit import AuditLog

__all__ = [
    "User",
    "ApprovalModule", "ApprovalRole", "ApprovalStepStatus", "ApprovalAction", "ApprovalChainStatus",
    "ApprovalPolicy", "ApprovalLevel", "ApprovalStep",
    "ApproverDelegation",
    "AuditLog",
]
