"""Error taxonomy for the approval engine.

Every error subclasses ValueError so call sites that already catch
ValueError around service calls keep working.
"""


class ApprovalError(ValueError):
    """Base class for synchronous approval failures."""


class NotFoundError(ApprovalError):
    """A referenced step or policy does not exist. Retrying will not help."""


class StepNotFoundError(NotFoundError):
    def __init__(self, message: str = "Approval step not found") -> None:
        super().__init__(message)


class PolicyNotFoundError(NotFoundError):
    def __init__(self, message: str = "Approval policy not found") -> None:
        super().__init__(message)


class ConflictError(ApprovalError):
    """Target is already in a state that forbids the requested transition."""


class StepConflictError(ConflictError):
    """Step is already terminal (including a lost race on the same step)."""

    def __init__(self, status: str | None = None) -> None:
        self.status = status
        detail = status.lower() if status else "processed"
        super().__init__(f"Step already {detail}")


class ChainExistsError(ConflictError):
    pass


class ApprovalForbiddenError(ApprovalError):
    """Actor lacks the required role and holds no applicable delegation."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)
