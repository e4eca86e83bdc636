# bugflow/errors.py

from typing import Any, Optional


class BugflowError(Exception):
    """Base error; `code` is stable and safe to hand to callers."""

    code = "BUGFLOW_ERROR"

    def __init__(self, message: str, *, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details


# ─────────────────────────── definition errors ───────────────────────────

class DefinitionNotFoundError(BugflowError):
    code = "DEFINITION_NOT_FOUND"


class NoInitialStepError(BugflowError):
    code = "NO_INITIAL_STEP"


class InvalidDefinitionError(BugflowError):
    code = "INVALID_DEFINITION"


# ─────────────────────────── execution errors ────────────────────────────

class WorkflowNotFoundError(BugflowError):
    code = "WORKFLOW_NOT_FOUND"


class WorkflowAlreadyStartedError(BugflowError):
    code = "ALREADY_STARTED"


class InvalidStatusTransitionError(BugflowError):
    code = "INVALID_STATUS_TRANSITION"


class ConcurrencyConflictError(BugflowError):
    code = "CONCURRENT_MODIFICATION"
