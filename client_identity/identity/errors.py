"""Error taxonomy for identity resolution and client merges.

Each error carries a stable ``code`` and a ``retry`` hint so callers can tell
"nothing happened, try again" apart from "merge partially applied, resubmit
the same plan".
"""


class IdentityError(Exception):
    """Base class for identity resolution errors."""

    code = "identity_error"
    retry = "never"

    def __init__(self, message: str, **context: object):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict:
        """Serialize for API responses."""
        return {"error": self.code, "message": self.message, "retry": self.retry}


class WorkflowStateError(IdentityError):
    """Raised when a merge workflow transition is not allowed."""

    code = "invalid_workflow_state"


class MergeError(IdentityError):
    """Base class for errors signaled by the merge executor."""


class ValidationError(MergeError):
    """Malformed plan or profile. Nothing was written."""

    code = "validation_failed"


class ConflictError(MergeError):
    """Another merge holds one of the plan's clients, or the plan is stale.

    Callers re-propose from fresh data instead of retrying.
    """

    code = "merge_conflict"
    retry = "repropose"


class PartialFailureError(MergeError):
    """A storage call failed after mutations began.

    Dependents already moved point at the primary and no duplicate was
    deleted before verification, so resubmitting the identical plan is safe.
    """

    code = "merge_partially_applied"
    retry = "resubmit_same_plan"


class StorageError(MergeError):
    """Storage was unreachable or rejected a call before any mutation."""

    code = "storage_unavailable"
    retry = "retry_now"
