"""Exception types shared across the orchestrator core."""


class OrchestratorError(Exception):
    """Base class for errors raised by the orchestrator core."""


class NotFoundError(OrchestratorError, LookupError):
    """Raised when a workspace, workflow, run, rule or other record does not exist."""


class ValidationError(OrchestratorError, ValueError):
    """Raised when input is rejected before any state is written."""


class WorkflowValidationError(ValidationError):
    """Raised when a workflow definition is malformed."""


class WorkflowCycleError(WorkflowValidationError):
    """Raised when a workflow's step graph contains a cycle."""

    def __init__(self, step_id: str):
        self.step_id = step_id
        super().__init__(f"Cycle detected in workflow at step '{step_id}'")
