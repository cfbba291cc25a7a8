"""Custom exceptions for the workflow execution engine."""


class WorkflowEngineError(Exception):
    """Base exception for the workflow execution engine."""

    def __init__(self, message: str, status_code: int = 500):
        """Initialize exception with message and status code.

        Args:
            message: Exception message
            status_code: HTTP status code a hosting service should map this to
        """
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


class ExecutorError(WorkflowEngineError):
    """A step's underlying action could not complete."""

    def __init__(self, message: str = "Step execution failed"):
        super().__init__(message, 502)


class StepTimeoutError(ExecutorError):
    """A step did not settle before its deadline."""

    def __init__(self, timeout_ms: int):
        self.timeout_ms = timeout_ms
        super().__init__(f"Step timed out after {timeout_ms}ms")


class UnknownStepTypeError(WorkflowEngineError):
    """No executor is registered for a step type."""

    def __init__(self, step_type: str):
        self.step_type = step_type
        super().__init__(f"Unknown step type: {step_type}", 422)


class DefinitionError(WorkflowEngineError):
    """Workflow definition failed validation."""

    def __init__(self, message: str = "Invalid workflow definition"):
        super().__init__(message, 422)


class PersistenceError(WorkflowEngineError):
    """Run state could not be read from or written to the store."""

    def __init__(self, message: str = "Persistence failure"):
        super().__init__(message, 503)


class NotFoundError(WorkflowEngineError):
    """Resource not found exception."""

    def __init__(self, message: str = "Resource not found"):
        """Initialize NotFoundError with 404 status code."""
        super().__init__(message, 404)


class RunNotFoundError(NotFoundError):
    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Run {run_id} not found")


class WorkflowNotFoundError(NotFoundError):
    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f"Workflow {workflow_id} not found or inactive")


class DeadLetterNotFoundError(NotFoundError):
    def __init__(self, dead_letter_id: str):
        self.dead_letter_id = dead_letter_id
        super().__init__(f"Dead letter {dead_letter_id} not found")


class InvalidRunStateError(WorkflowEngineError):
    """Requested run transition is not allowed from the current status."""

    def __init__(self, message: str = "Invalid run state"):
        """Initialize InvalidRunStateError with 409 status code."""
        super().__init__(message, 409)
