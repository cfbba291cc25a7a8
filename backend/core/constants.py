"""Constants and enums for the workflow execution engine."""

from enum import Enum


class RunStatus(str, Enum):
    """Workflow run status."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    PAUSED = "paused"


class StepStatus(str, Enum):
    """Outcome recorded for a single step."""

    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class FailurePolicy(str, Enum):
    """What the engine does when a step fails."""

    RETRY = "retry"
    SKIP = "skip"
    ABORT = "abort"
    DEAD_LETTER = "dead_letter"


class TriggerType(str, Enum):
    """How a workflow is started."""

    MANUAL = "manual"
    WEBHOOK = "webhook"
    SCHEDULE = "schedule"
    STORAGE_EVENT = "storage_event"


class ConditionOperator(str, Enum):
    """Comparison operators accepted by condition steps."""

    EQ = "eq"
    NEQ = "neq"
    GT = "gt"
    LT = "lt"
    GTE = "gte"
    LTE = "lte"
    CONTAINS = "contains"
    EXISTS = "exists"
    NOT_EXISTS = "not_exists"


# Statuses from which resume_workflow may continue a run
RESUMABLE_STATUSES = frozenset({RunStatus.FAILED, RunStatus.PAUSED})

# Hard ceiling for delay steps, in seconds
MAX_DELAY_SECONDS = 300

# Allowed statuses for api_call steps when expected_status is not configured
DEFAULT_EXPECTED_STATUS = (200, 201, 202, 204)

# Maximum number of characters of a response body quoted in error messages
ERROR_BODY_PREVIEW_CHARS = 200
