"""Workflow definitions, runs and their step ledger.

Definitions are read-only once loaded for a run. A WorkflowRun is the
mutable record the engine advances; its ``step_results`` ledger is
append-only and holds frozen StepResult entries.

Definition Schema (as stored by the catalog):
{
    "id": "new-order-flow",
    "name": "New Order Processing",
    "trigger_type": "webhook",
    "trigger_config": { "path": "/hooks/order" },
    "steps": [
        {
            "id": "validate",
            "type": "condition",
            "name": "Validate order total",
            "config": { "field": "order_total", "operator": "gt", "value": 0 },
            "on_failure": "abort",
            "max_retries": 0,
            "timeout_seconds": 5
        },
        {
            "id": "send_confirmation",
            "type": "email",
            "name": "Send confirmation email",
            "config": { "to": "{{customer_email}}", "subject": "Order Confirmed" },
            "on_failure": "dead_letter",
            "max_retries": 3,
            "timeout_seconds": 15
        }
    ]
}
"""

from dataclasses import dataclass, field
from typing import Any, Optional
from uuid import uuid4

from core.constants import FailurePolicy, RunStatus, StepStatus, TriggerType
from core.exceptions import DefinitionError
from core.utils import safe_serialize, utc_now_iso


# ─── Definitions ──────────────────────────────────────────────

@dataclass(frozen=True)
class WorkflowStep:
    """One unit of work in a workflow definition."""
    id: str
    type: str
    name: str
    config: dict[str, Any] = field(default_factory=dict)
    on_failure: FailurePolicy = FailurePolicy.ABORT
    max_retries: int = 0
    timeout_seconds: float = 30.0
    on_retry_exhausted: Optional[FailurePolicy] = None

    @property
    def timeout_ms(self) -> int:
        return int(self.timeout_seconds * 1000)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "name": self.name,
            "config": self.config,
            "on_failure": self.on_failure.value,
            "max_retries": self.max_retries,
            "timeout_seconds": self.timeout_seconds,
            "on_retry_exhausted": self.on_retry_exhausted.value if self.on_retry_exhausted else None,
        }

    @classmethod
    def from_dict(cls, data: dict, default_timeout: float = 30.0) -> "WorkflowStep":
        """Build a step from its stored dict, validating policy and limits."""
        if not isinstance(data, dict):
            raise DefinitionError(f"Step must be an object, got {type(data).__name__}")
        step_id = data.get("id")
        step_type = data.get("type")
        if not step_id or not step_type:
            raise DefinitionError("Every step needs an 'id' and a 'type'")

        try:
            on_failure = FailurePolicy(data.get("on_failure", FailurePolicy.ABORT.value))
        except ValueError:
            raise DefinitionError(
                f"Step '{step_id}' has unknown on_failure policy: {data.get('on_failure')}"
            )

        on_retry_exhausted = None
        if data.get("on_retry_exhausted"):
            try:
                on_retry_exhausted = FailurePolicy(data["on_retry_exhausted"])
            except ValueError:
                raise DefinitionError(
                    f"Step '{step_id}' has unknown on_retry_exhausted policy: "
                    f"{data['on_retry_exhausted']}"
                )
            if on_retry_exhausted == FailurePolicy.RETRY:
                raise DefinitionError(f"Step '{step_id}': on_retry_exhausted cannot be 'retry'")

        max_retries = data.get("max_retries", 0)
        if not isinstance(max_retries, int) or isinstance(max_retries, bool) or max_retries < 0:
            raise DefinitionError(f"Step '{step_id}': max_retries must be an integer >= 0")

        timeout_seconds = data.get("timeout_seconds", default_timeout)
        if not isinstance(timeout_seconds, (int, float)) or timeout_seconds <= 0:
            raise DefinitionError(f"Step '{step_id}': timeout_seconds must be > 0")

        return cls(
            id=str(step_id),
            type=str(step_type),
            name=data.get("name") or str(step_id),
            config=data.get("config") or {},
            on_failure=on_failure,
            max_retries=max_retries,
            timeout_seconds=timeout_seconds,
            on_retry_exhausted=on_retry_exhausted,
        )


@dataclass(frozen=True)
class WorkflowDefinition:
    """Ordered chain of steps plus its trigger description."""
    id: str
    name: str
    steps: tuple[WorkflowStep, ...] = ()
    description: Optional[str] = None
    trigger_type: TriggerType = TriggerType.MANUAL
    trigger_config: dict[str, Any] = field(default_factory=dict)
    active: bool = True

    def __post_init__(self):
        seen: set[str] = set()
        for step in self.steps:
            if step.id in seen:
                raise DefinitionError(f"Duplicate step id '{step.id}' in workflow {self.id}")
            seen.add(step.id)

    def index_of(self, step_id: str) -> int:
        for i, step in enumerate(self.steps):
            if step.id == step_id:
                return i
        raise DefinitionError(f"Step '{step_id}' not found in workflow {self.id}")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "trigger_type": self.trigger_type.value,
            "trigger_config": self.trigger_config,
            "steps": [s.to_dict() for s in self.steps],
            "active": self.active,
        }

    @classmethod
    def from_dict(cls, data: dict, default_timeout: float = 30.0) -> "WorkflowDefinition":
        """Build and validate a definition from its stored dict."""
        steps = data.get("steps")
        if not isinstance(steps, list):
            raise DefinitionError("Workflow definition needs a 'steps' list")
        try:
            trigger_type = TriggerType(data.get("trigger_type", TriggerType.MANUAL.value))
        except ValueError:
            raise DefinitionError(f"Unknown trigger_type: {data.get('trigger_type')}")

        return cls(
            id=str(data["id"]) if data.get("id") else str(uuid4()),
            name=data.get("name", ""),
            description=data.get("description"),
            trigger_type=trigger_type,
            trigger_config=data.get("trigger_config") or {},
            steps=tuple(WorkflowStep.from_dict(s, default_timeout) for s in steps),
            active=data.get("active", True),
        )


# ─── Runs ─────────────────────────────────────────────────────

@dataclass(frozen=True)
class StepResult:
    """Outcome of a single step; appended to the run ledger and never changed."""
    step_id: str
    step_name: str
    status: StepStatus
    output: Any = None
    error: Optional[str] = None
    duration_ms: int = 0
    retries: int = 0
    timestamp: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> dict:
        return {
            "step_id": self.step_id,
            "step_name": self.step_name,
            "status": self.status.value,
            "output": safe_serialize(self.output),
            "error": self.error,
            "duration_ms": self.duration_ms,
            "retries": self.retries,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "StepResult":
        return cls(
            step_id=data["step_id"],
            step_name=data.get("step_name", data["step_id"]),
            status=StepStatus(data["status"]),
            output=data.get("output"),
            error=data.get("error"),
            duration_ms=data.get("duration_ms", 0),
            retries=data.get("retries", 0),
            timestamp=data.get("timestamp") or utc_now_iso(),
        )


@dataclass
class WorkflowRun:
    """One execution instance of a workflow definition."""
    id: str
    workflow_id: str
    status: RunStatus = RunStatus.PENDING
    current_step: int = 0
    trigger_data: dict[str, Any] = field(default_factory=dict)
    step_results: list[StepResult] = field(default_factory=list)
    error: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)

    @property
    def last_success_index(self) -> int:
        """Index of the last successful step result, -1 when there is none."""
        last = -1
        for i, result in enumerate(self.step_results):
            if result.status == StepStatus.SUCCESS:
                last = i
        return last

    def build_context(self) -> dict[str, Any]:
        """Rebuild the execution context from trigger data and successful outputs."""
        data = dict(self.trigger_data)
        for result in self.step_results:
            if result.status == StepStatus.SUCCESS:
                data[f"step_{result.step_id}"] = result.output
        return data

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "status": self.status.value,
            "current_step": self.current_step,
            "trigger_data": safe_serialize(self.trigger_data),
            "step_results": [r.to_dict() for r in self.step_results],
            "error": self.error,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "WorkflowRun":
        return cls(
            id=data["id"],
            workflow_id=data["workflow_id"],
            status=RunStatus(data.get("status", RunStatus.PENDING.value)),
            current_step=data.get("current_step", 0),
            trigger_data=data.get("trigger_data") or {},
            step_results=[StepResult.from_dict(r) for r in data.get("step_results") or []],
            error=data.get("error"),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            created_at=data.get("created_at") or utc_now_iso(),
            updated_at=data.get("updated_at") or utc_now_iso(),
        )


@dataclass
class DeadLetterEntry:
    """A step failure parked for operator triage."""
    workflow_run_id: str
    step_index: int
    step_id: str
    step_type: str
    step_name: str
    input: dict[str, Any]
    error: str
    retry_count: int = 0
    resolved: bool = False
    resolved_at: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid4()))
    created_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "workflow_run_id": self.workflow_run_id,
            "step_index": self.step_index,
            "step_id": self.step_id,
            "step_type": self.step_type,
            "step_name": self.step_name,
            "input": safe_serialize(self.input),
            "error": self.error,
            "retry_count": self.retry_count,
            "resolved": self.resolved,
            "resolved_at": self.resolved_at,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DeadLetterEntry":
        return cls(
            id=data["id"],
            workflow_run_id=data["workflow_run_id"],
            step_index=data.get("step_index", 0),
            step_id=data["step_id"],
            step_type=data["step_type"],
            step_name=data.get("step_name", data["step_id"]),
            input=data.get("input") or {},
            error=data.get("error", ""),
            retry_count=data.get("retry_count", 0),
            resolved=data.get("resolved", False),
            resolved_at=data.get("resolved_at"),
            created_at=data.get("created_at") or utc_now_iso(),
        )
