"""Run store port and its in-memory implementation.

The engine persists through this interface only. Every write is a
single-row upsert keyed by run id, dead letter id or workflow id, so the
engine needs no cross-row locking.

Implementations:
- InMemoryRunStore: process-local, for tests and development
- db.run_store.SqlRunStore: SQLAlchemy async, for durable deployments
"""

import asyncio
import copy
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from core.constants import RunStatus
from core.exceptions import (
    DeadLetterNotFoundError,
    InvalidRunStateError,
    PersistenceError,
    RunNotFoundError,
    WorkflowNotFoundError,
)
from core.utils import parse_datetime, utc_now_iso
from workflow.models import DeadLetterEntry, StepResult, WorkflowDefinition, WorkflowRun

# Fields update_run accepts
RUN_UPDATE_FIELDS = frozenset({
    "status",
    "current_step",
    "step_results",
    "error",
    "started_at",
    "completed_at",
})


def normalize_run_updates(fields: dict[str, Any]) -> dict[str, Any]:
    """Validate update_run fields and convert them to their stored form."""
    unknown = set(fields) - RUN_UPDATE_FIELDS
    if unknown:
        raise PersistenceError(f"Unknown run fields: {', '.join(sorted(unknown))}")

    stored = dict(fields)
    if "status" in stored:
        stored["status"] = RunStatus(stored["status"]).value
    if "step_results" in stored:
        stored["step_results"] = [
            r.to_dict() if isinstance(r, StepResult) else dict(r)
            for r in stored["step_results"]
        ]
    return stored


def status_conflict(run_id: str, actual: str, expected: RunStatus) -> InvalidRunStateError:
    return InvalidRunStateError(
        f"Run {run_id} is {actual}, expected {RunStatus(expected).value}"
    )


class RunStore(ABC):
    """Abstract base class for run, dead letter and definition storage."""

    # ─── Runs ──────────────────────────────────────────────

    @abstractmethod
    async def create_run(self, workflow_id: str, trigger_data: dict[str, Any]) -> WorkflowRun:
        """Insert a new pending run and return it."""
        ...

    @abstractmethod
    async def update_run(
        self,
        run_id: str,
        expected_status: Optional[RunStatus] = None,
        **fields: Any,
    ) -> None:
        """Persist a partial update of a run (status, current_step, step_results, ...).

        With ``expected_status`` the write only applies if the stored status
        still matches; otherwise InvalidRunStateError is raised.
        """
        ...

    @abstractmethod
    async def load_run(self, run_id: str) -> WorkflowRun:
        """Load a run, raising RunNotFoundError if absent."""
        ...

    @abstractmethod
    async def list_runs(
        self,
        status: Optional[RunStatus] = None,
        updated_before: Optional[datetime] = None,
    ) -> list[WorkflowRun]:
        """List runs, optionally filtered by status and staleness."""
        ...

    # ─── Dead letters ──────────────────────────────────────

    @abstractmethod
    async def insert_dead_letter(self, entry: DeadLetterEntry) -> None:
        ...

    @abstractmethod
    async def get_dead_letter(self, dead_letter_id: str) -> DeadLetterEntry:
        ...

    @abstractmethod
    async def list_dead_letters(self, resolved: bool = False, limit: int = 50) -> list[DeadLetterEntry]:
        """Newest first."""
        ...

    @abstractmethod
    async def resolve_dead_letter(self, dead_letter_id: str) -> None:
        """Mark an entry resolved and stamp resolved_at."""
        ...

    # ─── Definitions ───────────────────────────────────────

    @abstractmethod
    async def save_workflow(self, definition: WorkflowDefinition) -> None:
        ...

    @abstractmethod
    async def get_workflow(self, workflow_id: str, active_only: bool = True) -> WorkflowDefinition:
        """Load a definition, raising WorkflowNotFoundError if absent or inactive."""
        ...


class InMemoryRunStore(RunStore):
    """Store runs in local memory.

    Records are kept as serialized dicts so callers never share mutable
    state with the store, mirroring a real database round trip. Data is
    not persisted across process restarts.
    """

    def __init__(self) -> None:
        self._runs: dict[str, dict] = {}
        self._dead_letters: dict[str, dict] = {}
        self._workflows: dict[str, dict] = {}
        self._lock = asyncio.Lock()

    async def create_run(self, workflow_id: str, trigger_data: dict[str, Any]) -> WorkflowRun:
        run = WorkflowRun(id=str(uuid4()), workflow_id=workflow_id, trigger_data=dict(trigger_data))
        async with self._lock:
            self._runs[run.id] = run.to_dict()
        return WorkflowRun.from_dict(copy.deepcopy(self._runs[run.id]))

    async def update_run(
        self,
        run_id: str,
        expected_status: Optional[RunStatus] = None,
        **fields: Any,
    ) -> None:
        stored = normalize_run_updates(fields)
        async with self._lock:
            record = self._runs.get(run_id)
            if record is None:
                raise RunNotFoundError(run_id)
            if expected_status is not None and record["status"] != RunStatus(expected_status).value:
                raise status_conflict(run_id, record["status"], expected_status)
            record.update(copy.deepcopy(stored))
            record["updated_at"] = utc_now_iso()

    async def load_run(self, run_id: str) -> WorkflowRun:
        async with self._lock:
            record = self._runs.get(run_id)
            if record is None:
                raise RunNotFoundError(run_id)
            return WorkflowRun.from_dict(copy.deepcopy(record))

    async def list_runs(
        self,
        status: Optional[RunStatus] = None,
        updated_before: Optional[datetime] = None,
    ) -> list[WorkflowRun]:
        async with self._lock:
            records = [copy.deepcopy(r) for r in self._runs.values()]
        if status is not None:
            records = [r for r in records if r["status"] == RunStatus(status).value]
        if updated_before is not None:
            records = [r for r in records if parse_datetime(r["updated_at"]) < updated_before]
        records.sort(key=lambda r: r["updated_at"])
        return [WorkflowRun.from_dict(r) for r in records]

    async def insert_dead_letter(self, entry: DeadLetterEntry) -> None:
        async with self._lock:
            self._dead_letters[entry.id] = entry.to_dict()

    async def get_dead_letter(self, dead_letter_id: str) -> DeadLetterEntry:
        async with self._lock:
            record = self._dead_letters.get(dead_letter_id)
            if record is None:
                raise DeadLetterNotFoundError(dead_letter_id)
            return DeadLetterEntry.from_dict(copy.deepcopy(record))

    async def list_dead_letters(self, resolved: bool = False, limit: int = 50) -> list[DeadLetterEntry]:
        async with self._lock:
            records = [copy.deepcopy(r) for r in self._dead_letters.values() if r["resolved"] == resolved]
        records.sort(key=lambda r: r["created_at"], reverse=True)
        return [DeadLetterEntry.from_dict(r) for r in records[:limit]]

    async def resolve_dead_letter(self, dead_letter_id: str) -> None:
        async with self._lock:
            record = self._dead_letters.get(dead_letter_id)
            if record is None:
                raise DeadLetterNotFoundError(dead_letter_id)
            record["resolved"] = True
            record["resolved_at"] = utc_now_iso()

    async def save_workflow(self, definition: WorkflowDefinition) -> None:
        async with self._lock:
            self._workflows[definition.id] = definition.to_dict()

    async def get_workflow(self, workflow_id: str, active_only: bool = True) -> WorkflowDefinition:
        async with self._lock:
            record = self._workflows.get(workflow_id)
        if record is None or (active_only and not record.get("active", True)):
            raise WorkflowNotFoundError(workflow_id)
        return WorkflowDefinition.from_dict(copy.deepcopy(record))
