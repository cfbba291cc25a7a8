"""
Run State Machine.

Owns the authoritative status of one workflow run and its step-result
ledger, and persists every change through the run store before the
engine moves on. This is what makes a run resumable: after a crash the
store holds exactly the results the engine committed.

Transitions:
    pending   -> running | paused | cancelled
    running   -> completed | failed | paused | cancelled
    paused    -> running | cancelled
    failed    -> running                  (resume)
    completed | failed | cancelled -> pending   (dead letter replay)
"""

from typing import Any

import structlog

from core.constants import RunStatus
from core.exceptions import InvalidRunStateError
from core.utils import utc_now_iso
from workflow.models import StepResult, WorkflowRun
from workflow.persistence import RunStore

logger = structlog.get_logger(__name__)


ALLOWED_TRANSITIONS: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.PENDING: frozenset({RunStatus.RUNNING, RunStatus.PAUSED, RunStatus.CANCELLED}),
    RunStatus.RUNNING: frozenset({
        RunStatus.COMPLETED,
        RunStatus.FAILED,
        RunStatus.PAUSED,
        RunStatus.CANCELLED,
    }),
    RunStatus.PAUSED: frozenset({RunStatus.RUNNING, RunStatus.CANCELLED}),
    RunStatus.FAILED: frozenset({RunStatus.RUNNING, RunStatus.PENDING}),
    RunStatus.COMPLETED: frozenset({RunStatus.PENDING}),
    RunStatus.CANCELLED: frozenset({RunStatus.PENDING}),
}


def can_transition(current: RunStatus, target: RunStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def validate_transition(run_id: str, current: RunStatus, target: RunStatus) -> None:
    if not can_transition(current, target):
        raise InvalidRunStateError(
            f"Run {run_id} cannot move from {current.value} to {target.value}"
        )


class RunStateMachine:
    """
    Status and step ledger of a single run, backed by a RunStore.

    Every mutating method writes through to the store before returning,
    so the in-memory ``run`` never gets ahead of what was persisted.
    """

    def __init__(self, store: RunStore, run: WorkflowRun):
        self.store = store
        self.run = run

    @classmethod
    async def create(cls, store: RunStore, workflow_id: str, trigger_data: dict[str, Any]) -> "RunStateMachine":
        run = await store.create_run(workflow_id, trigger_data)
        logger.info("Run created", run_id=run.id, workflow_id=workflow_id)
        return cls(store, run)

    @classmethod
    async def load(cls, store: RunStore, run_id: str) -> "RunStateMachine":
        return cls(store, await store.load_run(run_id))

    @property
    def run_id(self) -> str:
        return self.run.id

    @property
    def status(self) -> RunStatus:
        return self.run.status

    # ─── Status ────────────────────────────────────────────

    async def transition(self, target: RunStatus, **fields: Any) -> None:
        """Validate and persist a status change plus any accompanying fields.

        The write is conditional on the stored status still being the one
        this machine last saw, so a concurrent cancel or pause is never
        overwritten. A mismatch raises InvalidRunStateError.
        """
        validate_transition(self.run.id, self.run.status, target)
        await self.store.update_run(
            self.run.id,
            expected_status=self.run.status,
            status=target,
            **fields,
        )

        previous = self.run.status
        self.run.status = target
        for name, value in fields.items():
            setattr(self.run, name, value)

        logger.debug(
            "Run status changed",
            run_id=self.run.id,
            from_status=previous.value,
            to_status=target.value,
        )

    async def mark_running(self) -> None:
        await self.transition(
            RunStatus.RUNNING,
            started_at=utc_now_iso(),
            completed_at=None,
            error=None,
        )

    async def complete(self) -> None:
        await self.transition(RunStatus.COMPLETED, completed_at=utc_now_iso())

    async def fail(self, error: str) -> None:
        await self.transition(RunStatus.FAILED, error=error, completed_at=utc_now_iso())

    async def cancel(self) -> None:
        await self.transition(RunStatus.CANCELLED, completed_at=utc_now_iso())

    async def pause(self) -> None:
        await self.transition(RunStatus.PAUSED)

    async def reset_to_pending(self) -> None:
        await self.transition(RunStatus.PENDING, error=None, completed_at=None)

    async def refresh_status(self) -> RunStatus:
        """Re-read the stored status, picking up cancel/pause requests."""
        stored = await self.store.load_run(self.run.id)
        self.run.status = stored.status
        self.run.completed_at = stored.completed_at
        self.run.updated_at = stored.updated_at
        return stored.status

    # ─── Ledger ────────────────────────────────────────────

    async def _write_ledger(self, **fields: Any) -> None:
        """Persist ledger fields only while the stored status is the one last seen.

        A run cancelled or paused behind this machine's back raises
        InvalidRunStateError instead of having its ledger changed.
        """
        await self.store.update_run(self.run.id, expected_status=self.run.status, **fields)

    async def set_current_step(self, index: int) -> None:
        await self._write_ledger(current_step=index)
        self.run.current_step = index

    async def record_result(self, result: StepResult) -> None:
        """Append a step result and persist the ledger."""
        results = [*self.run.step_results, result]
        await self._write_ledger(step_results=results)
        self.run.step_results = results

    async def truncate_results(self, length: int) -> None:
        """Drop results at and after ``length`` so they can be re-executed."""
        if len(self.run.step_results) <= length:
            return
        results = self.run.step_results[:length]
        await self._write_ledger(step_results=results)
        self.run.step_results = results

    def snapshot(self) -> WorkflowRun:
        return WorkflowRun.from_dict(self.run.to_dict())
