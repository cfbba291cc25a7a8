"""SQLAlchemy-backed run store.

Tables: workflows, workflow_runs, workflow_dead_letters (see db.models).
Every method opens its own short session and commits before returning,
so each call is one durable write. SQLAlchemy failures surface as
PersistenceError.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Optional
from uuid import uuid4

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.constants import RunStatus, TriggerType
from core.exceptions import (
    DeadLetterNotFoundError,
    PersistenceError,
    RunNotFoundError,
    WorkflowNotFoundError,
)
from core.utils import parse_datetime, safe_serialize, utc_now
from db.models import DeadLetterModel, WorkflowModel, WorkflowRunModel
from workflow.models import DeadLetterEntry, StepResult, WorkflowDefinition, WorkflowRun
from workflow.persistence import RunStore, normalize_run_updates, status_conflict

logger = structlog.get_logger(__name__)

_TIMESTAMP_FIELDS = ("started_at", "completed_at")


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite returns naive datetimes
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    value = _as_utc(value)
    return value.isoformat() if value else None


def _run_from_row(row: WorkflowRunModel) -> WorkflowRun:
    return WorkflowRun(
        id=row.id,
        workflow_id=row.workflow_id,
        status=RunStatus(row.status),
        current_step=row.current_step,
        trigger_data=row.trigger_data or {},
        step_results=[StepResult.from_dict(r) for r in row.step_results or []],
        error=row.error,
        started_at=_iso(row.started_at),
        completed_at=_iso(row.completed_at),
        created_at=_iso(row.created_at),
        updated_at=_iso(row.updated_at),
    )


def _dead_letter_from_row(row: DeadLetterModel) -> DeadLetterEntry:
    return DeadLetterEntry(
        id=row.id,
        workflow_run_id=row.workflow_run_id,
        step_index=row.step_index,
        step_id=row.step_id,
        step_type=row.step_type,
        step_name=row.step_name,
        input=row.input or {},
        error=row.error,
        retry_count=row.retry_count,
        resolved=row.resolved,
        resolved_at=_iso(row.resolved_at),
        created_at=_iso(row.created_at),
    )


class SqlRunStore(RunStore):
    """RunStore over an async SQLAlchemy session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self, operation: str) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                yield session
        except SQLAlchemyError as e:
            logger.error("Run store operation failed", operation=operation, error=str(e))
            raise PersistenceError(f"Run store {operation} failed: {e}") from e

    # ─── Runs ──────────────────────────────────────────────

    async def create_run(self, workflow_id: str, trigger_data: dict[str, Any]) -> WorkflowRun:
        row = WorkflowRunModel(
            id=str(uuid4()),
            workflow_id=workflow_id,
            status=RunStatus.PENDING.value,
            current_step=0,
            trigger_data=safe_serialize(dict(trigger_data)),
            step_results=[],
        )
        async with self._session("create_run") as session:
            session.add(row)
            await session.commit()
            return _run_from_row(row)

    async def update_run(
        self,
        run_id: str,
        expected_status: Optional[RunStatus] = None,
        **fields: Any,
    ) -> None:
        values = normalize_run_updates(fields)
        for name in _TIMESTAMP_FIELDS:
            if name in values:
                values[name] = parse_datetime(values[name])
        values["updated_at"] = utc_now()

        stmt = update(WorkflowRunModel).where(WorkflowRunModel.id == run_id).values(**values)
        if expected_status is not None:
            stmt = stmt.where(WorkflowRunModel.status == RunStatus(expected_status).value)

        async with self._session("update_run") as session:
            result = await session.execute(stmt)
            if result.rowcount == 0:
                current = await session.get(WorkflowRunModel, run_id)
                if current is None or expected_status is None:
                    raise RunNotFoundError(run_id)
                raise status_conflict(run_id, current.status, expected_status)
            await session.commit()

    async def load_run(self, run_id: str) -> WorkflowRun:
        async with self._session("load_run") as session:
            row = await session.get(WorkflowRunModel, run_id)
            if row is None:
                raise RunNotFoundError(run_id)
            return _run_from_row(row)

    async def list_runs(
        self,
        status: Optional[RunStatus] = None,
        updated_before: Optional[datetime] = None,
    ) -> list[WorkflowRun]:
        stmt = select(WorkflowRunModel).order_by(WorkflowRunModel.updated_at)
        if status is not None:
            stmt = stmt.where(WorkflowRunModel.status == RunStatus(status).value)
        if updated_before is not None:
            stmt = stmt.where(WorkflowRunModel.updated_at < _as_utc(updated_before))

        async with self._session("list_runs") as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_run_from_row(row) for row in rows]

    # ─── Dead letters ──────────────────────────────────────

    async def insert_dead_letter(self, entry: DeadLetterEntry) -> None:
        row = DeadLetterModel(
            id=entry.id,
            workflow_run_id=entry.workflow_run_id,
            step_index=entry.step_index,
            step_id=entry.step_id,
            step_type=entry.step_type,
            step_name=entry.step_name,
            input=safe_serialize(entry.input),
            error=entry.error,
            retry_count=entry.retry_count,
            resolved=entry.resolved,
            resolved_at=parse_datetime(entry.resolved_at),
            created_at=parse_datetime(entry.created_at),
        )
        async with self._session("insert_dead_letter") as session:
            session.add(row)
            await session.commit()

    async def get_dead_letter(self, dead_letter_id: str) -> DeadLetterEntry:
        async with self._session("get_dead_letter") as session:
            row = await session.get(DeadLetterModel, dead_letter_id)
            if row is None:
                raise DeadLetterNotFoundError(dead_letter_id)
            return _dead_letter_from_row(row)

    async def list_dead_letters(self, resolved: bool = False, limit: int = 50) -> list[DeadLetterEntry]:
        stmt = (
            select(DeadLetterModel)
            .where(DeadLetterModel.resolved == resolved)
            .order_by(DeadLetterModel.created_at.desc())
            .limit(limit)
        )
        async with self._session("list_dead_letters") as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_dead_letter_from_row(row) for row in rows]

    async def resolve_dead_letter(self, dead_letter_id: str) -> None:
        now = utc_now()
        stmt = (
            update(DeadLetterModel)
            .where(DeadLetterModel.id == dead_letter_id)
            .values(resolved=True, resolved_at=now, updated_at=now)
        )
        async with self._session("resolve_dead_letter") as session:
            result = await session.execute(stmt)
            if result.rowcount == 0:
                raise DeadLetterNotFoundError(dead_letter_id)
            await session.commit()

    # ─── Definitions ───────────────────────────────────────

    async def save_workflow(self, definition: WorkflowDefinition) -> None:
        data = definition.to_dict()
        async with self._session("save_workflow") as session:
            row = await session.get(WorkflowModel, definition.id)
            if row is None:
                row = WorkflowModel(id=definition.id)
                session.add(row)
            row.name = data["name"]
            row.description = data["description"]
            row.trigger_type = data["trigger_type"]
            row.trigger_config = safe_serialize(data["trigger_config"])
            row.steps = safe_serialize(data["steps"])
            row.active = data["active"]
            await session.commit()

    async def get_workflow(self, workflow_id: str, active_only: bool = True) -> WorkflowDefinition:
        async with self._session("get_workflow") as session:
            row = await session.get(WorkflowModel, workflow_id)
            if row is None or (active_only and not row.active):
                raise WorkflowNotFoundError(workflow_id)
            return WorkflowDefinition.from_dict({
                "id": row.id,
                "name": row.name,
                "description": row.description,
                "trigger_type": row.trigger_type or TriggerType.MANUAL.value,
                "trigger_config": row.trigger_config or {},
                "steps": row.steps or [],
                "active": row.active,
            })
