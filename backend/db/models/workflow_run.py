"""Workflow run model."""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, DateTime, Index, Text
from sqlalchemy.orm import Mapped, mapped_column

from core.constants import RunStatus
from db.base import BaseModel


class WorkflowRunModel(BaseModel):
    """One execution of a workflow, with its step-result ledger.

    ``step_results`` holds the serialized StepResult list and is rewritten
    after every step; ``updated_at`` doubles as the liveness marker the
    recovery scan uses.
    """

    __tablename__ = "workflow_runs"

    workflow_id: Mapped[str] = mapped_column(nullable=False, index=True)
    status: Mapped[str] = mapped_column(default=RunStatus.PENDING.value, index=True)
    current_step: Mapped[int] = mapped_column(default=0)
    trigger_data: Mapped[dict] = mapped_column(JSON, default=dict)
    step_results: Mapped[list] = mapped_column(JSON, default=list)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_workflow_runs_status_updated", "status", "updated_at"),
    )

    def __repr__(self) -> str:
        return f"<WorkflowRunModel(id={self.id}, workflow_id={self.workflow_id}, status={self.status})>"
