"""Dead letter model."""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, DateTime, Text
from sqlalchemy.orm import Mapped, mapped_column

from db.base import BaseModel


class DeadLetterModel(BaseModel):
    """A failed step parked for operator triage or replay."""

    __tablename__ = "workflow_dead_letters"

    workflow_run_id: Mapped[str] = mapped_column(nullable=False, index=True)
    step_index: Mapped[int] = mapped_column(default=0)
    step_id: Mapped[str] = mapped_column(nullable=False)
    step_type: Mapped[str] = mapped_column(nullable=False)
    step_name: Mapped[str] = mapped_column(nullable=False)
    input: Mapped[dict] = mapped_column(JSON, default=dict)
    error: Mapped[str] = mapped_column(Text, default="")
    retry_count: Mapped[int] = mapped_column(default=0)
    resolved: Mapped[bool] = mapped_column(default=False, index=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<DeadLetterModel(id={self.id}, run={self.workflow_run_id}, step={self.step_id})>"
