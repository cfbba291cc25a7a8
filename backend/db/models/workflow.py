"""Workflow definition model."""

from typing import Optional

from sqlalchemy import JSON, Text
from sqlalchemy.orm import Mapped, mapped_column

from core.constants import TriggerType
from db.base import BaseModel


class WorkflowModel(BaseModel):
    """Stored workflow definition.

    Attributes:
        id: Workflow identifier (caller-chosen or UUID)
        name: Workflow name
        description: Optional description
        trigger_type: manual, webhook, schedule or storage_event
        trigger_config: Trigger-specific settings
        steps: Ordered list of step dicts
        active: Inactive workflows cannot be triggered
    """

    __tablename__ = "workflows"

    name: Mapped[str] = mapped_column(nullable=False, index=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    trigger_type: Mapped[str] = mapped_column(default=TriggerType.MANUAL.value)
    trigger_config: Mapped[dict] = mapped_column(JSON, default=dict)
    steps: Mapped[list] = mapped_column(JSON, default=list)
    active: Mapped[bool] = mapped_column(default=True, index=True)

    def __repr__(self) -> str:
        return f"<WorkflowModel(id={self.id}, name={self.name}, active={self.active})>"
