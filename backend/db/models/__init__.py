"""Database models for the workflow execution engine.

This module imports all models to ensure they are registered
with SQLAlchemy's declarative base.
"""

from db.models.dead_letter import DeadLetterModel
from db.models.workflow import WorkflowModel
from db.models.workflow_run import WorkflowRunModel

__all__ = [
    "WorkflowModel",
    "WorkflowRunModel",
    "DeadLetterModel",
]
