"""
Step Executor Registry: maps step type tags to executor instances.

Executors hold their collaborators (settings, HTTP transport, table
gateway) so the registry is built once per process and is read-only
while runs execute.
"""

import asyncio
from typing import Awaitable, Callable, Dict, List, Optional

import httpx

from app.config import Settings
from tasks.base_task import BaseStepExecutor
from tasks.implementations.ai_task import AIExecutor
from tasks.implementations.data_task import ConditionExecutor, DelayExecutor, TransformExecutor
from tasks.implementations.email_task import EmailExecutor
from tasks.implementations.http_task import HTTP_EXECUTORS
from tasks.implementations.storage_task import (
    DatabaseExecutor,
    InMemoryTableGateway,
    StorageInsertExecutor,
    StorageUpdateExecutor,
    TableGateway,
)


class StepExecutorRegistry:
    """Central registry for step executor implementations."""

    def __init__(self):
        self._executors: Dict[str, BaseStepExecutor] = {}

    def register(self, step_type: str, executor: BaseStepExecutor) -> None:
        """Register (or replace) the executor for a step type."""
        self._executors[step_type] = executor

    def unregister(self, step_type: str) -> None:
        self._executors.pop(step_type, None)

    def get(self, step_type: str) -> Optional[BaseStepExecutor]:
        """Get the executor for a step type, or None if unknown."""
        return self._executors.get(step_type)

    def __contains__(self, step_type: str) -> bool:
        return step_type in self._executors

    def list_all(self) -> List[dict]:
        """List all registered step types with metadata."""
        return [
            {
                "step_type": step_type,
                "display_name": executor.display_name,
                "description": executor.description,
                "config_schema": executor.get_config_schema(),
            }
            for step_type, executor in self._executors.items()
        ]

    @property
    def available_types(self) -> List[str]:
        return list(self._executors.keys())


def build_default_registry(
    settings: Settings,
    tables: Optional[TableGateway] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> StepExecutorRegistry:
    """Registry with every built-in step type.

    Args:
        settings: Provider credentials, HTTP timeout and delay cap
        tables: Gateway for storage steps (defaults to an in-memory one)
        transport: httpx transport for HTTP-based steps
        sleep: Sleep function used by delay steps
    """
    registry = StepExecutorRegistry()
    gateway = tables if tables is not None else InMemoryTableGateway()

    for step_type, executor_cls in HTTP_EXECUTORS.items():
        registry.register(step_type, executor_cls(settings, transport))
    registry.register("email", EmailExecutor(settings, transport))
    registry.register("ai", AIExecutor(settings, transport))

    registry.register("condition", ConditionExecutor())
    registry.register("delay", DelayExecutor(max_seconds=settings.MAX_DELAY_SECONDS, sleep=sleep))
    registry.register("transform", TransformExecutor())

    registry.register("database", DatabaseExecutor(gateway))
    registry.register("storage_insert", StorageInsertExecutor(gateway))
    registry.register("storage_update", StorageUpdateExecutor(gateway))

    return registry
