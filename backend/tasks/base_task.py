"""
Base executor interface for all workflow step types.

Every step type (HTTP call, condition, storage write, etc.) must inherit
from BaseStepExecutor and implement the execute() method.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, Mapping

import structlog

from core.exceptions import ExecutorError

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class StepContext:
    """What an executor may know about the run it is executing in.

    ``data`` is a read-only view of the run context: trigger data plus the
    ``step_<id>`` outputs of earlier successful steps.
    """
    data: Mapping[str, Any]
    run_id: str
    step_id: str
    attempt: int = 1

    @classmethod
    def build(cls, data: Mapping[str, Any], run_id: str, step_id: str, attempt: int = 1) -> "StepContext":
        return cls(data=MappingProxyType(dict(data)), run_id=run_id, step_id=step_id, attempt=attempt)

    @property
    def idempotency_key(self) -> str:
        """Stable per (run, step, attempt); sent on outbound side-effecting calls."""
        return f"wf_{self.run_id}_{self.step_id}_{self.attempt}"


class BaseStepExecutor(ABC):
    """
    Abstract base class for all step executors.

    Subclasses must implement:
    - execute(config, context) -> output
    - step_type (class property)
    - display_name (class property)
    """

    step_type: str = "base"
    display_name: str = "Base Step"
    description: str = "Abstract base step"

    @abstractmethod
    async def execute(self, config: Dict[str, Any], context: StepContext) -> Any:
        """
        Perform the step's action.

        Args:
            config: Step configuration with placeholders already resolved
            context: Read-only run context and identifiers

        Returns:
            JSON-serializable output, merged into the run context as step_<id>

        Raises:
            ExecutorError: if the action could not complete
        """
        pass

    async def run(self, config: Dict[str, Any], context: StepContext) -> Any:
        """
        Run the executor with timing and error normalization.

        This is the entry point called by the workflow engine. Any exception
        other than ExecutorError is re-raised as one.
        """
        start = time.monotonic()
        log = logger.bind(
            step_type=self.step_type,
            run_id=context.run_id,
            step_id=context.step_id,
            attempt=context.attempt,
        )
        log.debug("Step executor starting")
        try:
            output = await self.execute(config, context)
        except ExecutorError as e:
            log.warning(
                "Step executor failed",
                error=e.message,
                duration_ms=round((time.monotonic() - start) * 1000, 2),
            )
            raise
        except Exception as e:
            log.error(
                "Step executor raised unexpected error",
                error=str(e),
                error_type=type(e).__name__,
                duration_ms=round((time.monotonic() - start) * 1000, 2),
            )
            raise ExecutorError(str(e) or type(e).__name__) from e

        log.debug(
            "Step executor completed",
            duration_ms=round((time.monotonic() - start) * 1000, 2),
        )
        return output

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        """
        Return JSON schema for step configuration.

        Override in subclasses to define expected config shape.
        """
        return {"type": "object", "properties": {}}
