"""Control-flow and data step executors.

- condition: compare a context field against a value
- delay:     sleep for a bounded number of seconds
- transform: derive a new mapping from the run context
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict

import structlog

from core.constants import MAX_DELAY_SECONDS, ConditionOperator
from core.exceptions import ExecutorError
from tasks.base_task import BaseStepExecutor, StepContext
from workflow.interpolation import get_nested_value, interpolate

logger = structlog.get_logger(__name__)

NUMERIC_OPERATORS = {
    ConditionOperator.GT: lambda a, b: a > b,
    ConditionOperator.LT: lambda a, b: a < b,
    ConditionOperator.GTE: lambda a, b: a >= b,
    ConditionOperator.LTE: lambda a, b: a <= b,
}


def _contains(actual: Any, expected: Any) -> bool:
    if actual is None:
        return False
    if isinstance(actual, (list, tuple, set)):
        return expected in actual
    return str(expected) in str(actual)


def evaluate_condition(actual: Any, operator: ConditionOperator, expected: Any) -> bool:
    """Apply ``operator`` to a resolved field value.

    Numeric operators coerce both sides to float; values that do not
    coerce make the comparison false.
    """
    if operator in NUMERIC_OPERATORS:
        try:
            return NUMERIC_OPERATORS[operator](float(actual), float(expected))
        except (TypeError, ValueError):
            return False
    if operator == ConditionOperator.EQ:
        return actual == expected
    if operator == ConditionOperator.NEQ:
        return actual != expected
    if operator == ConditionOperator.CONTAINS:
        return _contains(actual, expected)
    if operator == ConditionOperator.EXISTS:
        return actual is not None
    return actual is None


class ConditionExecutor(BaseStepExecutor):
    """Evaluate a condition against the run context.

    Config:
        field: Dot path into the context (required)
        operator: eq, neq, gt, lt, gte, lte, contains, exists, not_exists
        value: Value to compare against
        on_false: "halt" (default) stops the run, "continue" moves on
    """

    step_type = "condition"
    display_name = "Condition"
    description = "Check a context value before continuing"

    async def execute(self, config: Dict[str, Any], context: StepContext) -> Any:
        field = config.get("field")
        if not field:
            raise ExecutorError("Missing required config: field")
        try:
            operator = ConditionOperator(config.get("operator", ConditionOperator.EQ.value))
        except ValueError:
            raise ExecutorError(f"Unknown condition operator: {config.get('operator')}")

        expected = config.get("value")
        actual = get_nested_value(context.data, field)
        return {
            "passed": evaluate_condition(actual, operator, expected),
            "actual": actual,
            "expected": expected,
        }

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        return {
            "type": "object",
            "required": ["field", "operator"],
            "properties": {
                "field": {"type": "string", "description": "Dot path into the run context"},
                "operator": {"type": "string", "enum": [op.value for op in ConditionOperator]},
                "value": {"description": "Value to compare against"},
                "on_false": {"type": "string", "enum": ["halt", "continue"], "default": "halt"},
            },
        }


class DelayExecutor(BaseStepExecutor):
    """Wait before the next step. Capped at ``max_seconds``."""

    step_type = "delay"
    display_name = "Delay"
    description = "Pause the workflow for a number of seconds"

    def __init__(
        self,
        max_seconds: float = MAX_DELAY_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.max_seconds = max_seconds
        self._sleep = sleep

    async def execute(self, config: Dict[str, Any], context: StepContext) -> Any:
        try:
            seconds = float(config.get("seconds", 0))
        except (TypeError, ValueError):
            raise ExecutorError(f"Invalid delay seconds: {config.get('seconds')!r}")

        capped = min(max(seconds, 0.0), self.max_seconds)
        if capped < seconds:
            logger.info("Delay capped", requested=seconds, capped=capped, step_id=context.step_id)
        await self._sleep(capped)
        return {"delayed": capped}

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        return {
            "type": "object",
            "required": ["seconds"],
            "properties": {
                "seconds": {"type": "number", "maximum": MAX_DELAY_SECONDS},
            },
        }


class TransformExecutor(BaseStepExecutor):
    """Derive a new mapping from the run context.

    Config:
        operations: list of
            {"type": "set", "key": k, "value": v}
            {"type": "delete", "key": k}
            {"type": "compute", "key": k, "expression": "{{a}} {{b}}"}

    Operations apply in order to a copy of the context, so a compute can
    reference keys set earlier in the same list.
    """

    step_type = "transform"
    display_name = "Transform"
    description = "Set, delete and compute values from the run context"

    async def execute(self, config: Dict[str, Any], context: StepContext) -> Any:
        result = dict(context.data)

        for op in config.get("operations") or []:
            op_type = op.get("type")
            key = op.get("key")
            if not key:
                raise ExecutorError(f"Transform operation '{op_type}' needs a key")

            if op_type == "set":
                result[key] = op.get("value")
            elif op_type == "delete":
                result.pop(key, None)
            elif op_type == "compute":
                if op.get("expression") is not None:
                    result[key] = interpolate(op["expression"], result)
            else:
                raise ExecutorError(f"Unknown transform operation: {op_type}")

        return result

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "operations": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "required": ["type", "key"],
                        "properties": {
                            "type": {"type": "string", "enum": ["set", "delete", "compute"]},
                            "key": {"type": "string"},
                            "value": {},
                            "expression": {"type": "string"},
                        },
                    },
                },
            },
        }
