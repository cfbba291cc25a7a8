"""Per-step timeout guard.

``with_timeout`` stops *waiting* for a step once its deadline passes; it
does not cancel the step. The underlying task keeps running detached and
any side effect it eventually commits is not undone, so executors attach
idempotency keys to outbound calls.
"""

import asyncio
from typing import Awaitable, TypeVar

import structlog

from core.exceptions import StepTimeoutError

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# Detached tasks are kept referenced until they settle
_background_tasks: set[asyncio.Task] = set()


def _reap_abandoned(task: asyncio.Task) -> None:
    _background_tasks.discard(task)
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.warning(
            "Abandoned step finished with error after timeout",
            error=str(error),
            error_type=type(error).__name__,
        )


async def with_timeout(operation: Awaitable[T], ms: int) -> T:
    """Await ``operation`` for at most ``ms`` milliseconds.

    Raises:
        StepTimeoutError: "Step timed out after {ms}ms" if the deadline passes first.
    """
    task = asyncio.ensure_future(operation)
    try:
        return await asyncio.wait_for(asyncio.shield(task), timeout=ms / 1000)
    except asyncio.TimeoutError:
        _background_tasks.add(task)
        task.add_done_callback(_reap_abandoned)
        raise StepTimeoutError(ms) from None


def pending_background_tasks() -> int:
    """Number of timed-out operations still running."""
    return len(_background_tasks)
