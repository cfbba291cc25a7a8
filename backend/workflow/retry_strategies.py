"""Workflow step retry strategies.

Bounded exponential backoff with additive jitter:

    delay(n) = min(base_delay * multiplier ** (n - 1), max_delay) + uniform(0, jitter)

Two presets ship with the engine:
- step:    1s, 2s, 4s, 8s ... capped at 30s  (workflow step retries)
- webhook: 10s, 30s, 90s ...                 (outbound webhook delivery)

Usage:
    controller = RetryController(RetryStrategy.exponential(base_delay=1.0))
    outcome = await controller.retry(lambda attempt: invoke_step(step, attempt), max_retries=3)
    if not outcome.success:
        handle_failure(outcome.error, outcome.attempts)

The controller waits before every attempt it makes. It is engaged only
after a step's first, un-delayed attempt has failed, so its first wait is
the wait before the first retry.
"""

import asyncio
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from app.config import Settings


@dataclass
class RetryStrategy:
    """Configurable backoff schedule for step retries."""
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 30.0
    jitter: float = 0.0

    @classmethod
    def none(cls) -> 'RetryStrategy':
        """No waiting between attempts."""
        return cls(base_delay=0.0, multiplier=1.0, max_delay=0.0, jitter=0.0)

    @classmethod
    def fixed(cls, delay: float = 5.0) -> 'RetryStrategy':
        """Fixed delay between retries."""
        return cls(base_delay=delay, multiplier=1.0, max_delay=delay, jitter=0.0)

    @classmethod
    def exponential(
        cls,
        base_delay: float = 1.0,
        multiplier: float = 2.0,
        max_delay: float = 30.0,
        jitter: float = 0.0,
    ) -> 'RetryStrategy':
        """Exponential backoff with optional jitter."""
        return cls(
            base_delay=base_delay,
            multiplier=multiplier,
            max_delay=max_delay,
            jitter=jitter,
        )

    @classmethod
    def from_settings(cls, settings: Settings, preset: str = "step") -> 'RetryStrategy':
        """Build the step or webhook schedule from configuration."""
        if preset == "webhook":
            return cls.exponential(
                base_delay=settings.WEBHOOK_RETRY_BASE_DELAY,
                multiplier=settings.WEBHOOK_RETRY_MULTIPLIER,
                max_delay=settings.WEBHOOK_RETRY_MAX_DELAY,
                jitter=settings.WEBHOOK_RETRY_JITTER,
            )
        return cls.exponential(
            base_delay=settings.RETRY_BASE_DELAY,
            multiplier=settings.RETRY_MULTIPLIER,
            max_delay=settings.RETRY_MAX_DELAY,
            jitter=settings.RETRY_JITTER,
        )

    def compute_delay(self, attempt: int) -> float:
        """Compute the delay in seconds before a given attempt number (1-based)."""
        delay = self.base_delay * (self.multiplier ** (attempt - 1))

        # Apply max cap
        delay = min(delay, self.max_delay)

        # Apply jitter
        if self.jitter > 0:
            delay += random.uniform(0, self.jitter)

        return round(max(0.0, delay), 3)


# ─── Preset strategies ───

RETRY_PRESETS: dict[str, RetryStrategy] = {
    'none': RetryStrategy.none(),
    'step': RetryStrategy.exponential(base_delay=1.0, multiplier=2.0, max_delay=30.0),
    'webhook': RetryStrategy.exponential(base_delay=10.0, multiplier=3.0, max_delay=3600.0, jitter=5.0),
}


@dataclass
class RetryOutcome:
    """Verdict of a retry run: success with output, or the last error."""
    success: bool
    attempts: int
    output: Any = None
    error: Optional[Exception] = None
    delays: list[float] = field(default_factory=list)

    @property
    def error_message(self) -> str:
        if self.error is None:
            return "Max retries exceeded"
        return str(self.error)


class RetryController:
    """Runs an async callable up to ``max_retries`` times with backoff.

    Performs no logging or persistence. Callers that want to observe
    retries pass ``on_retry(attempt, error, delay)``, invoked with the
    previous error before each wait.
    """

    def __init__(
        self,
        strategy: RetryStrategy,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.strategy = strategy
        self._sleep = sleep

    async def retry(
        self,
        fn: Callable[[int], Awaitable[Any]],
        max_retries: int,
        on_retry: Optional[Callable[[int, Optional[Exception], float], Any]] = None,
        initial_error: Optional[Exception] = None,
    ) -> RetryOutcome:
        """Call ``fn(attempt)`` until it succeeds or attempts run out.

        Args:
            fn: Async callable receiving the 1-based retry attempt number.
            max_retries: Maximum number of attempts to make.
            on_retry: Optional hook called before each wait.
            initial_error: Error of the attempt that preceded this retry run;
                returned unchanged when ``max_retries`` is zero.

        Returns:
            RetryOutcome with the output of the successful attempt, or the
            error raised by the final one.
        """
        last_error = initial_error
        delays: list[float] = []

        for attempt in range(1, max_retries + 1):
            delay = self.strategy.compute_delay(attempt)
            if on_retry is not None:
                hook_result = on_retry(attempt, last_error, delay)
                if asyncio.iscoroutine(hook_result):
                    await hook_result
            delays.append(delay)
            await self._sleep(delay)

            try:
                output = await fn(attempt)
            except Exception as e:
                last_error = e
                continue
            return RetryOutcome(success=True, attempts=attempt, output=output, delays=delays)

        return RetryOutcome(
            success=False,
            attempts=max(max_retries, 0),
            error=last_error,
            delays=delays,
        )

