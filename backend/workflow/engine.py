"""Workflow Execution Engine: sequential step runner.

Takes a workflow definition (an ordered list of steps) and executes it
against a run context, handling:

- Placeholder interpolation of each step's config
- Per-step timeout
- Retry with exponential backoff
- Failure policies (skip / abort / dead letter / retry)
- Condition steps that halt the run
- Checkpoint after every step, resume from the last success
- Cooperative cancel and pause, observed at step boundaries

Step loop, for each step i from the start offset:

    reload status (halt on cancel/pause) -> persist current_step = i
    -> interpolate config -> look up executor -> run under timeout
    -> [retry] -> reload status -> record result (dropped on cancel,
    kept on pause when successful) -> apply failure policy
    -> merge step_<id> output

Ledger writes are conditional on the status the engine last read, so a
cancelled run's results never change after the cancel lands.

A run advances on one coroutine at a time; callers guarantee that no two
engine instances execute the same run concurrently.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import structlog

from app.config import Settings, get_settings
from core.constants import RESUMABLE_STATUSES, FailurePolicy, RunStatus, StepStatus
from core.exceptions import (
    DefinitionError,
    ExecutorError,
    InvalidRunStateError,
    UnknownStepTypeError,
)
from core.utils import utc_now_iso
from tasks.base_task import BaseStepExecutor, StepContext
from tasks.registry import StepExecutorRegistry
from workflow.failure_policy import resolve_failure, uses_retry_controller
from workflow.interpolation import interpolate
from workflow.models import DeadLetterEntry, StepResult, WorkflowDefinition, WorkflowRun, WorkflowStep
from workflow.persistence import RunStore
from workflow.retry_strategies import RetryController, RetryStrategy
from workflow.run_state import RunStateMachine, validate_transition
from workflow.timeout import with_timeout

logger = structlog.get_logger(__name__)

CONDITION_STEP_TYPE = "condition"


@dataclass
class StepOutcome:
    """What happened when a step was invoked, retries included."""
    success: bool
    output: Any = None
    error: Optional[str] = None
    retries: int = 0
    duration_ms: int = 0


class WorkflowEngine:
    """Executes workflow definitions and manages the lifecycle of their runs.

    Usage:
        engine = WorkflowEngine(store, build_default_registry(settings))
        run = await engine.execute_workflow(definition, {"order_id": "o-1"})
    """

    def __init__(
        self,
        store: RunStore,
        registry: StepExecutorRegistry,
        retry_strategy: Optional[RetryStrategy] = None,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.registry = registry
        self.retry_controller = RetryController(
            retry_strategy or RetryStrategy.from_settings(self.settings),
            sleep=sleep,
        )
        try:
            self.default_exhausted_policy = FailurePolicy(self.settings.RETRY_EXHAUSTED_POLICY)
        except ValueError:
            raise DefinitionError(
                f"Unknown RETRY_EXHAUSTED_POLICY: {self.settings.RETRY_EXHAUSTED_POLICY}"
            )
        if self.default_exhausted_policy == FailurePolicy.RETRY:
            raise DefinitionError("RETRY_EXHAUSTED_POLICY cannot be 'retry'")

    # ─── Execution ─────────────────────────────────────────

    async def execute_workflow(
        self,
        definition: WorkflowDefinition,
        trigger_data: Optional[dict[str, Any]] = None,
        from_step: int = 0,
        run_id: Optional[str] = None,
        reuse_later_successes: bool = False,
    ) -> WorkflowRun:
        """Execute ``definition`` from step ``from_step``.

        Without ``run_id`` a new run is created from ``trigger_data``. With
        ``run_id`` the existing run is continued: results at and after
        ``from_step`` are discarded and those steps run again, and the
        context is rebuilt from the stored trigger data and earlier
        successful outputs. With ``reuse_later_successes`` a step after
        ``from_step`` that already succeeded is not invoked again; its
        stored result is committed back to the ledger instead.

        Returns:
            The run as persisted when execution stopped.

        Raises:
            UnknownStepTypeError: a step names an unregistered type (the run
                is persisted as failed first)
            RunNotFoundError, InvalidRunStateError, DefinitionError,
            PersistenceError
        """
        if from_step < 0 or from_step > len(definition.steps):
            raise DefinitionError(
                f"from_step {from_step} out of range for workflow {definition.id} "
                f"with {len(definition.steps)} steps"
            )

        reusable: dict[int, StepResult] = {}
        if run_id:
            machine = await RunStateMachine.load(self.store, run_id)
            validate_transition(run_id, machine.status, RunStatus.RUNNING)
            if len(machine.run.step_results) < from_step:
                raise InvalidRunStateError(
                    f"Run {run_id} has {len(machine.run.step_results)} step results, "
                    f"cannot continue from step {from_step}"
                )
            if reuse_later_successes:
                reusable = self._reusable_results(definition, machine.run, from_step)
            await machine.truncate_results(from_step)
        else:
            machine = await RunStateMachine.create(self.store, definition.id, trigger_data or {})

        await machine.mark_running()
        log = logger.bind(run_id=machine.run_id, workflow_id=definition.id)
        log.info("Run started", from_step=from_step, total_steps=len(definition.steps))

        context = machine.run.build_context()

        for index in range(from_step, len(definition.steps)):
            step = definition.steps[index]
            step_log = log.bind(step_id=step.id, step_index=index, step_type=step.type)

            if await self._halt_requested(machine, step_log):
                return machine.snapshot()
            try:
                await machine.set_current_step(index)
            except InvalidRunStateError:
                await self._halt_requested(machine, step_log)
                return machine.snapshot()

            previous = reusable.get(index)
            if previous is not None:
                if not await self._commit_result(machine, previous, step_log, keep_on_pause=True):
                    return machine.snapshot()
                context[f"step_{step.id}"] = previous.output
                step_log.info("Step already succeeded, result reused")
                continue

            resolved_config = interpolate(step.config, context)

            executor = self.registry.get(step.type)
            if executor is None:
                error = UnknownStepTypeError(step.type)
                step_log.error("Unknown step type", error=error.message)
                await self._finish(machine, RunStatus.FAILED, step_log, error=error.message)
                raise error

            outcome = await self._invoke_step(step, executor, resolved_config, context, machine.run_id, step_log)
            await machine.refresh_status()

            if outcome.success:
                condition_failed = self._is_failed_condition(step, outcome.output)
                result = StepResult(
                    step_id=step.id,
                    step_name=step.name,
                    status=StepStatus.SKIPPED if condition_failed else StepStatus.SUCCESS,
                    output=outcome.output,
                    duration_ms=outcome.duration_ms,
                    retries=outcome.retries,
                )
                if not await self._commit_result(machine, result, step_log, keep_on_pause=True):
                    return machine.snapshot()

                if condition_failed:
                    if resolved_config.get("on_false") == "continue":
                        step_log.info("Condition not met, continuing")
                        continue
                    step_log.info("Condition not met, skipping remaining steps")
                    break

                context[f"step_{step.id}"] = outcome.output
                step_log.info("Step succeeded", duration_ms=outcome.duration_ms, retries=outcome.retries)
                continue

            decision = resolve_failure(
                step,
                run_id=machine.run_id,
                step_index=index,
                error=outcome.error or "Step failed",
                resolved_input=resolved_config,
                retries=outcome.retries,
                duration_ms=outcome.duration_ms,
                default_exhausted=self.default_exhausted_policy,
            )
            if not await self._commit_result(machine, decision.result, step_log, keep_on_pause=False):
                return machine.snapshot()

            if decision.dead_letter is not None:
                await self.store.insert_dead_letter(decision.dead_letter)
                step_log.warning(
                    "Step moved to dead letter",
                    dead_letter_id=decision.dead_letter.id,
                    retry_count=decision.dead_letter.retry_count,
                    error=outcome.error,
                )

            if decision.halt:
                step_log.error("Step failed, aborting run", error=outcome.error, retries=outcome.retries)
                await self._finish(machine, RunStatus.FAILED, step_log, error=decision.run_error)
                return machine.snapshot()

            if decision.policy == FailurePolicy.SKIP:
                step_log.warning("Step failed, skipped", error=outcome.error, retries=outcome.retries)

        if await self._halt_requested(machine, log):
            return machine.snapshot()

        await self._finish(machine, RunStatus.COMPLETED, log)
        return machine.snapshot()

    @staticmethod
    def _reusable_results(definition: WorkflowDefinition, run: WorkflowRun, from_step: int) -> dict[int, StepResult]:
        """Successful results after ``from_step`` that still match the definition."""
        return {
            index: result
            for index, result in enumerate(run.step_results)
            if index > from_step
            and index < len(definition.steps)
            and result.status == StepStatus.SUCCESS
            and result.step_id == definition.steps[index].id
        }

    async def _invoke_step(
        self,
        step: WorkflowStep,
        executor: BaseStepExecutor,
        config: dict[str, Any],
        context: dict[str, Any],
        run_id: str,
        step_log,
    ) -> StepOutcome:
        """Run one step under its timeout, retrying when its policy allows."""
        start = time.monotonic()

        async def attempt(number: int) -> Any:
            step_context = StepContext.build(context, run_id, step.id, attempt=number)
            return await with_timeout(executor.run(config, step_context), step.timeout_ms)

        def elapsed_ms() -> int:
            return int((time.monotonic() - start) * 1000)

        try:
            output = await attempt(1)
            return StepOutcome(success=True, output=output, duration_ms=elapsed_ms())
        except ExecutorError as e:
            first_error = e

        if not uses_retry_controller(step):
            return StepOutcome(success=False, error=first_error.message, duration_ms=elapsed_ms())

        def on_retry(retry: int, error: Optional[Exception], delay: float) -> None:
            step_log.warning(
                "Retrying step",
                retry=retry,
                max_retries=step.max_retries,
                delay_seconds=delay,
                error=str(error) if error else None,
            )

        result = await self.retry_controller.retry(
            lambda retry: attempt(retry + 1),
            max_retries=step.max_retries,
            on_retry=on_retry,
            initial_error=first_error,
        )
        if result.success:
            return StepOutcome(
                success=True,
                output=result.output,
                retries=result.attempts,
                duration_ms=elapsed_ms(),
            )
        return StepOutcome(
            success=False,
            error=result.error_message,
            retries=result.attempts,
            duration_ms=elapsed_ms(),
        )

    @staticmethod
    def _is_failed_condition(step: WorkflowStep, output: Any) -> bool:
        return (
            step.type == CONDITION_STEP_TYPE
            and isinstance(output, dict)
            and output.get("passed") is False
        )

    async def _halt_requested(self, machine: RunStateMachine, log) -> bool:
        """True if the run was cancelled or paused from outside."""
        status = await machine.refresh_status()
        if status == RunStatus.RUNNING:
            return False
        log.info("Run halted by status change", status=status.value)
        return True

    async def _commit_result(
        self,
        machine: RunStateMachine,
        result: StepResult,
        log,
        keep_on_pause: bool,
    ) -> bool:
        """Append a finished step's result to the ledger.

        Returns True while the run may advance. A cancelled run discards the
        result. A paused run keeps it when ``keep_on_pause`` and stops there,
        so resume starts after it.
        """
        while True:
            status = machine.status
            if status != RunStatus.RUNNING and not (keep_on_pause and status == RunStatus.PAUSED):
                log.info("Run halted by status change", status=status.value, result_discarded=True)
                return False
            try:
                await machine.record_result(result)
            except InvalidRunStateError:
                # status moved since it was read
                await machine.refresh_status()
                continue
            if status != RunStatus.RUNNING:
                log.info("Run halted by status change", status=status.value, result_discarded=False)
                return False
            return True

    async def _finish(
        self,
        machine: RunStateMachine,
        status: RunStatus,
        log,
        error: Optional[str] = None,
    ) -> bool:
        """Move the run to a final status unless someone else already did."""
        try:
            if status == RunStatus.FAILED:
                await machine.fail(error or "Run failed")
            else:
                await machine.complete()
        except InvalidRunStateError:
            stored = await machine.refresh_status()
            log.info("Run status changed before finishing", wanted=status.value, status=stored.value)
            return False
        log.info("Run finished", status=status.value, error=error)
        return True

    # ─── Triggers & lifecycle ──────────────────────────────

    async def trigger_workflow(self, workflow_id: str, data: Optional[dict[str, Any]] = None) -> WorkflowRun:
        """Manually trigger an active workflow by id."""
        definition = await self.store.get_workflow(workflow_id, active_only=True)
        trigger_data = {
            "triggered_by": "manual",
            "timestamp": utc_now_iso(),
            **(data or {}),
        }
        return await self.execute_workflow(definition, trigger_data)

    async def resume_workflow(self, run_id: str) -> WorkflowRun:
        """Continue a failed or paused run after its last successful step."""
        run = await self.store.load_run(run_id)
        if run.status not in RESUMABLE_STATUSES:
            raise InvalidRunStateError(f"Cannot resume run in status: {run.status.value}")

        definition = await self.store.get_workflow(run.workflow_id, active_only=False)
        from_step = run.last_success_index + 1
        logger.info("Resuming run", run_id=run_id, from_step=from_step, status=run.status.value)
        return await self.execute_workflow(definition, run.trigger_data, from_step=from_step, run_id=run_id)

    async def cancel_workflow(self, run_id: str) -> WorkflowRun:
        """Cancel a run. An executing run stops at its next step boundary."""
        machine = await RunStateMachine.load(self.store, run_id)
        await machine.cancel()
        logger.info("Run cancelled", run_id=run_id)
        return machine.snapshot()

    async def pause_workflow(self, run_id: str) -> WorkflowRun:
        """Pause a run. An executing run stops at its next step boundary."""
        machine = await RunStateMachine.load(self.store, run_id)
        await machine.pause()
        logger.info("Run paused", run_id=run_id)
        return machine.snapshot()

    async def get_run(self, run_id: str) -> WorkflowRun:
        return await self.store.load_run(run_id)

    # ─── Dead letters ──────────────────────────────────────

    async def list_dead_letters(self, resolved: bool = False, limit: int = 50) -> list[DeadLetterEntry]:
        return await self.store.list_dead_letters(resolved=resolved, limit=limit)

    async def resolve_dead_letter(self, dead_letter_id: str) -> None:
        await self.store.resolve_dead_letter(dead_letter_id)
        logger.info("Dead letter resolved", dead_letter_id=dead_letter_id)

    async def replay_dead_letter(self, dead_letter_id: str) -> WorkflowRun:
        """Re-execute a run from its dead-lettered step.

        The run is reset to pending and executed from the entry's step with
        its original trigger data. Later steps that already succeeded keep
        their results and are not invoked again; the rest run as usual. The
        entry is marked resolved only if the replayed step succeeds.
        """
        entry = await self.store.get_dead_letter(dead_letter_id)
        if entry.resolved:
            raise InvalidRunStateError(f"Dead letter {dead_letter_id} is already resolved")

        machine = await RunStateMachine.load(self.store, entry.workflow_run_id)
        definition = await self.store.get_workflow(machine.run.workflow_id, active_only=False)
        if (
            entry.step_index >= len(definition.steps)
            or definition.steps[entry.step_index].id != entry.step_id
        ):
            raise DefinitionError(
                f"Workflow {definition.id} no longer has step '{entry.step_id}' "
                f"at index {entry.step_index}"
            )

        await machine.reset_to_pending()
        logger.info(
            "Replaying dead letter",
            dead_letter_id=dead_letter_id,
            run_id=machine.run_id,
            step_id=entry.step_id,
        )
        run = await self.execute_workflow(
            definition,
            machine.run.trigger_data,
            from_step=entry.step_index,
            run_id=machine.run_id,
            reuse_later_successes=True,
        )

        if len(run.step_results) > entry.step_index:
            replayed = run.step_results[entry.step_index]
            if replayed.status == StepStatus.SUCCESS:
                await self.store.resolve_dead_letter(dead_letter_id)
                logger.info("Dead letter resolved by replay", dead_letter_id=dead_letter_id)
        return run
