"""
Failure policy resolution.

Maps a failed step (after any retries) to what the run does next:

    skip         -> record skipped, continue
    abort        -> record failed, fail the run
    dead_letter  -> park the step input for triage, record failed, continue
    retry        -> retries are exhausted; apply the step's on_retry_exhausted
                    policy, or the configured default

The resolver is pure: it builds the StepResult and any DeadLetterEntry,
and the engine persists them.
"""

from dataclasses import dataclass
from typing import Any, Optional

from core.constants import FailurePolicy, StepStatus
from workflow.models import DeadLetterEntry, StepResult, WorkflowStep


@dataclass
class FailureDecision:
    """Verdict for a failed step."""
    policy: FailurePolicy
    result: StepResult
    halt: bool = False
    run_error: Optional[str] = None
    dead_letter: Optional[DeadLetterEntry] = None


def effective_policy(
    step: WorkflowStep,
    default_exhausted: FailurePolicy = FailurePolicy.ABORT,
) -> FailurePolicy:
    """Policy applied once a step has definitively failed."""
    if step.on_failure != FailurePolicy.RETRY:
        return step.on_failure
    return step.on_retry_exhausted or default_exhausted


def uses_retry_controller(step: WorkflowStep) -> bool:
    """Whether a failure of ``step`` is retried before the policy applies."""
    return (
        step.on_failure in (FailurePolicy.RETRY, FailurePolicy.DEAD_LETTER)
        and step.max_retries > 0
    )


def resolve_failure(
    step: WorkflowStep,
    *,
    run_id: str,
    step_index: int,
    error: str,
    resolved_input: dict[str, Any],
    retries: int = 0,
    duration_ms: int = 0,
    default_exhausted: FailurePolicy = FailurePolicy.ABORT,
) -> FailureDecision:
    policy = effective_policy(step, default_exhausted)

    if policy == FailurePolicy.SKIP:
        return FailureDecision(
            policy=policy,
            result=StepResult(
                step_id=step.id,
                step_name=step.name,
                status=StepStatus.SKIPPED,
                error=error,
                duration_ms=duration_ms,
                retries=retries,
            ),
        )

    if policy == FailurePolicy.DEAD_LETTER:
        entry = DeadLetterEntry(
            workflow_run_id=run_id,
            step_index=step_index,
            step_id=step.id,
            step_type=step.type,
            step_name=step.name,
            input=resolved_input,
            error=error,
            retry_count=retries,
        )
        return FailureDecision(
            policy=policy,
            result=StepResult(
                step_id=step.id,
                step_name=step.name,
                status=StepStatus.FAILED,
                error=f"Moved to dead letter: {error}",
                duration_ms=duration_ms,
                retries=retries,
            ),
            dead_letter=entry,
        )

    # abort
    return FailureDecision(
        policy=FailurePolicy.ABORT,
        result=StepResult(
            step_id=step.id,
            step_name=step.name,
            status=StepStatus.FAILED,
            error=error,
            duration_ms=duration_ms,
            retries=retries,
        ),
        halt=True,
        run_error=f'Step "{step.name}" failed: {error}',
    )
