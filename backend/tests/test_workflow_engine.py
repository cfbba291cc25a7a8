"""Tests for the workflow execution engine."""

import asyncio

import pytest

from conftest import GatedExecutor, ScriptedExecutor, flaky, json_body, make_definition
from core.constants import RunStatus, StepStatus
from core.exceptions import (
    DefinitionError,
    ExecutorError,
    InvalidRunStateError,
    UnknownStepTypeError,
    WorkflowNotFoundError,
)
from workflow.engine import WorkflowEngine
from workflow.persistence import InMemoryRunStore
from workflow.retry_strategies import RetryStrategy


ORDER_STEPS = [
    {
        "id": "validate",
        "type": "condition",
        "name": "Validate order total",
        "config": {"field": "total", "operator": "gt", "value": 0},
    },
    {
        "id": "save",
        "type": "storage_insert",
        "name": "Save order",
        "config": {"table": "orders", "data": {"total": "{{total}}", "email": "{{customer_email}}"}},
    },
    {
        "id": "confirm",
        "type": "email",
        "name": "Send confirmation",
        "config": {
            "to": "{{customer_email}}",
            "subject": "Order {{step_save.id}} confirmed",
            "text": "Total: {{total}}",
        },
        "on_failure": "dead_letter",
        "max_retries": 3,
    },
]


def linear_steps(count: int, step_type: str = "fake", **overrides):
    return [
        {"id": f"s{i}", "type": step_type, "name": f"Step {i}", **overrides}
        for i in range(count)
    ]


# ─── Order scenarios ───

@pytest.mark.unit
class TestOrderWorkflow:
    @pytest.mark.asyncio
    async def test_positive_total_runs_every_step(self, engine, tables, http_requests):
        run = await engine.execute_workflow(
            make_definition(ORDER_STEPS),
            {"total": 50, "customer_email": "buyer@example.com"},
        )

        assert run.status == RunStatus.COMPLETED
        assert [r.status for r in run.step_results] == [StepStatus.SUCCESS] * 3
        assert run.completed_at is not None

        order = tables.tables["orders"][0]
        assert order["total"] == "50"
        assert order["email"] == "buyer@example.com"

        assert len(http_requests) == 1
        sent = json_body(http_requests[0])
        assert sent["to"] == "buyer@example.com"
        assert sent["subject"] == f"Order {order['id']} confirmed"

    @pytest.mark.asyncio
    async def test_failed_condition_halts_remaining_steps(self, engine, tables, http_requests):
        run = await engine.execute_workflow(
            make_definition(ORDER_STEPS),
            {"total": -5, "customer_email": "buyer@example.com"},
        )

        assert run.status == RunStatus.COMPLETED
        assert len(run.step_results) == 1
        condition = run.step_results[0]
        assert condition.status == StepStatus.SKIPPED
        assert condition.output["passed"] is False
        assert "orders" not in tables.tables
        assert http_requests == []

    @pytest.mark.asyncio
    async def test_failed_condition_can_continue(self, engine, tables):
        steps = [dict(s) for s in ORDER_STEPS]
        steps[0] = {**steps[0], "config": {**steps[0]["config"], "on_false": "continue"}}

        run = await engine.execute_workflow(
            make_definition(steps),
            {"total": -5, "customer_email": "buyer@example.com"},
        )

        assert run.status == RunStatus.COMPLETED
        assert [r.status for r in run.step_results] == [
            StepStatus.SKIPPED,
            StepStatus.SUCCESS,
            StepStatus.SUCCESS,
        ]
        assert len(tables.tables["orders"]) == 1

    @pytest.mark.asyncio
    async def test_dead_lettered_email_does_not_fail_run(self, engine, registry, store, sleep):
        email = ScriptedExecutor("email", ExecutorError("smtp down"))
        registry.register("email", email)

        run = await engine.execute_workflow(
            make_definition(ORDER_STEPS),
            {"total": 50, "customer_email": "buyer@example.com"},
        )

        assert run.status == RunStatus.COMPLETED
        assert len(email.calls) == 4
        assert sleep.calls == [1.0, 2.0, 4.0]

        last = run.step_results[-1]
        assert last.status == StepStatus.FAILED
        assert last.error == "Moved to dead letter: smtp down"
        assert last.retries == 3

        entries = await store.list_dead_letters()
        assert len(entries) == 1
        assert entries[0].retry_count == 3
        assert entries[0].step_index == 2
        assert entries[0].input["to"] == "buyer@example.com"


# ─── Failure policies ───

@pytest.mark.unit
class TestFailurePolicies:
    @pytest.mark.asyncio
    async def test_abort_halts_and_fails_run(self, engine, registry):
        registry.register("fake", ScriptedExecutor("fake"))
        broken = ScriptedExecutor("broken", ExecutorError("boom"))
        registry.register("broken", broken)
        steps = [
            {"id": "a", "type": "fake", "name": "A"},
            {"id": "b", "type": "broken", "name": "B step", "on_failure": "abort"},
            {"id": "c", "type": "fake", "name": "C"},
        ]

        run = await engine.execute_workflow(make_definition(steps))

        assert run.status == RunStatus.FAILED
        assert run.error == 'Step "B step" failed: boom'
        assert [r.step_id for r in run.step_results] == ["a", "b"]
        assert run.step_results[1].status == StepStatus.FAILED
        assert run.completed_at is not None
        assert len(broken.calls) == 1

    @pytest.mark.asyncio
    async def test_skip_records_error_and_continues(self, engine, registry):
        after = ScriptedExecutor("after")
        registry.register("broken", ScriptedExecutor("broken", ExecutorError("nope")))
        registry.register("after", after)
        steps = [
            {"id": "a", "type": "broken", "name": "A", "on_failure": "skip", "max_retries": 5},
            {"id": "b", "type": "after", "name": "B"},
        ]

        run = await engine.execute_workflow(make_definition(steps))

        assert run.status == RunStatus.COMPLETED
        assert run.step_results[0].status == StepStatus.SKIPPED
        assert run.step_results[0].error == "nope"
        assert run.step_results[0].retries == 0
        assert "step_a" not in after.calls[0]["context"].data

    @pytest.mark.asyncio
    async def test_retry_exhaustion_aborts_by_default(self, engine, registry, sleep):
        broken = ScriptedExecutor("broken", ExecutorError("still down"))
        registry.register("broken", broken)
        steps = [{"id": "a", "type": "broken", "name": "A", "on_failure": "retry", "max_retries": 2}]

        run = await engine.execute_workflow(make_definition(steps))

        assert run.status == RunStatus.FAILED
        assert run.error == 'Step "A" failed: still down'
        assert len(broken.calls) == 3
        assert run.step_results[0].retries == 2
        assert sleep.calls == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_retry_exhaustion_uses_step_secondary_policy(self, engine, registry, store):
        registry.register("broken", ScriptedExecutor("broken", ExecutorError("down")))
        registry.register("fake", ScriptedExecutor("fake"))
        steps = [
            {
                "id": "a",
                "type": "broken",
                "name": "A",
                "on_failure": "retry",
                "max_retries": 1,
                "on_retry_exhausted": "dead_letter",
            },
            {"id": "b", "type": "fake", "name": "B"},
        ]

        run = await engine.execute_workflow(make_definition(steps))

        assert run.status == RunStatus.COMPLETED
        assert run.step_results[0].error == "Moved to dead letter: down"
        assert len(await store.list_dead_letters()) == 1

    @pytest.mark.asyncio
    async def test_retry_succeeds_before_exhaustion(self, engine, registry, sleep):
        registry.register("flaky", flaky("flaky", failures=2, output={"value": 3}))
        steps = [{"id": "a", "type": "flaky", "name": "A", "on_failure": "retry", "max_retries": 3}]

        run = await engine.execute_workflow(make_definition(steps))

        assert run.status == RunStatus.COMPLETED
        assert run.step_results[0].status == StepStatus.SUCCESS
        assert run.step_results[0].retries == 2
        assert run.step_results[0].output == {"value": 3}
        assert sleep.calls == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_configured_exhausted_policy(self, store, registry, settings, sleep):
        settings.RETRY_EXHAUSTED_POLICY = "skip"
        engine = WorkflowEngine(store, registry, RetryStrategy.none(), settings, sleep=sleep)
        registry.register("broken", ScriptedExecutor("broken", ExecutorError("down")))
        steps = [{"id": "a", "type": "broken", "name": "A", "on_failure": "retry", "max_retries": 1}]

        run = await engine.execute_workflow(make_definition(steps))

        assert run.status == RunStatus.COMPLETED
        assert run.step_results[0].status == StepStatus.SKIPPED

    def test_rejects_retry_as_exhausted_policy(self, store, registry, settings):
        settings.RETRY_EXHAUSTED_POLICY = "retry"
        with pytest.raises(DefinitionError):
            WorkflowEngine(store, registry, settings=settings)

    @pytest.mark.asyncio
    async def test_timeout_is_a_step_failure(self, engine, registry):
        gated = GatedExecutor()
        registry.register("gated", gated)
        steps = [{"id": "slow", "type": "gated", "name": "Slow", "timeout_seconds": 0.05}]

        run = await engine.execute_workflow(make_definition(steps))

        assert run.status == RunStatus.FAILED
        assert run.error == 'Step "Slow" failed: Step timed out after 50ms'

        gated.release.set()
        await asyncio.sleep(0.01)


# ─── Context & interpolation ───

@pytest.mark.unit
class TestContextFlow:
    @pytest.mark.asyncio
    async def test_outputs_feed_later_steps(self, engine, registry):
        first = ScriptedExecutor("first", {"id": 7, "tags": ["a", "b"]})
        second = ScriptedExecutor("second")
        registry.register("first", first)
        registry.register("second", second)
        steps = [
            {"id": "fetch", "type": "first", "name": "Fetch"},
            {
                "id": "use",
                "type": "second",
                "name": "Use",
                "config": {"ref": "{{step_fetch.id}}", "tag": "{{step_fetch.tags.1}}", "missing": "{{nope}}"},
            },
        ]

        await engine.execute_workflow(make_definition(steps), {"user": "u-1"})

        call = second.calls[0]
        assert call["config"] == {"ref": "7", "tag": "b", "missing": ""}
        assert call["context"].data["user"] == "u-1"
        assert call["context"].data["step_fetch"] == {"id": 7, "tags": ["a", "b"]}

    @pytest.mark.asyncio
    async def test_executor_cannot_mutate_context(self, engine, registry):
        class Mutating(ScriptedExecutor):
            async def execute(self, config, context):
                await super().execute(config, context)
                context.data["injected"] = True

        registry.register("mutating", Mutating("mutating"))
        steps = [{"id": "m", "type": "mutating", "name": "M"}]

        run = await engine.execute_workflow(make_definition(steps))

        assert run.status == RunStatus.FAILED
        assert "does not support item assignment" in run.step_results[0].error

    @pytest.mark.asyncio
    async def test_idempotency_key_per_attempt(self, engine, registry):
        executor = flaky("flaky", failures=2)
        registry.register("flaky", executor)
        steps = [{"id": "charge", "type": "flaky", "name": "Charge", "on_failure": "retry", "max_retries": 2}]

        run = await engine.execute_workflow(make_definition(steps))

        keys = [call["context"].idempotency_key for call in executor.calls]
        assert keys == [
            f"wf_{run.id}_charge_1",
            f"wf_{run.id}_charge_2",
            f"wf_{run.id}_charge_3",
        ]


# ─── Resume & persistence ───

class CrashingStore(InMemoryRunStore):
    """Raises right after persisting a given number of step results."""

    def __init__(self, crash_after: int):
        super().__init__()
        self.crash_after = crash_after
        self.armed = True

    async def update_run(self, run_id, expected_status=None, **fields):
        await super().update_run(run_id, expected_status=expected_status, **fields)
        results = fields.get("step_results")
        if self.armed and results is not None and len(results) == self.crash_after:
            raise RuntimeError("simulated crash")


@pytest.mark.unit
class TestResume:
    @pytest.mark.asyncio
    async def test_resume_starts_after_last_success(self, engine, registry, store):
        executors = [ScriptedExecutor("s0", {"n": 0}), ScriptedExecutor("s1", {"n": 1}), ScriptedExecutor("s2", {"n": 2})]
        last = ScriptedExecutor("s3", ExecutorError("downstream 503"), {"n": 3})
        for executor in [*executors, last]:
            registry.register(executor.step_type, executor)
        definition = make_definition([
            {"id": f"s{i}", "type": f"s{i}", "name": f"Step {i}"} for i in range(4)
        ])
        await store.save_workflow(definition)

        failed = await engine.execute_workflow(definition, {"order_id": "o-1"})
        assert failed.status == RunStatus.FAILED
        assert failed.current_step == 3

        resumed = await engine.resume_workflow(failed.id)

        assert resumed.status == RunStatus.COMPLETED
        assert resumed.error is None
        assert [r.status for r in resumed.step_results] == [StepStatus.SUCCESS] * 4
        assert [len(e.calls) for e in executors] == [1, 1, 1]
        assert len(last.calls) == 2

        context = last.calls[1]["context"].data
        assert context["order_id"] == "o-1"
        assert [context[f"step_s{i}"] for i in range(3)] == [{"n": 0}, {"n": 1}, {"n": 2}]

    @pytest.mark.asyncio
    async def test_crash_after_persist_keeps_ledger(self, registry, settings, sleep):
        store = CrashingStore(crash_after=2)
        engine = WorkflowEngine(store, registry, RetryStrategy.none(), settings, sleep=sleep)
        executors = [ScriptedExecutor(f"s{i}", {"n": i}) for i in range(3)]
        for executor in executors:
            registry.register(executor.step_type, executor)
        definition = make_definition([
            {"id": f"s{i}", "type": f"s{i}", "name": f"Step {i}"} for i in range(3)
        ])
        await store.save_workflow(definition)

        with pytest.raises(RuntimeError):
            await engine.execute_workflow(definition)

        (crashed,) = await store.list_runs(status=RunStatus.RUNNING)
        before = [r.to_dict() for r in crashed.step_results]
        assert len(before) == 2

        store.armed = False
        await store.update_run(crashed.id, status=RunStatus.PAUSED)
        resumed = await engine.resume_workflow(crashed.id)

        assert resumed.status == RunStatus.COMPLETED
        assert [r.to_dict() for r in resumed.step_results[:2]] == before
        assert [len(e.calls) for e in executors] == [1, 1, 1]

    @pytest.mark.asyncio
    async def test_resume_rejects_completed_run(self, engine, registry, store):
        registry.register("fake", ScriptedExecutor("fake"))
        definition = make_definition(linear_steps(1))
        await store.save_workflow(definition)
        run = await engine.execute_workflow(definition)

        with pytest.raises(InvalidRunStateError):
            await engine.resume_workflow(run.id)

    @pytest.mark.asyncio
    async def test_from_step_out_of_range(self, engine):
        with pytest.raises(DefinitionError):
            await engine.execute_workflow(make_definition(linear_steps(2)), from_step=3)


# ─── Cancel & pause ───

class CancelBeforeLedgerWrite(InMemoryRunStore):
    """Cancels the run just before the first step result is written."""

    def __init__(self):
        super().__init__()
        self.fired = False

    async def update_run(self, run_id, expected_status=None, **fields):
        if not self.fired and fields.get("step_results"):
            self.fired = True
            await super().update_run(run_id, status=RunStatus.CANCELLED)
        await super().update_run(run_id, expected_status=expected_status, **fields)


@pytest.mark.unit
class TestCancelAndPause:
    @pytest.mark.asyncio
    async def test_cancel_during_step_discards_result(self, engine, registry, store):
        gated = GatedExecutor()
        after = ScriptedExecutor("after")
        registry.register("gated", gated)
        registry.register("after", after)
        steps = [
            {"id": "wait", "type": "gated", "name": "Wait"},
            {"id": "next", "type": "after", "name": "Next"},
        ]

        task = asyncio.create_task(engine.execute_workflow(make_definition(steps)))
        await gated.started.wait()
        (running,) = await store.list_runs(status=RunStatus.RUNNING)
        cancelled = await engine.cancel_workflow(running.id)
        assert cancelled.status == RunStatus.CANCELLED

        gated.release.set()
        run = await task

        assert run.status == RunStatus.CANCELLED
        assert run.step_results == []
        assert after.calls == []
        stored = await engine.get_run(run.id)
        assert stored.status == RunStatus.CANCELLED
        assert stored.completed_at is not None

    @pytest.mark.asyncio
    async def test_pause_keeps_finished_step_and_resume_skips_it(self, engine, registry, store):
        gated = GatedExecutor({"paid": True})
        after = ScriptedExecutor("after")
        registry.register("gated", gated)
        registry.register("after", after)
        definition = make_definition([
            {"id": "pay", "type": "gated", "name": "Pay"},
            {"id": "ship", "type": "after", "name": "Ship"},
        ])
        await store.save_workflow(definition)

        task = asyncio.create_task(engine.execute_workflow(definition))
        await gated.started.wait()
        (running,) = await store.list_runs(status=RunStatus.RUNNING)
        await engine.pause_workflow(running.id)
        gated.release.set()
        paused = await task

        assert paused.status == RunStatus.PAUSED
        assert [(r.step_id, r.status) for r in paused.step_results] == [("pay", StepStatus.SUCCESS)]
        assert after.calls == []

        gated.started.clear()
        resumed = await engine.resume_workflow(paused.id)

        assert resumed.status == RunStatus.COMPLETED
        assert [r.step_id for r in resumed.step_results] == ["pay", "ship"]
        assert not gated.started.is_set()
        assert after.calls[0]["context"].data["step_pay"] == {"paid": True}

    @pytest.mark.asyncio
    async def test_failed_step_not_recorded_on_paused_run(self, engine, registry, store):
        class FailAfterPause(GatedExecutor):
            async def execute(self, config, context):
                await super().execute(config, context)
                raise ExecutorError("gateway timeout")

        gated = FailAfterPause()
        registry.register("gated", gated)
        steps = [{"id": "pay", "type": "gated", "name": "Pay", "on_failure": "dead_letter"}]

        task = asyncio.create_task(engine.execute_workflow(make_definition(steps)))
        await gated.started.wait()
        (running,) = await store.list_runs(status=RunStatus.RUNNING)
        await engine.pause_workflow(running.id)
        gated.release.set()
        paused = await task

        assert paused.status == RunStatus.PAUSED
        assert paused.step_results == []
        assert await engine.list_dead_letters() == []

    @pytest.mark.asyncio
    async def test_cancel_landing_before_ledger_write(self, registry, settings, sleep):
        store = CancelBeforeLedgerWrite()
        engine = WorkflowEngine(store, registry, RetryStrategy.none(), settings, sleep=sleep)
        first = ScriptedExecutor("first", {"ok": True})
        second = ScriptedExecutor("second")
        registry.register("first", first)
        registry.register("second", second)
        steps = [
            {"id": "a", "type": "first", "name": "A"},
            {"id": "b", "type": "second", "name": "B"},
        ]

        run = await engine.execute_workflow(make_definition(steps))

        assert run.status == RunStatus.CANCELLED
        assert run.step_results == []
        assert second.calls == []
        stored = await store.load_run(run.id)
        assert stored.status == RunStatus.CANCELLED
        assert stored.step_results == []

    @pytest.mark.asyncio
    async def test_cancel_before_ledger_write_drops_dead_letter(self, registry, settings, sleep):
        store = CancelBeforeLedgerWrite()
        engine = WorkflowEngine(store, registry, RetryStrategy.none(), settings, sleep=sleep)
        registry.register("notify", ScriptedExecutor("notify", ExecutorError("partner offline")))
        steps = [{"id": "notify", "type": "notify", "name": "Notify", "on_failure": "dead_letter"}]

        run = await engine.execute_workflow(make_definition(steps))

        assert run.status == RunStatus.CANCELLED
        assert (await store.load_run(run.id)).step_results == []
        assert await store.list_dead_letters() == []

    @pytest.mark.asyncio
    async def test_cancel_finished_run_rejected(self, engine, registry):
        registry.register("fake", ScriptedExecutor("fake"))
        run = await engine.execute_workflow(make_definition(linear_steps(1)))

        with pytest.raises(InvalidRunStateError):
            await engine.cancel_workflow(run.id)


# ─── Triggers & errors ───

@pytest.mark.unit
class TestTriggers:
    @pytest.mark.asyncio
    async def test_manual_trigger_data(self, engine, registry, store):
        executor = ScriptedExecutor("fake")
        registry.register("fake", executor)
        await store.save_workflow(make_definition(linear_steps(1), workflow_id="wf-manual"))

        run = await engine.trigger_workflow("wf-manual", {"order_id": "o-9"})

        assert run.status == RunStatus.COMPLETED
        assert run.workflow_id == "wf-manual"
        assert run.trigger_data["triggered_by"] == "manual"
        assert run.trigger_data["order_id"] == "o-9"
        assert "timestamp" in run.trigger_data

    @pytest.mark.asyncio
    async def test_inactive_workflow_cannot_be_triggered(self, engine, store):
        await store.save_workflow(make_definition(linear_steps(1), workflow_id="wf-off", active=False))

        with pytest.raises(WorkflowNotFoundError):
            await engine.trigger_workflow("wf-off")

    @pytest.mark.asyncio
    async def test_unknown_step_type_fails_run(self, engine, registry, store):
        registry.register("fake", ScriptedExecutor("fake"))
        steps = [
            {"id": "a", "type": "fake", "name": "A"},
            {"id": "b", "type": "teleport", "name": "B"},
        ]

        with pytest.raises(UnknownStepTypeError):
            await engine.execute_workflow(make_definition(steps))

        (run,) = await store.list_runs()
        assert run.status == RunStatus.FAILED
        assert run.error == "Unknown step type: teleport"
        assert len(run.step_results) == 1
        assert run.current_step == 1
