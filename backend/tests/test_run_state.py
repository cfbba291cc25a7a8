"""Tests for run status transitions and the step ledger."""

import pytest

from core.constants import RunStatus, StepStatus
from core.exceptions import InvalidRunStateError
from workflow.models import StepResult
from workflow.run_state import RunStateMachine, can_transition


@pytest.mark.unit
class TestTransitions:
    @pytest.mark.parametrize("current,target", [
        (RunStatus.PENDING, RunStatus.RUNNING),
        (RunStatus.RUNNING, RunStatus.COMPLETED),
        (RunStatus.RUNNING, RunStatus.PAUSED),
        (RunStatus.PAUSED, RunStatus.RUNNING),
        (RunStatus.PAUSED, RunStatus.CANCELLED),
        (RunStatus.FAILED, RunStatus.RUNNING),
        (RunStatus.COMPLETED, RunStatus.PENDING),
    ])
    def test_allowed(self, current, target):
        assert can_transition(current, target) is True

    @pytest.mark.parametrize("current,target", [
        (RunStatus.COMPLETED, RunStatus.RUNNING),
        (RunStatus.CANCELLED, RunStatus.RUNNING),
        (RunStatus.COMPLETED, RunStatus.CANCELLED),
        (RunStatus.PENDING, RunStatus.COMPLETED),
        (RunStatus.PAUSED, RunStatus.COMPLETED),
    ])
    def test_rejected(self, current, target):
        assert can_transition(current, target) is False


@pytest.mark.unit
class TestRunStateMachine:
    @pytest.mark.asyncio
    async def test_lifecycle_is_persisted(self, store):
        machine = await RunStateMachine.create(store, "wf-1", {"a": 1})
        await machine.mark_running()
        await machine.complete()

        stored = await store.load_run(machine.run_id)
        assert stored.status == RunStatus.COMPLETED
        assert stored.started_at is not None
        assert stored.completed_at is not None

    @pytest.mark.asyncio
    async def test_illegal_transition_raises(self, store):
        machine = await RunStateMachine.create(store, "wf-1", {})

        with pytest.raises(InvalidRunStateError):
            await machine.complete()

        assert (await store.load_run(machine.run_id)).status == RunStatus.PENDING

    @pytest.mark.asyncio
    async def test_stale_machine_does_not_overwrite_cancel(self, store):
        machine = await RunStateMachine.create(store, "wf-1", {})
        await machine.mark_running()
        other = await RunStateMachine.load(store, machine.run_id)
        await other.cancel()

        with pytest.raises(InvalidRunStateError):
            await machine.complete()

        assert await machine.refresh_status() == RunStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_ledger_append_and_truncate(self, store):
        machine = await RunStateMachine.create(store, "wf-1", {})
        for step_id in ("a", "b", "c"):
            await machine.record_result(StepResult(step_id=step_id, step_name=step_id, status=StepStatus.SUCCESS))

        await machine.truncate_results(1)

        stored = await store.load_run(machine.run_id)
        assert [r.step_id for r in stored.step_results] == ["a"]

    @pytest.mark.asyncio
    async def test_ledger_of_cancelled_run_is_frozen(self, store):
        machine = await RunStateMachine.create(store, "wf-1", {})
        await machine.mark_running()
        await machine.record_result(StepResult(step_id="a", step_name="a", status=StepStatus.SUCCESS))
        await (await RunStateMachine.load(store, machine.run_id)).cancel()

        with pytest.raises(InvalidRunStateError):
            await machine.record_result(StepResult(step_id="b", step_name="b", status=StepStatus.SUCCESS))
        with pytest.raises(InvalidRunStateError):
            await machine.set_current_step(1)
        with pytest.raises(InvalidRunStateError):
            await machine.truncate_results(0)

        stored = await store.load_run(machine.run_id)
        assert [r.step_id for r in stored.step_results] == ["a"]
        assert stored.current_step == 0

    @pytest.mark.asyncio
    async def test_fail_records_error(self, store):
        machine = await RunStateMachine.create(store, "wf-1", {})
        await machine.mark_running()
        await machine.fail("boom")

        await machine.reset_to_pending()

        stored = await store.load_run(machine.run_id)
        assert stored.status == RunStatus.PENDING
        assert stored.error is None
        assert stored.completed_at is None

    @pytest.mark.asyncio
    async def test_snapshot_is_detached(self, store):
        machine = await RunStateMachine.create(store, "wf-1", {"a": 1})
        snapshot = machine.snapshot()
        snapshot.trigger_data["a"] = 2

        assert machine.run.trigger_data == {"a": 1}
