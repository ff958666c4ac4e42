"""Tests for the execution recorder and the scoped execution context."""

import asyncio

import pytest

from core.constants import ExecutionStatus, StepStatus
from core.exceptions import InvalidTransition
from workflow.context import ExecutionContext
from workflow.recorder import ExecutionRecord, ExecutionRecorder, StepResult, utcnow


def make_step(node_id="n1", status=StepStatus.COMPLETED, **kwargs):
    now = utcnow()
    return StepResult(node_id=node_id, kind="action", status=status, started_at=now, completed_at=now, **kwargs)


# ─── Recorder state machine ──────────────────────────────────────

@pytest.mark.unit
class TestRecorderTransitions:

    def test_happy_path(self):
        recorder = ExecutionRecorder(ExecutionRecord())
        assert recorder.status == ExecutionStatus.PENDING
        recorder.start()
        recorder.complete()

        assert recorder.status == ExecutionStatus.COMPLETED
        assert recorder.record.completed_at is not None
        assert recorder.record.duration_ms >= 0

    def test_fail_records_message_and_node(self):
        recorder = ExecutionRecorder(ExecutionRecord())
        recorder.start()
        recorder.fail("boom", node_id="api_1")

        assert recorder.record.error_message == "boom"
        assert recorder.record.error_node_id == "api_1"

    def test_pending_cannot_be_cancelled(self):
        recorder = ExecutionRecorder(ExecutionRecord())
        with pytest.raises(InvalidTransition, match="'pending' to 'cancelled'"):
            recorder.cancel("stopped by user")
        assert recorder.status == ExecutionStatus.PENDING

    def test_pending_can_fail(self):
        recorder = ExecutionRecorder(ExecutionRecord())
        recorder.fail("Trigger disabled", node_id="start")
        assert recorder.status == ExecutionStatus.FAILED

    @pytest.mark.parametrize("finish", ["complete", "fail", "cancel"])
    def test_terminal_states_are_final(self, finish):
        recorder = ExecutionRecorder(ExecutionRecord())
        recorder.start()
        getattr(recorder, finish)(*(["x"] if finish == "fail" else []))

        with pytest.raises(InvalidTransition):
            recorder.start()
        with pytest.raises(InvalidTransition):
            recorder.complete()

    def test_cannot_complete_before_start(self):
        with pytest.raises(InvalidTransition, match="'pending' to 'completed'"):
            ExecutionRecorder(ExecutionRecord()).complete()


@pytest.mark.unit
class TestRecorderAppend:

    @pytest.mark.asyncio
    async def test_append_notifies_sync_and_async_listeners(self):
        seen = []

        async def async_listener(step):
            seen.append(("async", step.node_id))

        recorder = ExecutionRecorder(ExecutionRecord(), listeners=[lambda s: seen.append(("sync", s.node_id))])
        recorder.add_listener(async_listener)
        recorder.start()
        await recorder.append(make_step("a"))

        assert seen == [("sync", "a"), ("async", "a")]

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_recording(self):
        def broken(step):
            raise RuntimeError("listener down")

        recorder = ExecutionRecorder(ExecutionRecord(), listeners=[broken])
        recorder.start()
        await recorder.append(make_step("a"))
        assert len(recorder.record.steps) == 1

    @pytest.mark.asyncio
    async def test_steps_after_terminal_are_ignored(self):
        recorder = ExecutionRecorder(ExecutionRecord())
        recorder.start()
        await recorder.append(make_step("a"))
        recorder.complete()
        await recorder.append(make_step("late"))

        assert [s.node_id for s in recorder.record.steps] == ["a"]

    @pytest.mark.asyncio
    async def test_concurrent_appends_keep_every_step(self):
        recorder = ExecutionRecorder(ExecutionRecord())
        recorder.start()
        await asyncio.gather(*[recorder.append(make_step(f"n{i}")) for i in range(50)])
        assert len(recorder.record.steps) == 50

    def test_step_for_returns_latest(self):
        record = ExecutionRecord(steps=[make_step("a", output=1), make_step("a", output=2)])
        assert record.step_for("a").output == 2
        assert record.step_for("b") is None


@pytest.mark.unit
class TestSerialisation:

    def test_record_round_trip(self):
        step = make_step("a", output={"x": 1}, warnings=("w",), iteration=(0, 2), attempts=2)
        record = ExecutionRecord(workflow_id="wf", trigger_payload={"k": "v"}, steps=[step])
        data = record.to_dict()

        assert data["steps"][0]["iteration"] == [0, 2]
        assert data["status"] == "pending"
        restored = ExecutionRecord.from_dict(data)
        assert restored.steps[0] == step
        assert restored.workflow_id == "wf"


# ─── Execution context ───────────────────────────────────────────

@pytest.mark.unit
class TestExecutionContext:

    def test_trigger_in_root_scope(self):
        ctx = ExecutionContext(execution_id="e", trigger_payload={"a": 1})
        assert ctx.get("trigger") == {"a": 1}
        assert ctx.depth == 0
        assert ctx.iteration is None

    def test_stored_none_is_found(self):
        ctx = ExecutionContext(execution_id="e")
        ctx.set("maybe", None)
        assert ctx.lookup("maybe") == (True, None)
        assert ctx.lookup("absent") == (False, None)

    def test_scopes_shadow_and_pop(self):
        ctx = ExecutionContext(execution_id="e")
        ctx.set("x", "root")
        with ctx.scope({"x": "loop"}, iteration=3):
            ctx.set("y", 1)
            assert ctx.get("x") == "loop"
            assert ctx.iteration == (3,)
            ctx.set_global("total", 10)
        assert ctx.get("x") == "root"
        assert "y" not in ctx
        assert ctx.get("total") == 10

    def test_root_scope_cannot_be_popped(self):
        with pytest.raises(RuntimeError):
            ExecutionContext(execution_id="e").pop_scope()

    def test_fork_isolates_writes_and_shares_metadata(self):
        ctx = ExecutionContext(execution_id="e")
        ctx.set("shared", 1)
        child = ctx.fork({"item": "a"}, iteration=0)
        child.set("local", 2)
        child.metadata["cancelled"] = True

        assert child.get("shared") == 1
        assert "local" not in ctx
        assert ctx.metadata["cancelled"] is True
        assert child.iteration == (0,)

    def test_restricted_hides_outer_names(self):
        ctx = ExecutionContext(execution_id="e")
        ctx.set("secret", 1)
        view = ctx.restricted({"item": 5})
        assert view.get("item") == 5
        assert "secret" not in view

    def test_to_dict_inner_wins(self):
        ctx = ExecutionContext(execution_id="e")
        ctx.set("a", 1)
        ctx.push_scope({"a": 2})
        assert ctx.to_dict()["a"] == 2
