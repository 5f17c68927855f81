"""
Tests for the tool-call lifecycle manager.
"""

import threading

import pytest

from fakes import RecordingExecutor
from ouroboros.core.abort import AbortSignal
from ouroboros.core.tool_manager import ToolCallManager, ToolStatus
from ouroboros.core.tool_schemas import ToolSchemaRegistry, normalize_tools
from ouroboros.models.events import ToolApprovalEvent, ToolCallResponseEvent
from ouroboros.models.messages import ToolCallRequest, ToolCallResponse
from ouroboros.models.session import SessionState

WAIT = 5


def _request(call_id, name="read_file", origin="model", **args):
    return ToolCallRequest(call_id=call_id, name=name, args=args, origin=origin)


@pytest.fixture
def make_manager(session):
    managers = []

    def _make(executor=None, schemas=None, approval_mode="yolo"):
        session.approval_mode = approval_mode
        manager = ToolCallManager(session, executor or RecordingExecutor(), schemas)
        managers.append(manager)
        return manager

    yield _make
    for manager in managers:
        manager.shutdown(wait=True)


class TestExecution:
    """Tests for scheduling and executing batches."""

    def test_batch_results_in_request_order(self, session, make_manager):
        """Responses are appended as one step in the order the model asked."""
        executor = RecordingExecutor(outputs={"ls": "a b", "cat": "text"})
        manager = make_manager(executor)

        batch = manager.schedule([_request("c1", "ls"), _request("c2", "cat"), _request("c3", "pwd")])

        assert batch.wait(WAIT)
        history = session.get_history()
        assert [m.tool_response.call_id for m in history] == ["c1", "c2", "c3"]
        assert [m.tool_response.output for m in history] == ["a b", "text", "ran pwd"]
        assert batch.continuation_requested is True
        assert sorted(executor.names) == ["cat", "ls", "pwd"]

    def test_executor_exception_becomes_error(self, session, make_manager):
        """A raising executor yields an error response; the batch still completes."""
        manager = make_manager(RecordingExecutor(fail={"rm"}))

        batch = manager.schedule([_request("c1", "rm"), _request("c2", "ls")])

        assert batch.wait(WAIT)
        assert batch.statuses() == {"c1": ToolStatus.ERROR, "c2": ToolStatus.SUCCESS}
        error = batch.responses()[0]
        assert error.error_type == "RuntimeError"
        assert "rm exploded" in error.error
        assert error.name == "rm"
        assert batch.continuation_requested is True

    def test_duration_recorded(self, make_manager):
        """Responses carry their execution time."""
        manager = make_manager()

        batch = manager.schedule([_request("c1")])

        assert batch.wait(WAIT)
        assert batch.responses()[0].duration_ms is not None

    def test_events_stream(self, make_manager):
        """events() yields one response event per call and then ends."""
        manager = make_manager()

        batch = manager.schedule([_request("c1", "ls"), _request("c2", "cat")])
        events = list(batch.events())

        assert {e.call_id for e in events} == {"c1", "c2"}
        assert all(isinstance(e, ToolCallResponseEvent) and e.status == "success" for e in events)

    def test_duplicate_call_ids_ignored(self, session, make_manager):
        """A call id already scheduled is never tracked twice."""
        executor = RecordingExecutor()
        manager = make_manager(executor)

        first = manager.schedule([_request("c1")])
        assert first.wait(WAIT)
        second = manager.schedule([_request("c1")])

        assert second.done
        assert second.calls == []
        assert second.continuation_requested is False
        assert len(executor.requests) == 1
        assert len(session) == 1

    def test_notify_completed_is_idempotent(self, make_manager):
        """Late notifications for terminal calls have no effect."""
        manager = make_manager()
        batch = manager.schedule([_request("c1")])
        assert batch.wait(WAIT)

        assert manager.notify_completed("c1", ToolCallResponse.fail("c1", "late")) is False
        assert manager.notify_completed("unknown", ToolCallResponse.success("unknown")) is False
        assert manager.status_of("c1") is ToolStatus.SUCCESS

    def test_finished_batches_are_pruned(self, make_manager):
        """Finished calls leave the live set but keep their status and stay deduplicated."""
        executor = RecordingExecutor()
        manager = make_manager(executor)

        for i in range(3):
            assert manager.schedule([_request(f"c{i}", "ls")]).wait(WAIT)

        assert manager._calls == {}
        assert manager.status_of("c0") is ToolStatus.SUCCESS
        assert manager.schedule([_request("c0", "ls")]).calls == []
        assert len(executor.requests) == 3

    def test_finished_statuses_are_bounded(self, make_manager, monkeypatch):
        """Only the most recent FINISHED_LIMIT statuses are remembered."""
        monkeypatch.setattr("ouroboros.core.tool_manager.FINISHED_LIMIT", 2)
        manager = make_manager()

        for i in range(3):
            assert manager.schedule([_request(f"c{i}", "ls")]).wait(WAIT)

        assert manager.status_of("c0") is None
        assert manager.status_of("c2") is ToolStatus.SUCCESS

    def test_invalid_arguments_never_execute(self, session, make_manager):
        """Arguments failing the tool schema end the call in error."""
        schemas = ToolSchemaRegistry(normalize_tools([{
            "name": "read_file",
            "parameters": {"type": "object", "properties": {"path": {"type": "string"}}, "required": ["path"]},
        }]))
        executor = RecordingExecutor()
        manager = make_manager(executor, schemas)

        batch = manager.schedule([_request("c1", "read_file", limit=3)])

        assert batch.wait(WAIT)
        assert manager.status_of("c1") is ToolStatus.ERROR
        assert batch.responses()[0].error_type == "invalid_arguments"
        assert executor.requests == []

    def test_validated_arguments_are_coerced(self, make_manager):
        """The executor sees arguments after schema coercion."""
        schemas = ToolSchemaRegistry(normalize_tools([{
            "name": "head",
            "parameters": {"type": "object", "properties": {"n": {"type": "integer"}}},
        }]))
        executor = RecordingExecutor()
        manager = make_manager(executor, schemas)

        assert manager.schedule([_request("c1", "head", n="10")]).wait(WAIT)

        assert executor.requests[0].args == {"n": 10}

    def test_client_calls_skip_approval_and_history(self, session, make_manager):
        """Client-initiated calls run without approval and never reach the model."""
        executor = RecordingExecutor()
        manager = make_manager(executor, approval_mode="default")

        batch = manager.schedule([_request("c1", "ls", origin="client")])

        assert batch.wait(WAIT)
        assert executor.names == ["ls"]
        assert len(session) == 0
        assert batch.continuation_requested is False

    def test_callbacks(self, make_manager):
        """Registered callbacks fire; a failing one doesn't stop the rest."""
        manager = make_manager()
        executed, completed, continued = [], [], []

        def broken(request, response):
            raise RuntimeError("callback bug")

        manager.on_tool_executed(broken)
        manager.on_tool_executed(lambda request, response: executed.append(request.call_id))
        manager.on_completion(completed.append)
        manager.on_continuation(continued.append)

        batch = manager.schedule([_request("c1"), _request("c2")])

        assert batch.wait(WAIT)
        assert sorted(executed) == ["c1", "c2"]
        assert completed == [batch]
        assert continued == [batch]


class TestCancellation:
    """Tests for aborting batches."""

    def test_abort_cancels_every_call(self, session, make_manager):
        """Aborting a batch of three leaves three cancelled calls and one notice."""
        gate = threading.Event()
        executor = RecordingExecutor(gate=gate)
        manager = make_manager(executor)
        signal = AbortSignal()
        continued = []
        manager.on_continuation(continued.append)

        batch = manager.schedule(
            [_request("c1", "ls"), _request("c2", "cat"), _request("c3", "grep")],
            signal=signal,
        )
        assert executor.started.wait(WAIT)
        signal.abort("user")

        assert batch.wait(WAIT)
        gate.set()
        assert set(batch.statuses().values()) == {ToolStatus.CANCELLED}
        assert batch.fully_cancelled is True
        assert batch.continuation_requested is False
        assert continued == []
        history = session.get_history()
        assert len(history) == 1
        assert history[0].kind == "cancellation_notice"
        assert history[0].cancelled_call_ids == ["c1", "c2", "c3"]
        assert "ls, cat, grep" in history[0].content

    def test_already_aborted_signal(self, session, make_manager):
        """Scheduling under an aborted signal cancels without executing."""
        executor = RecordingExecutor()
        manager = make_manager(executor)
        signal = AbortSignal()
        signal.abort()

        batch = manager.schedule([_request("c1")], signal=signal)

        assert batch.wait(WAIT)
        assert batch.statuses() == {"c1": ToolStatus.CANCELLED}
        assert executor.requests == []

    def test_model_switch_suppresses_continuation(self, session, make_manager):
        """Results still land in history, but aren't sent to a newly chosen model."""
        gate = threading.Event()
        executor = RecordingExecutor(gate=gate)
        manager = make_manager(executor)
        continued = []
        manager.on_continuation(continued.append)

        batch = manager.schedule([_request("c1")])
        assert executor.started.wait(WAIT)
        session.switch_provider("anthropic")
        gate.set()

        assert batch.wait(WAIT)
        assert batch.continuation_requested is False
        assert continued == []
        assert session.get_history()[0].tool_response.call_id == "c1"


class TestApproval:
    """Tests for the approval step."""

    def test_calls_wait_for_approval(self, session, make_manager):
        """Outside yolo mode, calls park until approved."""
        executor = RecordingExecutor()
        manager = make_manager(executor, approval_mode="default")
        requested = []
        manager.on_approval_request(requested.append)
        session.begin_turn()

        batch = manager.schedule([_request("c1", "rm", path="/tmp/x")])

        assert manager.status_of("c1") is ToolStatus.AWAITING_APPROVAL
        assert session.state is SessionState.WAITING_FOR_APPROVAL
        assert requested == [ToolApprovalEvent(call_id="c1", name="rm", args={"path": "/tmp/x"})]
        assert [e.call_id for e in manager.pending_approvals()] == ["c1"]
        assert executor.requests == []

        assert manager.approve("c1") is True
        assert batch.wait(WAIT)
        assert executor.names == ["rm"]
        assert session.state is SessionState.RESPONDING
        assert batch.continuation_requested is True

    def test_approve_unknown_or_finished(self, make_manager):
        """Approving something not awaiting approval returns False."""
        manager = make_manager()
        batch = manager.schedule([_request("c1")])
        assert batch.wait(WAIT)

        assert manager.approve("c1") is False
        assert manager.approve("nope") is False
        assert manager.reject("nope") is False

    def test_reject_cancels(self, session, make_manager):
        """A rejected call ends cancelled and is never executed."""
        executor = RecordingExecutor()
        manager = make_manager(executor, approval_mode="default")

        batch = manager.schedule([_request("c1", "rm"), _request("c2", "ls")])
        manager.reject("c1")
        manager.approve("c2")

        assert batch.wait(WAIT)
        assert batch.statuses() == {"c1": ToolStatus.CANCELLED, "c2": ToolStatus.SUCCESS}
        assert "rejected" in batch.responses()[0].error
        assert executor.names == ["ls"]
        assert [m.role for m in session.get_history()] == ["tool", "tool"]

    def test_always_approve_covers_waiting_calls(self, make_manager):
        """always_approve releases every waiting call of that tool and future ones."""
        executor = RecordingExecutor()
        manager = make_manager(executor, approval_mode="default")

        first = manager.schedule([_request("c1", "ls"), _request("c2", "ls")])
        manager.approve("c1", always_approve=True)
        assert first.wait(WAIT)

        second = manager.schedule([_request("c3", "ls")])
        assert second.wait(WAIT)
        assert executor.names.count("ls") == 3

    def test_always_reject(self, make_manager):
        """always_reject cancels future calls of the tool without asking."""
        executor = RecordingExecutor()
        manager = make_manager(executor, approval_mode="default")

        first = manager.schedule([_request("c1", "rm")])
        manager.reject("c1", always_reject=True)
        second = manager.schedule([_request("c2", "rm")])

        assert first.wait(WAIT)
        assert second.wait(WAIT)
        assert manager.status_of("c2") is ToolStatus.CANCELLED
        assert executor.requests == []

    def test_approval_events_in_stream(self, make_manager):
        """Approval requests appear in the batch event stream."""
        manager = make_manager(approval_mode="default")
        batch = manager.schedule([_request("c1", "rm")])

        events = batch.events()
        first = next(events)
        manager.approve("c1")
        rest = list(events)

        assert isinstance(first, ToolApprovalEvent)
        assert [e.status for e in rest] == ["success"]
