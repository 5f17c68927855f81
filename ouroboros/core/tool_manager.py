"""
Tool-call lifecycle manager.

Every tool call the model (or the client) requests is tracked here from
scheduling to its one terminal state:

    pending -> validating -> awaiting_approval -> executing -> success | error | cancelled

The approval step is skipped under the "yolo" approval mode, for tool names
the user always-approved, and for client-initiated calls. Execution is
delegated to the host's ToolExecutor on a thread pool. When every call of a
batch is terminal, the results are appended to the session in request order
as one step and, unless the batch was cancelled or the model changed in the
meantime, a continuation is requested.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Callable, Iterator

from pydantic import ValidationError

from ouroboros.core.abort import AbortSignal
from ouroboros.core.tool_schemas import ToolSchemaRegistry
from ouroboros.errors import ExecutionAborted, ToolExecutionError
from ouroboros.models.events import Event, ToolApprovalEvent, ToolCallResponseEvent
from ouroboros.models.messages import Message, ToolCallRequest, ToolCallResponse

if TYPE_CHECKING:
    from ouroboros.core.session import ConversationSession

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Tool call cancelled by user."
REJECTED_MESSAGE = "Tool call rejected by user."
# Terminal statuses remembered after their batch is pruned
FINISHED_LIMIT = 1000


class ToolStatus(str, Enum):
    PENDING = "pending"
    VALIDATING = "validating"
    AWAITING_APPROVAL = "awaiting_approval"
    EXECUTING = "executing"
    SUCCESS = "success"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (ToolStatus.SUCCESS, ToolStatus.ERROR, ToolStatus.CANCELLED)


ToolExecutor = Callable[[ToolCallRequest, AbortSignal], ToolCallResponse]
CompletionCallback = Callable[["ToolBatch"], None]
ApprovalCallback = Callable[[ToolApprovalEvent], None]
ToolExecutedCallback = Callable[[ToolCallRequest, ToolCallResponse], None]


@dataclass
class TrackedToolCall:
    request: ToolCallRequest
    batch: ToolBatch
    status: ToolStatus = ToolStatus.PENDING
    response: ToolCallResponse | None = None
    started_at: float | None = None

    @property
    def call_id(self) -> str:
        return self.request.call_id

    def approval_event(self) -> ToolApprovalEvent:
        return ToolApprovalEvent(call_id=self.call_id, name=self.request.name, args=dict(self.request.args))


_DONE = object()


@dataclass
class ToolBatch:
    """One schedule() call's worth of tool calls."""

    id: int
    signal: AbortSignal
    switch_generation: int
    calls: list[TrackedToolCall] = field(default_factory=list)
    continuation_requested: bool = False
    fully_cancelled: bool = False
    _done: threading.Event = field(default_factory=threading.Event)
    _events: queue.Queue = field(default_factory=queue.Queue)
    _finalizing: bool = False
    _remove_listener: Callable[[], None] | None = None

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until every call is terminal. Returns False on timeout."""
        return self._done.wait(timeout)

    def events(self) -> Iterator[Event]:
        """Approval requests and tool responses, as they happen, until the batch is done."""
        while True:
            item = self._events.get()
            if item is _DONE:
                return
            yield item

    def responses(self) -> list[ToolCallResponse]:
        """Terminal responses in request order."""
        return [c.response for c in self.calls if c.response is not None]

    def statuses(self) -> dict[str, ToolStatus]:
        return {c.call_id: c.status for c in self.calls}

    def _emit(self, event: Event) -> None:
        self._events.put(event)

    def _finish(self) -> None:
        self._done.set()
        self._events.put(_DONE)


class ToolCallManager:
    """
    Tracks tool calls for one session.

    Callbacks registered with on_completion / on_continuation /
    on_approval_request / on_tool_executed are invoked once per notification,
    in registration order; a failing callback is logged and does not stop
    the others.
    """

    def __init__(
        self,
        session: ConversationSession,
        executor: ToolExecutor,
        schemas: ToolSchemaRegistry | None = None,
        max_workers: int = 5,
    ):
        self.session = session
        self.executor = executor
        self.schemas = schemas or ToolSchemaRegistry()
        self.max_workers = max_workers

        self._lock = threading.RLock()
        # Calls of batches still in flight; finished batches move to _finished
        self._calls: dict[str, TrackedToolCall] = {}
        self._finished: OrderedDict[str, ToolStatus] = OrderedDict()
        self._always_approved: set[str] = set()
        self._always_rejected: set[str] = set()
        self._batch_ids = 0
        self._pool: ThreadPoolExecutor | None = None

        self._completion_callbacks: list[CompletionCallback] = []
        self._continuation_callbacks: list[CompletionCallback] = []
        self._approval_callbacks: list[ApprovalCallback] = []
        self._executed_callbacks: list[ToolExecutedCallback] = []

    # ── Callback registration ─────────────────────────────────────────

    def on_completion(self, callback: CompletionCallback) -> None:
        self._completion_callbacks.append(callback)

    def on_continuation(self, callback: CompletionCallback) -> None:
        self._continuation_callbacks.append(callback)

    def on_approval_request(self, callback: ApprovalCallback) -> None:
        self._approval_callbacks.append(callback)

    def on_tool_executed(self, callback: ToolExecutedCallback) -> None:
        self._executed_callbacks.append(callback)

    def _fire(self, callbacks: list, *args: object) -> None:
        for callback in list(callbacks):
            try:
                callback(*args)
            except Exception:
                logger.exception("Tool lifecycle callback failed")

    # ── Scheduling ────────────────────────────────────────────────────

    def schedule(self, requests: list[ToolCallRequest], signal: AbortSignal | None = None) -> ToolBatch:
        """
        Start tracking requests as one batch. Returns immediately.

        Call ids already known to the manager are ignored.
        """
        signal = signal or AbortSignal()
        with self._lock:
            self._batch_ids += 1
            batch = ToolBatch(id=self._batch_ids, signal=signal, switch_generation=self.session.switch_generation)
            for request in requests:
                if request.call_id in self._calls or request.call_id in self._finished:
                    logger.warning("Tool call %s already scheduled; ignoring", request.call_id)
                    continue
                tracked = TrackedToolCall(request=request, batch=batch)
                self._calls[request.call_id] = tracked
                batch.calls.append(tracked)

        logger.debug("Scheduled batch %d with %d call(s)", batch.id, len(batch.calls))
        if not batch.calls:
            self._finalize(batch)
            return batch

        batch._remove_listener = signal.add_listener(lambda: self._abort_batch(batch))
        for tracked in list(batch.calls):
            if signal.aborted:
                break
            self._advance(tracked)
        return batch

    def _set_status(self, tracked: TrackedToolCall, status: ToolStatus) -> bool:
        with self._lock:
            if tracked.status.terminal:
                return False
            logger.debug("Tool call %s: %s -> %s", tracked.call_id, tracked.status.value, status.value)
            tracked.status = status
            return True

    def _advance(self, tracked: TrackedToolCall) -> None:
        request = tracked.request
        if not self._set_status(tracked, ToolStatus.VALIDATING):
            return

        if request.name in self._always_rejected:
            self.notify_completed(request.call_id, ToolCallResponse.cancelled_for(request, REJECTED_MESSAGE))
            return

        try:
            validated = self.schemas.validate(request.name, request.args)
        except ValidationError as e:
            self.notify_completed(
                request.call_id,
                ToolCallResponse.fail(
                    request.call_id,
                    f"Invalid arguments for '{request.name}': {e.error_count()} validation error(s)\n{e}",
                    error_type="invalid_arguments",
                    name=request.name,
                ),
            )
            return
        tracked.request = request.model_copy(update={"args": validated})

        if (
            request.origin == "client"
            or self.session.approval_mode == "yolo"
            or request.name in self._always_approved
        ):
            self._execute(tracked)
            return

        if not self._set_status(tracked, ToolStatus.AWAITING_APPROVAL):
            return
        event = tracked.approval_event()
        self.session.set_waiting_for_approval(True)
        tracked.batch._emit(event)
        self._fire(self._approval_callbacks, event)

    # ── Approval ──────────────────────────────────────────────────────

    def pending_approvals(self) -> list[ToolApprovalEvent]:
        with self._lock:
            return [
                t.approval_event() for t in self._calls.values() if t.status is ToolStatus.AWAITING_APPROVAL
            ]

    def _awaiting(self, name: str) -> list[TrackedToolCall]:
        with self._lock:
            return [t for t in self._calls.values() if t.status is ToolStatus.AWAITING_APPROVAL and t.request.name == name]

    def approve(self, call_id: str, always_approve: bool = False) -> bool:
        """
        Approve a call parked in awaiting_approval.

        With always_approve, the tool name is approved for the rest of the
        session, including other calls of it already waiting.

        Returns:
            False if the call isn't awaiting approval
        """
        with self._lock:
            tracked = self._calls.get(call_id)
            if tracked is None or tracked.status is not ToolStatus.AWAITING_APPROVAL:
                return False
            targets = [tracked]
            if always_approve:
                self._always_approved.add(tracked.request.name)
                targets += [t for t in self._awaiting(tracked.request.name) if t is not tracked]

        for target in targets:
            self._execute(target)
        self._refresh_waiting()
        return True

    def reject(self, call_id: str, always_reject: bool = False) -> bool:
        """Reject a call parked in awaiting_approval; it ends cancelled."""
        with self._lock:
            tracked = self._calls.get(call_id)
            if tracked is None or tracked.status is not ToolStatus.AWAITING_APPROVAL:
                return False
            targets = [tracked]
            if always_reject:
                self._always_rejected.add(tracked.request.name)
                targets += [t for t in self._awaiting(tracked.request.name) if t is not tracked]

        for target in targets:
            self.notify_completed(target.call_id, ToolCallResponse.cancelled_for(target.request, REJECTED_MESSAGE))
        self._refresh_waiting()
        return True

    def _refresh_waiting(self) -> None:
        with self._lock:
            waiting = any(t.status is ToolStatus.AWAITING_APPROVAL for t in self._calls.values())
        self.session.set_waiting_for_approval(waiting)

    # ── Execution ─────────────────────────────────────────────────────

    def _get_pool(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._pool is None:
                self._pool = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="ouroboros-tool")
            return self._pool

    def _execute(self, tracked: TrackedToolCall) -> None:
        if not self._set_status(tracked, ToolStatus.EXECUTING):
            return
        tracked.started_at = time.monotonic()
        self._get_pool().submit(self._run, tracked)

    def _run(self, tracked: TrackedToolCall) -> None:
        request = tracked.request
        signal = tracked.batch.signal
        if signal.aborted:
            self.notify_completed(request.call_id, ToolCallResponse.cancelled_for(request, CANCELLED_MESSAGE))
            return

        try:
            response = self.executor(request, signal)
        except ExecutionAborted:
            response = ToolCallResponse.cancelled_for(request, CANCELLED_MESSAGE)
        except Exception as e:
            error = ToolExecutionError(request.call_id, request.name, e)
            logger.warning("%s", error)
            response = ToolCallResponse.fail(request.call_id, str(error), error_type=type(e).__name__)

        updates: dict[str, object] = {"call_id": request.call_id}
        if response.name is None:
            updates["name"] = request.name
        if response.duration_ms is None and tracked.started_at is not None:
            updates["duration_ms"] = int((time.monotonic() - tracked.started_at) * 1000)
        self.notify_completed(request.call_id, response.model_copy(update=updates))

    # ── Completion ────────────────────────────────────────────────────

    def notify_completed(self, call_id: str, response: ToolCallResponse) -> bool:
        """
        Record the terminal result for call_id.

        Idempotent: notifications for unknown or already-terminal calls are
        ignored. Returns True if this notification took effect.
        """
        with self._lock:
            tracked = self._calls.get(call_id)
            if tracked is None or tracked.status.terminal:
                logger.debug("Ignoring completion for %s (unknown or already terminal)", call_id)
                return False
            if response.cancelled:
                tracked.status = ToolStatus.CANCELLED
            elif response.ok:
                tracked.status = ToolStatus.SUCCESS
            else:
                tracked.status = ToolStatus.ERROR
            tracked.response = response

        status = tracked.status.value
        tracked.batch._emit(
            ToolCallResponseEvent(
                call_id=call_id,
                name=tracked.request.name,
                status=status,
                result=response.to_llm_content() if response.ok else None,
                error=response.error,
            )
        )
        self._fire(self._executed_callbacks, tracked.request, response)
        self._finalize(tracked.batch)
        return True

    def _abort_batch(self, batch: ToolBatch) -> None:
        for tracked in list(batch.calls):
            self.notify_completed(tracked.call_id, ToolCallResponse.cancelled_for(tracked.request, CANCELLED_MESSAGE))

    def _finalize(self, batch: ToolBatch) -> None:
        with self._lock:
            if batch._finalizing or any(not t.status.terminal for t in batch.calls):
                return
            batch._finalizing = True
            for tracked in batch.calls:
                self._calls.pop(tracked.call_id, None)
                self._finished[tracked.call_id] = tracked.status
            while len(self._finished) > FINISHED_LIMIT:
                self._finished.popitem(last=False)

        model_calls = [t for t in batch.calls if t.request.origin == "model"]
        cancelled = [t for t in model_calls if t.status is ToolStatus.CANCELLED]

        if model_calls and len(cancelled) == len(model_calls):
            batch.fully_cancelled = True
            self.session.add_history(
                Message.cancellation_notice(
                    [t.call_id for t in cancelled],
                    [t.request.name for t in cancelled],
                )
            )
        elif model_calls:
            self.session.append_turn([Message.tool(t.response) for t in model_calls])

        if batch._remove_listener is not None:
            batch._remove_listener()
        self._refresh_waiting()

        if batch.signal.aborted or batch.fully_cancelled or not model_calls:
            batch.continuation_requested = False
        elif self.session.model_switched_since(batch.switch_generation):
            logger.info("Model changed during tool execution; not sending tool results to the new model")
            batch.continuation_requested = False
        else:
            batch.continuation_requested = True

        logger.debug(
            "Batch %d done: %s (continuation: %s)",
            batch.id,
            {k: v.value for k, v in batch.statuses().items()},
            batch.continuation_requested,
        )
        batch._finish()
        self._fire(self._completion_callbacks, batch)
        if batch.continuation_requested:
            self._fire(self._continuation_callbacks, batch)

    def status_of(self, call_id: str) -> ToolStatus | None:
        with self._lock:
            tracked = self._calls.get(call_id)
            if tracked is not None:
                return tracked.status
            return self._finished.get(call_id)

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            pool, self._pool = self._pool, None
        if pool is not None:
            pool.shutdown(wait=wait)
