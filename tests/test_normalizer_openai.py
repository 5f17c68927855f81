"""
Tests for the OpenAI-family stream normalizer.
"""

import json

from fakes import chunk, fragment, text_stream, tool_stream
from ouroboros.core.abort import AbortSignal
from ouroboros.core.normalizers import OpenAINormalizer, get_normalizer
from ouroboros.models.events import (
    ErrorEvent,
    Finish,
    TextDelta,
    Thought,
    ToolCallRequestEvent,
    UserCancelled,
)


def _requests(events):
    return [e for e in events if isinstance(e, ToolCallRequestEvent)]


class TestOpenAINormalizer:
    """Tests for OpenAINormalizer.stream."""

    def test_text_response(self, session, handle):
        """Text streams as deltas, then one assistant turn and a Finish."""
        handle.streams = [[chunk(content="Hel"), chunk(content="lo"), chunk(finish_reason="stop")]]

        events = list(OpenAINormalizer().stream(session))

        assert [e.text for e in events if isinstance(e, TextDelta)] == ["Hel", "lo"]
        assert events[-1] == Finish(reason="STOP")
        history = session.get_history()
        assert len(history) == 1
        assert history[0].role == "assistant"
        assert history[0].content == "Hello"

    def test_reasoning_becomes_thought(self, session, handle):
        """reasoning_content deltas become Thought events."""
        handle.streams = [[chunk(reasoning="pondering"), *text_stream("done")]]

        events = list(OpenAINormalizer().stream(session))

        assert isinstance(events[0], Thought)
        assert events[0].text == "pondering"

    def test_fragment_without_id_joins_call(self, session, handle):
        """An argument fragment with no id or index continues the call in flight."""
        handle.streams = [[
            chunk(tool_calls=[fragment(0, "call_1", "read_file", '{"path":')]),
            chunk(tool_calls=[fragment(None, None, None, '"/a.txt"}')]),
            chunk(finish_reason="tool_calls"),
        ]]

        events = list(OpenAINormalizer().stream(session))

        requests = _requests(events)
        assert len(requests) == 1
        assert requests[0].call_id == "call_1"
        assert requests[0].name == "read_file"
        assert requests[0].args == {"path": "/a.txt"}
        assert events[-1] == Finish(reason="TOOL_CALLS")

    def test_any_split_point_gives_same_arguments(self, session, handle):
        """Where the argument text is split between chunks doesn't change the result."""
        arguments = '{"path": "/src/main.py", "lines": [1, 2]}'
        normalizer = OpenAINormalizer()

        for cut in range(1, len(arguments)):
            handle.streams = [[
                chunk(tool_calls=[fragment(0, "call_1", "read_file", arguments[:cut])]),
                chunk(tool_calls=[fragment(0, None, None, arguments[cut:])]),
                chunk(finish_reason="tool_calls"),
            ]]
            requests = _requests(normalizer.stream(session))
            assert [r.args for r in requests] == [json.loads(arguments)], cut

    def test_parallel_calls_keep_order(self, session, handle):
        """Interleaved fragments of several calls are attributed by index."""
        handle.streams = [[
            chunk(tool_calls=[fragment(0, "a", "ls", '{"dir"'), fragment(1, "b", "cat", '{"file"')]),
            chunk(tool_calls=[fragment(1, None, None, ': "x"}'), fragment(0, None, None, ': "/"}')]),
            chunk(finish_reason="tool_calls"),
        ]]

        requests = _requests(OpenAINormalizer().stream(session))

        assert [(r.call_id, r.args) for r in requests] == [("a", {"dir": "/"}), ("b", {"file": "x"})]

    def test_missing_id_gets_synthetic_one(self, session, handle):
        """Calls streamed without any id get a synthetic id and are not dropped."""
        handle.streams = [[
            chunk(tool_calls=[fragment(None, None, "grep", '{"q": "x"}')]),
            chunk(finish_reason="tool_calls"),
        ]]

        requests = _requests(OpenAINormalizer().stream(session))

        assert len(requests) == 1
        assert requests[0].call_id.startswith("grep-")

    def test_malformed_arguments_repaired(self, session, handle):
        """Truncated argument JSON is repaired rather than dropping the call."""
        handle.streams = [[
            chunk(tool_calls=[fragment(0, "c1", "write", '{"path": "/a", "content": "hi"')]),
            chunk(finish_reason="tool_calls"),
        ]]

        requests = _requests(OpenAINormalizer().stream(session))

        assert requests[0].args == {"path": "/a", "content": "hi"}

    def test_history_appended_before_tool_events(self, session, handle):
        """The assistant turn is in history by the time tool calls are yielded."""
        handle.streams = [tool_stream([("c1", "ls", {}), ("c2", "pwd", {})], text="Looking")]
        seen = []

        for event in OpenAINormalizer().stream(session):
            if isinstance(event, ToolCallRequestEvent):
                seen.append(len(session))

        assert seen == [1, 1]
        turn = session.get_history()[0]
        assert turn.content == "Looking"
        assert [tc.call_id for tc in turn.tool_calls] == ["c1", "c2"]

    def test_agent_id_on_calls(self, session, handle):
        """Tool calls carry the owning persona."""
        handle.streams = [tool_stream([("c1", "ls", {})])]

        requests = _requests(OpenAINormalizer().stream(session, agent_id="security-auditor"))

        assert requests[0].agent_id == "security-auditor"
        assert session.get_history()[0].tool_calls[0].agent_id == "security-auditor"

    def test_empty_response_retried_once(self, session, handle):
        """One empty response triggers exactly one retry."""
        handle.streams = [[chunk(finish_reason="stop")], text_stream("recovered")]

        events = list(OpenAINormalizer().stream(session))

        assert len(handle.stream_requests) == 2
        assert events[-1] == Finish(reason="STOP")
        assert session.get_history()[0].content == "recovered"

    def test_empty_twice_is_error(self, session, handle):
        """A second empty response surfaces as an error and leaves history alone."""
        handle.streams = [[chunk(finish_reason="stop")], [chunk(finish_reason="stop")]]

        events = list(OpenAINormalizer().stream(session))

        assert len(events) == 1
        assert isinstance(events[0], ErrorEvent)
        assert "empty response" in events[0].message
        assert len(session) == 0

    def test_transport_failure_is_error_event(self, session, handle):
        """Exceptions from the backend become a single ErrorEvent."""
        handle.streams = [RuntimeError("connection reset")]

        events = list(OpenAINormalizer().stream(session))

        assert len(events) == 1
        assert isinstance(events[0], ErrorEvent)
        assert len(session) == 0

    def test_abort_before_request(self, session, handle):
        """An already-aborted signal yields only UserCancelled."""
        signal = AbortSignal()
        signal.abort()

        events = list(OpenAINormalizer().stream(session, signal=signal))

        assert events == [UserCancelled()]
        assert handle.stream_requests == []

    def test_abort_flushes_complete_calls(self, session, handle):
        """On abort, calls already complete are recorded with cancelled responses."""
        signal = AbortSignal()

        def responder(messages):
            def chunks():
                yield chunk(tool_calls=[fragment(0, "c1", "ls", '{"dir": "/"}')])
                yield chunk(tool_calls=[fragment(1, "c2", "cat", '{"fi')])
                signal.abort()
                yield chunk(tool_calls=[fragment(1, None, None, 'le": "x"}')])
            return chunks()

        handle.responder = responder

        events = list(OpenAINormalizer().stream(session, signal=signal))

        assert events[-1] == UserCancelled()
        assert _requests(events) == []
        history = session.get_history()
        assert [m.role for m in history] == ["assistant", "tool"]
        assert [tc.call_id for tc in history[0].tool_calls] == ["c1"]
        assert history[1].tool_response.cancelled

    def test_abort_without_complete_calls_leaves_no_trace(self, session, handle):
        """Aborting mid-text records nothing."""
        signal = AbortSignal()

        def responder(messages):
            def chunks():
                yield chunk(content="partial")
                signal.abort()
                yield chunk(content=" more")
            return chunks()

        handle.responder = responder

        events = list(OpenAINormalizer().stream(session, signal=signal))

        assert events[-1] == UserCancelled()
        assert len(session) == 0

    def test_get_normalizer(self):
        """Known providers get their normalizer; others the generic one."""
        assert isinstance(get_normalizer("openai"), OpenAINormalizer)
        generic = get_normalizer("gemini")
        assert generic.provider_id == "gemini"
        assert generic.empty_retries == 0
