"""
Multi-agent execution: several specialist personas work one prompt.

Personas run in waves. Each persona gets its own short-lived conversation
(same provider and model as the parent session, its own system prompt and
tool-call manager) and is asked to finish with a JSON verdict:

    {"analysis": ..., "solution": ..., "confidence": 0-1, "handoff": [ids]}

Handoff ids are queued for later waves. When the waves are done, the parent
session's model merges every verdict into one answer.

Only one execution runs per executor: starting a new one aborts the one in
flight and waits for it to unwind. The active role set of the AgentManager
is restored exactly once when an execution ends, however it ends.
"""

from __future__ import annotations

import json
import logging
import re
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable

from ouroboros.core.abort import AbortSignal
from ouroboros.core.driver import TurnDriver
from ouroboros.core.json_repair import extract_json_object
from ouroboros.core.session import ConversationSession
from ouroboros.core.tool_manager import ToolCallManager, ToolExecutor
from ouroboros.errors import ExecutionAborted, OuroborosError
from ouroboros.models.events import ErrorEvent, TextDelta, ToolApprovalEvent, UserCancelled
from ouroboros.models.messages import ToolCallRequest, ToolCallResponse
from ouroboros.models.persona import (
    AgentPersona,
    AgentRunResult,
    AgentToolEvent,
    ExecutionResult,
    WaveRecord,
)
from ouroboros.models.settings import ExecutorSettings
from ouroboros.personas import expertise_prompt

if TYPE_CHECKING:
    from ouroboros.core.agent_manager import AgentManager
    from ouroboros.core.tool_schemas import ToolDeclaration, ToolSchemaRegistry

logger = logging.getLogger(__name__)

NO_RESULTS_RESPONSE = "No specialised agents were able to contribute to this task."
NO_RESULTS_REASONING = "No agent responses available."
REASONING_MARKER = "\n\n---\n\nReasoning:"
_INSIGHT_LIMIT = 280
_WHITESPACE_RE = re.compile(r"\s+")

SYNTHESIS_PROMPT = """You are the Ouroboros master orchestrator. Multiple specialists responded to the user's request.

USER PROMPT:
{prompt}

SPECIALIST RESPONSES (JSON):
{responses}

TASK: Combine the specialists' insights into a single, coherent answer.
- Reference the most relevant specialist reasoning
- Resolve contradictions if they exist
- Provide clear, actionable guidance
- Use Markdown where appropriate
- Close with a short reasoning summary on its own line in the format "---

Reasoning: ..."
"""

AGENT_TASK_PROMPT = """USER TASK:
{prompt}

{insights}
FINAL RESPONSE FORMAT:
Return a JSON object like:
{{
  "analysis": "key findings...",
  "solution": "proposed implementation or answer",
  "confidence": 0.0-1.0,
  "handoff": ["optional-agent-id", ...]
}}
If no handoff is needed, respond with an empty array."""


@dataclass
class ExecutionHooks:
    """Optional observers of an execution. Each is called on the executing thread."""

    on_wave_start: Callable[[int, list[AgentPersona]], None] | None = None
    on_agent_start: Callable[[AgentPersona], None] | None = None
    on_agent_complete: Callable[[AgentRunResult], None] | None = None
    on_tool_event: Callable[[AgentPersona, AgentToolEvent], None] | None = None
    # Called with the persona's ToolCallManager so the host can approve()/reject().
    on_approval_request: Callable[[AgentPersona, ToolApprovalEvent, ToolCallManager], None] | None = None


def _call_hook(hook: Callable | None, *args: object) -> None:
    if hook is None:
        return
    try:
        hook(*args)
    except Exception:
        logger.exception("Execution hook failed")


def truncate_for_context(text: str) -> str:
    """Collapse whitespace and cap at 280 characters."""
    if not text:
        return ""
    normalized = _WHITESPACE_RE.sub(" ", text).strip()
    if len(normalized) <= _INSIGHT_LIMIT:
        return normalized
    return normalized[: _INSIGHT_LIMIT - 3] + "..."


def split_final_response(text: str) -> tuple[str, str]:
    """Split a synthesis reply into (answer, reasoning)."""
    if not text:
        return "", ""
    if REASONING_MARKER not in text:
        return text.strip(), ""
    answer, reasoning = text.split(REASONING_MARKER, 1)
    return answer.strip(), reasoning.strip()


def format_prior_insights(previous: list[AgentRunResult], current_id: str) -> str:
    summaries = []
    for result in previous:
        if result.agent.id == current_id:
            continue
        analysis = truncate_for_context(result.analysis)
        solution = truncate_for_context(result.solution)
        summaries.append(
            f"{len(summaries) + 1}. {result.agent.name}: analysis → {analysis or 'n/a'}; "
            f"solution → {solution or 'n/a'}; confidence {round(result.confidence * 100)}%"
        )
    if not summaries:
        return "PREVIOUS SPECIALISTS: none yet. You are the first responder.\n"
    return (
        "PREVIOUS SPECIALISTS (use to avoid duplication and build upon their output):\n"
        + "\n".join(summaries)
        + "\n"
    )


def build_agent_system_prompt(persona: AgentPersona, tools: list[ToolDeclaration] | None = None) -> str:
    parts = [
        f"You are {persona.name} ({persona.id}), a specialist in {', '.join(persona.specialties)}.",
        persona.description,
        expertise_prompt(persona),
    ]
    if tools:
        listing = "\n".join(
            f"- **{t.name}**: {t.description}" if t.description else f"- **{t.name}**" for t in tools
        )
        parts.append("## Available Tools\n\n" + listing)
        suggested = [name for name in persona.suggested_tools if any(t.name == name for t in tools)]
        if suggested:
            parts.append(f"Recommended tools for your specialty: {', '.join(suggested)}")
    parts.append(
        "Use available tools when they help you produce a thorough solution. "
        "Narrate your reasoning before finalizing your answer."
    )
    parts.append(
        'When you have reached a conclusion, produce a final JSON object with the fields '
        '{"analysis","solution","confidence","handoff"}.'
    )
    return "\n\n".join(p for p in parts if p)


def _no_tools(request: ToolCallRequest, signal: AbortSignal) -> ToolCallResponse:
    return ToolCallResponse.fail(request.call_id, "No tool executor is configured", name=request.name)


@dataclass
class _Run:
    signal: AbortSignal
    done: threading.Event


class MultiAgentExecutor:
    """
    Runs personas against a prompt on behalf of one parent session.

    The executor is reusable; last_result keeps the most recent completed
    execution.
    """

    def __init__(
        self,
        session: ConversationSession,
        agent_manager: AgentManager,
        tool_executor: ToolExecutor | None = None,
        tools: list[ToolDeclaration] | None = None,
        schemas: ToolSchemaRegistry | None = None,
        settings: ExecutorSettings | None = None,
        max_session_turns: int = 100,
        loop_detection_threshold: int = 4,
    ):
        self.session = session
        self.agent_manager = agent_manager
        self.catalog = agent_manager.catalog
        self.tool_executor = tool_executor or _no_tools
        self.tools = tools or []
        self.schemas = schemas
        self.settings = settings or ExecutorSettings()
        self.max_session_turns = max_session_turns
        self.loop_detection_threshold = loop_detection_threshold
        self.last_result: ExecutionResult | None = None

        self._lock = threading.Lock()
        self._current: _Run | None = None

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._current is not None

    def cancel(self, reason: str = "cancelled") -> None:
        with self._lock:
            current = self._current
        if current is not None:
            current.signal.abort(reason)

    def execute(
        self,
        prompt: str,
        personas: list[AgentPersona],
        hooks: ExecutionHooks | None = None,
        signal: AbortSignal | None = None,
    ) -> ExecutionResult:
        """
        Run personas (and any they hand off to) against prompt.

        Supersedes an execution already in flight on this executor.

        Raises:
            ExecutionAborted: the execution was cancelled or superseded
        """
        hooks = hooks or ExecutionHooks()
        run = _Run(signal=AbortSignal(parent=signal), done=threading.Event())
        with self._lock:
            previous, self._current = self._current, run

        if previous is not None:
            logger.info("Superseding the multi-agent execution in flight")
            previous.signal.abort("superseded")
            if not previous.done.wait(self.settings.supersede_timeout):
                logger.warning("Superseded execution did not finish within %.1fs", self.settings.supersede_timeout)

        try:
            run.signal.throw_if_aborted()
            result = self._execute(prompt, personas, hooks, run.signal)
        finally:
            run.signal.detach()
            run.done.set()
            with self._lock:
                if self._current is run:
                    self._current = None

        self.last_result = result
        return result

    def _execute(
        self,
        prompt: str,
        personas: list[AgentPersona],
        hooks: ExecutionHooks,
        signal: AbortSignal,
    ) -> ExecutionResult:
        start = time.monotonic()
        queue: list[AgentPersona] = []
        for persona in personas:
            if all(p.id != persona.id for p in queue):
                queue.append(persona)

        executed: dict[str, AgentRunResult] = {}
        timeline: list[WaveRecord] = []
        max_agents = self.settings.max_agents
        logger.info("Multi-agent execution with %s", [p.id for p in queue])

        with self.agent_manager.temporary_activation([p.id for p in queue]):
            passes = 0
            while queue and passes < self.settings.max_passes and len(executed) < max_agents:
                passes += 1
                room = max_agents - len(executed)
                size = room if self.settings.parallel else 1
                wave, queue = queue[:size], queue[size:]

                timeline.append(WaveRecord(wave=passes, agent_ids=[p.id for p in wave]))
                _call_hook(hooks.on_wave_start, passes, wave)
                self.agent_manager.restore_state([p.id for p in wave])

                results = self._run_wave(wave, prompt, list(executed.values()), hooks, signal)
                signal.throw_if_aborted()

                for result in results:
                    executed[result.agent.id] = result
                for result in results:
                    for handoff_id in result.handoff_agent_ids:
                        if handoff_id in executed or any(p.id == handoff_id for p in queue):
                            continue
                        handoff = self.catalog.get(handoff_id)
                        if handoff is None:
                            logger.debug("Ignoring handoff to unknown agent %s", handoff_id)
                            continue
                        queue.append(handoff)

            signal.throw_if_aborted()
            agent_results = list(executed.values())
            final_response, reasoning = self._synthesize(prompt, agent_results)
            signal.throw_if_aborted()

        return ExecutionResult(
            agent_results=agent_results,
            final_response=final_response,
            aggregate_reasoning=reasoning,
            timeline=timeline,
            duration_ms=int((time.monotonic() - start) * 1000),
        )

    # ── Waves ─────────────────────────────────────────────────────────

    def _run_wave(
        self,
        wave: list[AgentPersona],
        prompt: str,
        previous: list[AgentRunResult],
        hooks: ExecutionHooks,
        signal: AbortSignal,
    ) -> list[AgentRunResult]:
        if len(wave) == 1 or not self.settings.parallel:
            return [self._run_agent(p, prompt, previous, hooks, signal) for p in wave]

        workers = min(len(wave), self.settings.max_workers)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="ouroboros-agent") as pool:
            futures = [pool.submit(self._run_agent, p, prompt, previous, hooks, signal) for p in wave]
            results = []
            aborted: ExecutionAborted | None = None
            for future in futures:
                try:
                    results.append(future.result())
                except ExecutionAborted as e:
                    signal.abort(e.reason)
                    aborted = aborted or e
        if aborted is not None:
            raise aborted
        return results

    def _run_agent(
        self,
        persona: AgentPersona,
        prompt: str,
        previous: list[AgentRunResult],
        hooks: ExecutionHooks,
        signal: AbortSignal,
    ) -> AgentRunResult:
        signal.throw_if_aborted()
        _call_hook(hooks.on_agent_start, persona)
        tool_events: list[AgentToolEvent] = []

        try:
            raw_text = self._converse(persona, prompt, previous, hooks, signal, tool_events)
        except ExecutionAborted:
            raise
        except OuroborosError as e:
            logger.warning("Agent %s failed: %s", persona.id, e)
            return self._failed(persona, str(e), tool_events, hooks)

        signal.throw_if_aborted()
        parsed = extract_json_object(raw_text) or {}
        analysis = parsed.get("analysis")
        solution = parsed.get("solution")
        handoff = parsed.get("handoff")
        result = AgentRunResult(
            agent=persona,
            analysis=analysis if isinstance(analysis, str) else raw_text,
            solution=solution if isinstance(solution, str) else "",
            confidence=parsed.get("confidence"),
            handoff_agent_ids=[h for h in handoff if isinstance(h, str)] if isinstance(handoff, list) else [],
            raw_text=raw_text,
            tool_events=tool_events,
        )
        logger.debug("Agent %s finished (confidence %.2f)", persona.id, result.confidence)
        _call_hook(hooks.on_agent_complete, result)
        return result

    def _failed(
        self,
        persona: AgentPersona,
        message: str,
        tool_events: list[AgentToolEvent],
        hooks: ExecutionHooks,
    ) -> AgentRunResult:
        result = AgentRunResult(
            agent=persona,
            analysis=message,
            raw_text=message,
            confidence=0.0,
            tool_events=tool_events,
            status="error",
            error=message,
        )
        _call_hook(hooks.on_agent_complete, result)
        return result

    def _converse(
        self,
        persona: AgentPersona,
        prompt: str,
        previous: list[AgentRunResult],
        hooks: ExecutionHooks,
        signal: AbortSignal,
        tool_events: list[AgentToolEvent],
    ) -> str:
        """Run the persona's own conversation to completion and return its text."""
        session = ConversationSession(
            self.session.registry,
            self.session.credentials,
            self.session.provider_id,
            self.session.model_id,
            system_instruction=build_agent_system_prompt(persona, self.tools),
            approval_mode=self.session.approval_mode,
        )
        session.set_agent(persona.id, persona.name, persona.emoji)

        manager = ToolCallManager(session, self.tool_executor, self.schemas, self.settings.max_workers)

        def record(request: ToolCallRequest, response: ToolCallResponse) -> None:
            if response.cancelled:
                status = "cancelled"
            elif response.ok:
                status = "success"
            else:
                status = "error"
            event = AgentToolEvent(
                tool_name=request.name,
                call_id=request.call_id,
                arguments=dict(request.args),
                output_text=response.to_llm_content(),
                status=status,
            )
            tool_events.append(event)
            _call_hook(hooks.on_tool_event, persona, event)

        def approval(event: ToolApprovalEvent) -> None:
            if hooks.on_approval_request is None:
                logger.warning("No approval channel for %s; rejecting %s", persona.id, event.name)
                manager.reject(event.call_id)
            else:
                _call_hook(hooks.on_approval_request, persona, event, manager)

        manager.on_tool_executed(record)
        manager.on_approval_request(approval)

        driver = TurnDriver(
            session,
            manager,
            tools=self.tools,
            max_session_turns=self.max_session_turns,
            loop_detection_threshold=self.loop_detection_threshold,
            temperature=persona.temperature,
            max_tokens=self.settings.max_output_tokens,
            agent_id=persona.id,
        )
        content = AGENT_TASK_PROMPT.format(prompt=prompt, insights=format_prior_insights(previous, persona.id))

        text: list[str] = []
        try:
            for event in driver.submit(content, signal=signal):
                if isinstance(event, TextDelta):
                    text.append(event.text)
                elif isinstance(event, UserCancelled):
                    raise ExecutionAborted(signal.reason or "cancelled")
                elif isinstance(event, ErrorEvent):
                    if isinstance(event.cause, OuroborosError):
                        raise event.cause
                    raise OuroborosError(event.message, event.cause)
        finally:
            manager.shutdown(wait=False)
        return "".join(text)

    # ── Synthesis ─────────────────────────────────────────────────────

    def _synthesize(self, prompt: str, results: list[AgentRunResult]) -> tuple[str, str]:
        if not results:
            return NO_RESULTS_RESPONSE, NO_RESULTS_REASONING

        payload = [
            {
                "agentId": r.agent.id,
                "name": r.agent.name,
                "expertise": r.agent.description,
                "analysis": r.analysis,
                "solution": r.solution,
                "confidence": r.confidence,
            }
            for r in results
        ]
        message = SYNTHESIS_PROMPT.format(prompt=prompt, responses=json.dumps(payload, indent=2))
        try:
            text = self.session.handle.complete(
                [{"role": "user", "content": message}],
                temperature=self.settings.synthesis_temperature,
                max_tokens=self.settings.max_output_tokens,
            )
        except OuroborosError as e:
            logger.warning("Synthesis failed, returning the specialists' answers as-is: %s", e)
            combined = "\n\n".join(
                f"**{r.agent.label()}**\n\n{r.solution or r.analysis}" for r in results
            )
            return combined, f"Synthesis failed: {e}"
        return split_final_response(text.strip())
