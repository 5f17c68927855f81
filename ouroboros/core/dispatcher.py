"""
Agent dispatcher: picks the specialist personas best suited to a prompt.

A small, fast model is asked for a JSON selection over the persona catalog.
Each candidate model is tried in order; when none of them produces a usable
answer the dispatcher falls back to keyword heuristics. select() never
raises: a failed selection only shows up as reduced confidence and a
reasoning string naming the failure.
"""

from __future__ import annotations

import logging
import re
import time
from collections import Counter, deque
from typing import TYPE_CHECKING, Any

from ouroboros.core.json_repair import extract_json_object
from ouroboros.errors import OuroborosError, SelectionFailure
from ouroboros.models.persona import SelectionRecord, SelectionResult
from ouroboros.models.settings import DispatcherSettings

if TYPE_CHECKING:
    from ouroboros.core.agent_manager import AgentManager
    from ouroboros.core.session import ConversationSession
    from ouroboros.personas import PersonaCatalog

logger = logging.getLogger(__name__)

MIN_AGENTS = 3
MAX_AGENTS = 10
HISTORY_LIMIT = 50
FALLBACK_CONFIDENCE = 0.3
DEFAULT_CONFIDENCE = 0.75
_PROMPT_PREVIEW = 100

# Minimum-viable pair first; the rest only pad a selection up to MIN_AGENTS.
DEFAULT_AGENT_IDS: tuple[str, ...] = (
    "systems-architect",
    "code-quality-analyst",
    "test-automation-engineer",
    "security-auditor",
)

KEYWORD_AGENTS: tuple[tuple[tuple[str, ...], str], ...] = (
    (("react", "frontend", "ui", "component"), "react-specialist"),
    (("database", "sql", "query", "db"), "database-optimizer"),
    (("api", "rest", "graphql", "endpoint"), "api-designer"),
    (("security", "vulnerability", "auth"), "security-auditor"),
    (("performance", "slow", "optimize"), "performance-engineer"),
    (("kubernetes", "k8s", "container"), "kubernetes-operator"),
    (("python",), "python-specialist"),
    (("node", "nodejs", "javascript"), "node-js-specialist"),
    (("machine learning", "ml", "ai"), "ml-engineer"),
)

SELECTION_PROMPT = """You are an AI agent dispatcher for a software engineering assistant. Your job is to analyze user prompts and select the {min_agents}-{max_agents} most appropriate specialist agents from our team of experts.

AVAILABLE AGENTS:
{agents}

SELECTION CRITERIA:
1. Choose agents whose specialties directly match the user's request
2. For complex tasks, select complementary agents (e.g., architect + specialist)
3. Select at least {min_agents} and at most {max_agents} agents
4. For ambiguous requests, favor general-purpose agents like systems-architect
5. Consider the full context and intent, not just keywords

OUTPUT FORMAT:
You must respond with a valid JSON object containing these fields:
{{
  "agentIds": ["agent-id-1", "agent-id-2", "agent-id-3"],
  "reasoning": "Clear explanation of why these agents were selected",
  "confidence": 0.8,
  "taskCategory": "category-name"
}}

CRITICAL: You MUST output valid JSON. The response will be parsed as JSON, so ensure:
- agentIds is an array of strings (agent IDs from the list above)
- reasoning is a string explaining your selection
- confidence is a number between 0 and 1
- taskCategory is an optional string
- Do not include any text outside the JSON object

EXAMPLES:
User: "Optimize my React component rendering performance"
-> ["react-specialist", "web-performance-specialist", "performance-engineer"]

User: "Design a microservices API for user authentication"
-> ["api-designer", "microservices-architect", "security-auditor"]

User: "My database queries are slow"
-> ["database-optimizer", "performance-engineer", "systems-architect"]

Select the most appropriate agents for this user request:"""


def _keyword_pattern(keyword: str) -> re.Pattern[str]:
    return re.compile(rf"\b{re.escape(keyword)}\b")


_KEYWORD_PATTERNS = tuple(
    (tuple(_keyword_pattern(k) for k in keywords), agent_id) for keywords, agent_id in KEYWORD_AGENTS
)


def parse_selection(raw: Any) -> dict[str, Any]:
    """
    Turn a selection reply into {agent_ids, reasoning, confidence, task_category}.

    Accepts a native dict, or text holding a JSON object (bare, fenced, or
    embedded in prose).

    Raises:
        SelectionFailure: no JSON object, or no agent ids in it
    """
    if isinstance(raw, dict):
        data = raw
    else:
        data = extract_json_object(raw if isinstance(raw, str) else None)
        if data is None:
            raise SelectionFailure("Selection response contained no JSON object")

    ids = data.get("agentIds", data.get("agent_ids"))
    if not isinstance(ids, list):
        raise SelectionFailure("Selection response has no agentIds array")
    agent_ids = [i for i in ids if isinstance(i, str) and i.strip()]
    if not agent_ids:
        raise SelectionFailure("No valid agent IDs found in selection response")

    confidence = data.get("confidence")
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
        confidence = DEFAULT_CONFIDENCE

    category = data.get("taskCategory", data.get("task_category"))
    return {
        "agent_ids": [i.strip() for i in agent_ids],
        "reasoning": str(data.get("reasoning") or "Agent selection completed"),
        "confidence": confidence,
        "task_category": category if isinstance(category, str) else None,
    }


class AgentDispatcher:
    """
    Chooses personas for a prompt.

    One instance per runtime; it holds the auto-mode flag and the rolling
    selection history used for statistics.
    """

    def __init__(
        self,
        catalog: PersonaCatalog,
        session: ConversationSession,
        settings: DispatcherSettings | None = None,
        agent_manager: AgentManager | None = None,
    ):
        self.catalog = catalog
        self.session = session
        self.settings = settings or DispatcherSettings()
        self.agent_manager = agent_manager
        self._auto_mode = self.settings.auto_mode
        self._history: deque[SelectionRecord] = deque(maxlen=HISTORY_LIMIT)

    # ── Auto mode ─────────────────────────────────────────────────────

    def set_auto_mode(self, enabled: bool) -> None:
        self._auto_mode = enabled
        logger.info("Automatic agent selection %s", "enabled" if enabled else "disabled")

    def is_auto_mode_enabled(self) -> bool:
        return self._auto_mode

    # ── Selection ─────────────────────────────────────────────────────

    def candidate_models(self) -> list[str]:
        """
        Models to try, in order: configured or provider selector model, the
        session's active model, then the provider's secondary models.
        """
        connector = self.session.registry.get(self.session.provider_id)
        ordered = [self.settings.model or connector.selector_model, self.session.model_id]
        ordered.extend(connector.secondary_models())

        seen: list[str] = []
        for model in ordered:
            if model and model not in seen:
                seen.append(model)
        return seen

    def build_selection_prompt(self) -> str:
        agents = "\n".join(p.summary_line() for p in self.catalog.list())
        return SELECTION_PROMPT.format(min_agents=MIN_AGENTS, max_agents=MAX_AGENTS, agents=agents)

    def select(self, prompt: str) -> SelectionResult:
        """
        Select 3-10 unique persona ids for prompt.

        Never raises: when every candidate model fails the keyword fallback
        is used with confidence 0.3.
        """
        start = time.monotonic()
        system_prompt = self.build_selection_prompt()
        attempted: list[str] = []
        last_error: Exception | None = None

        for model in self.candidate_models():
            attempted.append(model)
            try:
                parsed = self._ask(model, system_prompt, prompt)
            except Exception as e:
                logger.warning("Agent selection with %s failed: %s", model, e)
                last_error = e
                continue

            ids = self._complete_ids(parsed["agent_ids"], prompt)
            if ids is None:
                last_error = SelectionFailure("Selected agent IDs are not in the catalog", model=model)
                logger.warning("Agent selection with %s returned no known agents", model)
                continue

            result = SelectionResult(
                agent_ids=ids,
                reasoning=parsed["reasoning"],
                confidence=parsed["confidence"],
                task_category=parsed["task_category"],
                attempted_models=attempted,
                processing_time_ms=int((time.monotonic() - start) * 1000),
            )
            logger.info("Selected agents %s with %s (confidence %.2f)", ids, model, result.confidence)
            self._record(prompt, result)
            return result

        message = str(last_error) if last_error is not None else "no candidate models"
        result = SelectionResult(
            agent_ids=self.fallback_selection(prompt),
            reasoning=f"AI selection failed, using fallback heuristics: {message}",
            confidence=FALLBACK_CONFIDENCE,
            attempted_models=attempted,
            used_fallback=True,
            processing_time_ms=int((time.monotonic() - start) * 1000),
        )
        logger.info("Selected fallback agents %s after trying %s", result.agent_ids, attempted)
        self._record(prompt, result)
        return result

    def _ask(self, model: str, system_prompt: str, prompt: str) -> dict[str, Any]:
        try:
            handle = self.session.model_handle(model)
            response_format = {"type": "json_object"} if handle.provider_id == "openai" else None
            reply = handle.complete(
                [
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": prompt},
                ],
                temperature=self.settings.temperature,
                max_tokens=self.settings.max_tokens,
                response_format=response_format,
            )
        except OuroborosError as e:
            raise SelectionFailure(str(e), model=model, original=e) from e
        logger.debug("Selection reply from %s: %s", model, reply[:200])
        return parse_selection(reply)

    def _complete_ids(self, ids: list[str], prompt: str) -> list[str] | None:
        """Known, unique ids capped at 10 and padded to 3. None if none are known."""
        known: list[str] = []
        for pid in ids:
            if pid in self.catalog and pid not in known:
                known.append(pid)
            elif pid not in self.catalog:
                logger.debug("Dropping unknown agent id from selection: %s", pid)
        if not known:
            return None
        known = known[:MAX_AGENTS]
        for pid in self.fallback_selection(prompt):
            if len(known) >= MIN_AGENTS:
                break
            if pid not in known:
                known.append(pid)
        return known

    def fallback_selection(self, prompt: str) -> list[str]:
        """Keyword matches, then the default pair, padded to 3 and capped at 10."""
        text = prompt.lower()
        ids: list[str] = []
        for patterns, agent_id in _KEYWORD_PATTERNS:
            if agent_id in self.catalog and agent_id not in ids and any(p.search(text) for p in patterns):
                ids.append(agent_id)

        for i, agent_id in enumerate(DEFAULT_AGENT_IDS):
            if i >= 2 and len(ids) >= MIN_AGENTS:
                break
            if agent_id in self.catalog and agent_id not in ids:
                ids.append(agent_id)

        for agent_id in self.catalog.ids():
            if len(ids) >= MIN_AGENTS:
                break
            if agent_id not in ids:
                ids.append(agent_id)
        return ids[:MAX_AGENTS]

    # ── Temporary activation ──────────────────────────────────────────

    def temporarily_activate(self, agent_ids: list[str]) -> tuple[str, ...]:
        """
        Make agent_ids the active set. Returns the previous set for
        restore_previous_state().
        """
        if self.agent_manager is None:
            raise RuntimeError("AgentDispatcher has no AgentManager")
        previous = self.agent_manager.save_state()
        self.agent_manager.restore_state([pid for pid in agent_ids if pid in self.catalog])
        return previous

    def restore_previous_state(self, previous: tuple[str, ...]) -> None:
        if self.agent_manager is None:
            return
        self.agent_manager.restore_state(previous)

    # ── History and statistics ────────────────────────────────────────

    def _record(self, prompt: str, result: SelectionResult) -> None:
        if len(prompt) > _PROMPT_PREVIEW:
            prompt = prompt[:_PROMPT_PREVIEW] + "..."
        self._history.append(
            SelectionRecord(
                prompt=prompt,
                selected_agents=list(result.agent_ids),
                reasoning=result.reasoning,
                confidence=result.confidence,
                used_fallback=result.used_fallback,
            )
        )

    def get_selection_history(self, limit: int = 10) -> list[SelectionRecord]:
        records = list(self._history)
        return records[-limit:] if limit > 0 else []

    def get_selection_stats(self) -> dict[str, Any]:
        records = list(self._history)
        if not records:
            return {
                "total_selections": 0,
                "average_agents_per_selection": 0.0,
                "most_selected_agents": [],
                "average_confidence": 0.0,
            }

        counts = Counter(pid for record in records for pid in record.selected_agents)
        return {
            "total_selections": len(records),
            "average_agents_per_selection": sum(len(r.selected_agents) for r in records) / len(records),
            "most_selected_agents": [
                {"agent_id": pid, "count": count} for pid, count in counts.most_common(10)
            ],
            "average_confidence": sum(r.confidence for r in records) / len(records),
        }
