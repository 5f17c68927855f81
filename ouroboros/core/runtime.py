"""
Composition root.

Runtime builds and owns every service instance: connector registry,
credential resolver, session registry, and per session an agent manager,
dispatcher, tool-call manager and multi-agent executor. Nothing here is
global; two Runtimes in one process don't share state.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Iterator

from ouroboros.core.abort import AbortSignal
from ouroboros.core.agent_manager import AgentManager
from ouroboros.core.compaction import ContextCompactor
from ouroboros.core.credentials import CredentialResolver
from ouroboros.core.dispatcher import AgentDispatcher
from ouroboros.core.driver import TurnDriver
from ouroboros.core.multi_agent import ExecutionHooks, MultiAgentExecutor
from ouroboros.core.providers import ConnectorRegistry, create_default_registry
from ouroboros.core.session import ConversationSession, SessionManager
from ouroboros.core.tool_manager import ToolCallManager, ToolExecutor
from ouroboros.core.tool_schemas import ToolDeclaration, ToolSchemaRegistry, normalize_tools
from ouroboros.models.events import Event
from ouroboros.models.messages import ToolCallRequest, ToolCallResponse
from ouroboros.models.persona import ExecutionResult, SelectionResult
from ouroboros.models.settings import RuntimeSettings
from ouroboros.personas import PersonaCatalog, default_catalog

if TYPE_CHECKING:
    from ouroboros.core.config import ConfigManager

logger = logging.getLogger(__name__)


@dataclass
class SessionServices:
    """The services bound to one session."""

    session: ConversationSession
    tool_manager: ToolCallManager
    agent_manager: AgentManager
    dispatcher: AgentDispatcher
    executor: MultiAgentExecutor
    compactor: ContextCompactor | None


@dataclass
class AutoRunResult:
    selection: SelectionResult
    execution: ExecutionResult


class Runtime:
    """Wires explicit service instances together for a host application."""

    def __init__(
        self,
        settings: RuntimeSettings | None = None,
        config_manager: ConfigManager | None = None,
        executor: ToolExecutor | None = None,
        tools: list[dict[str, Any] | ToolDeclaration] | None = None,
        registry: ConnectorRegistry | None = None,
        catalog: PersonaCatalog | None = None,
    ):
        self.settings = settings or RuntimeSettings()
        self.config_manager = config_manager
        self.tool_executor = executor
        self.tools = normalize_tools(tools)
        self.schemas = ToolSchemaRegistry(self.tools)
        self.registry = registry or create_default_registry(self.settings.llm)
        self.catalog = catalog or default_catalog()
        self.credentials = CredentialResolver(
            config=config_manager,
            active_provider=self.settings.provider,
            active_api_key=self.settings.api_key,
        )
        self.sessions = SessionManager(self._new_session)
        self._services: dict[str, SessionServices] = {}
        self._lock = threading.Lock()

    # ── Sessions ──────────────────────────────────────────────────────

    def _new_session(
        self,
        provider_id: str | None = None,
        model_id: str | None = None,
        session_id: str | None = None,
        system_instruction: str | None = None,
    ) -> ConversationSession:
        provider_id = provider_id or self.settings.provider
        if model_id is None and provider_id == self.settings.provider:
            model_id = self.settings.model
        return ConversationSession(
            self.registry,
            self.credentials,
            provider_id,
            model_id,
            system_instruction=self.settings.system_prompt if system_instruction is None else system_instruction,
            approval_mode=self.settings.approval_mode,
            session_id=session_id,
        )

    def create_session(self, **kwargs: Any) -> ConversationSession:
        """
        Create and register a session with its services.

        Raises:
            ProviderNotFound: unknown provider
            MissingCredential: no API key for the provider
        """
        session = self.sessions.create(**kwargs)
        self._bind_services(session)
        logger.info("Created session %s (%s:%s)", session.id, session.provider_id, session.model_id)
        return session

    def services(self, session: ConversationSession | str) -> SessionServices:
        session_id = session if isinstance(session, str) else session.id
        with self._lock:
            services = self._services.get(session_id)
        if services is None:
            raise KeyError(f"Unknown session: {session_id}")
        return services

    def delete_session(self, session_id: str) -> bool:
        with self._lock:
            services = self._services.pop(session_id, None)
        if services is not None:
            services.executor.cancel("session deleted")
            services.tool_manager.shutdown(wait=False)
        return self.sessions.delete(session_id)

    def _bind_services(self, session: ConversationSession) -> SessionServices:
        tool_manager = ToolCallManager(
            session,
            self._execute_tool,
            self.schemas,
            max_workers=self.settings.max_tool_workers,
        )
        agent_manager = AgentManager(self.catalog)
        agent_manager.bind(session)
        dispatcher = AgentDispatcher(self.catalog, session, self.settings.dispatcher, agent_manager)
        executor = MultiAgentExecutor(
            session,
            agent_manager,
            tool_executor=self._execute_tool,
            tools=self.tools,
            schemas=self.schemas,
            settings=self.settings.executor,
            max_session_turns=self.settings.max_session_turns,
            loop_detection_threshold=self.settings.loop_detection_threshold,
        )
        compactor = ContextCompactor(self.settings.compaction) if self.settings.compaction.enabled else None
        services = SessionServices(session, tool_manager, agent_manager, dispatcher, executor, compactor)
        with self._lock:
            self._services[session.id] = services
        return services

    def _execute_tool(self, request: ToolCallRequest, signal: AbortSignal) -> ToolCallResponse:
        if self.tool_executor is None:
            return ToolCallResponse.fail(request.call_id, "No tool executor is configured", name=request.name)
        return self.tool_executor(request, signal)

    def switch_provider(self, session: ConversationSession, provider_id: str, model_id: str | None = None) -> None:
        """Switch session to another provider and drop the compaction summary made by the old one."""
        session.switch_provider(provider_id, model_id)
        services = self.services(session)
        if services.compactor is not None:
            services.compactor.reset()

    # ── Turns ─────────────────────────────────────────────────────────

    def driver_for(self, session: ConversationSession) -> TurnDriver:
        services = self.services(session)
        return TurnDriver(
            session,
            services.tool_manager,
            tools=self.tools,
            compactor=services.compactor,
            max_session_turns=self.settings.max_session_turns,
            loop_detection_threshold=self.settings.loop_detection_threshold,
            temperature=self.settings.temperature,
            max_tokens=self.settings.max_output_tokens,
            agent_id=session.meta.agent_id,
        )

    def run_prompt(
        self,
        session: ConversationSession,
        prompt: str,
        signal: AbortSignal | None = None,
    ) -> Iterator[Event]:
        """Single-agent turn: stream the session's events for prompt."""
        return self.driver_for(session).submit(prompt, signal=signal)

    def run_auto(
        self,
        session: ConversationSession,
        prompt: str,
        hooks: ExecutionHooks | None = None,
        signal: AbortSignal | None = None,
    ) -> AutoRunResult | None:
        """
        Select specialists for prompt and run them, if auto mode is on.

        Returns None when auto mode is off.

        Raises:
            ExecutionAborted: the execution was cancelled or superseded
        """
        services = self.services(session)
        if not services.dispatcher.is_auto_mode_enabled():
            return None
        selection = services.dispatcher.select(prompt)
        personas = [self.catalog.require(pid) for pid in selection.agent_ids]
        execution = services.executor.execute(prompt, personas, hooks=hooks, signal=signal)
        return AutoRunResult(selection=selection, execution=execution)

    def shutdown(self) -> None:
        with self._lock:
            services = list(self._services.values())
        for s in services:
            s.executor.cancel("runtime shutdown")
            s.tool_manager.shutdown(wait=False)
