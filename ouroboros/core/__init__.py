"""Core module for ouroboros."""

from ouroboros.core.abort import AbortSignal
from ouroboros.core.agent_manager import AgentManager
from ouroboros.core.compaction import ContextCompactor
from ouroboros.core.config import ConfigManager
from ouroboros.core.credentials import CredentialResolver
from ouroboros.core.dispatcher import AgentDispatcher
from ouroboros.core.driver import TurnDriver
from ouroboros.core.llm import LLMClient
from ouroboros.core.multi_agent import ExecutionHooks, MultiAgentExecutor
from ouroboros.core.normalizers import get_normalizer
from ouroboros.core.providers import ConnectorRegistry, ModelHandle, ProviderConnector, create_default_registry
from ouroboros.core.runtime import Runtime
from ouroboros.core.session import ConversationSession, SessionManager
from ouroboros.core.tokens import count_messages_tokens, count_tokens, count_tools_tokens
from ouroboros.core.tool_manager import ToolBatch, ToolCallManager, ToolStatus
from ouroboros.core.tool_schemas import ToolDeclaration, ToolSchemaRegistry

__all__ = [
    "AbortSignal",
    "AgentDispatcher",
    "AgentManager",
    "ConfigManager",
    "ConnectorRegistry",
    "ContextCompactor",
    "ConversationSession",
    "CredentialResolver",
    "ExecutionHooks",
    "LLMClient",
    "ModelHandle",
    "MultiAgentExecutor",
    "ProviderConnector",
    "Runtime",
    "SessionManager",
    "ToolBatch",
    "ToolCallManager",
    "ToolDeclaration",
    "ToolSchemaRegistry",
    "ToolStatus",
    "TurnDriver",
    "count_messages_tokens",
    "count_tokens",
    "count_tools_tokens",
    "create_default_registry",
    "get_normalizer",
]
