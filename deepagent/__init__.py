from deepagent.domain.events.events import AgentEvent, EventBroadcaster, EventDispatcher, EventType
from deepagent.domain.llm.language_model import (
    LanguageModel, ModelConfig, ModelRequest, ModelResponse, StreamChunk, TokenUsage, ToolSchema
)
from deepagent.domain.middleware.base import AgentMiddleware, MiddlewareContext, MiddlewareStage
from deepagent.domain.models.agent_config import AgentConfig, SubAgentConfig, SummarizationConfig
from deepagent.domain.models.agent_state import (
    AgentResponse, ConversationState, InterruptedSignal, LoopStatus, Message, MessageRole,
    ToolCall, ToolCallStatus
)
from deepagent.domain.models.errors import (
    AgentError, FatalError, InterruptError, MaxIterationsExceeded, RecoverableError
)
from deepagent.domain.models.interrupt import (
    Accept, Edit, HitlPolicy, Interrupt, Reject, Resolution, Respond, parse_resolution
)
from deepagent.domain.orchestration.core.main_agent import AgentLoopController
from deepagent.domain.orchestration.core.thread_lane import CancellationToken
from deepagent.domain.persistence.checkpointer import Checkpointer, InMemoryCheckpointer
from deepagent.domain.tool.tool_registry import FunctionTool, Tool, ToolContext, tool
from deepagent.infrastructure.config.settings import RuntimeSettings
from deepagent.infrastructure.observability.logging import LoggingBroadcaster, setup_logging

__version__ = "0.1.0"

__all__ = [
    "Accept",
    "AgentConfig",
    "AgentError",
    "AgentEvent",
    "AgentLoopController",
    "AgentMiddleware",
    "AgentResponse",
    "CancellationToken",
    "Checkpointer",
    "ConversationState",
    "Edit",
    "EventBroadcaster",
    "EventDispatcher",
    "EventType",
    "FatalError",
    "FunctionTool",
    "HitlPolicy",
    "InMemoryCheckpointer",
    "Interrupt",
    "InterruptError",
    "InterruptedSignal",
    "LanguageModel",
    "LoggingBroadcaster",
    "LoopStatus",
    "MaxIterationsExceeded",
    "Message",
    "MessageRole",
    "MiddlewareContext",
    "MiddlewareStage",
    "ModelConfig",
    "ModelRequest",
    "ModelResponse",
    "RecoverableError",
    "Reject",
    "Resolution",
    "Respond",
    "RuntimeSettings",
    "StreamChunk",
    "SubAgentConfig",
    "SummarizationConfig",
    "TokenUsage",
    "Tool",
    "ToolCall",
    "ToolCallStatus",
    "ToolContext",
    "ToolSchema",
    "parse_resolution",
    "setup_logging",
    "tool",
]
