from typing import Any, List, Optional, Union
from enum import IntEnum

from pydantic import BaseModel, ConfigDict, Field

from deepagent.domain.llm.language_model import ModelRequest, ModelResponse
from deepagent.domain.models.agent_state import ConversationState, ToolCall
from deepagent.domain.models.interrupt import Interrupt
from deepagent.domain.tool.tool_executor import ToolResult
from deepagent.domain.tool.tool_registry import Tool


class MiddlewareStage(IntEnum):
    """Fixed precedence of pipeline stages; lower runs first"""
    PLANNING = 10
    FILESYSTEM = 20
    SUBAGENT = 30
    SUMMARIZATION = 40
    PROMPT_CACHING = 50
    HITL = 60
    CUSTOM = 100


class MiddlewareContext(BaseModel):
    """What a stage can see and touch during one loop step"""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    thread_id: str
    agent_name: str = "agent"
    run_id: Optional[str] = None
    iteration: int = 0
    state: ConversationState
    request: Optional[ModelRequest] = Field(None, description="Set for model-level hooks")
    events: Optional[Any] = Field(None, description="EventDispatcher of the loop")


class AgentMiddleware:
    """Base class for pipeline stages.

    Every hook is optional and a no-op by default. Hooks that return None
    leave their input unchanged.
    """

    stage: MiddlewareStage = MiddlewareStage.CUSTOM
    name: str = "middleware"

    def tools(self) -> List[Tool]:
        """Tools contributed by the stage"""
        return []

    async def before_model_call(self, ctx: MiddlewareContext) -> None:
        """Rewrite or augment ctx.request before the model sees it"""
        return None

    async def after_model_response(self, ctx: MiddlewareContext, response: ModelResponse) -> Optional[ModelResponse]:
        return None

    async def before_tool_execution(self, ctx: MiddlewareContext, call: ToolCall) -> Union[ToolCall, Interrupt, None]:
        """Return a rewritten call, or an Interrupt to veto execution"""
        return None

    async def after_tool_execution(self, ctx: MiddlewareContext, call: ToolCall, result: ToolResult) -> Optional[ToolResult]:
        return None

    def __repr__(self) -> str:
        return f"{type(self).__name__}(stage={self.stage.name})"
