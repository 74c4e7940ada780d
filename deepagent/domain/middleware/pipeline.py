from typing import Any, List, Optional, Union

import structlog
from pydantic import BaseModel

from deepagent.domain.llm.language_model import ModelResponse
from deepagent.domain.middleware.base import AgentMiddleware, MiddlewareContext
from deepagent.domain.models.agent_state import Message, ToolCall
from deepagent.domain.models.errors import (
    FatalError, InterruptError, MiddlewareError, RecoverableError
)
from deepagent.domain.models.interrupt import Interrupt
from deepagent.domain.tool.tool_executor import ToolResult
from deepagent.domain.tool.tool_registry import Tool

logger = structlog.get_logger(__name__)


class ToolVeto(BaseModel):
    """A stage refused to let a call run until a human resolves it"""
    stage: str
    interrupt: Interrupt


class MiddlewarePipeline:
    """Runs stages in stage order, then registration order"""

    def __init__(self, stages: Optional[List[AgentMiddleware]] = None):
        # sorted() is stable, so equal stages keep registration order
        self.stages: List[AgentMiddleware] = sorted(stages or [], key=lambda s: int(s.stage))

    def tools(self) -> List[Tool]:
        collected: List[Tool] = []
        for stage in self.stages:
            collected.extend(stage.tools())
        return collected

    def names(self) -> List[str]:
        return [stage.name for stage in self.stages]

    async def _invoke(self, stage: AgentMiddleware, hook: str, *args: Any) -> Any:
        try:
            return await getattr(stage, hook)(*args)
        except (FatalError, InterruptError, RecoverableError):
            raise
        except Exception as e:
            logger.error("Middleware failed", stage=stage.name, hook=hook, error=str(e))
            raise MiddlewareError(stage.name, hook, e) from e

    def _annotate(self, ctx: MiddlewareContext, stage: AgentMiddleware, error: RecoverableError):
        """Record a recoverable stage failure as a tool-role note in history"""

        logger.warning("Middleware recoverable error", stage=stage.name, error=error.message)
        note = Message.tool(None, f"Error: {error.message}", name=stage.name, middleware_error=stage.name)
        ctx.state.append_message(note)
        if ctx.request is not None:
            ctx.request.messages.append(note.model_copy(deep=True))

    async def before_model_call(self, ctx: MiddlewareContext):
        for stage in self.stages:
            try:
                await self._invoke(stage, "before_model_call", ctx)
            except RecoverableError as e:
                self._annotate(ctx, stage, e)

    async def after_model_response(self, ctx: MiddlewareContext, response: ModelResponse) -> ModelResponse:
        for stage in self.stages:
            try:
                replacement = await self._invoke(stage, "after_model_response", ctx, response)
            except RecoverableError as e:
                self._annotate(ctx, stage, e)
                continue
            if replacement is not None:
                response = replacement
        return response

    async def before_tool_execution(self, ctx: MiddlewareContext, call: ToolCall) -> Union[ToolCall, ToolVeto, ToolResult]:
        """Returns the (possibly rewritten) call, a veto, or a failed result"""

        for stage in self.stages:
            try:
                outcome = await self._invoke(stage, "before_tool_execution", ctx, call)
            except RecoverableError as e:
                logger.warning("Middleware rejected tool call", stage=stage.name, call_id=call.call_id, error=e.message)
                return ToolResult.failure(call, e)

            if isinstance(outcome, Interrupt):
                return ToolVeto(stage=stage.name, interrupt=outcome)
            if isinstance(outcome, ToolCall):
                call = outcome
        return call

    async def after_tool_execution(self, ctx: MiddlewareContext, call: ToolCall, result: ToolResult) -> ToolResult:
        for stage in self.stages:
            try:
                replacement = await self._invoke(stage, "after_tool_execution", ctx, call, result)
            except RecoverableError as e:
                return ToolResult.failure(call, e, result.duration_ms)
            if replacement is not None:
                result = replacement
        return result
