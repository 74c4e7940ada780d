from typing import List, Optional, Sequence, Union

import structlog

from deepagent.domain.events.events import EventType
from deepagent.domain.interrupt.interrupt_manager import InterruptManager
from deepagent.domain.llm.language_model import ModelResponse, TokenUsage
from deepagent.domain.middleware.base import AgentMiddleware, MiddlewareContext, MiddlewareStage
from deepagent.domain.models.agent_state import Message, MessageRole, Summary, ToolCall, ToolCallStatus
from deepagent.domain.models.interrupt import Interrupt
from deepagent.domain.orchestration.core.prompts import (
    DEFAULT_SUMMARY_NOTE, FILESYSTEM_SYSTEM_PROMPT, HITL_SYSTEM_PROMPT,
    TASK_SYSTEM_PROMPT, WRITE_TODOS_SYSTEM_PROMPT
)
from deepagent.domain.tool.tool_registry import Tool

logger = structlog.get_logger(__name__)


class PlanningMiddleware(AgentMiddleware):
    """Contributes planning tools and describes them in the system prompt"""

    stage = MiddlewareStage.PLANNING
    name = "planning"

    def __init__(self, tools: Optional[Sequence[Tool]] = None, prompt: str = WRITE_TODOS_SYSTEM_PROMPT):
        self._tools = list(tools or [])
        self.prompt = prompt

    def tools(self) -> List[Tool]:
        return list(self._tools)

    async def before_model_call(self, ctx: MiddlewareContext) -> None:
        if self._tools:
            ctx.request.append_prompt(self.prompt)


class FilesystemMiddleware(PlanningMiddleware):
    """Contributes filesystem tools and describes them in the system prompt"""

    stage = MiddlewareStage.FILESYSTEM
    name = "filesystem"

    def __init__(self, tools: Optional[Sequence[Tool]] = None, prompt: str = FILESYSTEM_SYSTEM_PROMPT):
        super().__init__(tools, prompt)


class SubAgentMiddleware(AgentMiddleware):
    """Exposes the delegation tool and lists the available sub-agents"""

    stage = MiddlewareStage.SUBAGENT
    name = "subagent"

    def __init__(self, router: Tool):
        self.router = router

    def tools(self) -> List[Tool]:
        return [self.router]

    async def before_model_call(self, ctx: MiddlewareContext) -> None:
        ctx.request.append_prompt(TASK_SYSTEM_PROMPT)
        ctx.request.append_prompt(self.router.description)


class SummarizationMiddleware(AgentMiddleware):
    """Replaces older messages in the model request with a single summary note.

    Only the request is compacted; the persisted history keeps every message
    and gets the note recorded in `state.summary`.
    """

    stage = MiddlewareStage.SUMMARIZATION
    name = "summarization"

    def __init__(self, messages_to_keep: int = 20, summary_note: str = DEFAULT_SUMMARY_NOTE):
        self.messages_to_keep = messages_to_keep
        self.summary_note = summary_note

    async def before_model_call(self, ctx: MiddlewareContext) -> None:
        messages = ctx.request.messages
        if len(messages) <= self.messages_to_keep:
            return

        start = len(messages) - self.messages_to_keep
        # A kept tool result must keep the assistant message that requested it
        while start > 0 and messages[start].role == MessageRole.TOOL:
            start -= 1
        if start == 0:
            return

        note = f"{self.summary_note} ({start} earlier messages summarized)"
        ctx.request.messages = [Message.system(note, summary=True)] + messages[start:]
        ctx.state.summary = Summary(content=note, compacted_messages=start)

        logger.debug("Summarized model request", thread_id=ctx.thread_id, compacted=start, kept=len(messages) - start)


class PromptCachingMiddleware(AgentMiddleware):
    """Marks the system prompt as cacheable.

    The prompt itself stays in place, so fragments appended by later stages
    are cached with it and keep their order.
    """

    stage = MiddlewareStage.PROMPT_CACHING
    name = "prompt_caching"

    def __init__(self, ttl: str = "5m"):
        self.ttl = ttl

    @property
    def enabled(self) -> bool:
        return bool(self.ttl) and self.ttl not in ("0", "0s")

    async def before_model_call(self, ctx: MiddlewareContext) -> None:
        if not self.enabled:
            return
        ctx.request.cache_control = {"type": "ephemeral", "ttl": self.ttl}


class HumanInLoopMiddleware(AgentMiddleware):
    """Lists approval-gated tools and vetoes gated calls that are not approved yet"""

    stage = MiddlewareStage.HITL
    name = "human_in_loop"

    def __init__(self, interrupts: InterruptManager):
        self.interrupts = interrupts

    def prompt_fragment(self) -> Optional[str]:
        lines = []
        for tool_name in self.interrupts.gated_tools():
            policy = self.interrupts.policies[tool_name]
            lines.append(f"- {tool_name}: {policy.note or 'Requires approval'}")
        if not lines:
            return None
        return HITL_SYSTEM_PROMPT.format(tools="\n".join(lines))

    async def before_model_call(self, ctx: MiddlewareContext) -> None:
        fragment = self.prompt_fragment()
        if fragment:
            ctx.request.append_prompt(fragment)

    async def before_tool_execution(self, ctx: MiddlewareContext, call: ToolCall) -> Union[ToolCall, Interrupt, None]:
        policy = self.interrupts.requires_approval(call.tool_name)
        if policy is None or call.status == ToolCallStatus.APPROVED:
            return None

        return Interrupt(
            call_id=call.call_id,
            tool_name=call.tool_name,
            arguments=dict(call.arguments),
            policy_note=policy.note
        )


class TokenTrackingMiddleware(AgentMiddleware):
    """Accumulates model token usage and reports it as events"""

    name = "token_tracking"

    def __init__(self):
        self.usage = TokenUsage()
        self.calls = 0

    async def after_model_response(self, ctx: MiddlewareContext, response: ModelResponse) -> Optional[ModelResponse]:
        if response.usage is None:
            return None

        self.usage = self.usage + response.usage
        self.calls += 1

        if ctx.events is not None:
            await ctx.events.emit(
                EventType.TOKEN_USAGE,
                ctx.thread_id,
                run_id=ctx.run_id,
                agent=ctx.agent_name,
                iteration=ctx.iteration,
                input_tokens=response.usage.input_tokens,
                output_tokens=response.usage.output_tokens,
                total_tokens=self.usage.total_tokens
            )
        return None

    def total_usage(self) -> TokenUsage:
        return self.usage
