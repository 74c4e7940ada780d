from typing import Any, Dict, List, Optional
from datetime import datetime

import structlog

from deepagent.domain.events.events import EventType
from deepagent.domain.llm.language_model import LanguageModel
from deepagent.domain.models.agent_config import AgentConfig, SubAgentConfig
from deepagent.domain.models.agent_state import InterruptedSignal
from deepagent.domain.models.errors import (
    ConfigurationError, DelegationDepthExceeded, FatalError, InterruptError,
    NoSuchInterrupt, ToolExecutionError, UnknownSubAgentError
)
from deepagent.domain.models.interrupt import Interrupt, utcnow
from deepagent.domain.orchestration.core.prompts import (
    GENERAL_PURPOSE_DESCRIPTION, TASK_TOOL_DESCRIPTION, render_subagent_list
)
from deepagent.domain.tool.tool_registry import Tool, ToolContext

logger = structlog.get_logger(__name__)

GENERAL_PURPOSE = "general-purpose"


class SubAgentInterrupted(InterruptError):
    """A delegated sub-agent stopped on an interrupt that the parent must surface"""

    def __init__(self, agent_name: str, thread_id: str, interrupt: Interrupt):
        super().__init__(
            f"Sub-agent '{agent_name}' is waiting for approval of '{interrupt.tool_name}'",
            subagent=agent_name,
            thread_id=thread_id,
            call_id=interrupt.call_id,
        )
        self.agent_name = agent_name
        self.thread_id = thread_id
        self.interrupt = interrupt


def nested_thread_id(parent_thread_id: str, agent_name: str, call_id: str) -> str:
    return f"{parent_thread_id}/{agent_name}/{call_id}"


class SubAgentRouter(Tool):
    """The `task` tool: runs a configured sub-agent in its own quarantined conversation"""

    name = "task"

    def __init__(
        self,
        parent: AgentConfig,
        model: LanguageModel,
        checkpointer: Optional[Any] = None,
        depth: int = 0
    ):
        self.parent = parent
        self.model = model
        self.checkpointer = checkpointer
        self.depth = depth
        self.max_depth = parent.max_delegation_depth
        self.timeout = parent.subagent_timeout_seconds
        self.created_at = utcnow()
        self.last_active: Optional[datetime] = None

        self.subagents: Dict[str, SubAgentConfig] = {}
        if parent.auto_general_purpose:
            self.subagents[GENERAL_PURPOSE] = SubAgentConfig(
                name=GENERAL_PURPOSE,
                description=GENERAL_PURPOSE_DESCRIPTION,
                instructions=parent.instructions,
                tools=list(parent.tools)
            )
        for sub in parent.subagents:
            self.subagents[sub.name] = sub

        self._validate()

        self.description = TASK_TOOL_DESCRIPTION.format(
            other_agents=render_subagent_list((sub.name, sub.description) for sub in self.subagents.values())
        )
        self.parameters = {
            "type": "object",
            "properties": {
                "subagent_type": {
                    "type": "string",
                    "description": "Name of the sub-agent to delegate to: " + ", ".join(self.subagents)
                },
                "description": {
                    "type": "string",
                    "description": "Complete, self-contained task for the sub-agent"
                }
            },
            "required": ["subagent_type", "description"]
        }

    def _validate(self):
        """Fail at construction when a sub-agent could interrupt without durable storage"""

        if self.checkpointer is not None:
            return
        for sub in self.subagents.values():
            gated = [name for name, policy in self.policies_for(sub).items() if not policy.allow_auto]
            if gated:
                raise ConfigurationError(
                    f"Sub-agent '{sub.name}' has tools requiring approval but no checkpointer is configured: "
                    + ", ".join(gated),
                    subagent=sub.name,
                    tools=gated
                )

    def policies_for(self, sub: SubAgentConfig) -> Dict[str, Any]:
        policies = dict(self.parent.tool_policies)
        policies.update(sub.tool_policies)
        return policies

    def config_for(self, sub: SubAgentConfig) -> AgentConfig:
        """Nested agent configuration derived from the sub-agent and its parent"""

        return AgentConfig(
            name=sub.name,
            instructions=sub.instructions,
            tools=list(sub.tools),
            subagents=list(sub.subagents),
            tool_policies=self.policies_for(sub),
            max_iterations=sub.max_iterations or self.parent.max_iterations,
            tool_timeout_seconds=self.parent.tool_timeout_seconds,
            subagent_timeout_seconds=self.parent.subagent_timeout_seconds,
            max_delegation_depth=self.parent.max_delegation_depth,
            generation=self.parent.generation
        )

    def available(self) -> List[str]:
        return list(self.subagents)

    def get_info(self) -> Dict[str, Any]:
        """Get router information"""
        return {
            "name": self.name,
            "subagents": self.available(),
            "depth": self.depth,
            "max_depth": self.max_depth,
            "created_at": self.created_at.isoformat(),
            "last_active": self.last_active.isoformat() if self.last_active else None
        }

    async def handle(self, arguments: Dict[str, Any], context: ToolContext) -> Any:
        from deepagent.domain.orchestration.core.main_agent import AgentLoopController

        agent_name = arguments["subagent_type"]
        description = arguments["description"]

        sub = self.subagents.get(agent_name)
        if sub is None:
            raise UnknownSubAgentError(agent_name, self.available())

        depth = context.delegation_depth + 1
        if depth > self.max_depth:
            raise DelegationDepthExceeded(depth, self.max_depth)

        self.last_active = utcnow()
        thread_id = nested_thread_id(context.thread_id, agent_name, context.call_id)
        controller = AgentLoopController(
            self.config_for(sub),
            sub.model or self.model,
            checkpointer=self.checkpointer,
            events=context.events,
            delegation_depth=depth
        )

        if context.events is not None:
            await context.events.emit(
                EventType.SUBAGENT_STARTED,
                context.thread_id,
                run_id=context.run_id,
                agent=context.agent_name,
                subagent=agent_name,
                call_id=context.call_id,
                resumed=context.resume is not None
            )
        logger.info("Delegating to sub-agent", subagent=agent_name, depth=depth, nested_thread_id=thread_id)

        outcome = None
        try:
            if context.resume is not None:
                try:
                    outcome = await controller.resume_with_approval(
                        context.resume.resolution,
                        thread_id=thread_id,
                        call_id=context.resume.delegation.call_id
                    )
                except NoSuchInterrupt as e:
                    # The nested run already consumed this approval before it stopped
                    raise ToolExecutionError(
                        f"Sub-agent '{agent_name}' has no pending approval to resume",
                        subagent=agent_name
                    ) from e
            else:
                # Fresh conversation seeded only with the task description
                outcome = await controller.handle_message(description, thread_id=thread_id)
        except FatalError as e:
            raise ToolExecutionError(f"Sub-agent '{agent_name}' failed: {e.message}", subagent=agent_name) from e
        finally:
            # Only an interrupted sub-agent keeps its nested thread
            if not isinstance(outcome, InterruptedSignal):
                await controller.delete_thread(thread_id)

        if isinstance(outcome, InterruptedSignal):
            raise SubAgentInterrupted(agent_name, thread_id, outcome.interrupt)

        if outcome.is_failed:
            message = outcome.error.message if outcome.error else "unknown error"
            raise ToolExecutionError(f"Sub-agent '{agent_name}' failed: {message}", subagent=agent_name)

        if context.events is not None:
            await context.events.emit(
                EventType.SUBAGENT_COMPLETED,
                context.thread_id,
                run_id=context.run_id,
                agent=context.agent_name,
                subagent=agent_name,
                call_id=context.call_id,
                iterations=outcome.iterations
            )
        return outcome.content
