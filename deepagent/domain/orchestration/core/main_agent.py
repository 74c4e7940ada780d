from typing import TypedDict, List, Dict, Any, Optional, Union, Literal
from langgraph.graph import StateGraph, START, END
import structlog
from uuid import uuid4

from deepagent.domain.events.events import EventBroadcaster, EventDispatcher, EventType
from deepagent.domain.interrupt.interrupt_manager import InterruptManager
from deepagent.domain.llm.language_model import LanguageModel, ModelRequest, TokenUsage
from deepagent.domain.middleware.base import AgentMiddleware, MiddlewareContext
from deepagent.domain.middleware.pipeline import MiddlewarePipeline, ToolVeto
from deepagent.domain.middleware.stages import (
    FilesystemMiddleware, HumanInLoopMiddleware, PlanningMiddleware, PromptCachingMiddleware,
    SubAgentMiddleware, SummarizationMiddleware, TokenTrackingMiddleware
)
from deepagent.domain.models.agent_config import AgentConfig
from deepagent.domain.models.agent_state import (
    AgentResponse, ConversationState, DelegatedResume, InterruptedSignal, LoopStatus,
    Message, ResumptionToken, ToolCall, ToolCallStatus, new_call_id
)
from deepagent.domain.models.errors import (
    AgentError, CheckpointerError, FatalError, InterruptError, InterruptPending,
    LanguageModelError, MaxIterationsExceeded, NoSuchInterrupt, ToolArgumentsError
)
from deepagent.domain.models.interrupt import (
    Accept, Delegation, Edit, Interrupt, Reject, Resolution, Respond, parse_resolution
)
from deepagent.domain.orchestration.core.prompts import (
    BASE_AGENT_PROMPT, NOT_EXECUTED_TOOL_MESSAGE, REJECTED_TOOL_MESSAGE
)
from deepagent.domain.orchestration.core.thread_lane import CancellationToken, ThreadLane
from deepagent.domain.orchestration.subagent.subagent_router import SubAgentInterrupted, SubAgentRouter
from deepagent.domain.persistence.checkpointer import Checkpointer, InMemoryCheckpointer
from deepagent.domain.tool.tool_executor import ToolDispatcher, ToolResult
from deepagent.domain.tool.tool_registry import ToolContext, ToolRegistry
from deepagent.domain.tool.tool_validator import ToolParameterValidator

logger = structlog.get_logger(__name__)

LoopOutcome = Union[AgentResponse, InterruptedSignal]

_RESOLVED = (ToolCallStatus.EXECUTED, ToolCallStatus.REJECTED, ToolCallStatus.RESPONDED)


class LoopGraphState(TypedDict):
    """State for the reason/act graph"""
    conversation: ConversationState
    iteration: int
    pending_calls: List[ToolCall]
    cancellation: Optional[CancellationToken]
    run_id: str
    outcome: Optional[LoopOutcome]


def apply_resolution(state: ConversationState, call: ToolCall, interrupt: Interrupt, resolution: Resolution):
    """Apply a human resolution to the interrupted call"""

    if interrupt.delegation is not None:
        # The delegation call re-runs and forwards the resolution to the sub-agent
        state.delegated_resumes[call.call_id] = DelegatedResume(
            delegation=interrupt.delegation,
            resolution=resolution
        )
        call.status = ToolCallStatus.APPROVED
        return

    if isinstance(resolution, Accept):
        call.status = ToolCallStatus.APPROVED

    elif isinstance(resolution, Edit):
        call.arguments = dict(resolution.arguments)
        call.status = ToolCallStatus.APPROVED

    elif isinstance(resolution, Reject):
        content = REJECTED_TOOL_MESSAGE
        if resolution.reason:
            content = f"{content}: {resolution.reason}"
        state.append_message(Message.tool(call.call_id, content, name=call.tool_name, status="rejected"))
        call.status = ToolCallStatus.REJECTED

    elif isinstance(resolution, Respond):
        state.append_message(Message.tool(call.call_id, resolution.message, name=call.tool_name, status="responded"))
        call.status = ToolCallStatus.RESPONDED


class AgentLoopController:
    """Reason-act loop built on a LangGraph state machine"""

    def __init__(
        self,
        config: AgentConfig,
        model: LanguageModel,
        checkpointer: Optional[Checkpointer] = None,
        broadcasters: Optional[List[EventBroadcaster]] = None,
        events: Optional[EventDispatcher] = None,
        delegation_depth: int = 0
    ):
        self.config = config
        self.model = model
        self.checkpointer = checkpointer
        # Without a checkpointer, threads live only as long as this controller
        self._store: Checkpointer = checkpointer if checkpointer is not None else InMemoryCheckpointer()
        self.events = events or EventDispatcher()
        for broadcaster in broadcasters or []:
            self.events.add_broadcaster(broadcaster)
        self.delegation_depth = delegation_depth
        self.lane = ThreadLane()

        self.interrupts = InterruptManager(config.tool_policies, checkpointer)

        self.router: Optional[SubAgentRouter] = None
        if config.subagents or config.auto_general_purpose:
            self.router = SubAgentRouter(config, model, checkpointer, depth=delegation_depth)

        self.token_tracker: Optional[TokenTrackingMiddleware] = None
        self.pipeline = MiddlewarePipeline(self._build_stages())

        self.registry = ToolRegistry(list(config.tools) + self.pipeline.tools())
        for item in self.registry.tools.values():
            ToolParameterValidator.check_schema(item)
        self.dispatcher = ToolDispatcher(self.registry, default_timeout=config.tool_timeout_seconds)

        self.workflow = self._create_workflow()

        logger.debug(
            "Agent loop created",
            agent=config.name,
            tools=self.registry.names(),
            stages=self.pipeline.names(),
            delegation_depth=delegation_depth
        )

    def _build_stages(self) -> List[AgentMiddleware]:
        config = self.config
        stages: List[AgentMiddleware] = []

        if config.planning_tools:
            stages.append(PlanningMiddleware(config.planning_tools))
        if config.filesystem_tools:
            stages.append(FilesystemMiddleware(config.filesystem_tools))
        if self.router is not None:
            stages.append(SubAgentMiddleware(self.router))
        if config.summarization is not None:
            stages.append(SummarizationMiddleware(
                config.summarization.messages_to_keep,
                config.summarization.summary_note
            ))
        if config.enable_prompt_caching:
            stages.append(PromptCachingMiddleware(config.prompt_cache_ttl))
        if self.interrupts.policies:
            stages.append(HumanInLoopMiddleware(self.interrupts))
        if config.track_token_usage:
            self.token_tracker = TokenTrackingMiddleware()
            stages.append(self.token_tracker)

        stages.extend(config.middleware)
        return stages

    def _create_workflow(self):
        """Create the reason/act graph"""

        workflow = StateGraph(LoopGraphState)

        workflow.add_node("reason", self.reason_node)
        workflow.add_node("act", self.act_node)

        # Resumed runs enter directly at the unfinished batch
        workflow.add_conditional_edges(START, self.route_entry, {"reason": "reason", "act": "act"})
        workflow.add_conditional_edges("reason", self.route_after_reason, {"act": "act", "end": END})
        workflow.add_conditional_edges("act", self.route_after_act, {"reason": "reason", "end": END})

        return workflow.compile()

    # Routing

    def route_entry(self, state: LoopGraphState) -> Literal["reason", "act"]:
        return "act" if state["pending_calls"] else "reason"

    def route_after_reason(self, state: LoopGraphState) -> Literal["act", "end"]:
        if state.get("outcome") is not None:
            return "end"
        return "act"

    def route_after_act(self, state: LoopGraphState) -> Literal["reason", "end"]:
        if state.get("outcome") is not None:
            return "end"
        return "reason"

    # Nodes

    async def reason_node(self, state: LoopGraphState) -> Dict[str, Any]:
        """Ask the model for the next step"""

        conversation = state["conversation"]
        iteration = state["iteration"]
        run_id = state["run_id"]

        if iteration >= self.config.max_iterations:
            error = MaxIterationsExceeded(self.config.max_iterations, iteration)
            return {"outcome": await self._exhausted(conversation, error, run_id)}

        if state["cancellation"] is not None:
            state["cancellation"].raise_if_cancelled("model call")

        iteration += 1
        conversation.update_status(LoopStatus.REASONING)
        await self._emit(EventType.ITERATION_STARTED, conversation, run_id, iteration=iteration)
        logger.debug("Iteration started", iteration=iteration)

        ctx = self._context(conversation, run_id, iteration)
        ctx.request = ModelRequest(
            system_prompt=self.config.instructions or BASE_AGENT_PROMPT,
            messages=[message.model_copy(deep=True) for message in conversation.messages],
            tools=self.registry.schemas(),
            config=self.config.generation
        )
        await self.pipeline.before_model_call(ctx)

        try:
            response = await self.model.send(ctx.request)
        except AgentError:
            raise
        except Exception as e:
            raise LanguageModelError(f"Language model call failed: {e}", agent=self.config.name) from e

        response = await self.pipeline.after_model_response(ctx, response)

        if not response.has_tool_calls:
            message = Message.assistant(response.text)
            conversation.append_message(message)
            conversation.update_status(LoopStatus.COMPLETED)
            await self._save(conversation, run_id)
            await self._emit(EventType.COMPLETED, conversation, run_id, iterations=iteration, content=response.text)
            logger.info("Agent loop completed", iterations=iteration)

            outcome = AgentResponse(
                thread_id=conversation.thread_id,
                status=LoopStatus.COMPLETED,
                message=message,
                iterations=iteration
            )
            return {"iteration": iteration, "outcome": outcome}

        calls = self._claim_calls(conversation, response.tool_calls)
        message = Message.assistant(response.text, tool_calls=calls)
        conversation.append_message(message)
        conversation.update_status(LoopStatus.AWAITING_TOOL_EXECUTION)

        return {"iteration": iteration, "pending_calls": list(message.tool_calls)}

    async def act_node(self, state: LoopGraphState) -> Dict[str, Any]:
        """Execute the pending batch in order, halting at the first unresolved interrupt"""

        conversation = state["conversation"]
        iteration = state["iteration"]
        run_id = state["run_id"]
        pending = list(state["pending_calls"])
        cancellation = state["cancellation"]

        for index, call in enumerate(pending):
            if call.status in _RESOLVED:
                continue

            if cancellation is not None:
                cancellation.raise_if_cancelled("tool dispatch")

            ctx = self._context(conversation, run_id, iteration)

            if call.parse_error is not None:
                result = ToolResult.failure(call, ToolArgumentsError(
                    f"Could not decode arguments for tool '{call.tool_name}': {call.parse_error}",
                    tool_name=call.tool_name
                ))
            else:
                outcome = await self.pipeline.before_tool_execution(ctx, call)

                if isinstance(outcome, ToolVeto):
                    veto = outcome.interrupt
                    interrupt = self.interrupts.create(
                        conversation, call.call_id, veto.tool_name, veto.arguments, veto.policy_note
                    )
                    signal = await self._suspend(conversation, interrupt, iteration, pending[index:], run_id)
                    return {"outcome": signal, "pending_calls": pending[index:]}

                if isinstance(outcome, ToolResult):
                    result = outcome
                else:
                    dispatched = outcome
                    policy = self.interrupts.requires_approval(dispatched.tool_name)
                    if policy is not None and dispatched.status != ToolCallStatus.APPROVED:
                        interrupt = self.interrupts.create(
                            conversation, call.call_id, dispatched.tool_name, dispatched.arguments, policy.note
                        )
                        signal = await self._suspend(conversation, interrupt, iteration, pending[index:], run_id)
                        return {"outcome": signal, "pending_calls": pending[index:]}

                    try:
                        result = await self._dispatch(conversation, dispatched, run_id)
                    except SubAgentInterrupted as e:
                        inner = e.interrupt
                        interrupt = self.interrupts.create(
                            conversation,
                            call.call_id,
                            inner.tool_name,
                            inner.arguments,
                            inner.policy_note,
                            delegation=Delegation(agent_name=e.agent_name, thread_id=e.thread_id, call_id=inner.call_id),
                            agent_path=[e.agent_name] + inner.agent_path
                        )
                        conversation.delegated_resumes.pop(call.call_id, None)
                        signal = await self._suspend(conversation, interrupt, iteration, pending[index:], run_id)
                        return {"outcome": signal, "pending_calls": pending[index:]}

                    result = await self.pipeline.after_tool_execution(ctx, dispatched, result)

            conversation.append_message(result.to_message())
            conversation.delegated_resumes.pop(call.call_id, None)
            call.status = ToolCallStatus.EXECUTED
            # Each result is durable before the next call in the batch runs
            await self._save(conversation, run_id)

            event_type = EventType.TOOL_COMPLETED if result.ok else EventType.TOOL_FAILED
            await self._emit(
                event_type,
                conversation,
                run_id,
                call_id=call.call_id,
                tool_name=call.tool_name,
                duration_ms=result.duration_ms,
                result=result.content
            )

        conversation.resumption = None
        return {"pending_calls": []}

    async def _dispatch(self, conversation: ConversationState, call: ToolCall, run_id: str) -> ToolResult:
        await self._emit(
            EventType.TOOL_STARTED,
            conversation,
            run_id,
            call_id=call.call_id,
            tool_name=call.tool_name,
            arguments=call.arguments
        )

        context = ToolContext(
            thread_id=conversation.thread_id,
            call_id=call.call_id,
            agent_name=self.config.name,
            state=conversation,
            delegation_depth=self.delegation_depth,
            resume=conversation.delegated_resumes.get(call.call_id),
            events=self.events,
            run_id=run_id
        )
        return await self.dispatcher.execute(call, context)

    # Public surface

    async def handle_message(
        self,
        text: str,
        thread_id: Optional[str] = None,
        state: Optional[ConversationState] = None,
        cancellation: Optional[CancellationToken] = None
    ) -> LoopOutcome:
        """Run the loop for a new user message"""

        if state is not None:
            thread_id = state.thread_id
        elif thread_id is None:
            thread_id = f"thread_{uuid4().hex}"

        run_id = uuid4().hex
        async with self.lane.hold(thread_id):
            with structlog.contextvars.bound_contextvars(thread_id=thread_id, agent=self.config.name, run_id=run_id):
                if state is None:
                    state = await self.load_state(thread_id) or ConversationState(thread_id=thread_id)

                pending = state.first_interrupt()
                if pending is not None:
                    raise InterruptPending(thread_id, pending.call_id)

                # A run that stopped mid-batch leaves calls without results
                closed = self._close_open_batch(state)
                if closed:
                    logger.warning("Closed unfinished tool calls", count=closed)

                state.append_message(Message.user(text))
                await self._emit(EventType.LOOP_STARTED, state, run_id, resumed=False, message=text)
                logger.info("Agent loop started", messages=len(state.messages))

                return await self._run(state, 0, [], cancellation, run_id)

    async def current_interrupt(self, thread_id: str) -> Optional[Interrupt]:
        """Oldest unresolved interrupt of the thread"""

        state = await self.load_state(thread_id)
        if state is None:
            return None
        return self.interrupts.current(state)

    async def resume_with_approval(
        self,
        resolution: Union[Resolution, Dict[str, Any], str],
        thread_id: str,
        call_id: Optional[str] = None,
        cancellation: Optional[CancellationToken] = None
    ) -> LoopOutcome:
        """Apply a resolution and continue the loop where it stopped"""

        if isinstance(resolution, (dict, str)):
            resolution = parse_resolution(resolution)

        run_id = uuid4().hex
        async with self.lane.hold(thread_id):
            with structlog.contextvars.bound_contextvars(thread_id=thread_id, agent=self.config.name, run_id=run_id):
                state = await self.load_state(thread_id)
                if state is None:
                    raise NoSuchInterrupt(call_id)

                token = state.resumption
                if call_id is None and token is not None:
                    call_id = token.call_id

                interrupt = self.interrupts.resolve(state, call_id)
                call = state.find_tool_call(interrupt.call_id)
                if call is None:
                    raise NoSuchInterrupt(interrupt.call_id)

                apply_resolution(state, call, interrupt, resolution)

                iteration = token.iteration if token is not None else 0
                pending_ids = token.pending_call_ids if token is not None else [call.call_id]
                pending = [found for found in (state.find_tool_call(pid) for pid in pending_ids) if found is not None]
                state.resumption = None

                await self._emit(
                    EventType.LOOP_STARTED,
                    state,
                    run_id,
                    resumed=True,
                    call_id=call.call_id,
                    action=resolution.action
                )
                logger.info("Agent loop resumed", call_id=call.call_id, action=resolution.action, iteration=iteration)

                if call.status in _RESOLVED:
                    # Rejected and answered calls already carry their result
                    await self._save(state, run_id)

                return await self._run(state, iteration, pending, cancellation, run_id)

    async def _run(
        self,
        state: ConversationState,
        iteration: int,
        pending: List[ToolCall],
        cancellation: Optional[CancellationToken],
        run_id: str
    ) -> LoopOutcome:
        initial_state: LoopGraphState = {
            "conversation": state,
            "iteration": iteration,
            "pending_calls": pending,
            "cancellation": cancellation,
            "run_id": run_id,
            "outcome": None
        }

        try:
            final = await self.workflow.ainvoke(
                initial_state,
                config={"recursion_limit": 2 * self.config.max_iterations + 5}
            )
        except (FatalError, InterruptError) as e:
            await self._fail(state, e, run_id)
            raise

        return final["outcome"]

    # Thread management

    async def load_state(self, thread_id: str) -> Optional[ConversationState]:
        try:
            return await self._store.load(thread_id)
        except CheckpointerError:
            raise
        except Exception as e:
            raise CheckpointerError(f"Failed to load thread '{thread_id}': {e}", thread_id=thread_id) from e

    async def save_state(self, state: ConversationState):
        try:
            await self._store.save(state.thread_id, state)
        except CheckpointerError:
            raise
        except Exception as e:
            raise CheckpointerError(f"Failed to save thread '{state.thread_id}': {e}", thread_id=state.thread_id) from e

    async def delete_thread(self, thread_id: str):
        try:
            await self._store.delete(thread_id)
        except CheckpointerError:
            raise
        except Exception as e:
            raise CheckpointerError(f"Failed to delete thread '{thread_id}': {e}", thread_id=thread_id) from e

    async def list_threads(self) -> List[str]:
        try:
            return await self._store.list()
        except CheckpointerError:
            raise
        except Exception as e:
            raise CheckpointerError(f"Failed to list threads: {e}") from e

    def token_usage(self) -> Optional[TokenUsage]:
        return self.token_tracker.total_usage() if self.token_tracker is not None else None

    # Helpers

    def _context(self, conversation: ConversationState, run_id: str, iteration: int) -> MiddlewareContext:
        return MiddlewareContext(
            thread_id=conversation.thread_id,
            agent_name=self.config.name,
            run_id=run_id,
            iteration=iteration,
            state=conversation,
            events=self.events
        )

    def _claim_calls(self, conversation: ConversationState, requested: List[ToolCall]) -> List[ToolCall]:
        """Fresh pending copies of the model's calls, with call ids unique in the thread"""

        seen = set()
        calls = []
        for call in requested:
            update: Dict[str, Any] = {"status": ToolCallStatus.PENDING}
            if call.call_id in seen or conversation.find_tool_call(call.call_id) is not None:
                update["call_id"] = new_call_id()
            claimed = call.model_copy(deep=True, update=update)
            seen.add(claimed.call_id)
            calls.append(claimed)
        return calls

    async def _save(self, state: ConversationState, run_id: str):
        state.version += 1
        await self.save_state(state)
        if self.checkpointer is not None:
            await self._emit(EventType.STATE_CHECKPOINTED, state, run_id, version=state.version, status=state.status.value)

    async def _emit(self, event_type: EventType, state: ConversationState, run_id: str, **payload: Any):
        await self.events.emit(event_type, state.thread_id, run_id=run_id, agent=self.config.name, **payload)

    async def _suspend(
        self,
        state: ConversationState,
        interrupt: Interrupt,
        iteration: int,
        remaining: List[ToolCall],
        run_id: str
    ) -> InterruptedSignal:
        state.resumption = ResumptionToken(
            iteration=iteration,
            call_id=interrupt.call_id,
            pending_call_ids=[call.call_id for call in remaining]
        )
        state.update_status(LoopStatus.INTERRUPTED)
        await self._save(state, run_id)
        await self._emit(
            EventType.INTERRUPTED,
            state,
            run_id,
            call_id=interrupt.call_id,
            tool_name=interrupt.tool_name,
            arguments=interrupt.arguments,
            agent_path=interrupt.agent_path
        )
        logger.info("Agent loop interrupted", call_id=interrupt.call_id, tool_name=interrupt.tool_name)

        return InterruptedSignal(thread_id=state.thread_id, interrupt=interrupt, iterations=iteration)

    async def _exhausted(self, state: ConversationState, error: MaxIterationsExceeded, run_id: str) -> AgentResponse:
        state.log_error(error)
        state.update_status(LoopStatus.FAILED)
        await self._save(state, run_id)
        await self._emit(EventType.FAILED, state, run_id, error=error.to_dict(), iterations=error.iterations)
        logger.warning("Agent loop exhausted its iteration bound", max_iterations=error.max_iterations)

        return AgentResponse(
            thread_id=state.thread_id,
            status=LoopStatus.FAILED,
            message=state.last_assistant_message(),
            error=error,
            iterations=error.iterations
        )

    @staticmethod
    def _close_open_batch(state: ConversationState) -> int:
        """Answer calls of the last batch that never produced a result"""

        closed = 0
        assistant = state.last_assistant_message()
        if assistant is None:
            return closed

        for call in assistant.tool_calls:
            if call.status in _RESOLVED or call.call_id in state.pending_interrupts:
                continue
            call.status = ToolCallStatus.REJECTED
            state.append_message(Message.tool(call.call_id, NOT_EXECUTED_TOOL_MESSAGE, name=call.tool_name, status="not_executed"))
            closed += 1
        return closed

    async def _fail(self, state: ConversationState, error: AgentError, run_id: str):
        """Close the open batch and persist the last known state before surfacing a fatal error"""

        self._close_open_batch(state)
        state.resumption = None
        state.delegated_resumes.clear()
        state.log_error(error)
        state.update_status(LoopStatus.FAILED)
        logger.error("Agent loop failed", error=error.message, error_type=type(error).__name__)

        try:
            await self._save(state, run_id)
        finally:
            await self._emit(EventType.FAILED, state, run_id, error=error.to_dict())
