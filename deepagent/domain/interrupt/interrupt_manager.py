from typing import Any, Dict, List, Mapping, Optional

import structlog

from deepagent.domain.models.agent_state import ConversationState
from deepagent.domain.models.errors import ConfigurationError, DuplicateInterrupt, NoSuchInterrupt
from deepagent.domain.models.interrupt import Delegation, HitlPolicy, Interrupt

logger = structlog.get_logger(__name__)


class InterruptManager:
    """Creates and resolves HITL interrupts stored on the conversation state"""

    def __init__(self, policies: Optional[Mapping[str, HitlPolicy]] = None, checkpointer: Optional[Any] = None):
        self.policies: Dict[str, HitlPolicy] = dict(policies or {})

        gated = self.gated_tools()
        if gated and checkpointer is None:
            raise ConfigurationError(
                "Tools requiring approval need a checkpointer so interrupts survive restarts: "
                + ", ".join(gated),
                tools=gated
            )

    def gated_tools(self) -> List[str]:
        return [name for name, policy in self.policies.items() if not policy.allow_auto]

    def requires_approval(self, tool_name: str) -> Optional[HitlPolicy]:
        """Policy of the tool when it needs a human decision"""

        policy = self.policies.get(tool_name)
        if policy is not None and not policy.allow_auto:
            return policy
        return None

    def create(
        self,
        state: ConversationState,
        call_id: str,
        tool_name: str,
        arguments: Dict[str, Any],
        note: Optional[str] = None,
        delegation: Optional[Delegation] = None,
        agent_path: Optional[List[str]] = None
    ) -> Interrupt:
        """Record a new interrupt for the call"""

        if call_id in state.pending_interrupts:
            raise DuplicateInterrupt(call_id)

        interrupt = Interrupt(
            call_id=call_id,
            tool_name=tool_name,
            arguments=dict(arguments),
            policy_note=note,
            delegation=delegation,
            agent_path=list(agent_path or [])
        )
        state.pending_interrupts[call_id] = interrupt

        logger.info(
            "Interrupt created",
            thread_id=state.thread_id,
            call_id=call_id,
            tool_name=tool_name,
            delegated=delegation is not None
        )
        return interrupt

    def resolve(self, state: ConversationState, call_id: Optional[str] = None) -> Interrupt:
        """Remove and return the interrupt; each one is consumed exactly once"""

        if call_id is None:
            interrupt = state.first_interrupt()
            if interrupt is None:
                raise NoSuchInterrupt(None)
            call_id = interrupt.call_id

        interrupt = state.pending_interrupts.pop(call_id, None)
        if interrupt is None:
            raise NoSuchInterrupt(call_id)

        logger.info("Interrupt resolved", thread_id=state.thread_id, call_id=call_id, tool_name=interrupt.tool_name)
        return interrupt

    def current(self, state: ConversationState) -> Optional[Interrupt]:
        return state.first_interrupt()
