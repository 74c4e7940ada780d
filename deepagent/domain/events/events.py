from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional
from datetime import datetime
from enum import Enum

import structlog
from pydantic import BaseModel, Field

from deepagent.domain.models.interrupt import utcnow

logger = structlog.get_logger(__name__)


class EventType(str, Enum):
    """Lifecycle event types"""
    LOOP_STARTED = "loop_started"
    ITERATION_STARTED = "iteration_started"
    TOOL_STARTED = "tool_started"
    TOOL_COMPLETED = "tool_completed"
    TOOL_FAILED = "tool_failed"
    INTERRUPTED = "interrupted"
    COMPLETED = "completed"
    FAILED = "failed"
    SUBAGENT_STARTED = "subagent_started"
    SUBAGENT_COMPLETED = "subagent_completed"
    STATE_CHECKPOINTED = "state_checkpointed"
    TOKEN_USAGE = "token_usage"


class AgentEvent(BaseModel):
    """Lifecycle event with a raw payload"""
    type: EventType
    thread_id: str
    run_id: Optional[str] = Field(None, description="Correlation id of one handle/resume call")
    agent: str = "agent"
    timestamp: datetime = Field(default_factory=utcnow)
    payload: Dict[str, Any] = Field(default_factory=dict)


class EventBroadcaster(ABC):
    """Receives lifecycle events; redaction is the broadcaster's concern"""

    id: str = "broadcaster"

    @abstractmethod
    async def broadcast(self, event: AgentEvent) -> None:
        pass

    def should_broadcast(self, event: AgentEvent) -> bool:
        return True


class EventDispatcher:
    """Fans events out to broadcasters; broadcaster failures never reach the loop"""

    def __init__(self, broadcasters: Optional[List[EventBroadcaster]] = None):
        self.broadcasters: List[EventBroadcaster] = list(broadcasters or [])

    def add_broadcaster(self, broadcaster: EventBroadcaster):
        self.broadcasters.append(broadcaster)

    async def dispatch(self, event: AgentEvent):
        """Deliver an event to every interested broadcaster"""

        for broadcaster in self.broadcasters:
            try:
                if broadcaster.should_broadcast(event):
                    await broadcaster.broadcast(event)
            except Exception as e:
                logger.error(
                    "Error broadcasting event",
                    broadcaster=broadcaster.id,
                    event_type=event.type.value,
                    error=str(e)
                )

    async def emit(
        self,
        event_type: EventType,
        thread_id: str,
        run_id: Optional[str] = None,
        agent: str = "agent",
        **payload: Any
    ):
        if not self.broadcasters:
            return
        await self.dispatch(AgentEvent(
            type=event_type,
            thread_id=thread_id,
            run_id=run_id,
            agent=agent,
            payload=payload
        ))
