# Langfuse integration
from typing import Any, Dict, Optional

import structlog
from langfuse import Langfuse

from deepagent.domain.events.events import AgentEvent, EventBroadcaster, EventType

logger = structlog.get_logger(__name__)

_TERMINAL = (EventType.COMPLETED, EventType.FAILED, EventType.INTERRUPTED)
_ERRORS = (EventType.TOOL_FAILED, EventType.FAILED)


class LangfuseBroadcaster(EventBroadcaster):
    """Maps each loop run to a Langfuse trace and each lifecycle event to a trace event"""

    id = "langfuse"

    def __init__(
        self,
        client: Optional[Langfuse] = None,
        public_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        host: Optional[str] = None,
        tags: Optional[list] = None,
        flush_on_finish: bool = True
    ):
        self.langfuse = client or Langfuse(
            public_key=public_key,
            secret_key=secret_key,
            host=host
        )
        self.tags = list(tags or [])
        self.flush_on_finish = flush_on_finish
        self.traces: Dict[str, Any] = {}

    def _trace_for(self, event: AgentEvent) -> Any:
        key = event.run_id or event.thread_id
        trace = self.traces.get(key)
        if trace is None:
            trace = self.langfuse.trace(
                id=event.run_id,
                name=f"{event.agent}_run",
                session_id=event.thread_id,
                tags=self.tags + [event.agent],
                metadata={"agent": event.agent, "thread_id": event.thread_id}
            )
            self.traces[key] = trace
        return trace

    async def broadcast(self, event: AgentEvent) -> None:
        trace = self._trace_for(event)

        trace.event(
            name=event.type.value,
            start_time=event.timestamp,
            metadata={"agent": event.agent, **event.payload},
            level="ERROR" if event.type in _ERRORS else "DEFAULT"
        )

        if event.type in _TERMINAL:
            trace.update(
                output={"status": event.type.value, **event.payload},
                metadata={"agent": event.agent, "thread_id": event.thread_id}
            )
            self.traces.pop(event.run_id or event.thread_id, None)
            if self.flush_on_finish:
                self.langfuse.flush()
            logger.debug("Trace finished", run_id=event.run_id, status=event.type.value)
