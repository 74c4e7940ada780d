from abc import ABC, abstractmethod
from typing import Dict, List, Optional
import asyncio

import structlog
from pydantic import ValidationError

from deepagent.domain.models.agent_state import ConversationState
from deepagent.domain.models.errors import CheckpointerError

logger = structlog.get_logger(__name__)


class Checkpointer(ABC):
    """Persistence boundary for conversation state, keyed by thread_id.

    Saves are last-writer-wins per thread_id. Backends must preserve message
    order, pending interrupts and the summary exactly, and must raise
    CheckpointerError instead of hiding failures.
    """

    @abstractmethod
    async def save(self, thread_id: str, state: ConversationState) -> None:
        pass

    @abstractmethod
    async def load(self, thread_id: str) -> Optional[ConversationState]:
        pass

    @abstractmethod
    async def delete(self, thread_id: str) -> None:
        pass

    @abstractmethod
    async def list(self) -> List[str]:
        pass


class InMemoryCheckpointer(Checkpointer):
    """Reference backend holding serialized snapshots in process memory"""

    def __init__(self):
        self.states: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def save(self, thread_id: str, state: ConversationState) -> None:
        """Serialize and store a snapshot, replacing any previous one"""

        try:
            payload = state.model_dump_json()
        except (TypeError, ValueError) as e:
            raise CheckpointerError(f"Failed to serialize state for thread '{thread_id}': {e}", thread_id=thread_id) from e

        async with self._lock:
            self.states[thread_id] = payload

        logger.debug("State saved", thread_id=thread_id, version=state.version, bytes=len(payload))

    async def load(self, thread_id: str) -> Optional[ConversationState]:
        """Load a fresh copy of the stored snapshot"""

        async with self._lock:
            payload = self.states.get(thread_id)

        if payload is None:
            return None

        try:
            return ConversationState.model_validate_json(payload)
        except ValidationError as e:
            raise CheckpointerError(f"Corrupt checkpoint for thread '{thread_id}': {e}", thread_id=thread_id) from e

    async def delete(self, thread_id: str) -> None:
        async with self._lock:
            self.states.pop(thread_id, None)

    async def list(self) -> List[str]:
        async with self._lock:
            return sorted(self.states)
