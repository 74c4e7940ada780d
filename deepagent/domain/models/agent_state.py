from typing import Dict, Any, List, Optional, Literal
from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime
from enum import Enum
from uuid import uuid4

from deepagent.domain.models.errors import AgentError
from deepagent.domain.models.interrupt import Delegation, Interrupt, Resolution, utcnow


class LoopStatus(str, Enum):
    """Agent loop execution status"""
    AWAITING_INPUT = "awaiting_input"
    REASONING = "reasoning"
    AWAITING_TOOL_EXECUTION = "awaiting_tool_execution"
    INTERRUPTED = "interrupted"
    COMPLETED = "completed"
    FAILED = "failed"


class MessageRole(str, Enum):
    """Conversation message roles"""
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"
    SYSTEM = "system"


class ToolCallStatus(str, Enum):
    """Tool call lifecycle"""
    PENDING = "pending"
    APPROVED = "approved"
    EXECUTED = "executed"
    REJECTED = "rejected"
    RESPONDED = "responded"


def new_call_id() -> str:
    return f"call_{uuid4().hex[:16]}"


class ToolCall(BaseModel):
    """A tool invocation requested by the model"""
    call_id: str = Field(default_factory=new_call_id, description="Unique per loop invocation")
    tool_name: str = Field(description="Name of the tool to invoke")
    arguments: Dict[str, Any] = Field(default_factory=dict)
    status: ToolCallStatus = Field(default=ToolCallStatus.PENDING)
    parse_error: Optional[str] = Field(None, description="Set when the model's arguments could not be decoded")


class Message(BaseModel):
    """Single entry of the conversation history"""
    role: MessageRole
    content: str = ""
    tool_call_id: Optional[str] = Field(None, description="Call answered by a tool message")
    tool_calls: List[ToolCall] = Field(default_factory=list, description="Calls requested by an assistant message")
    name: Optional[str] = Field(None, description="Tool name for tool messages")
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def user(cls, content: str, **metadata: Any) -> "Message":
        return cls(role=MessageRole.USER, content=content, metadata=metadata)

    @classmethod
    def assistant(cls, content: str = "", tool_calls: Optional[List[ToolCall]] = None) -> "Message":
        return cls(role=MessageRole.ASSISTANT, content=content, tool_calls=tool_calls or [])

    @classmethod
    def system(cls, content: str, **metadata: Any) -> "Message":
        return cls(role=MessageRole.SYSTEM, content=content, metadata=metadata)

    @classmethod
    def tool(cls, call_id: Optional[str], content: str, name: Optional[str] = None, **metadata: Any) -> "Message":
        return cls(role=MessageRole.TOOL, content=content, tool_call_id=call_id, name=name, metadata=metadata)


class Summary(BaseModel):
    """Compacted representation of earlier history"""
    content: str
    compacted_messages: int = Field(0, description="Number of messages folded into the summary")
    created_at: datetime = Field(default_factory=utcnow)


class ResumptionToken(BaseModel):
    """Exact loop position at which an interrupted run continues"""
    iteration: int = Field(description="Iterations already consumed by the interrupted run")
    call_id: str = Field(description="Call the run stopped at")
    pending_call_ids: List[str] = Field(default_factory=list, description="Unexecuted calls of the batch, in order")


class DelegatedResume(BaseModel):
    """Resolution to forward into a sub-agent when its delegation call is re-dispatched"""
    delegation: Delegation
    resolution: Resolution


class ConversationState(BaseModel):
    """Complete persisted state of one conversation thread"""
    thread_id: str
    version: int = Field(0, description="Incremented on every checkpoint save")
    status: LoopStatus = Field(default=LoopStatus.AWAITING_INPUT)
    messages: List[Message] = Field(default_factory=list)
    pending_interrupts: Dict[str, Interrupt] = Field(default_factory=dict)
    summary: Optional[Summary] = None
    resumption: Optional[ResumptionToken] = None
    delegated_resumes: Dict[str, DelegatedResume] = Field(default_factory=dict)
    error_log: List[Dict[str, Any]] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def append_message(self, message: Message):
        """Append a message to the history"""
        self.messages.append(message)
        self.updated_at = utcnow()

    def update_status(self, status: LoopStatus):
        """Update loop status"""
        self.status = status
        self.updated_at = utcnow()

    def has_pending_interrupts(self) -> bool:
        return bool(self.pending_interrupts)

    def first_interrupt(self) -> Optional[Interrupt]:
        """Oldest unresolved interrupt"""
        for interrupt in self.pending_interrupts.values():
            return interrupt
        return None

    def find_tool_call(self, call_id: str) -> Optional[ToolCall]:
        """Find a requested tool call by id, newest first"""
        for message in reversed(self.messages):
            for call in message.tool_calls:
                if call.call_id == call_id:
                    return call
        return None

    def log_error(self, error: AgentError, context: Optional[Dict[str, Any]] = None):
        """Log an error"""
        self.error_log.append({
            "timestamp": utcnow().isoformat(),
            "error": error.to_dict(),
            "context": context or {}
        })

    @property
    def last_error(self) -> Optional[Dict[str, Any]]:
        return self.error_log[-1] if self.error_log else None

    def last_assistant_message(self) -> Optional[Message]:
        for message in reversed(self.messages):
            if message.role == MessageRole.ASSISTANT:
                return message
        return None

    def get_state_summary(self) -> Dict[str, Any]:
        """Get a summary of the current state"""
        return {
            "thread_id": self.thread_id,
            "version": self.version,
            "status": self.status.value,
            "messages": len(self.messages),
            "pending_interrupts": list(self.pending_interrupts),
            "has_summary": self.summary is not None,
            "errors": len(self.error_log),
            "updated_at": self.updated_at.isoformat()
        }


class AgentResponse(BaseModel):
    """Terminal outcome of a loop run"""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    thread_id: str
    status: LoopStatus
    message: Optional[Message] = None
    error: Optional[AgentError] = None
    iterations: int = 0

    @property
    def content(self) -> str:
        return self.message.content if self.message else ""

    @property
    def is_completed(self) -> bool:
        return self.status == LoopStatus.COMPLETED

    @property
    def is_failed(self) -> bool:
        return self.status == LoopStatus.FAILED

    def raise_for_error(self) -> "AgentResponse":
        """Raise the carried error, if any"""
        if self.error is not None:
            raise self.error
        return self


class InterruptedSignal(BaseModel):
    """Loop suspended waiting for a human resolution"""
    thread_id: str
    interrupt: Interrupt
    iterations: int = 0
    status: Literal[LoopStatus.INTERRUPTED] = LoopStatus.INTERRUPTED
