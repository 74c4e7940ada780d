from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, List, Literal, Optional
from pydantic import BaseModel, Field

from deepagent.domain.models.agent_state import Message, ToolCall


class ToolSchema(BaseModel):
    """Tool declaration sent to the model"""
    name: str
    description: str = ""
    parameters: Dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}})


class ModelConfig(BaseModel):
    """Generation settings passed through to the model adapter"""
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    extra: Dict[str, Any] = Field(default_factory=dict)


class ModelRequest(BaseModel):
    """Everything the model sees for one reasoning step"""
    system_prompt: str = ""
    messages: List[Message] = Field(default_factory=list)
    tools: List[ToolSchema] = Field(default_factory=list)
    config: ModelConfig = Field(default_factory=ModelConfig)
    cache_control: Optional[Dict[str, Any]] = Field(None, description="Marks the final system prompt as cacheable")

    def append_prompt(self, fragment: str):
        """Append a fragment to the system prompt"""

        if not fragment:
            return
        if self.system_prompt:
            self.system_prompt = f"{self.system_prompt}\n\n{fragment}"
        else:
            self.system_prompt = fragment

    def tool_names(self) -> List[str]:
        return [schema.name for schema in self.tools]


class TokenUsage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_creation_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            cache_read_tokens=self.cache_read_tokens + other.cache_read_tokens,
            cache_creation_tokens=self.cache_creation_tokens + other.cache_creation_tokens
        )


class ModelResponse(BaseModel):
    """Either final text or a batch of tool calls"""
    text: str = ""
    tool_calls: List[ToolCall] = Field(default_factory=list)
    usage: Optional[TokenUsage] = None

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)


class StreamChunk(BaseModel):
    """Incremental piece of a streamed model response"""
    kind: Literal["text_delta", "done", "error"]
    text: str = ""
    response: Optional[ModelResponse] = Field(None, description="Final response, set on the done chunk")
    error: Optional[str] = None


class LanguageModel(ABC):
    """Vendor-neutral model interface; adapters translate wire formats"""

    @abstractmethod
    async def send(self, request: ModelRequest) -> ModelResponse:
        """Send a request and return the complete response"""
        pass

    async def stream(self, request: ModelRequest) -> AsyncIterator[StreamChunk]:
        """Stream a response; the default sends once and yields a single done chunk"""

        response = await self.send(request)
        if response.text:
            yield StreamChunk(kind="text_delta", text=response.text)
        yield StreamChunk(kind="done", response=response)
