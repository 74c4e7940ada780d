from typing import Any, AsyncIterator, Dict, List, Optional, Union

import structlog
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import (
    AIMessage, AIMessageChunk, BaseMessage, HumanMessage, SystemMessage, ToolMessage
)

from deepagent.domain.llm.language_model import (
    LanguageModel, ModelRequest, ModelResponse, StreamChunk, TokenUsage, ToolSchema
)
from deepagent.domain.models.agent_state import Message, MessageRole, ToolCall, new_call_id

logger = structlog.get_logger(__name__)


def tool_schema_to_openai(schema: ToolSchema) -> Dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": schema.name,
            "description": schema.description,
            "parameters": schema.parameters
        }
    }


def content_text(content: Union[str, List[Any]]) -> str:
    """Flatten string or content-block message content into text"""

    if isinstance(content, str):
        return content
    parts = []
    for block in content:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
    return "".join(parts)


def to_langchain_messages(request: ModelRequest) -> List[BaseMessage]:
    """Convert a model request into LangChain messages"""

    lc_messages: List[BaseMessage] = []
    if request.system_prompt and request.cache_control:
        lc_messages.append(SystemMessage(content=[
            {"type": "text", "text": request.system_prompt, "cache_control": request.cache_control}
        ]))
    elif request.system_prompt:
        lc_messages.append(SystemMessage(content=request.system_prompt))

    for message in request.messages:
        lc_messages.append(to_langchain_message(message))

    return lc_messages


def to_langchain_message(message: Message) -> BaseMessage:
    if message.role == MessageRole.SYSTEM:
        cache_control = message.metadata.get("cache_control")
        if cache_control:
            return SystemMessage(content=[{"type": "text", "text": message.content, "cache_control": cache_control}])
        return SystemMessage(content=message.content)

    if message.role == MessageRole.USER:
        return HumanMessage(content=message.content)

    if message.role == MessageRole.ASSISTANT:
        return AIMessage(
            content=message.content,
            tool_calls=[
                {"name": call.tool_name, "args": call.arguments, "id": call.call_id, "type": "tool_call"}
                for call in message.tool_calls
            ]
        )

    if message.tool_call_id is None:
        # Middleware annotations are not answers to a tool call
        return SystemMessage(content=message.content)

    return ToolMessage(
        content=message.content,
        tool_call_id=message.tool_call_id,
        name=message.name,
        status="error" if message.metadata.get("status") == "error" else "success"
    )


def from_ai_message(message: AIMessage) -> ModelResponse:
    """Convert a LangChain AI message into a model response"""

    calls = [
        ToolCall(call_id=call.get("id") or new_call_id(), tool_name=call["name"], arguments=call.get("args") or {})
        for call in message.tool_calls
    ]
    for invalid in getattr(message, "invalid_tool_calls", None) or []:
        calls.append(ToolCall(
            call_id=invalid.get("id") or new_call_id(),
            tool_name=invalid.get("name") or "unknown",
            arguments={},
            parse_error=invalid.get("error") or f"invalid arguments: {invalid.get('args')}"
        ))

    usage = None
    metadata = getattr(message, "usage_metadata", None)
    if metadata:
        details = metadata.get("input_token_details") or {}
        usage = TokenUsage(
            input_tokens=metadata.get("input_tokens", 0),
            output_tokens=metadata.get("output_tokens", 0),
            cache_read_tokens=details.get("cache_read", 0) or 0,
            cache_creation_tokens=details.get("cache_creation", 0) or 0
        )

    return ModelResponse(text=content_text(message.content), tool_calls=calls, usage=usage)


class LangChainLanguageModel(LanguageModel):
    """Adapter running requests through a LangChain chat model"""

    def __init__(self, chat_model: BaseChatModel, tool_choice: Optional[str] = None):
        self.chat_model = chat_model
        self.tool_choice = tool_choice

    def _runnable(self, request: ModelRequest):
        runnable = self.chat_model
        if request.tools:
            kwargs = {"tool_choice": self.tool_choice} if self.tool_choice else {}
            runnable = runnable.bind_tools([tool_schema_to_openai(schema) for schema in request.tools], **kwargs)

        params: Dict[str, Any] = dict(request.config.extra)
        if request.config.temperature is not None:
            params["temperature"] = request.config.temperature
        if request.config.max_tokens is not None:
            params["max_tokens"] = request.config.max_tokens
        if params:
            runnable = runnable.bind(**params)
        return runnable

    async def send(self, request: ModelRequest) -> ModelResponse:
        messages = to_langchain_messages(request)
        result = await self._runnable(request).ainvoke(messages)
        response = from_ai_message(result)

        logger.debug(
            "Model responded",
            tool_calls=len(response.tool_calls),
            text_length=len(response.text)
        )
        return response

    async def stream(self, request: ModelRequest) -> AsyncIterator[StreamChunk]:
        messages = to_langchain_messages(request)
        full: Optional[AIMessageChunk] = None

        try:
            async for chunk in self._runnable(request).astream(messages):
                full = chunk if full is None else full + chunk
                text = content_text(chunk.content)
                if text:
                    yield StreamChunk(kind="text_delta", text=text)
        except Exception as e:
            logger.error("Model stream failed", error=str(e))
            yield StreamChunk(kind="error", error=str(e))
            return

        response = from_ai_message(full) if full is not None else ModelResponse()
        yield StreamChunk(kind="done", response=response)
