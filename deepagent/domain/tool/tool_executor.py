from typing import Any, Dict, Optional
import asyncio
import json
import time

import structlog
from pydantic import BaseModel, Field

from deepagent.domain.models.agent_state import Message, ToolCall
from deepagent.domain.models.errors import (
    AgentError, FatalError, InterruptError, RecoverableError,
    SchemaValidationError, ToolExecutionError, ToolNotFoundError, ToolTimeoutError
)
from deepagent.domain.tool.tool_registry import ToolContext, ToolRegistry
from deepagent.domain.tool.tool_validator import ToolParameterValidator

logger = structlog.get_logger(__name__)


def _json_default(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    return str(value)


class ToolResult(BaseModel):
    """Normalized outcome of one tool call"""
    call_id: str
    tool_name: str
    ok: bool
    value: Any = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    duration_ms: float = 0.0
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def success(cls, call: ToolCall, value: Any, duration_ms: float = 0.0) -> "ToolResult":
        return cls(call_id=call.call_id, tool_name=call.tool_name, ok=True, value=value, duration_ms=duration_ms)

    @classmethod
    def failure(cls, call: ToolCall, error: AgentError, duration_ms: float = 0.0) -> "ToolResult":
        return cls(
            call_id=call.call_id,
            tool_name=call.tool_name,
            ok=False,
            error=error.message,
            error_type=type(error).__name__,
            duration_ms=duration_ms
        )

    @property
    def content(self) -> str:
        """Text placed in the tool message"""

        if not self.ok:
            return f"Error: {self.error}"
        if isinstance(self.value, str):
            return self.value
        if self.value is None:
            return ""
        return json.dumps(self.value, default=_json_default)

    def to_message(self) -> Message:
        metadata = dict(self.metadata)
        metadata["status"] = "ok" if self.ok else "error"
        if self.error_type:
            metadata["error_type"] = self.error_type
        return Message.tool(self.call_id, self.content, name=self.tool_name, **metadata)


class ToolDispatcher:
    """Validates and executes tool calls with a per-call timeout"""

    def __init__(
        self,
        registry: ToolRegistry,
        default_timeout: Optional[float] = 30.0,
        validator: Optional[ToolParameterValidator] = None
    ):
        self.registry = registry
        self.default_timeout = default_timeout
        self.validator = validator or ToolParameterValidator()

    def timeout_for(self, tool_name: str) -> Optional[float]:
        item = self.registry.get_tool(tool_name)
        if item is not None and item.timeout is not None:
            return item.timeout
        return self.default_timeout

    async def execute(self, call: ToolCall, context: ToolContext) -> ToolResult:
        """Execute a tool call.

        Unknown tools, handler failures and timeouts come back as failed
        results. Schema violations raise SchemaValidationError.
        """

        item = self.registry.get_tool(call.tool_name)
        if item is None:
            logger.warning("Unknown tool requested", tool_name=call.tool_name, call_id=call.call_id)
            return ToolResult.failure(call, ToolNotFoundError(call.tool_name, self.registry.names()))

        validation = self.validator.validate_tool_call(item, call.arguments)
        if not validation.is_valid:
            raise SchemaValidationError(call.tool_name, validation.errors)

        timeout = self.timeout_for(call.tool_name)
        start = time.perf_counter()

        try:
            handler = item.handle(dict(call.arguments), context)
            if timeout is not None:
                value = await asyncio.wait_for(handler, timeout=timeout)
            else:
                value = await handler

        except asyncio.TimeoutError:
            logger.warning("Tool timed out", tool_name=call.tool_name, call_id=call.call_id, timeout=timeout)
            return ToolResult.failure(call, ToolTimeoutError(call.tool_name, timeout), self._elapsed(start))

        except (FatalError, InterruptError):
            raise

        except RecoverableError as e:
            logger.info("Tool reported failure", tool_name=call.tool_name, call_id=call.call_id, error=e.message)
            return ToolResult.failure(call, e, self._elapsed(start))

        except Exception as e:
            logger.warning(
                "Tool handler raised",
                tool_name=call.tool_name,
                call_id=call.call_id,
                error=str(e),
                error_type=type(e).__name__
            )
            error = ToolExecutionError(str(e) or type(e).__name__, tool_name=call.tool_name)
            return ToolResult.failure(call, error, self._elapsed(start))

        return ToolResult.success(call, value, self._elapsed(start))

    @staticmethod
    def _elapsed(start: float) -> float:
        return round((time.perf_counter() - start) * 1000, 3)
