from typing import Any, Dict, List, Optional


class AgentError(Exception):
    """Base class for all runtime errors raised by the agent loop"""

    recoverable: bool = False

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the error for events and responses"""

        return {
            "type": type(self).__name__,
            "message": self.message,
            "recoverable": self.recoverable,
            "context": self.context,
        }


class RecoverableError(AgentError):
    """Error that is fed back to the model as a tool result"""

    recoverable = True


class FatalError(AgentError):
    """Error that terminates the loop and surfaces to the caller"""

    recoverable = False


class InterruptError(AgentError):
    """Error in interrupt bookkeeping"""


# Recoverable

class ToolExecutionError(RecoverableError):
    """Tool handler reported a failure"""


class ToolTimeoutError(RecoverableError):
    """Tool handler did not finish within its timeout"""

    def __init__(self, tool_name: str, timeout: float):
        super().__init__(
            f"Tool '{tool_name}' timed out after {timeout:g}s",
            tool_name=tool_name,
            timeout=timeout,
        )
        self.tool_name = tool_name
        self.timeout = timeout


class ToolNotFoundError(RecoverableError):
    """Model requested a tool that is not declared"""

    def __init__(self, tool_name: str, available: List[str]):
        super().__init__(
            f"Tool '{tool_name}' not found. Available tools: {', '.join(sorted(available)) or 'none'}",
            tool_name=tool_name,
            available=sorted(available),
        )
        self.tool_name = tool_name


class ToolArgumentsError(RecoverableError):
    """Tool arguments could not be decoded into a JSON object"""


class UnknownSubAgentError(RecoverableError):
    """Delegation requested a sub-agent that is not configured"""

    def __init__(self, name: str, available: List[str]):
        super().__init__(
            f"Sub-agent '{name}' not found. Available sub-agents: {', '.join(sorted(available)) or 'none'}",
            subagent=name,
            available=sorted(available),
        )
        self.name = name


class DelegationDepthExceeded(RecoverableError):
    """Nested delegation went deeper than the configured bound"""

    def __init__(self, depth: int, max_depth: int):
        super().__init__(
            f"Maximum delegation depth {max_depth} reached (current depth {depth})",
            depth=depth,
            max_depth=max_depth,
        )
        self.depth = depth
        self.max_depth = max_depth


# Fatal

class SchemaValidationError(FatalError):
    """Tool arguments violate the tool's declared parameter schema"""

    def __init__(self, tool_name: str, errors: List[str]):
        super().__init__(
            f"Arguments for tool '{tool_name}' failed schema validation: {'; '.join(errors)}",
            tool_name=tool_name,
            errors=errors,
        )
        self.tool_name = tool_name
        self.errors = errors


class MaxIterationsExceeded(FatalError):
    """Loop reached its iteration bound without a final answer"""

    def __init__(self, max_iterations: int, iterations: Optional[int] = None):
        iterations = max_iterations if iterations is None else iterations
        super().__init__(
            f"Maximum iterations ({max_iterations}) exceeded",
            max_iterations=max_iterations,
            iterations=iterations,
        )
        self.max_iterations = max_iterations
        self.iterations = iterations


class CheckpointerError(FatalError):
    """Checkpointer backend failed to save, load, delete or list"""


class ConfigurationError(FatalError):
    """Agent configuration is invalid"""


class MiddlewareError(FatalError):
    """Middleware stage raised an error outside the runtime taxonomy"""

    def __init__(self, stage: str, hook: str, error: BaseException):
        super().__init__(
            f"Middleware '{stage}' failed in {hook}: {error}",
            stage=stage,
            hook=hook,
        )
        self.stage = stage
        self.hook = hook


class LanguageModelError(FatalError):
    """Language model call failed"""


class LoopCancelled(FatalError):
    """Loop was cancelled at a safe point"""


# Interrupts

class NoSuchInterrupt(InterruptError):
    """No unresolved interrupt exists for the call id"""

    def __init__(self, call_id: Optional[str]):
        super().__init__(
            f"No pending interrupt for call_id '{call_id}'" if call_id else "No pending interrupts",
            call_id=call_id,
        )
        self.call_id = call_id


class DuplicateInterrupt(InterruptError):
    """An unresolved interrupt already exists for the call id"""

    def __init__(self, call_id: str):
        super().__init__(f"Interrupt already pending for call_id '{call_id}'", call_id=call_id)
        self.call_id = call_id


class InterruptPending(InterruptError):
    """A new message arrived while the thread waits for a resolution"""

    def __init__(self, thread_id: str, call_id: str):
        super().__init__(
            f"Thread '{thread_id}' has a pending interrupt for call_id '{call_id}'; resolve it first",
            thread_id=thread_id,
            call_id=call_id,
        )
        self.call_id = call_id
