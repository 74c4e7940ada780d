from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union
import asyncio
import inspect

from pydantic import BaseModel, ConfigDict, Field

from deepagent.domain.llm.language_model import ToolSchema
from deepagent.domain.models.agent_state import ConversationState, DelegatedResume
from deepagent.domain.models.errors import ConfigurationError


class ToolContext(BaseModel):
    """Runtime information handed to a tool handler"""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    thread_id: str
    call_id: str
    agent_name: str = "agent"
    state: Optional[ConversationState] = Field(None, description="Live state of the calling loop, read-only by convention")
    delegation_depth: int = 0
    resume: Optional[DelegatedResume] = Field(None, description="Resolution forwarded into a delegated sub-agent")
    events: Optional[Any] = Field(None, description="EventDispatcher of the calling loop")
    run_id: Optional[str] = None


class Tool(ABC):
    """Base class for tools exposed to the model"""

    name: str = ""
    description: str = ""
    parameters: Dict[str, Any] = {"type": "object", "properties": {}}
    timeout: Optional[float] = None

    @abstractmethod
    async def handle(self, arguments: Dict[str, Any], context: ToolContext) -> Any:
        """Run the tool; raise to report failure"""
        pass

    def schema(self) -> ToolSchema:
        return ToolSchema(name=self.name, description=self.description, parameters=self.parameters)


class FunctionTool(Tool):
    """Tool backed by a plain sync or async callable"""

    def __init__(
        self,
        func: Callable[..., Union[Any, Awaitable[Any]]],
        name: Optional[str] = None,
        description: Optional[str] = None,
        parameters: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
        pass_context: bool = False
    ):
        self.func = func
        self.name = name or func.__name__
        self.description = description or inspect.getdoc(func) or ""
        self.parameters = parameters or {"type": "object", "properties": {}}
        self.timeout = timeout
        self.pass_context = pass_context

    async def handle(self, arguments: Dict[str, Any], context: ToolContext) -> Any:
        kwargs = dict(arguments)
        if self.pass_context:
            kwargs["context"] = context

        if inspect.iscoroutinefunction(self.func):
            return await self.func(**kwargs)

        # Sync handlers run in a worker thread
        return await asyncio.to_thread(self.func, **kwargs)

    def __repr__(self) -> str:
        return f"FunctionTool(name={self.name!r})"


def tool(
    name: Optional[str] = None,
    description: Optional[str] = None,
    parameters: Optional[Dict[str, Any]] = None,
    timeout: Optional[float] = None,
    pass_context: bool = False
) -> Callable[[Callable[..., Any]], FunctionTool]:
    """Decorator turning a function into a FunctionTool"""

    def decorator(func: Callable[..., Any]) -> FunctionTool:
        return FunctionTool(
            func,
            name=name,
            description=description,
            parameters=parameters,
            timeout=timeout,
            pass_context=pass_context
        )

    return decorator


class ToolRegistry:
    """Registry for managing available tools"""

    def __init__(self, tools: Optional[List[Tool]] = None):
        self.tools: Dict[str, Tool] = {}
        for item in tools or []:
            self.register_tool(item)

    def register_tool(self, item: Tool):
        """Register a new tool"""

        if not item.name:
            raise ConfigurationError("Tool name must not be empty")
        if item.name in self.tools:
            raise ConfigurationError(f"Duplicate tool name '{item.name}'", tool_name=item.name)

        self.tools[item.name] = item

    def get_tool(self, name: str) -> Optional[Tool]:
        """Get a specific tool"""

        return self.tools.get(name)

    def names(self) -> List[str]:
        return list(self.tools)

    def schemas(self) -> List[ToolSchema]:
        """Schemas of all registered tools, in registration order"""

        return [item.schema() for item in self.tools.values()]

    def search_tools(self, query: str) -> List[Tool]:
        """Search tools by name or description"""

        query_lower = query.lower()
        return [
            item for item in self.tools.values()
            if query_lower in item.name.lower() or query_lower in item.description.lower()
        ]

    def __contains__(self, name: str) -> bool:
        return name in self.tools

    def __len__(self) -> int:
        return len(self.tools)
