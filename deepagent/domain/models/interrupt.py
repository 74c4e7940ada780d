from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class HitlPolicy(BaseModel):
    """Approval policy for a single tool"""
    model_config = ConfigDict(frozen=True)

    allow_auto: bool = Field(False, description="Execute without human approval")
    note: Optional[str] = Field(None, description="Shown to the reviewer and the model")


class Delegation(BaseModel):
    """Location of an interrupt raised inside a delegated sub-agent"""
    agent_name: str = Field(description="Sub-agent that raised the interrupt")
    thread_id: str = Field(description="Thread holding the sub-agent's conversation")
    call_id: str = Field(description="Call id of the interrupted call inside the sub-agent")


class Interrupt(BaseModel):
    """Durable request for human resolution of one pending tool call"""
    call_id: str = Field(description="Tool call awaiting resolution")
    tool_name: str
    arguments: Dict[str, Any] = Field(default_factory=dict, description="Arguments snapshot at interrupt time")
    policy_note: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    delegation: Optional[Delegation] = Field(None, description="Set when the interrupt was propagated from a sub-agent")
    agent_path: List[str] = Field(default_factory=list, description="Sub-agent names from the top-level agent down")

    @property
    def args(self) -> Dict[str, Any]:
        return self.arguments

    @property
    def is_delegated(self) -> bool:
        return self.delegation is not None


class Accept(BaseModel):
    """Run the tool with the original arguments"""
    model_config = ConfigDict(frozen=True)

    action: Literal["accept"] = "accept"


class Edit(BaseModel):
    """Run the tool with replacement arguments"""
    model_config = ConfigDict(frozen=True)

    action: Literal["edit"] = "edit"
    arguments: Dict[str, Any]


class Reject(BaseModel):
    """Do not run the tool; report the rejection to the model"""
    model_config = ConfigDict(frozen=True)

    action: Literal["reject"] = "reject"
    reason: Optional[str] = None


class Respond(BaseModel):
    """Do not run the tool; use the given message as its result"""
    model_config = ConfigDict(frozen=True)

    action: Literal["respond"] = "respond"
    message: str


Resolution = Annotated[Union[Accept, Edit, Reject, Respond], Field(discriminator="action")]

_resolution_adapter: TypeAdapter = TypeAdapter(Resolution)


def parse_resolution(data: Union[Dict[str, Any], str]) -> Resolution:
    """Parse a resolution from a dict or JSON string"""

    if isinstance(data, str):
        return _resolution_adapter.validate_json(data)
    return _resolution_adapter.validate_python(data)
