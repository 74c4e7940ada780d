from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, model_validator

from deepagent.domain.llm.language_model import LanguageModel, ModelConfig
from deepagent.domain.middleware.base import AgentMiddleware
from deepagent.domain.models.interrupt import HitlPolicy
from deepagent.domain.orchestration.core.prompts import DEFAULT_SUMMARY_NOTE
from deepagent.domain.tool.tool_registry import Tool


class SummarizationConfig(BaseModel):
    """History compaction applied to model requests"""
    model_config = ConfigDict(frozen=True)

    messages_to_keep: int = Field(20, ge=1)
    summary_note: str = DEFAULT_SUMMARY_NOTE


class SubAgentConfig(BaseModel):
    """Specialized agent reachable through the task tool"""
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: str
    description: str
    instructions: str = ""
    tools: List[Tool] = Field(default_factory=list)
    model: Optional[LanguageModel] = Field(None, description="Overrides the parent's model")
    max_iterations: Optional[int] = Field(None, ge=1, description="Defaults to the parent's bound")
    tool_policies: Dict[str, HitlPolicy] = Field(default_factory=dict, description="Merged over the parent's policies")
    subagents: List["SubAgentConfig"] = Field(default_factory=list)


class AgentConfig(BaseModel):
    """Immutable configuration of one agent"""
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: str = "agent"
    instructions: str = ""
    tools: List[Tool] = Field(default_factory=list)
    subagents: List[SubAgentConfig] = Field(default_factory=list)
    tool_policies: Dict[str, HitlPolicy] = Field(default_factory=dict)
    max_iterations: int = Field(10, ge=1)
    tool_timeout_seconds: Optional[float] = Field(30.0, gt=0, description="None disables the per-call timeout")
    subagent_timeout_seconds: Optional[float] = Field(600.0, gt=0)
    max_delegation_depth: int = Field(3, ge=0)
    summarization: Optional[SummarizationConfig] = None
    enable_prompt_caching: bool = False
    prompt_cache_ttl: str = "5m"
    planning_tools: List[Tool] = Field(default_factory=list)
    filesystem_tools: List[Tool] = Field(default_factory=list)
    auto_general_purpose: bool = False
    middleware: List[AgentMiddleware] = Field(default_factory=list)
    track_token_usage: bool = False
    generation: ModelConfig = Field(default_factory=ModelConfig)

    @model_validator(mode="after")
    def _check_subagent_names(self) -> "AgentConfig":
        names = [sub.name for sub in self.subagents]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"Duplicate sub-agent names: {', '.join(duplicates)}")
        return self

    @classmethod
    def from_settings(cls, settings: Any, **overrides: Any) -> "AgentConfig":
        """Build a config from RuntimeSettings, with explicit overrides winning"""

        values = {
            "max_iterations": settings.max_iterations,
            "tool_timeout_seconds": settings.tool_timeout_seconds,
            "max_delegation_depth": settings.max_delegation_depth,
        }
        values.update(overrides)
        return cls(**values)

    def gated_tools(self) -> List[str]:
        return [name for name, policy in self.tool_policies.items() if not policy.allow_auto]


SubAgentConfig.model_rebuild()
