"""Pydantic models for playbook structure validation."""

from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class DefinitionModel(BaseModel):
    """Base for definition models; accepts snake_case or camelCase keys."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )


class StepType(str, Enum):
    """Type of step in a playbook."""

    AGENT = "AGENT"
    DATA = "DATA"
    BRANCH = "BRANCH"
    API = "API"


class BranchOperator(str, Enum):
    """Comparison applied by a branch condition."""

    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    EXISTS = "exists"


class DataOperation(str, Enum):
    """Transform applied by a DATA step."""

    PLUCK = "pluck"
    MAP = "map"
    MERGE = "merge"
    FILTER = "filter"
    PASSTHROUGH = "passthrough"


class RetryPolicy(DefinitionModel):
    """How many times a step may be attempted and how long to wait in between."""

    max_attempts: int = Field(default=1, ge=1, description="Total attempts, including the first")
    backoff_ms: int = Field(default=0, ge=0, description="Base delay before the second attempt")

    def delay_seconds(self, attempt: int) -> float:
        """Delay before the attempt following ``attempt`` (exponential backoff)."""
        return self.backoff_ms * (2 ** (attempt - 1)) / 1000.0


class AgentStepConfig(DefinitionModel):
    """Configuration for an AGENT step."""

    agent_id: str = Field(..., min_length=1)
    prompt: Optional[str] = Field(None, description="User prompt template")
    system_prompt: Optional[str] = None
    model: Optional[str] = None
    temperature: Optional[float] = Field(None, ge=0, le=2)
    max_tokens: int = Field(default=1024, gt=0)
    memory_query: Optional[str] = Field(
        None, description="Query template used to retrieve memory items"
    )


class DataStepConfig(DefinitionModel):
    """Configuration for a DATA step."""

    operation: DataOperation
    source_key: Optional[str] = Field(
        None, description="Step whose output is transformed (defaults to the step input)"
    )
    fields: List[str] = Field(default_factory=list, description="Fields for pluck")
    mapping: Dict[str, str] = Field(
        default_factory=dict, description="New field -> source field, for map"
    )
    where: Dict[str, Any] = Field(
        default_factory=dict, description="Field equality filter, for filter"
    )


class ApiStepConfig(DefinitionModel):
    """Configuration for an API step."""

    method: Literal["GET", "POST", "PUT", "PATCH", "DELETE"] = "GET"
    url: str = Field(..., min_length=1)
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Optional[Any] = None
    timeout_ms: int = Field(default=30000, gt=0)

    @field_validator("method", mode="before")
    @classmethod
    def upper_method(cls, v: Any) -> Any:
        """Accept lower-case HTTP methods."""
        return v.upper() if isinstance(v, str) else v


class ConditionRule(DefinitionModel):
    """A single rule of a branch condition."""

    operator: BranchOperator
    value: Optional[Any] = None
    target_key: str = Field(..., min_length=1)


class BranchCondition(DefinitionModel):
    """Ordered rules evaluated against a referenced prior output."""

    source: str = Field(
        ..., description="Reference to evaluate, e.g. 'classify.output.sentiment'"
    )
    conditions: List[ConditionRule] = Field(default_factory=list)
    default_key: Optional[str] = None

    @field_validator("source", mode="before")
    @classmethod
    def strip_braces(cls, v: Any) -> Any:
        """Allow the source to be written as a template, e.g. '{{a.output.b}}'."""
        if isinstance(v, str):
            v = v.strip()
            if v.startswith("{{") and v.endswith("}}"):
                v = v[2:-2].strip()
        return v

    @property
    def target_keys(self) -> List[str]:
        """All candidate targets in declaration order, default last, without duplicates."""
        keys: List[str] = []
        for rule in self.conditions:
            if rule.target_key not in keys:
                keys.append(rule.target_key)
        if self.default_key and self.default_key not in keys:
            keys.append(self.default_key)
        return keys


class BaseStep(DefinitionModel):
    """Fields shared by every step variant."""

    key: str = Field(..., min_length=1, description="Unique key of this step")
    name: Optional[str] = Field(None, description="Human-readable name")
    depends_on: List[str] = Field(default_factory=list)
    retry_policy: Optional[RetryPolicy] = None
    input: Dict[str, Any] = Field(
        default_factory=dict, description="Input template for the step"
    )
    output_var: Optional[str] = Field(
        None, description="Shared-state variable that receives the step output"
    )

    @property
    def label(self) -> str:
        return self.name or self.key


class AgentStep(BaseStep):
    """A step that invokes an AI agent."""

    type: Literal["AGENT"] = "AGENT"
    config: AgentStepConfig


class DataStep(BaseStep):
    """An in-process data transformation step."""

    type: Literal["DATA"] = "DATA"
    config: DataStepConfig


class BranchStep(BaseStep):
    """A step that selects one of several downstream steps at run time."""

    type: Literal["BRANCH"] = "BRANCH"
    condition: BranchCondition


class ApiStep(BaseStep):
    """A step that calls an external HTTP API."""

    type: Literal["API"] = "API"
    config: ApiStepConfig


# Union type for all step types
Step = Annotated[
    Union[AgentStep, DataStep, BranchStep, ApiStep], Field(discriminator="type")
]


class PlaybookDefinition(DefinitionModel):
    """
    A complete playbook definition.

    A playbook is a DAG of uniquely keyed steps. Structural rules (unique
    keys, valid edges, one entry point, no cycles) are checked by the
    GraphValidator rather than at construction time, so that every problem
    can be reported at once.
    """

    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    version: int = Field(default=1, ge=1)
    description: Optional[str] = None
    variables: Dict[str, Any] = Field(
        default_factory=dict, description="Initial shared state for every run"
    )
    sink_key: Optional[str] = Field(
        None, description="Step whose output becomes the run output"
    )
    steps: List[Step] = Field(default_factory=list)

    def get_step(self, key: str) -> Optional[BaseStep]:
        """Return the first step declared with ``key``."""
        for step in self.steps:
            if step.key == key:
                return step
        return None

    @property
    def step_keys(self) -> List[str]:
        return [step.key for step in self.steps]

    def __repr__(self) -> str:
        return f"<PlaybookDefinition name='{self.name}' version={self.version} steps={len(self.steps)}>"
