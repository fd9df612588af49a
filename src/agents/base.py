"""Base AgentHandler class - foundation for all agents."""

import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, Field


class AgentRequest(BaseModel):
    """Input handed to an agent by an AGENT step."""

    user_prompt: str
    system_prompt: Optional[str] = None
    max_tokens: int = 1024
    model: Optional[str] = None
    temperature: Optional[float] = None
    context: Dict[str, Any] = Field(default_factory=dict)


class AgentUsage(BaseModel):
    """Token usage reported by an agent."""

    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class AgentResponse(BaseModel):
    """Result of an agent invocation."""

    completion: Any
    usage: AgentUsage = Field(default_factory=AgentUsage)


class AgentTrace(BaseModel):
    """Trace of an agent invocation."""

    agent_id: str
    execution_id: str
    request: Dict[str, Any]
    response: Optional[Dict[str, Any]] = None
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    error: Optional[str] = None


class AgentHandler(ABC):
    """
    Base class for all agents.

    An agent receives a prompt plus the assembled step context and returns
    a completion. Agents are registered in an AgentRegistry and looked up by
    ``name`` from an AGENT step's ``agent_id``.

    Example:
        class Summarizer(AgentHandler):
            name = "summarizer"
            version = "1.0.0"
            description = "Summarise research notes"

            async def complete(self, request: AgentRequest) -> AgentResponse:
                text = request.context["input"]["notes"]
                return AgentResponse(completion={"summary": text[:200]})
    """

    name: str = "base_agent"
    version: str = "0.0.0"
    description: str = ""

    def __init__(self) -> None:
        self._trace: Optional[AgentTrace] = None

    @abstractmethod
    async def complete(self, request: AgentRequest) -> AgentResponse:
        """
        Produce a completion for ``request``.

        Args:
            request: Prompt, limits and context for this invocation

        Returns:
            AgentResponse with the completion and token usage
        """
        pass

    async def run(self, request: AgentRequest) -> Tuple[AgentResponse, AgentTrace]:
        """
        Run the agent with tracing.

        Args:
            request: Prompt, limits and context for this invocation

        Returns:
            Tuple of (response, trace)
        """
        started_at = datetime.now(timezone.utc)
        self._trace = AgentTrace(
            agent_id=self.name,
            execution_id=str(uuid.uuid4()),
            request=request.model_dump(exclude={"context"}),
            started_at=started_at,
        )

        try:
            response = await self.complete(request)
        except Exception as e:
            self._trace.error = str(e)
            self._trace.completed_at = datetime.now(timezone.utc)
            raise

        completed_at = datetime.now(timezone.utc)
        self._trace.response = response.model_dump()
        self._trace.completed_at = completed_at
        self._trace.duration_ms = int(
            (completed_at - started_at).total_seconds() * 1000
        )
        return response, self._trace

    def get_trace(self) -> Optional[AgentTrace]:
        """Get the trace from the last invocation."""
        return self._trace

    def __repr__(self) -> str:
        return (
            f"<{self.__class__.__name__} name='{self.name}' version='{self.version}'>"
        )
