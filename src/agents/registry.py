"""Agent Registry - registration and lookup of agent handlers."""

from typing import Dict, List, Optional

from ..playbooks.errors import AgentNotFoundError
from .base import AgentHandler


class AgentRegistry:
    """
    Registry of agent handler instances.

    A registry is constructed by the host and injected into the step
    dispatcher, so tests can register doubles without touching global state.

    Example:
        registry = AgentRegistry()
        registry.register(Summarizer())

        handler = registry.lookup("summarizer")
        response = await handler.complete(request)
    """

    def __init__(self) -> None:
        self._agents: Dict[str, AgentHandler] = {}

    def register(self, agent: AgentHandler, name: Optional[str] = None) -> AgentHandler:
        """
        Register an agent instance.

        Args:
            agent: The handler to register
            name: Registry key, defaults to ``agent.name``

        Raises:
            TypeError: If ``agent`` is not an AgentHandler
            ValueError: If the name is already taken
        """
        if not isinstance(agent, AgentHandler):
            raise TypeError(f"{agent!r} must be an AgentHandler instance")

        key = name or agent.name
        if key in self._agents:
            raise ValueError(f"Agent '{key}' is already registered")

        self._agents[key] = agent
        return agent

    def get(self, agent_id: str) -> Optional[AgentHandler]:
        """Get an agent by id."""
        return self._agents.get(agent_id)

    def lookup(self, agent_id: str, step_key: Optional[str] = None) -> AgentHandler:
        """Get an agent by id, raising AgentNotFoundError if missing."""
        agent = self.get(agent_id)
        if agent is None:
            raise AgentNotFoundError(agent_id, self.list_agents(), step_key=step_key)
        return agent

    def list_agents(self) -> List[str]:
        """List all registered agent ids."""
        return list(self._agents.keys())

    def unregister(self, agent_id: str) -> bool:
        return self._agents.pop(agent_id, None) is not None

    def __contains__(self, agent_id: str) -> bool:
        return agent_id in self._agents

    def __len__(self) -> int:
        return len(self._agents)
