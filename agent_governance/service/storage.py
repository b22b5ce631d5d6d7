"""
Persistence adapters for agents and policy versions.

The relational persistence layer lives outside the governance core; these
interfaces describe what the core needs from it. The in-memory adapters copy
models on every read and write so stored state cannot change by aliasing.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple

from .models import Agent, PolicyDocument, PolicySnapshot


class AgentStore(ABC):
    """Storage for agent aggregates."""

    @abstractmethod
    async def load_agent(self, agent_id: str) -> Optional[Agent]:
        """Return the stored agent or None."""

    @abstractmethod
    async def save_agent(self, agent: Agent) -> None:
        """Insert or replace an agent."""

    @abstractmethod
    async def delete_agent(self, agent_id: str) -> bool:
        """Delete an agent, returning whether it existed."""

    @abstractmethod
    async def list_agents(self) -> List[Agent]:
        """Return every stored agent."""


class PolicyStore(ABC):
    """Storage for policy document versions."""

    @abstractmethod
    async def load_active_policy(self) -> Optional[PolicyDocument]:
        """Return the most recently saved policy document, if any."""

    @abstractmethod
    async def save_policy_version(
        self, document: PolicyDocument, snapshot: PolicySnapshot
    ) -> None:
        """Record a policy version as the active one."""

    @abstractmethod
    async def list_policy_versions(self) -> List[PolicySnapshot]:
        """Return saved versions, oldest first."""


class InMemoryAgentStore(AgentStore):
    """Agent store backed by a dict (for testing/development)."""

    def __init__(self) -> None:
        self._agents: Dict[str, Agent] = {}

    async def load_agent(self, agent_id: str) -> Optional[Agent]:
        agent = self._agents.get(agent_id)
        return agent.model_copy(deep=True) if agent else None

    async def save_agent(self, agent: Agent) -> None:
        self._agents[agent.id] = agent.model_copy(deep=True)

    async def delete_agent(self, agent_id: str) -> bool:
        return self._agents.pop(agent_id, None) is not None

    async def list_agents(self) -> List[Agent]:
        return [agent.model_copy(deep=True) for agent in self._agents.values()]


class InMemoryPolicyStore(PolicyStore):
    """Policy store backed by a list (for testing/development)."""

    def __init__(self) -> None:
        self._versions: List[Tuple[PolicyDocument, PolicySnapshot]] = []

    async def load_active_policy(self) -> Optional[PolicyDocument]:
        if not self._versions:
            return None
        return self._versions[-1][0].model_copy(deep=True)

    async def save_policy_version(
        self, document: PolicyDocument, snapshot: PolicySnapshot
    ) -> None:
        self._versions.append((document.model_copy(deep=True), snapshot))

    async def list_policy_versions(self) -> List[PolicySnapshot]:
        return [snapshot for _, snapshot in self._versions]
