"""
Thinker capability used by the agent task loop.

The thinker decides what an agent thinks and which tool, if any, it calls
next. Production deployments wrap an LLM client with ``CallableThinker``;
``ScriptedThinker`` replays fixed thoughts for tests and demos.
"""

from abc import ABC, abstractmethod
from typing import Awaitable, Callable, List, Optional, Sequence, Union

from .models import AgentSpec, Iteration, ToolAction


class Thinker(ABC):
    """Produces thoughts and tool actions for an agent task."""

    @abstractmethod
    async def next_thought(
        self, spec: AgentSpec, goal: str, history: List[Iteration]
    ) -> str:
        """Return the next thought. Errors abort the task."""

    async def select_action(
        self,
        spec: AgentSpec,
        goal: str,
        thought: str,
        history: List[Iteration],
    ) -> Optional[ToolAction]:
        """Return at most one tool action for the thought."""
        return None


class ScriptedThinker(Thinker):
    """
    Replays a fixed script of thoughts and actions.

    Entry ``i`` of ``actions`` is used for iteration ``i + 1``; a missing or
    ``None`` entry means no tool call. Once the thoughts run out, the last
    one repeats. An exception in the thoughts list is raised instead of
    returned.
    """

    def __init__(
        self,
        thoughts: Sequence[Union[str, BaseException]],
        actions: Optional[Sequence[Optional[ToolAction]]] = None,
    ):
        if not thoughts:
            raise ValueError("ScriptedThinker needs at least one thought")
        self.thoughts = list(thoughts)
        self.actions = list(actions or [])
        self.calls = 0

    async def next_thought(
        self, spec: AgentSpec, goal: str, history: List[Iteration]
    ) -> str:
        self.calls += 1
        index = min(len(history), len(self.thoughts) - 1)
        thought = self.thoughts[index]
        if isinstance(thought, BaseException):
            raise thought
        return thought

    async def select_action(
        self,
        spec: AgentSpec,
        goal: str,
        thought: str,
        history: List[Iteration],
    ) -> Optional[ToolAction]:
        index = len(history)
        if index < len(self.actions):
            return self.actions[index]
        return None


ThoughtFn = Callable[[AgentSpec, str, List[Iteration]], Awaitable[str]]
ActionFn = Callable[[AgentSpec, str, str, List[Iteration]], Awaitable[Optional[ToolAction]]]


class CallableThinker(Thinker):
    """Adapts plain coroutine functions to the Thinker interface."""

    def __init__(self, thought_fn: ThoughtFn, action_fn: Optional[ActionFn] = None):
        self.thought_fn = thought_fn
        self.action_fn = action_fn

    async def next_thought(
        self, spec: AgentSpec, goal: str, history: List[Iteration]
    ) -> str:
        return await self.thought_fn(spec, goal, history)

    async def select_action(
        self,
        spec: AgentSpec,
        goal: str,
        thought: str,
        history: List[Iteration],
    ) -> Optional[ToolAction]:
        if self.action_fn is None:
            return None
        return await self.action_fn(spec, goal, thought, history)
