"""
Tool capabilities and the tool registry.

Module: agent_governance/service/tools.py

Tools are resolved by name when an agent spec is registered or edited, so an
unknown tool reference is rejected before the agent can ever run.
"""

import asyncio
import functools
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Set

import anyio

from .errors import UnknownToolError


logger = logging.getLogger(__name__)


class Tool(ABC):
    """
    A capability an agent may invoke.

    ``side_effects`` lists the labels of external effects the tool can cause
    (e.g. ``"network"``, ``"filesystem"``). An empty set marks the tool as
    side-effect free, which is the only kind a restricted agent may use.
    """

    name: str = ""
    description: str = ""
    parameters: Dict[str, Any] = {}
    side_effects: FrozenSet[str] = frozenset()

    @property
    def side_effect_free(self) -> bool:
        return not self.side_effects

    def describe(self) -> Dict[str, Any]:
        """Describe the tool for thinkers and listings."""
        return {
            "name": self.name,
            "description": self.description,
            "parameters": dict(self.parameters),
            "side_effects": sorted(self.side_effects),
        }

    @abstractmethod
    async def execute(self, parameters: Dict[str, Any]) -> Any:
        """Run the tool. Exceptions propagate to the caller."""


class FunctionTool(Tool):
    """Tool backed by a plain function or coroutine function."""

    def __init__(
        self,
        name: str,
        func: Callable[..., Any],
        description: str = "",
        parameters: Optional[Dict[str, Any]] = None,
        side_effects: Iterable[str] = (),
    ):
        """
        Initialize function tool.

        Args:
            name: Tool name referenced by agent specs
            func: Handler called with the action parameters as keyword arguments
            description: Human-readable description
            parameters: JSON-schema-like parameter description
            side_effects: Side-effect labels; empty for a pure tool
        """
        if not name:
            raise ValueError("Tool name must not be empty")
        self.name = name
        self.func = func
        self.description = description or (func.__doc__ or "").strip()
        self.parameters = parameters or {}
        self.side_effects = frozenset(side_effects)

    async def execute(self, parameters: Dict[str, Any]) -> Any:
        if asyncio.iscoroutinefunction(self.func):
            return await self.func(**parameters)
        # Run sync handler in a worker thread
        return await anyio.to_thread.run_sync(functools.partial(self.func, **parameters))


class ToolRegistry:
    """Registry of tools keyed by name."""

    def __init__(self, tools: Optional[Iterable[Tool]] = None):
        self._tools: Dict[str, Tool] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        """Register a tool, replacing any tool with the same name."""
        if tool.name in self._tools:
            logger.warning(f"Replacing registered tool {tool.name}")
        self._tools[tool.name] = tool
        logger.debug(f"Registered tool {tool.name} (side effects: {sorted(tool.side_effects)})")

    def unregister(self, name: str) -> bool:
        """Remove a tool, returning whether it was registered."""
        return self._tools.pop(name, None) is not None

    def get(self, name: str) -> Optional[Tool]:
        return self._tools.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def resolve(self, names: Iterable[str]) -> List[Tool]:
        """
        Look up every named tool.

        Raises:
            UnknownToolError: If any name is not registered
        """
        names = sorted(set(names))
        missing = [n for n in names if n not in self._tools]
        if missing:
            raise UnknownToolError(missing)
        return [self._tools[n] for n in names]

    def list_tools(self) -> List[str]:
        return sorted(self._tools)

    def describe_all(self, names: Optional[Iterable[str]] = None) -> List[Dict[str, Any]]:
        """Describe registered tools, optionally limited to the given names."""
        selected = sorted(self._tools) if names is None else sorted(set(names) & set(self._tools))
        return [self._tools[n].describe() for n in selected]

    def side_effect_free(self, names: Iterable[str]) -> Set[str]:
        """The registered side-effect-free tools among ``names``."""
        return {
            n for n in names if n in self._tools and self._tools[n].side_effect_free
        }

    def within_side_effects(self, names: Iterable[str], permitted: Iterable[str]) -> Set[str]:
        """The registered tools among ``names`` whose side effects are all permitted."""
        permitted = frozenset(permitted)
        return {
            n for n in names if n in self._tools and self._tools[n].side_effects <= permitted
        }
