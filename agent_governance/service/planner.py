"""
Planners that turn a multi-agent goal into a dependency plan.

Every planner produces one step per agent, in caller order, with ids
``step-1`` .. ``step-N``. They differ only in the dependency edges.
"""

from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Mapping, Sequence, Set

from .errors import PlanValidationError
from .models import Plan, PlanStep


def step_id(index: int) -> str:
    """Id of the step at zero-based ``index``."""
    return f"step-{index + 1}"


def build_plan(goal: str, agent_ids: Sequence[str], edges: Mapping[int, Iterable[int]]) -> Plan:
    """
    Build and validate a plan from prerequisite indexes.

    Args:
        goal: Overall goal; each step gets "Part i of: <goal>"
        agent_ids: One step per agent, in order
        edges: Step index -> indexes of its prerequisite steps

    Raises:
        PlanValidationError: If an index is out of range or the plan is invalid
    """
    steps: List[PlanStep] = []
    dependencies: Dict[str, Set[str]] = {}
    for index, agent_id in enumerate(agent_ids):
        prereqs = set()
        for dep in edges.get(index, ()):
            if not 0 <= dep < len(agent_ids):
                raise PlanValidationError(
                    f"Step {step_id(index)} depends on out-of-range step index {dep}"
                )
            prereqs.add(step_id(dep))
        steps.append(
            PlanStep(
                id=step_id(index),
                agent_id=agent_id,
                goal=f"Part {index + 1} of: {goal}",
                dependencies=prereqs,
            )
        )
        dependencies[step_id(index)] = set(prereqs)

    plan = Plan(steps=steps, dependencies=dependencies)
    plan.validate_dag()
    return plan


class Planner(ABC):
    """Builds a plan for a goal across agents."""

    @abstractmethod
    def plan(self, goal: str, agent_ids: Sequence[str]) -> Plan:
        """Return a validated plan."""


class LinearPlanner(Planner):
    """Chains steps in caller order: step-1 -> step-2 -> ... -> step-N."""

    def plan(self, goal: str, agent_ids: Sequence[str]) -> Plan:
        return build_plan(goal, agent_ids, {i: [i - 1] for i in range(1, len(agent_ids))})


class ParallelPlanner(Planner):
    """Independent steps with no edges; all may run at once."""

    def plan(self, goal: str, agent_ids: Sequence[str]) -> Plan:
        return build_plan(goal, agent_ids, {})


class GraphPlanner(Planner):
    """
    Explicit prerequisite graph.

    ``edges`` maps a step index to the indexes of the steps it waits on,
    e.g. ``{2: [0, 1]}`` makes the third agent wait for the first two.
    """

    def __init__(self, edges: Mapping[int, Iterable[int]]):
        self.edges = {index: list(deps) for index, deps in edges.items()}

    def plan(self, goal: str, agent_ids: Sequence[str]) -> Plan:
        unknown = sorted(i for i in self.edges if not 0 <= i < len(agent_ids))
        if unknown:
            raise PlanValidationError(f"Edges reference unknown step indexes: {unknown}")
        return build_plan(goal, agent_ids, self.edges)
