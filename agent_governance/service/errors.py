"""
Exceptions raised by the governance core.

Policy denials, governance faults and tool faults are returned as data.
These exceptions signal caller bugs: unknown ids, malformed plans,
unknown tools and a missing policy.
"""


class GovernanceError(Exception):
    """Base exception for governance core errors."""

    pass


class AgentNotFoundError(GovernanceError, KeyError):
    """Raised when an agent id is not registered."""

    def __init__(self, agent_id: str) -> None:
        self.agent_id = agent_id
        super().__init__(f"Agent {agent_id} not found")

    def __str__(self) -> str:
        return f"Agent {self.agent_id} not found"


class AgentAlreadyExistsError(GovernanceError):
    """Raised when registering an agent id twice."""

    pass


class UnknownToolError(GovernanceError):
    """Raised when an agent spec references a tool missing from the registry."""

    def __init__(self, tool_names: list) -> None:
        self.tool_names = sorted(tool_names)
        super().__init__(f"Unknown tool(s): {', '.join(self.tool_names)}")


class PolicyNotLoadedError(GovernanceError):
    """Raised when an operation needs an active policy and none is loaded."""

    pass


class PolicyLoadError(GovernanceError):
    """Raised when a policy document cannot be parsed or validated."""

    pass


class PlanValidationError(GovernanceError):
    """Raised when a plan is empty, cyclic or references unknown steps."""

    pass


class TaskNotFoundError(GovernanceError, KeyError):
    """Raised when a task id is unknown."""

    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"Task {task_id} not found")

    def __str__(self) -> str:
        return f"Task {self.task_id} not found"


class BlastRadiusExceededError(GovernanceError):
    """Raised when a batch remediation touches more agents than allowed."""

    pass
