"""
Agent Task Runner for iterative think/act/observe loops.

Module: agent_governance/service/runner.py

Runs one agent's goal as a sequence of iterations: the thinker produces a
thought, optionally picks one tool action, and the tool's observation is
recorded. Tool errors become observations; thinker errors fail the task.
"""

import json
import logging
import time
from typing import Any, Dict, Iterable, List, Optional

import anyio
from anyio.abc import TaskGroup

from .audit_logger import AuditEventType, AuditLogger, AuditSeverity
from .config import GovernanceConfig
from .errors import AgentNotFoundError, TaskNotFoundError
from .metrics import GovernanceMetrics
from .models import AgentSpec, AgentTask, Iteration, TaskStatus, ToolAction, utc_now
from .storage import AgentStore
from .thinker import Thinker
from .tools import ToolRegistry


logger = logging.getLogger(__name__)

CANCELLED = "Task cancelled"
CANCELLED_BY_USER = "Task cancelled by user"


class AgentTaskRunner:
    """
    Executes agent tasks.

    Iterations of one task run strictly in order. Each running task has its
    own cancel scope, so cancelling one task never touches another.
    """

    def __init__(
        self,
        agent_store: AgentStore,
        tool_registry: ToolRegistry,
        thinker: Thinker,
        config: GovernanceConfig,
        audit_logger: Optional[AuditLogger] = None,
        metrics: Optional[GovernanceMetrics] = None,
    ):
        """
        Initialize the runner.

        Args:
            agent_store: Source of agent specs
            tool_registry: Tools available to agents, by name
            thinker: Produces thoughts and actions
            config: Iteration budget, completion marker and pacing
            audit_logger: Audit sink for task events
            metrics: Metrics recorder
        """
        self.agent_store = agent_store
        self.tool_registry = tool_registry
        self.thinker = thinker
        self.config = config
        self.audit_logger = audit_logger
        self.metrics = metrics or GovernanceMetrics(enabled=False)

        self._tasks: Dict[str, AgentTask] = {}
        self._scopes: Dict[str, anyio.CancelScope] = {}

    # =========================================================================
    # Task lifecycle
    # =========================================================================

    async def create_task(
        self,
        agent_id: str,
        goal: str,
        context: Optional[Dict[str, Any]] = None,
        allowed_tools: Optional[Iterable[str]] = None,
    ) -> AgentTask:
        """
        Create a pending task.

        Args:
            agent_id: Agent that will run the task
            goal: Goal handed to the thinker
            context: Caller data stored with the task
            allowed_tools: Admitted tool subset; None allows every spec tool

        Raises:
            AgentNotFoundError: If the agent is unknown
        """
        if await self.agent_store.load_agent(agent_id) is None:
            raise AgentNotFoundError(agent_id)

        task = AgentTask(
            agent_id=agent_id,
            goal=goal,
            context=dict(context or {}),
            allowed_tools=set(allowed_tools) if allowed_tools is not None else None,
        )
        self._tasks[task.id] = task
        logger.debug(f"Created task {task.id} for agent {agent_id}")
        return task

    async def execute_task(self, task_id: str) -> AgentTask:
        """
        Run a pending task to a terminal state.

        Cancellation coming from outside the task is recorded as a failure
        and re-raised; ``cancel_task`` ends the task without raising.

        Raises:
            TaskNotFoundError: If the task is unknown
            ValueError: If the task is not pending
        """
        task = self.get_task(task_id)
        if task.status != TaskStatus.PENDING:
            raise ValueError(f"Task {task_id} is {task.status.value}, not pending")

        agent = await self.agent_store.load_agent(task.agent_id)
        if agent is None:
            self._fail(task, f"Agent {task.agent_id} not found")
            return task

        max_iterations = agent.spec.max_iterations or self.config.default_max_iterations
        task.status = TaskStatus.RUNNING
        task.started_at = utc_now()
        logger.info(f"Task {task.id} started (agent: {task.agent_id}, budget: {max_iterations})")
        self._audit(
            AuditEventType.TASK_STARTED,
            agent_id=task.agent_id,
            task_id=task.id,
            metadata={"goal": task.goal, "max_iterations": max_iterations},
        )

        scope = anyio.CancelScope()
        self._scopes[task.id] = scope
        try:
            with scope:
                await self._loop(task, agent.spec, max_iterations)
        except anyio.get_cancelled_exc_class():
            self._fail(task, CANCELLED)
            raise
        except Exception as e:
            logger.error(f"Task {task.id} failed: {e}")
            self._fail(task, str(e))
        finally:
            self._scopes.pop(task.id, None)

        if scope.cancelled_caught:
            self._fail(task, CANCELLED_BY_USER)
        if self.audit_logger:
            await self.audit_logger.flush_async()
        return task

    async def run(
        self,
        agent_id: str,
        goal: str,
        context: Optional[Dict[str, Any]] = None,
        allowed_tools: Optional[Iterable[str]] = None,
    ) -> AgentTask:
        """Create a task and run it to a terminal state."""
        task = await self.create_task(agent_id, goal, context, allowed_tools)
        return await self.execute_task(task.id)

    async def start_task(
        self,
        task_group: TaskGroup,
        agent_id: str,
        goal: str,
        context: Optional[Dict[str, Any]] = None,
        allowed_tools: Optional[Iterable[str]] = None,
    ) -> AgentTask:
        """Create a task, schedule it in ``task_group`` and return it still pending."""
        task = await self.create_task(agent_id, goal, context, allowed_tools)
        task_group.start_soon(self.execute_task, task.id)
        return task

    def get_task(self, task_id: str) -> AgentTask:
        task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def list_tasks(self, agent_id: Optional[str] = None) -> List[AgentTask]:
        tasks = list(self._tasks.values())
        if agent_id is not None:
            tasks = [t for t in tasks if t.agent_id == agent_id]
        return tasks

    def cancel_task(self, task_id: str) -> bool:
        """
        Cancel a running task.

        The task is marked failed at once; its loop stops before the next
        iteration, though a tool call already in flight may finish.

        Returns:
            True if the task was running, False otherwise
        """
        task = self._tasks.get(task_id)
        if task is None or task.status != TaskStatus.RUNNING:
            return False

        self._fail(task, CANCELLED_BY_USER)
        scope = self._scopes.get(task_id)
        if scope is not None:
            scope.cancel()
        return True

    # =========================================================================
    # Loop
    # =========================================================================

    async def _loop(self, task: AgentTask, spec: AgentSpec, max_iterations: int) -> None:
        marker = self.config.completion_marker.lower()

        for step in range(1, max_iterations + 1):
            history = list(task.iterations)
            thought = await self.thinker.next_thought(spec, task.goal, history)

            if marker in thought.lower() or step == max_iterations:
                task.iterations.append(Iteration(step=step, thought=thought))
                self._complete(task, {"summary": thought, "steps": len(task.iterations)})
                return

            action = await self.thinker.select_action(spec, task.goal, thought, history)
            observation = None
            if action is not None:
                observation = await self._execute_action(task, spec, action)

            task.iterations.append(
                Iteration(step=step, thought=thought, action=action, observation=observation)
            )
            logger.debug(
                f"Task {task.id} iteration {step}: "
                f"action={action.tool if action else None}"
            )
            self._audit(
                AuditEventType.ITERATION,
                severity=AuditSeverity.DEBUG,
                agent_id=task.agent_id,
                task_id=task.id,
                step=step,
                tool_name=action.tool if action else None,
            )

            # Zero delay still yields, so cancellation lands between iterations
            await anyio.sleep(self.config.iteration_delay_seconds)

    async def _execute_action(
        self, task: AgentTask, spec: AgentSpec, action: ToolAction
    ) -> str:
        """Run one tool call and return its observation string."""
        tool = self.tool_registry.get(action.tool) if action.tool in spec.tools else None
        if tool is None:
            return f"Error: Tool {action.tool} not found"
        if task.allowed_tools is not None and action.tool not in task.allowed_tools:
            logger.warning(f"Task {task.id} denied tool {action.tool}: restricted by policy")
            return f"Tool {action.tool} denied: restricted by policy"

        start_time = time.time()
        try:
            result = await tool.execute(action.parameters)
            observation = json.dumps(result, default=str)
            error = None
        except Exception as e:
            logger.warning(f"Tool {action.tool} failed in task {task.id}: {e}")
            observation = f"Error executing {action.tool}: {e}"
            error = str(e)

        self._audit(
            AuditEventType.TOOL_CALL,
            severity=AuditSeverity.INFO if error is None else AuditSeverity.WARNING,
            agent_id=task.agent_id,
            task_id=task.id,
            step=len(task.iterations) + 1,
            tool_name=action.tool,
            error=error,
            duration_ms=(time.time() - start_time) * 1000,
        )
        return observation

    # =========================================================================
    # Terminal states
    # =========================================================================

    def _complete(self, task: AgentTask, result: Dict[str, Any]) -> None:
        if task.status.is_terminal:
            return
        task.status = TaskStatus.COMPLETED
        task.result = result
        task.completed_at = utc_now()
        logger.info(f"Task {task.id} completed after {result['steps']} iteration(s)")
        self.metrics.agent_task(task.status.value)
        self._audit(
            AuditEventType.TASK_COMPLETED,
            agent_id=task.agent_id,
            task_id=task.id,
            status=task.status.value,
            step=result["steps"],
        )

    def _fail(self, task: AgentTask, error: str) -> None:
        if task.status.is_terminal:
            return
        task.status = TaskStatus.FAILED
        task.error = error
        task.completed_at = utc_now()
        logger.warning(f"Task {task.id} failed: {error}")
        self.metrics.agent_task(task.status.value)
        self._audit(
            AuditEventType.TASK_FAILED,
            severity=AuditSeverity.ERROR,
            agent_id=task.agent_id,
            task_id=task.id,
            status=task.status.value,
            error=error,
        )

    def _audit(self, event_type: AuditEventType, **fields: Any) -> None:
        if self.audit_logger:
            self.audit_logger.emit(event_type, **fields)
