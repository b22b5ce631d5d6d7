"""
Multi-Agent Orchestrator.

Module: agent_governance/service/orchestrator.py

Admits every agent, builds a dependency plan and schedules ready steps in
parallel through the agent task runner. A finished step signals the
scheduler over a memory object stream, which then starts whatever became
ready. The first failed step fails the orchestrated task: in-flight
siblings are cancelled and unreachable steps stay pending.
"""

import logging
import time
from typing import Any, Dict, List, Optional, Sequence

import anyio
from anyio.streams.memory import MemoryObjectSendStream

from .audit_logger import AuditEventType, AuditLogger, AuditSeverity
from .config import GovernanceConfig
from .errors import PlanValidationError, TaskNotFoundError
from .governance import GovernanceStateMachine
from .metrics import GovernanceMetrics
from .models import (
    AdmissionDecision,
    OrchestratedTask,
    OrchestrationStatus,
    PlanStep,
    StepStatus,
    TaskStatus,
    utc_now,
)
from .planner import LinearPlanner, Planner
from .runner import AgentTaskRunner


logger = logging.getLogger(__name__)

CANCELLED_BY_USER = "cancelled by user"
STEP_CANCELLED = "cancelled"
STEP_TIMED_OUT = "timed out"


class Orchestrator:
    """
    Runs multi-agent goals as dependency plans.

    A step never starts before every one of its dependencies has completed;
    steps with no path between them may run concurrently.
    """

    def __init__(
        self,
        governance: GovernanceStateMachine,
        runner: AgentTaskRunner,
        planner: Optional[Planner] = None,
        config: Optional[GovernanceConfig] = None,
        audit_logger: Optional[AuditLogger] = None,
        metrics: Optional[GovernanceMetrics] = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            governance: Admission gate for every agent
            runner: Executes each plan step as an agent task
            planner: Builds plans (default: LinearPlanner)
            config: Step and orchestration timeouts (default: the runner's)
            audit_logger: Audit sink for orchestration events
            metrics: Metrics recorder
        """
        self.governance = governance
        self.runner = runner
        self.planner = planner or LinearPlanner()
        self.config = config or runner.config
        self.audit_logger = audit_logger
        self.metrics = metrics or GovernanceMetrics(enabled=False)

        self._tasks: Dict[str, OrchestratedTask] = {}
        self._admissions: Dict[str, Dict[str, AdmissionDecision]] = {}
        self._scopes: Dict[str, anyio.CancelScope] = {}

    # =========================================================================
    # Creation: admission and planning
    # =========================================================================

    async def create_orchestrated_task(
        self,
        goal: str,
        agent_ids: Sequence[str],
        planner: Optional[Planner] = None,
    ) -> OrchestratedTask:
        """
        Admit every agent and plan the goal.

        Returns an ``executing`` task, or a ``failed`` one if any agent was
        denied admission.

        Raises:
            AgentNotFoundError: If an agent id is unknown
            PlanValidationError: If no agents are given or the plan is invalid
        """
        if not agent_ids:
            raise PlanValidationError("Orchestrated task needs at least one agent")

        task = OrchestratedTask(goal=goal, agents=list(agent_ids))
        self._tasks[task.id] = task
        logger.info(f"Created orchestrated task {task.id} with agents {task.agents}")
        self._audit(
            AuditEventType.ORCHESTRATION_STARTED,
            orchestration_id=task.id,
            metadata={"goal": goal, "agents": task.agents},
        )

        decisions: Dict[str, AdmissionDecision] = {}
        for agent_id in task.agents:
            decision = await self.governance.admit(agent_id)
            if not decision.allowed:
                self._fail(task, f"Agent {agent_id} denied admission: {decision.reason}")
                return task
            decisions[agent_id] = decision

        try:
            task.plan = (planner or self.planner).plan(goal, task.agents)
        except PlanValidationError as e:
            self._fail(task, f"Invalid plan: {e}")
            raise

        self._admissions[task.id] = decisions
        task.status = OrchestrationStatus.EXECUTING
        logger.info(f"Planned task {task.id}: {len(task.plan.steps)} step(s)")
        return task

    # =========================================================================
    # Execution: the scheduler
    # =========================================================================

    async def execute_plan(self, task_id: str) -> OrchestratedTask:
        """
        Run an executing task's plan to a terminal state.

        Raises:
            TaskNotFoundError: If the task is unknown
            ValueError: If the task is not executing or is already running
        """
        task = self.get_task(task_id)
        if task.status != OrchestrationStatus.EXECUTING:
            raise ValueError(f"Orchestrated task {task_id} is {task.status.value}, not executing")
        if task.id in self._scopes:
            raise ValueError(f"Orchestrated task {task_id} is already running")

        scope = anyio.CancelScope()
        self._scopes[task.id] = scope
        failed_step: Optional[PlanStep] = None
        timeout = self.config.orchestration_timeout_seconds
        try:
            with scope:
                with anyio.move_on_after(timeout) as deadline:
                    failed_step = await self._schedule(task)
        finally:
            self._scopes.pop(task.id, None)
            self._admissions.pop(task.id, None)

        if scope.cancelled_caught or task.status == OrchestrationStatus.FAILED:
            # cancel_task already recorded the outcome
            task.result = self._result(task)
        elif deadline.cancelled_caught:
            self._fail(task, f"Orchestration timed out after {timeout:g}s", self._result(task))
        elif failed_step is not None:
            self._fail(
                task,
                f"Step {failed_step.id} failed: {failed_step.error}",
                self._result(task, failed_step),
            )
        else:
            task.status = OrchestrationStatus.COMPLETED
            task.result = self._result(task)
            task.completed_at = utc_now()
            logger.info(f"Orchestrated task {task.id} completed")
            self.metrics.orchestration(task.status.value)
            self._audit(
                AuditEventType.ORCHESTRATION_COMPLETED,
                orchestration_id=task.id,
                status=task.status.value,
            )
        if self.audit_logger:
            await self.audit_logger.flush_async()
        return task

    async def run_orchestrated_task(
        self,
        goal: str,
        agent_ids: Sequence[str],
        planner: Optional[Planner] = None,
    ) -> OrchestratedTask:
        """Admit, plan and execute in one call."""
        task = await self.create_orchestrated_task(goal, agent_ids, planner)
        if task.status != OrchestrationStatus.EXECUTING:
            return task
        return await self.execute_plan(task.id)

    async def _schedule(self, task: OrchestratedTask) -> Optional[PlanStep]:
        """Start ready steps until the plan finishes or a step fails."""
        plan = task.plan
        send, receive = anyio.create_memory_object_stream(max_buffer_size=len(plan.steps))
        failed_step: Optional[PlanStep] = None

        async with send, receive:
            async with anyio.create_task_group() as tg:
                while True:
                    for step in plan.ready_steps():
                        step.status = StepStatus.RUNNING
                        step.started_at = utc_now()
                        tg.start_soon(self._run_step, task, step, send)

                    if not any(s.status == StepStatus.RUNNING for s in plan.steps):
                        break

                    finished = plan.get_step(await receive.receive())
                    if finished.status == StepStatus.FAILED:
                        failed_step = finished
                        tg.cancel_scope.cancel()
                        break

        return failed_step

    async def _run_step(
        self,
        task: OrchestratedTask,
        step: PlanStep,
        done: MemoryObjectSendStream,
    ) -> None:
        """Run one step as an agent task and report its id on ``done``."""
        decision = self._admissions.get(task.id, {}).get(step.agent_id)
        context: Dict[str, Any] = {
            "orchestration_id": task.id,
            "step_id": step.id,
            "dependency_results": {
                dep: task.subtasks[dep].result for dep in sorted(step.dependencies)
            },
        }
        start_time = time.monotonic()

        try:
            with anyio.fail_after(self.config.subtask_timeout_seconds):
                agent_task = await self.runner.create_task(
                    step.agent_id,
                    step.goal,
                    context=context,
                    allowed_tools=decision.allowed_tools if decision else None,
                )
                task.subtasks[step.id] = agent_task
                await self.runner.execute_task(agent_task.id)
        except TimeoutError:
            self._finish_step(task, step, STEP_TIMED_OUT)
        except anyio.get_cancelled_exc_class():
            self._finish_step(task, step, STEP_CANCELLED)
            raise
        except Exception as e:
            logger.error(f"Step {step.id} of task {task.id} raised: {e}")
            self._finish_step(task, step, str(e))
        else:
            if agent_task.status == TaskStatus.COMPLETED:
                self._finish_step(task, step)
            else:
                self._finish_step(task, step, agent_task.error or "Task failed")

        self.metrics.step_finished(time.monotonic() - start_time)
        await done.send(step.id)

    def _finish_step(
        self, task: OrchestratedTask, step: PlanStep, error: Optional[str] = None
    ) -> None:
        step.completed_at = utc_now()
        if error is None:
            step.status = StepStatus.COMPLETED
            logger.info(f"Step {step.id} of task {task.id} completed")
            self._audit(
                AuditEventType.STEP_COMPLETED,
                orchestration_id=task.id,
                step_id=step.id,
                agent_id=step.agent_id,
                status=step.status.value,
            )
            return

        step.status = StepStatus.FAILED
        step.error = error
        logger.warning(f"Step {step.id} of task {task.id} failed: {error}")
        self._audit(
            AuditEventType.STEP_FAILED,
            severity=AuditSeverity.ERROR,
            orchestration_id=task.id,
            step_id=step.id,
            agent_id=step.agent_id,
            status=step.status.value,
            error=error,
        )

    # =========================================================================
    # Queries and cancellation
    # =========================================================================

    def get_task(self, task_id: str) -> OrchestratedTask:
        task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def list_tasks(self, status: Optional[OrchestrationStatus] = None) -> List[OrchestratedTask]:
        tasks = list(self._tasks.values())
        if status is not None:
            tasks = [t for t in tasks if t.status == status]
        return tasks

    def cancel_task(self, task_id: str) -> bool:
        """
        Cancel an executing orchestrated task and all its in-flight steps.

        Completed steps keep their results.

        Returns:
            True if the task was executing, False otherwise
        """
        task = self._tasks.get(task_id)
        if task is None or task.status != OrchestrationStatus.EXECUTING:
            return False

        self._fail(task, CANCELLED_BY_USER)
        scope = self._scopes.get(task_id)
        if scope is not None:
            scope.cancel()
        return True

    # =========================================================================
    # Helpers
    # =========================================================================

    def _result(
        self, task: OrchestratedTask, failed_step: Optional[PlanStep] = None
    ) -> Dict[str, Any]:
        steps = [
            {
                "id": step.id,
                "agent_id": step.agent_id,
                "status": step.status.value,
                "result": task.subtasks[step.id].result if step.id in task.subtasks else None,
            }
            for step in task.plan.steps
        ]
        result: Dict[str, Any] = {"steps": steps}
        if any(s.status != StepStatus.COMPLETED for s in task.plan.steps):
            result["failed_step"] = failed_step.id if failed_step else None
            result["blocked_steps"] = [s.id for s in task.plan.blocked_steps()]
        return result

    def _fail(
        self,
        task: OrchestratedTask,
        error: str,
        result: Optional[Dict[str, Any]] = None,
    ) -> None:
        task.status = OrchestrationStatus.FAILED
        task.error = error
        task.completed_at = utc_now()
        if result is not None:
            task.result = result
        logger.warning(f"Orchestrated task {task.id} failed: {error}")
        self.metrics.orchestration(task.status.value)
        self._audit(
            AuditEventType.ORCHESTRATION_FAILED,
            severity=AuditSeverity.ERROR,
            orchestration_id=task.id,
            status=task.status.value,
            error=error,
        )

    def _audit(self, event_type: AuditEventType, **fields: Any) -> None:
        if self.audit_logger:
            self.audit_logger.emit(event_type, **fields)
