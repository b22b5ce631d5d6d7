"""
Pydantic models for the agent governance core.

Defines agent specs, governance state, proofs, policy documents,
agent tasks and orchestration plans.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Set
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

from .errors import PlanValidationError


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ============================================================================
# Enums
# ============================================================================


class GovernanceStatus(str, Enum):
    """Lifecycle status of an agent."""

    SANDBOX = "sandbox"
    GOVERNED_VALID = "governed_valid"
    GOVERNED_RESTRICTED = "governed_restricted"
    GOVERNED_INVALIDATED = "governed_invalidated"

    @property
    def is_governed(self) -> bool:
        return self is not GovernanceStatus.SANDBOX


class ViolationSeverity(str, Enum):
    """Outcome a violation forces on a governed agent during hot reload."""

    RESTRICT = "restrict"
    INVALIDATE = "invalidate"


class RuleKind(str, Enum):
    """Kinds of policy rules."""

    MAX_BUDGET = "max_budget"
    MAX_TOKENS_PER_REQUEST = "max_tokens_per_request"
    FORBIDDEN_TOOLS = "forbidden_tools"
    FORBIDDEN_SIDE_EFFECTS = "forbidden_side_effects"
    ALLOWED_ROLE_CLASSES = "allowed_role_classes"
    MAX_ITERATIONS = "max_iterations"
    CUSTOM = "custom"


class AdmissionReason(str, Enum):
    """Reasons returned by admission checks."""

    SANDBOX_EXPIRED = "sandbox expired"
    SIDE_EFFECT_NOT_PERMITTED = "side effect not permitted"
    SPEC_TAMPERED = "spec tampered"
    STALE_POLICY = "stale policy"
    INVALID_SIGNATURE = "invalid signature"
    SIGNER_REVOKED = "signer revoked"
    PROOF_MISSING = "proof missing"
    RESTRICTED_BY_POLICY = "restricted by policy"
    GOVERNANCE_INVALIDATED = "governance invalidated: re-promotion required"


class TaskStatus(str, Enum):
    """Agent task status."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)


class StepStatus(str, Enum):
    """Plan step status."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class OrchestrationStatus(str, Enum):
    """Orchestrated task status."""

    PLANNING = "planning"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


class DriftType(str, Enum):
    """Kinds of drift found by drift detection."""

    POLICY_CHANGE = "policy_change"
    SPEC_TAMPER = "spec_tamper"
    STALE_POLICY = "stale_policy"
    EXPIRED = "expired"


class DriftSeverity(str, Enum):
    """Severity of a drift report."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


# ============================================================================
# Agent specs and governance state
# ============================================================================


class SandboxConstraints(BaseModel):
    """Limits applied to an agent while it runs in the sandbox."""

    model_config = ConfigDict(frozen=True)

    max_budget: float = Field(default=0.0, ge=0.0, description="Monthly budget (USD)")
    max_tokens_per_request: int = Field(default=4096, ge=0)
    allowed_side_effects: FrozenSet[str] = Field(default_factory=frozenset)
    expires_at: Optional[datetime] = Field(
        default=None, description="Sandbox agents are inadmissible after this time"
    )

    @field_validator("expires_at")
    @classmethod
    def validate_expires_at(cls, v: Optional[datetime]) -> Optional[datetime]:
        """Treat naive timestamps as UTC."""
        return _as_utc(v)

    @field_serializer("allowed_side_effects")
    def serialize_side_effects(self, value: FrozenSet[str]) -> List[str]:
        return sorted(value)


class AgentSpec(BaseModel):
    """
    Immutable description of one version of an agent.

    Editing an agent produces a new AgentSpec and therefore a new content hash.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1, description="Agent identifier")
    name: str = Field(default="", description="Display name")
    role_class: str = Field(default="", description="Role class, e.g. 'assistant'")
    system_prompt: str = Field(default="", description="System prompt")
    tools: FrozenSet[str] = Field(default_factory=frozenset, description="Tool names")
    sandbox_constraints: SandboxConstraints = Field(default_factory=SandboxConstraints)
    max_iterations: Optional[int] = Field(
        default=None, ge=1, description="Per-agent override of the iteration budget"
    )

    @field_serializer("tools")
    def serialize_tools(self, value: FrozenSet[str]) -> List[str]:
        return sorted(value)


class ProofBundle(BaseModel):
    """Signed artifact binding an agent spec hash to a policy hash."""

    model_config = ConfigDict(frozen=True)

    agent_hash: str = Field(..., description="Hash of the AgentSpec at promotion time")
    policy_hash: str = Field(..., description="Hash of the policy used to evaluate it")
    signature: str = Field(..., description="HMAC over the bundle payload")
    evaluated_at: datetime = Field(...)
    authority: str = Field(..., description="Signer of the bundle")

    @field_validator("evaluated_at")
    @classmethod
    def validate_evaluated_at(cls, v: datetime) -> datetime:
        """Treat naive timestamps as UTC."""
        return _as_utc(v)


class Agent(BaseModel):
    """Aggregate of an agent spec, its governance status and its proof."""

    spec: AgentSpec
    status: GovernanceStatus = GovernanceStatus.SANDBOX
    proof: Optional[ProofBundle] = None
    status_reason: Optional[str] = Field(
        default=None, description="Why the agent entered its current status"
    )
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def id(self) -> str:
        return self.spec.id

    def check_invariants(self) -> None:
        """Raise ValueError if a governed agent carries no proof."""
        if self.status.is_governed and self.proof is None:
            raise ValueError(f"Agent {self.id} is {self.status.value} without a proof")


# ============================================================================
# Policy
# ============================================================================


class PolicyRule(BaseModel):
    """One rule of a policy document."""

    name: str = Field(..., min_length=1)
    kind: RuleKind
    description: str = Field(default="")
    limit: Optional[float] = Field(default=None, description="Numeric bound")
    values: List[str] = Field(default_factory=list, description="Names the rule matches")
    validator: Optional[str] = Field(
        default=None, description="Registered validator name for custom rules"
    )
    severity: Optional[ViolationSeverity] = Field(
        default=None, description="Outcome on hot reload; falls back to the config default"
    )
    enabled: bool = Field(default=True)


class PolicyDocument(BaseModel):
    """A versioned set of policy rules."""

    name: str = Field(default="default")
    version: str = Field(default="1")
    description: str = Field(default="")
    rules: List[PolicyRule] = Field(default_factory=list)


class PolicyViolation(BaseModel):
    """A failed policy rule."""

    rule: str
    message: str
    severity: ViolationSeverity


class PolicyDecision(BaseModel):
    """Result of evaluating an agent spec against the active policy."""

    allow: bool
    violations: List[str] = Field(default_factory=list)
    findings: List[PolicyViolation] = Field(default_factory=list)
    policy_hash: str

    @property
    def severity(self) -> Optional[ViolationSeverity]:
        """Highest severity among findings."""
        if not self.findings:
            return None
        if any(f.severity == ViolationSeverity.INVALIDATE for f in self.findings):
            return ViolationSeverity.INVALIDATE
        return ViolationSeverity.RESTRICT


class PolicySnapshot(BaseModel):
    """A policy version that has been active."""

    name: str
    version: str
    policy_hash: str
    loaded_at: datetime = Field(default_factory=utc_now)


class RevalidationSummary(BaseModel):
    """Outcome of sweeping governed agents against a new policy."""

    invalidated_agents: Set[str] = Field(default_factory=set)
    restricted_agents: Set[str] = Field(default_factory=set)
    revalidated_count: int = 0


class HotReloadResult(BaseModel):
    """Result of replacing the active policy."""

    policy_hash: str
    previous_policy_hash: Optional[str] = None
    invalidated_agents: Set[str] = Field(default_factory=set)
    restricted_agents: Set[str] = Field(default_factory=set)
    revalidated_count: int = 0


# ============================================================================
# Governance results
# ============================================================================


class PromotionResult(BaseModel):
    """Result of a promotion attempt."""

    success: bool
    status: GovernanceStatus
    violations: List[str] = Field(default_factory=list)
    proof_bundle: Optional[ProofBundle] = None


class AdmissionDecision(BaseModel):
    """Result of an admission check."""

    allowed: bool
    status: GovernanceStatus
    reason: Optional[str] = None
    allowed_tools: Optional[Set[str]] = Field(
        default=None, description="Permitted tool subset; None means every spec tool"
    )

    @property
    def restricted(self) -> bool:
        return self.allowed_tools is not None


class DriftReport(BaseModel):
    """One agent that diverges from current governance requirements."""

    agent_id: str
    drift_type: DriftType
    severity: DriftSeverity
    details: str
    recommended_action: str
    detected_at: datetime = Field(default_factory=utc_now)


class DriftSummary(BaseModel):
    """Aggregated drift reports."""

    total_drifted: int = 0
    by_type: Dict[str, int] = Field(default_factory=dict)
    by_severity: Dict[str, int] = Field(default_factory=dict)
    reports: List[DriftReport] = Field(default_factory=list)


class RemediationActionType(str, Enum):
    """Kinds of remediation actions."""

    ADJUST_LIMIT = "adjust_limit"
    REMOVE_TOOLS = "remove_tools"
    REMOVE_SIDE_EFFECTS = "remove_side_effects"
    CHANGE_ROLE = "change_role"
    REVIEW = "review"


class RemediationAction(BaseModel):
    """One spec edit that brings a drifted agent back into compliance."""

    type: RemediationActionType
    field: Optional[str] = Field(
        default=None, description="Dotted spec path; None for manual review"
    )
    old_value: Any = None
    new_value: Any = None
    reason: str
    safe: bool = Field(default=True, description="Can be applied without approval")


class RemediationPlan(BaseModel):
    """Actions, then re-promotion, for one drift report."""

    agent_id: str
    drift_type: DriftType
    actions: List[RemediationAction] = Field(default_factory=list)
    requires_approval: bool = False
    estimated_impact: str = "low"


class RemediationResult(BaseModel):
    """Outcome of applying a remediation plan."""

    agent_id: str
    success: bool
    status: GovernanceStatus
    actions_applied: int = 0
    actions_skipped: int = 0
    errors: List[str] = Field(default_factory=list)


# ============================================================================
# Agent tasks
# ============================================================================


class ToolAction(BaseModel):
    """A tool invocation chosen by the thinker."""

    tool: str
    parameters: Dict[str, Any] = Field(default_factory=dict)


class Iteration(BaseModel):
    """One think/act/observe step of an agent task."""

    step: int = Field(..., ge=1)
    thought: str
    action: Optional[ToolAction] = None
    observation: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)


class AgentTask(BaseModel):
    """Execution of one goal by one agent."""

    id: str = Field(default_factory=lambda: f"task-{uuid4().hex[:12]}")
    agent_id: str
    goal: str
    context: Dict[str, Any] = Field(default_factory=dict)
    status: TaskStatus = TaskStatus.PENDING
    iterations: List[Iteration] = Field(default_factory=list)
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    allowed_tools: Optional[Set[str]] = Field(
        default=None, description="Admitted tool subset; None means every spec tool"
    )
    created_at: datetime = Field(default_factory=utc_now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


# ============================================================================
# Orchestration
# ============================================================================


class PlanStep(BaseModel):
    """One agent's scheduled contribution to a multi-agent goal."""

    id: str
    agent_id: str
    goal: str
    dependencies: Set[str] = Field(default_factory=set)
    status: StepStatus = StepStatus.PENDING
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class Plan(BaseModel):
    """Dependency-ordered set of plan steps."""

    steps: List[PlanStep] = Field(default_factory=list)
    dependencies: Dict[str, Set[str]] = Field(default_factory=dict)

    def get_step(self, step_id: str) -> PlanStep:
        for step in self.steps:
            if step.id == step_id:
                return step
        raise KeyError(step_id)

    def ready_steps(self) -> List[PlanStep]:
        """Pending steps whose dependencies have all completed."""
        completed = {s.id for s in self.steps if s.status == StepStatus.COMPLETED}
        return [
            step
            for step in self.steps
            if step.status == StepStatus.PENDING and step.dependencies <= completed
        ]

    def blocked_steps(self) -> List[PlanStep]:
        """Pending steps that can never run because a prerequisite failed."""
        failed = {s.id for s in self.steps if s.status == StepStatus.FAILED}
        blocked: Set[str] = set()
        changed = True
        while changed:
            changed = False
            for step in self.steps:
                if step.status != StepStatus.PENDING or step.id in blocked:
                    continue
                if step.dependencies & (failed | blocked):
                    blocked.add(step.id)
                    changed = True
        return [s for s in self.steps if s.id in blocked]

    def is_finished(self) -> bool:
        return all(
            s.status in (StepStatus.COMPLETED, StepStatus.FAILED) for s in self.steps
        )

    def validate_dag(self) -> None:
        """
        Check that the plan can be scheduled.

        Raises:
            PlanValidationError: If the plan is empty, has duplicate step ids,
                references unknown steps or contains a cycle
        """
        if not self.steps:
            raise PlanValidationError("Plan has no steps")

        ids = [step.id for step in self.steps]
        duplicates = sorted({i for i in ids if ids.count(i) > 1})
        if duplicates:
            raise PlanValidationError(f"Duplicate step ids: {', '.join(duplicates)}")

        known = set(ids)
        for step in self.steps:
            declared = self.dependencies.get(step.id, set())
            if declared != step.dependencies:
                raise PlanValidationError(
                    f"Step {step.id} dependencies disagree with the plan dependency map"
                )
            unknown = sorted(step.dependencies - known)
            if unknown:
                raise PlanValidationError(
                    f"Step {step.id} depends on unknown steps: {', '.join(unknown)}"
                )
        extra = sorted(set(self.dependencies) - known)
        if extra:
            raise PlanValidationError(
                f"Dependency map references unknown steps: {', '.join(extra)}"
            )

        # Kahn's algorithm: anything left unvisited sits on a cycle
        remaining = {step.id: len(step.dependencies) for step in self.steps}
        dependents: Dict[str, List[str]] = {step.id: [] for step in self.steps}
        for step in self.steps:
            for dep in step.dependencies:
                dependents[dep].append(step.id)

        queue = [step_id for step_id, count in remaining.items() if count == 0]
        visited = 0
        while queue:
            current = queue.pop()
            visited += 1
            for child in dependents[current]:
                remaining[child] -= 1
                if remaining[child] == 0:
                    queue.append(child)

        if visited != len(self.steps):
            cyclic = sorted(step_id for step_id, count in remaining.items() if count > 0)
            raise PlanValidationError(f"Plan contains a cycle through: {', '.join(cyclic)}")


class OrchestratedTask(BaseModel):
    """A multi-agent goal executed as a plan."""

    id: str = Field(default_factory=lambda: f"orch-{uuid4().hex[:12]}")
    goal: str
    agents: List[str] = Field(default_factory=list)
    status: OrchestrationStatus = OrchestrationStatus.PLANNING
    plan: Plan = Field(default_factory=Plan)
    subtasks: Dict[str, AgentTask] = Field(default_factory=dict)
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None
