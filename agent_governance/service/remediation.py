"""
Remediation for drifted agents.

Module: agent_governance/service/remediation.py

Turns a drift report into spec edits that satisfy the active policy,
then re-promotes the agent. Numeric limits, forbidden tools and forbidden
side effects are fixed automatically; role changes, tampered specs and
custom rule failures need approval.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence

from .audit_logger import AuditEventType, AuditLogger, AuditSeverity
from .errors import BlastRadiusExceededError
from .governance import GovernanceStateMachine
from .models import (
    AgentSpec,
    DriftReport,
    DriftType,
    PolicyRule,
    PolicyViolation,
    RemediationAction,
    RemediationActionType,
    RemediationPlan,
    RemediationResult,
    RuleKind,
)


logger = logging.getLogger(__name__)

DEFAULT_MAX_BLAST_RADIUS = 10


def _impact(action_count: int) -> str:
    if action_count > 3:
        return "high"
    if action_count > 1:
        return "medium"
    return "low"


def _set_path(data: Dict[str, Any], path: str, value: Any) -> None:
    *parents, leaf = path.split(".")
    for key in parents:
        data = data[key]
    data[leaf] = value


class Remediator:
    """
    Plans and applies remediation for drift reports.

    A plan ends in re-promotion, so an applied plan leaves the agent
    ``GOVERNED_VALID`` against the active policy or reports why it could not.
    """

    def __init__(
        self,
        governance: GovernanceStateMachine,
        audit_logger: Optional[AuditLogger] = None,
        max_blast_radius: int = DEFAULT_MAX_BLAST_RADIUS,
    ):
        self.governance = governance
        self.audit_logger = audit_logger
        self.max_blast_radius = max_blast_radius

    async def plan(self, report: DriftReport) -> RemediationPlan:
        """
        Build a remediation plan for one drift report.

        Raises:
            AgentNotFoundError: If the agent was deleted since the report
            PolicyNotLoadedError: If no policy is active
        """
        agent = await self.governance.get_agent(report.agent_id)
        actions: List[RemediationAction] = []

        if report.drift_type == DriftType.SPEC_TAMPER:
            actions.append(
                RemediationAction(
                    type=RemediationActionType.REVIEW,
                    reason="Spec changed after promotion; confirm the edit before re-promoting",
                    safe=False,
                )
            )

        rules = {rule.name: rule for rule in self.governance.policy_engine.active_policy.rules}
        decision = self.governance.policy_engine.evaluate(agent.spec)
        for finding in decision.findings:
            actions.append(self._action_for(agent.spec, finding, rules.get(finding.rule)))

        return RemediationPlan(
            agent_id=report.agent_id,
            drift_type=report.drift_type,
            actions=actions,
            requires_approval=any(not a.safe for a in actions),
            estimated_impact=_impact(len(actions)),
        )

    def _action_for(
        self, spec: AgentSpec, finding: PolicyViolation, rule: Optional[PolicyRule]
    ) -> RemediationAction:
        constraints = spec.sandbox_constraints
        kind = rule.kind if rule is not None else None

        if kind == RuleKind.MAX_BUDGET:
            return RemediationAction(
                type=RemediationActionType.ADJUST_LIMIT,
                field="sandbox_constraints.max_budget",
                old_value=constraints.max_budget,
                new_value=rule.limit,
                reason=f"Reduced to policy maximum of {rule.limit:g}",
            )
        if kind == RuleKind.MAX_TOKENS_PER_REQUEST:
            return RemediationAction(
                type=RemediationActionType.ADJUST_LIMIT,
                field="sandbox_constraints.max_tokens_per_request",
                old_value=constraints.max_tokens_per_request,
                new_value=int(rule.limit),
                reason=f"Reduced to policy maximum of {int(rule.limit)}",
            )
        if kind == RuleKind.MAX_ITERATIONS:
            return RemediationAction(
                type=RemediationActionType.ADJUST_LIMIT,
                field="max_iterations",
                old_value=spec.max_iterations,
                new_value=int(rule.limit),
                reason=f"Reduced to policy maximum of {int(rule.limit)}",
            )
        if kind == RuleKind.FORBIDDEN_TOOLS:
            removed = sorted(spec.tools & set(rule.values))
            return RemediationAction(
                type=RemediationActionType.REMOVE_TOOLS,
                field="tools",
                old_value=sorted(spec.tools),
                new_value=sorted(spec.tools - set(rule.values)),
                reason=f"Removed forbidden tools: {', '.join(removed)}",
            )
        if kind == RuleKind.FORBIDDEN_SIDE_EFFECTS:
            removed = sorted(constraints.allowed_side_effects & set(rule.values))
            return RemediationAction(
                type=RemediationActionType.REMOVE_SIDE_EFFECTS,
                field="sandbox_constraints.allowed_side_effects",
                old_value=sorted(constraints.allowed_side_effects),
                new_value=sorted(constraints.allowed_side_effects - set(rule.values)),
                reason=f"Removed forbidden side effects: {', '.join(removed)}",
            )
        if kind == RuleKind.ALLOWED_ROLE_CLASSES and rule.values:
            return RemediationAction(
                type=RemediationActionType.CHANGE_ROLE,
                field="role_class",
                old_value=spec.role_class,
                new_value=rule.values[0],
                reason=f"Role class must be one of: {', '.join(rule.values)}",
                safe=False,
            )
        return RemediationAction(
            type=RemediationActionType.REVIEW,
            reason=finding.message,
            safe=False,
        )

    async def apply(
        self, plan: RemediationPlan, force: bool = False, dry_run: bool = False
    ) -> RemediationResult:
        """
        Apply a plan's spec edits and re-promote the agent.

        Unsafe actions are skipped unless ``force`` is set, and a plan with
        skipped actions is not re-promoted. ``dry_run`` reports what would
        be applied without touching the agent.
        """
        agent = await self.governance.get_agent(plan.agent_id)
        errors: List[str] = []
        edits: List[RemediationAction] = []
        for action in plan.actions:
            if not action.safe and not force:
                errors.append(f"Skipped unsafe action: {action.type.value} ({action.reason})")
            elif action.field is not None:
                edits.append(action)

        skipped = len(errors)
        result = RemediationResult(
            agent_id=plan.agent_id,
            success=False,
            status=agent.status,
            actions_applied=len(plan.actions) - skipped,
            actions_skipped=skipped,
            errors=errors,
        )
        if dry_run:
            result.success = not errors
            return result
        if errors:
            result.actions_applied = 0
            self._audit(result)
            return result

        if edits:
            data = agent.spec.model_dump()
            for action in edits:
                _set_path(data, action.field, action.new_value)
            await self.governance.update_spec(plan.agent_id, spec=AgentSpec.model_validate(data))

        promotion = await self.governance.promote(plan.agent_id)
        result.status = promotion.status
        result.success = promotion.success
        result.errors.extend(promotion.violations)
        logger.info(
            f"Remediated agent {plan.agent_id}: {result.actions_applied} action(s), "
            f"success={result.success}"
        )
        self._audit(result)
        return result

    async def remediate_all(
        self,
        reports: Sequence[DriftReport],
        force: bool = False,
        dry_run: bool = False,
    ) -> Dict[str, RemediationResult]:
        """
        Plan and apply remediation for every report.

        Raises:
            BlastRadiusExceededError: If more agents drifted than
                ``max_blast_radius`` allows
        """
        agent_ids = {report.agent_id for report in reports}
        if len(agent_ids) > self.max_blast_radius:
            raise BlastRadiusExceededError(
                f"Blast radius exceeded: {len(agent_ids)} agents > "
                f"{self.max_blast_radius} max; manual approval required"
            )

        results: Dict[str, RemediationResult] = {}
        for report in reports:
            if report.agent_id in results:
                continue
            plan = await self.plan(report)
            results[report.agent_id] = await self.apply(plan, force=force, dry_run=dry_run)
        return results

    def _audit(self, result: RemediationResult) -> None:
        if self.audit_logger:
            self.audit_logger.emit(
                AuditEventType.REMEDIATION,
                severity=AuditSeverity.INFO if result.success else AuditSeverity.WARNING,
                agent_id=result.agent_id,
                status=result.status.value,
                violations=result.errors or None,
                metadata={
                    "actions_applied": result.actions_applied,
                    "actions_skipped": result.actions_skipped,
                },
            )
