"""
Governance State Machine for agent lifecycle and admission.

Module: agent_governance/service/governance.py

Owns each agent's governance status, promotion from sandbox to governed,
revalidation when the policy is hot-reloaded, and the tamper-evident
admission gate the orchestrator calls before any agent runs.

Lifecycle:
    SANDBOX --promote (passes)--> GOVERNED_VALID
    GOVERNED_VALID --hot reload (passes)--> GOVERNED_VALID (proof re-issued)
    GOVERNED_VALID --hot reload (fails, restrict)--> GOVERNED_RESTRICTED
    GOVERNED_* --hot reload (fails, invalidate)--> GOVERNED_INVALIDATED
    GOVERNED_INVALIDATED --promote (passes)--> GOVERNED_VALID
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from .audit_logger import AuditEventType, AuditLogger, AuditSeverity
from .errors import AgentAlreadyExistsError, AgentNotFoundError
from .metrics import GovernanceMetrics
from .models import (
    AdmissionDecision,
    AdmissionReason,
    Agent,
    AgentSpec,
    DriftReport,
    DriftSeverity,
    DriftSummary,
    DriftType,
    GovernanceStatus,
    HotReloadResult,
    PolicyDecision,
    PolicyDocument,
    PromotionResult,
    RevalidationSummary,
    ViolationSeverity,
    utc_now,
)
from .policy_engine import PolicyEngine
from .proofs import ProofCheck, ProofEngine
from .storage import AgentStore
from .tools import ToolRegistry


logger = logging.getLogger(__name__)

_PROOF_DENIALS = {
    ProofCheck.AGENT_HASH_MISMATCH: AdmissionReason.SPEC_TAMPERED,
    ProofCheck.POLICY_HASH_MISMATCH: AdmissionReason.STALE_POLICY,
    ProofCheck.SIGNER_REVOKED: AdmissionReason.SIGNER_REVOKED,
    ProofCheck.SIGNATURE_INVALID: AdmissionReason.INVALID_SIGNATURE,
}


class GovernanceStateMachine:
    """
    Agent registry plus governance lifecycle.

    Promotion, admission and the hot reload sweep all run under the policy
    engine's lock, so an admission check never observes a half-applied
    reload.
    """

    def __init__(
        self,
        policy_engine: PolicyEngine,
        proof_engine: ProofEngine,
        agent_store: AgentStore,
        tool_registry: ToolRegistry,
        audit_logger: Optional[AuditLogger] = None,
        metrics: Optional[GovernanceMetrics] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Initialize the state machine.

        Args:
            policy_engine: Evaluates specs and owns the active policy hash
            proof_engine: Hashes specs and signs/verifies proof bundles
            agent_store: Persistence for agent aggregates
            tool_registry: Registry agent tool references are resolved against
            audit_logger: Audit sink for lifecycle events
            metrics: Metrics recorder
            clock: Source of the current time for sandbox expiry
        """
        self.policy_engine = policy_engine
        self.proof_engine = proof_engine
        self.agent_store = agent_store
        self.tool_registry = tool_registry
        self.audit_logger = audit_logger
        self.metrics = metrics or GovernanceMetrics(enabled=False)
        self.clock = clock

        self.lock = policy_engine.lock
        self._sweep_backup: List[Agent] = []
        policy_engine.add_reload_listener(self._revalidate_all, rollback=self._restore_sweep)

    # =========================================================================
    # Agent registry
    # =========================================================================

    async def register_agent(self, spec: AgentSpec) -> Agent:
        """
        Register a new agent in SANDBOX status.

        Raises:
            AgentAlreadyExistsError: If the id is taken
            UnknownToolError: If the spec references unregistered tools
        """
        self.tool_registry.resolve(spec.tools)

        async with self.lock:
            if await self.agent_store.load_agent(spec.id) is not None:
                raise AgentAlreadyExistsError(f"Agent {spec.id} already exists")
            agent = Agent(spec=spec, status=GovernanceStatus.SANDBOX)
            await self.agent_store.save_agent(agent)

        logger.info(f"Registered agent {spec.id} in sandbox")
        self._audit(AuditEventType.AGENT_REGISTERED, agent_id=spec.id, status=agent.status.value)
        return agent

    async def get_agent(self, agent_id: str) -> Agent:
        """
        Return an agent.

        Raises:
            AgentNotFoundError: If the id is unknown
        """
        agent = await self.agent_store.load_agent(agent_id)
        if agent is None:
            raise AgentNotFoundError(agent_id)
        return agent

    async def list_agents(self, status: Optional[GovernanceStatus] = None) -> List[Agent]:
        agents = await self.agent_store.list_agents()
        if status is not None:
            agents = [a for a in agents if a.status == status]
        return sorted(agents, key=lambda a: a.id)

    async def update_spec(
        self,
        agent_id: str,
        spec: Optional[AgentSpec] = None,
        **changes: Any,
    ) -> Agent:
        """
        Replace an agent's spec with a new version.

        Pass a complete ``spec`` or field ``changes`` to apply to the current
        one. Status and proof are left untouched, so editing a governed agent
        makes its next admission fail as tampered until it is re-promoted.

        Raises:
            AgentNotFoundError: If the id is unknown
            UnknownToolError: If the new spec references unregistered tools
            ValueError: If the new spec carries a different id
        """
        async with self.lock:
            agent = await self.get_agent(agent_id)
            if spec is None:
                data = agent.spec.model_dump()
                data.update(changes)
                spec = AgentSpec.model_validate(data)
            if spec.id != agent_id:
                raise ValueError(f"Spec id {spec.id} does not match agent {agent_id}")
            self.tool_registry.resolve(spec.tools)

            agent.spec = spec
            agent.updated_at = self.clock()
            await self.agent_store.save_agent(agent)

        logger.info(f"Updated spec of agent {agent_id} (status: {agent.status.value})")
        self._audit(
            AuditEventType.AGENT_UPDATED,
            agent_id=agent_id,
            status=agent.status.value,
            metadata={"agent_hash": self.proof_engine.hash(spec)},
        )
        return agent

    async def delete_agent(self, agent_id: str) -> bool:
        async with self.lock:
            deleted = await self.agent_store.delete_agent(agent_id)
        if deleted:
            logger.info(f"Deleted agent {agent_id}")
            self._audit(AuditEventType.AGENT_DELETED, agent_id=agent_id)
        return deleted

    # =========================================================================
    # Promotion
    # =========================================================================

    async def promote(self, agent_id: str) -> PromotionResult:
        """
        Evaluate an agent against the active policy and govern it on success.

        Accepted from any status. On failure the status is unchanged and
        the violations are returned.

        Raises:
            AgentNotFoundError: If the id is unknown
            PolicyNotLoadedError: If no policy is active
        """
        async with self.lock:
            agent = await self.get_agent(agent_id)
            decision = self.policy_engine.evaluate(agent.spec)

            if not decision.allow:
                result = PromotionResult(
                    success=False, status=agent.status, violations=decision.violations
                )
            else:
                previous = agent.status
                agent.proof = self.proof_engine.issue(
                    agent_hash=self.proof_engine.hash(agent.spec),
                    policy_hash=decision.policy_hash,
                    evaluated_at=self.clock(),
                )
                agent.status = GovernanceStatus.GOVERNED_VALID
                agent.status_reason = None
                agent.updated_at = self.clock()
                agent.check_invariants()
                await self.agent_store.save_agent(agent)
                result = PromotionResult(
                    success=True, status=agent.status, proof_bundle=agent.proof
                )
                logger.info(
                    f"Promoted agent {agent_id}: {previous.value} -> {agent.status.value}"
                )

        if not result.success:
            logger.info(
                f"Promotion of agent {agent_id} denied: {len(result.violations)} violation(s)"
            )
        self.metrics.promotion(result.success)
        self._audit(
            AuditEventType.PROMOTION,
            severity=AuditSeverity.INFO if result.success else AuditSeverity.WARNING,
            agent_id=agent_id,
            status=result.status.value,
            allowed=result.success,
            violations=result.violations or None,
            policy_hash=decision.policy_hash,
        )
        return result

    # =========================================================================
    # Admission
    # =========================================================================

    async def admit(
        self,
        agent_id: str,
        requested_side_effects: Optional[Iterable[str]] = None,
    ) -> AdmissionDecision:
        """
        Decide whether an agent may run now.

        Never raises for a known agent; denials are returned with a reason.
        Two calls with no state change in between return the same decision.

        Args:
            agent_id: Agent to admit
            requested_side_effects: Side effects the caller intends to use

        Returns:
            AdmissionDecision, with ``allowed_tools`` set when only a subset
            of the agent's tools may be used

        Raises:
            AgentNotFoundError: If the id is unknown
        """
        requested = frozenset(requested_side_effects or ())

        async with self.lock:
            agent = await self.get_agent(agent_id)
            if agent.status == GovernanceStatus.SANDBOX:
                decision = self._admit_sandbox(agent, requested)
            elif agent.status == GovernanceStatus.GOVERNED_VALID:
                decision = self._admit_valid(agent)
            elif agent.status == GovernanceStatus.GOVERNED_RESTRICTED:
                decision = self._admit_restricted(agent, requested)
            else:
                decision = self._deny(agent, AdmissionReason.GOVERNANCE_INVALIDATED)

        if decision.allowed:
            logger.debug(f"Admitted agent {agent_id} ({agent.status.value})")
        else:
            logger.warning(f"Denied admission of agent {agent_id}: {decision.reason}")
        self.metrics.admission(decision.allowed, decision.status.value)
        self._audit(
            AuditEventType.ADMISSION,
            severity=AuditSeverity.INFO if decision.allowed else AuditSeverity.WARNING,
            agent_id=agent_id,
            status=decision.status.value,
            allowed=decision.allowed,
            reason=decision.reason,
            metadata={"requested_side_effects": sorted(requested)} if requested else {},
        )
        return decision

    def _admit_sandbox(self, agent: Agent, requested: frozenset) -> AdmissionDecision:
        constraints = agent.spec.sandbox_constraints
        if constraints.expires_at is not None and self.clock() >= constraints.expires_at:
            return self._deny(agent, AdmissionReason.SANDBOX_EXPIRED)
        if not requested <= constraints.allowed_side_effects:
            return self._deny(agent, AdmissionReason.SIDE_EFFECT_NOT_PERMITTED)
        return AdmissionDecision(
            allowed=True,
            status=agent.status,
            allowed_tools=self.tool_registry.within_side_effects(
                agent.spec.tools, constraints.allowed_side_effects
            ),
        )

    def _admit_valid(self, agent: Agent) -> AdmissionDecision:
        if agent.proof is None:
            return self._deny(agent, AdmissionReason.PROOF_MISSING)
        check = self.proof_engine.check(
            agent.proof,
            self.proof_engine.hash(agent.spec),
            self.policy_engine.active_policy_hash(),
        )
        if check != ProofCheck.VALID:
            return self._deny(agent, _PROOF_DENIALS[check])
        return AdmissionDecision(allowed=True, status=agent.status)

    def _admit_restricted(self, agent: Agent, requested: frozenset) -> AdmissionDecision:
        if agent.proof is None:
            return self._deny(agent, AdmissionReason.PROOF_MISSING)
        if agent.proof.agent_hash != self.proof_engine.hash(agent.spec):
            return self._deny(agent, AdmissionReason.SPEC_TAMPERED)

        pure_tools = self.tool_registry.side_effect_free(agent.spec.tools)
        if requested or not pure_tools:
            return self._deny(agent, AdmissionReason.RESTRICTED_BY_POLICY)
        return AdmissionDecision(
            allowed=True,
            status=agent.status,
            reason=AdmissionReason.RESTRICTED_BY_POLICY.value,
            allowed_tools=pure_tools,
        )

    @staticmethod
    def _deny(agent: Agent, reason: AdmissionReason) -> AdmissionDecision:
        return AdmissionDecision(allowed=False, status=agent.status, reason=reason.value)

    # =========================================================================
    # Hot reload
    # =========================================================================

    async def hot_reload(self, document: PolicyDocument) -> HotReloadResult:
        """Replace the active policy and revalidate every governed agent."""
        return await self.policy_engine.hot_reload(document)

    async def _revalidate_all(self, policy_hash: str) -> RevalidationSummary:
        """
        Sweep governed agents against the newly active policy.

        Runs inside ``PolicyEngine.hot_reload`` with the lock already held.
        Every decision is computed before any agent is saved, so a failing
        evaluation leaves stored state untouched.
        The agents are backed up first; ``_restore_sweep`` re-saves them if
        the reload fails after some were written.
        """
        self._sweep_backup = []
        agents = [
            a
            for a in await self.agent_store.list_agents()
            if a.status
            in (GovernanceStatus.GOVERNED_VALID, GovernanceStatus.GOVERNED_RESTRICTED)
        ]

        self._sweep_backup = [agent.model_copy(deep=True) for agent in agents]
        planned: List[Tuple[Agent, Optional[PolicyDecision], bool]] = []
        for agent in agents:
            tampered = (
                agent.proof is None
                or agent.proof.agent_hash != self.proof_engine.hash(agent.spec)
            )
            decision = None if tampered else self.policy_engine.evaluate(agent.spec)
            planned.append((agent, decision, tampered))

        summary = RevalidationSummary(revalidated_count=len(planned))
        now = self.clock()
        for agent, decision, tampered in planned:
            previous = agent.status
            if tampered:
                agent.status = GovernanceStatus.GOVERNED_INVALIDATED
                agent.status_reason = AdmissionReason.SPEC_TAMPERED.value
                outcome = "invalidated"
            elif decision.allow:
                agent.proof = self.proof_engine.issue(
                    agent_hash=agent.proof.agent_hash,
                    policy_hash=policy_hash,
                    evaluated_at=now,
                )
                agent.status = GovernanceStatus.GOVERNED_VALID
                agent.status_reason = None
                outcome = "valid"
            elif decision.severity == ViolationSeverity.RESTRICT:
                agent.status = GovernanceStatus.GOVERNED_RESTRICTED
                agent.status_reason = "; ".join(decision.violations)
                outcome = "restricted"
            else:
                agent.status = GovernanceStatus.GOVERNED_INVALIDATED
                agent.status_reason = "; ".join(decision.violations)
                outcome = "invalidated"

            if outcome == "invalidated":
                summary.invalidated_agents.add(agent.id)
            elif outcome == "restricted":
                summary.restricted_agents.add(agent.id)

            agent.updated_at = now
            await self.agent_store.save_agent(agent)

            if agent.status != previous:
                logger.warning(
                    f"Agent {agent.id} revalidated: {previous.value} -> {agent.status.value}"
                    f" ({agent.status_reason})"
                )
            self.metrics.revalidation(outcome)
            self._audit(
                AuditEventType.REVALIDATION,
                severity=AuditSeverity.INFO if outcome == "valid" else AuditSeverity.WARNING,
                agent_id=agent.id,
                status=agent.status.value,
                reason=agent.status_reason,
                violations=decision.violations if decision else None,
                policy_hash=policy_hash,
                metadata={"previous_status": previous.value},
            )

        return summary

    async def _restore_sweep(self) -> None:
        """Re-save the agents as they were before the last sweep."""
        backup, self._sweep_backup = self._sweep_backup, []
        for agent in backup:
            await self.agent_store.save_agent(agent)
        if backup:
            logger.warning(f"Restored {len(backup)} agent(s) after a failed hot reload")

    # =========================================================================
    # Drift detection
    # =========================================================================

    async def detect_drift(self) -> DriftSummary:
        """
        Report agents that diverge from current governance requirements.

        Read-only: nothing is transitioned or saved.
        """
        active_hash = self.policy_engine.active_policy_hash()
        now = self.clock()
        reports: List[DriftReport] = []

        for agent in await self.list_agents():
            report = self._drift_for(agent, active_hash, now)
            if report is not None:
                reports.append(report)

        by_type: Dict[str, int] = {}
        by_severity: Dict[str, int] = {}
        for report in reports:
            by_type[report.drift_type.value] = by_type.get(report.drift_type.value, 0) + 1
            by_severity[report.severity.value] = by_severity.get(report.severity.value, 0) + 1

        return DriftSummary(
            total_drifted=len(reports),
            by_type=by_type,
            by_severity=by_severity,
            reports=reports,
        )

    def _drift_for(
        self, agent: Agent, active_hash: str, now: datetime
    ) -> Optional[DriftReport]:
        if agent.status == GovernanceStatus.SANDBOX:
            expires_at = agent.spec.sandbox_constraints.expires_at
            if expires_at is not None and now >= expires_at:
                return DriftReport(
                    agent_id=agent.id,
                    drift_type=DriftType.EXPIRED,
                    severity=DriftSeverity.LOW,
                    details=f"Sandbox expired at {expires_at.isoformat()}",
                    recommended_action="Promote the agent or extend its sandbox",
                )
            return None

        if agent.status == GovernanceStatus.GOVERNED_INVALIDATED:
            return DriftReport(
                agent_id=agent.id,
                drift_type=DriftType.POLICY_CHANGE,
                severity=DriftSeverity.HIGH,
                details=f"Governance invalidated: {agent.status_reason or 'unknown reason'}",
                recommended_action="Fix the agent spec and re-promote",
            )

        if agent.proof is None or agent.proof.agent_hash != self.proof_engine.hash(agent.spec):
            return DriftReport(
                agent_id=agent.id,
                drift_type=DriftType.SPEC_TAMPER,
                severity=DriftSeverity.CRITICAL,
                details="Current spec does not match the spec in the proof bundle",
                recommended_action="Review the spec change and re-promote",
            )

        if agent.status == GovernanceStatus.GOVERNED_RESTRICTED:
            return DriftReport(
                agent_id=agent.id,
                drift_type=DriftType.POLICY_CHANGE,
                severity=DriftSeverity.MEDIUM,
                details=f"Restricted by policy change: {agent.status_reason}",
                recommended_action="Bring the spec into compliance and re-promote",
            )

        if agent.proof.policy_hash != active_hash:
            return DriftReport(
                agent_id=agent.id,
                drift_type=DriftType.STALE_POLICY,
                severity=DriftSeverity.HIGH,
                details=(
                    f"Proof policy {agent.proof.policy_hash[:12]} differs from "
                    f"active policy {active_hash[:12]}"
                ),
                recommended_action="Re-promote against the active policy",
            )
        return None

    def _audit(self, event_type: AuditEventType, **fields: Any) -> None:
        if self.audit_logger:
            self.audit_logger.emit(event_type, **fields)
