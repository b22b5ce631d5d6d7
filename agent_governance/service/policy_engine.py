"""
Policy Engine for agent promotion and revalidation.

Module: agent_governance/service/policy_engine.py

Evaluates agent specs against the active policy document and owns the
active policy hash. Hot reload swaps the policy and runs every registered
reload listener while holding ``lock``, so an admission check that takes the
same lock never sees a half-applied reload.
"""

import json
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

import anyio
import yaml
from pydantic import ValidationError

from .audit_logger import AuditEventType, AuditLogger
from .config import GovernanceConfig
from .errors import PolicyLoadError, PolicyNotLoadedError
from .metrics import GovernanceMetrics
from .models import (
    AgentSpec,
    HotReloadResult,
    PolicyDecision,
    PolicyDocument,
    PolicyRule,
    PolicySnapshot,
    PolicyViolation,
    RevalidationSummary,
    RuleKind,
    ViolationSeverity,
)
from .proofs import ProofEngine
from .storage import PolicyStore


logger = logging.getLogger(__name__)

ANATOMY_INCOMPLETE = "Agent anatomy is incomplete"

PolicyValidator = Callable[[PolicyRule, AgentSpec], Optional[str]]
ReloadListener = Callable[[str], Awaitable[RevalidationSummary]]
ReloadRollback = Callable[[], Awaitable[None]]

_NUMERIC_RULES = {
    RuleKind.MAX_BUDGET,
    RuleKind.MAX_TOKENS_PER_REQUEST,
    RuleKind.MAX_ITERATIONS,
}


class PolicyEngine:
    """
    Evaluates agent specs against the active policy.

    Evaluation is deterministic: the same spec under the same policy yields
    the same decision and the same ordered violations.
    """

    def __init__(
        self,
        proof_engine: ProofEngine,
        document: Optional[PolicyDocument] = None,
        policy_store: Optional[PolicyStore] = None,
        default_severity: ViolationSeverity = ViolationSeverity.INVALIDATE,
        custom_validators: Optional[Dict[str, PolicyValidator]] = None,
        audit_logger: Optional[AuditLogger] = None,
        metrics: Optional[GovernanceMetrics] = None,
    ):
        """
        Initialize policy engine.

        Args:
            proof_engine: Hashes policy documents
            document: Initial policy document
            policy_store: Receives every hot-reloaded policy version
            default_severity: Severity for rules that declare none
            custom_validators: Validators for ``custom`` rules, by name
            audit_logger: Audit sink for reload events
            metrics: Metrics recorder
        """
        self.proof_engine = proof_engine
        self.policy_store = policy_store
        self.default_severity = ViolationSeverity(default_severity)
        self.custom_validators: Dict[str, PolicyValidator] = dict(custom_validators or {})
        self.audit_logger = audit_logger
        self.metrics = metrics or GovernanceMetrics(enabled=False)

        # Guards the active policy and every governance state transition.
        self.lock = anyio.Lock()

        self._document: Optional[PolicyDocument] = None
        self._policy_hash: Optional[str] = None
        self._history: List[PolicySnapshot] = []
        self._listeners: List[Tuple[ReloadListener, Optional[ReloadRollback]]] = []

        if document is not None:
            self.load_policy(document)

    @classmethod
    def from_config(
        cls,
        config: GovernanceConfig,
        proof_engine: ProofEngine,
        policy_store: Optional[PolicyStore] = None,
        audit_logger: Optional[AuditLogger] = None,
        metrics: Optional[GovernanceMetrics] = None,
    ) -> "PolicyEngine":
        """Create an engine, loading ``config.policy_path`` when set."""
        engine = cls(
            proof_engine=proof_engine,
            policy_store=policy_store,
            default_severity=ViolationSeverity(config.default_violation_severity),
            audit_logger=audit_logger,
            metrics=metrics,
        )
        if config.policy_path:
            engine.load_policy_from_file(config.policy_path)
        return engine

    # =========================================================================
    # Loading
    # =========================================================================

    def load_policy(self, document: Union[PolicyDocument, Dict[str, Any]]) -> str:
        """
        Install a policy without revalidating governed agents.

        Intended for startup. Use ``hot_reload`` once agents are governed.

        Returns:
            The policy hash
        """
        document = self._coerce(document)
        policy_hash = self._install(document)
        self._history.append(
            PolicySnapshot(name=document.name, version=document.version, policy_hash=policy_hash)
        )
        logger.info(
            f"Loaded policy '{document.name}' v{document.version} (hash: {policy_hash[:12]})"
        )
        return policy_hash

    def load_policy_from_yaml(self, yaml_content: str) -> str:
        """Install a policy from YAML text."""
        return self.load_policy(parse_policy_yaml(yaml_content))

    def load_policy_from_file(self, path: Union[str, Path]) -> str:
        """Install a policy from a YAML or JSON file."""
        return self.load_policy(read_policy_file(path))

    async def load_active_policy(self) -> Optional[str]:
        """Install the active policy from the policy store, if it has one."""
        if self.policy_store is None:
            return None
        document = await self.policy_store.load_active_policy()
        if document is None:
            return None
        return self.load_policy(document)

    def _coerce(self, document: Union[PolicyDocument, Dict[str, Any]]) -> PolicyDocument:
        if isinstance(document, PolicyDocument):
            parsed = document
        else:
            try:
                parsed = PolicyDocument.model_validate(document)
            except ValidationError as e:
                raise PolicyLoadError(f"Invalid policy document: {e}")
        errors = validate_policy_document(parsed)
        if errors:
            raise PolicyLoadError(f"Invalid policy document: {'; '.join(errors)}")
        return parsed

    def _install(self, document: PolicyDocument) -> str:
        policy_hash = self.proof_engine.hash(document)
        self._document = document
        self._policy_hash = policy_hash
        return policy_hash

    # =========================================================================
    # Queries
    # =========================================================================

    @property
    def has_policy(self) -> bool:
        return self._policy_hash is not None

    @property
    def active_policy(self) -> PolicyDocument:
        if self._document is None:
            raise PolicyNotLoadedError("Policy not loaded")
        return self._document

    def active_policy_hash(self) -> str:
        """Return the hash of the active policy."""
        if self._policy_hash is None:
            raise PolicyNotLoadedError("Policy not loaded")
        return self._policy_hash

    def history(self) -> List[PolicySnapshot]:
        """Policies that have been active, oldest first."""
        return list(self._history)

    def register_validator(self, name: str, validator: PolicyValidator) -> None:
        """Register a validator for ``custom`` rules."""
        self.custom_validators[name] = validator

    def add_reload_listener(
        self, listener: ReloadListener, rollback: Optional[ReloadRollback] = None
    ) -> None:
        """
        Register a coroutine run under ``lock`` after each hot reload swap.

        ``rollback`` undoes whatever the listener persisted; it runs when the
        reload fails after the listener has started.
        """
        self._listeners.append((listener, rollback))

    # =========================================================================
    # Evaluation
    # =========================================================================

    def evaluate(self, spec: AgentSpec) -> PolicyDecision:
        """
        Evaluate an agent spec against the active policy.

        Args:
            spec: Agent spec to evaluate

        Returns:
            PolicyDecision with allow flag and ordered violations
        """
        document = self.active_policy
        policy_hash = self.active_policy_hash()

        anatomy = self._check_anatomy(spec)
        if anatomy:
            findings = [anatomy]
        else:
            findings = []
            for rule in document.rules:
                if not rule.enabled:
                    continue
                message = self._evaluate_rule(rule, spec)
                if message:
                    findings.append(
                        PolicyViolation(
                            rule=rule.name,
                            message=message,
                            severity=rule.severity or self.default_severity,
                        )
                    )

        decision = PolicyDecision(
            allow=not findings,
            violations=[f.message for f in findings],
            findings=findings,
            policy_hash=policy_hash,
        )
        logger.debug(
            f"Evaluated agent {spec.id}: allow={decision.allow}, "
            f"violations={len(decision.violations)}"
        )
        return decision

    def _check_anatomy(self, spec: AgentSpec) -> Optional[PolicyViolation]:
        missing = []
        if not spec.system_prompt.strip():
            missing.append("system prompt")
        if not spec.tools:
            missing.append("tools")
        if not spec.role_class.strip():
            missing.append("role class")
        if not missing:
            return None
        return PolicyViolation(
            rule="anatomy",
            message=f"{ANATOMY_INCOMPLETE}: missing {', '.join(missing)}",
            severity=ViolationSeverity.INVALIDATE,
        )

    def _evaluate_rule(self, rule: PolicyRule, spec: AgentSpec) -> Optional[str]:
        """Return a violation message, or None if the spec satisfies the rule."""
        constraints = spec.sandbox_constraints

        if rule.kind == RuleKind.MAX_BUDGET:
            if constraints.max_budget > rule.limit:
                return (
                    f"Agent budget {constraints.max_budget:g} exceeds "
                    f"policy limit {rule.limit:g}"
                )

        elif rule.kind == RuleKind.MAX_TOKENS_PER_REQUEST:
            if constraints.max_tokens_per_request > rule.limit:
                return (
                    f"Agent max tokens per request {constraints.max_tokens_per_request} "
                    f"exceeds policy limit {rule.limit:g}"
                )

        elif rule.kind == RuleKind.MAX_ITERATIONS:
            if spec.max_iterations is not None and spec.max_iterations > rule.limit:
                return (
                    f"Agent iteration budget {spec.max_iterations} exceeds "
                    f"policy limit {rule.limit:g}"
                )

        elif rule.kind == RuleKind.FORBIDDEN_TOOLS:
            forbidden = sorted(spec.tools & set(rule.values))
            if forbidden:
                return f"Agent uses forbidden tools: {', '.join(forbidden)}"

        elif rule.kind == RuleKind.FORBIDDEN_SIDE_EFFECTS:
            forbidden = sorted(constraints.allowed_side_effects & set(rule.values))
            if forbidden:
                return f"Agent has forbidden side effects: {', '.join(forbidden)}"

        elif rule.kind == RuleKind.ALLOWED_ROLE_CLASSES:
            if spec.role_class not in rule.values:
                return f"Role class '{spec.role_class}' is not permitted by policy"

        elif rule.kind == RuleKind.CUSTOM:
            validator = self.custom_validators.get(rule.validator or "")
            if validator is None:
                return f"Policy validator '{rule.validator}' is not registered"
            return validator(rule, spec)

        return None

    # =========================================================================
    # Hot reload
    # =========================================================================

    async def hot_reload(
        self, document: Union[PolicyDocument, Dict[str, Any]]
    ) -> HotReloadResult:
        """
        Atomically replace the active policy and revalidate governed agents.

        The swap, every reload listener and the policy store write run under
        ``lock``. If any of them raises, started listeners are rolled back,
        the previous policy is restored and the error propagates.

        Args:
            document: New policy document

        Returns:
            HotReloadResult with new hash and revalidation outcome
        """
        document = self._coerce(document)

        async with self.lock:
            previous_document = self._document
            previous_hash = self._policy_hash
            policy_hash = self._install(document)

            summary = RevalidationSummary()
            snapshot = PolicySnapshot(
                name=document.name, version=document.version, policy_hash=policy_hash
            )
            started: List[ReloadRollback] = []
            try:
                for listener, rollback in self._listeners:
                    if rollback is not None:
                        started.append(rollback)
                    result = await listener(policy_hash)
                    summary.invalidated_agents |= result.invalidated_agents
                    summary.restricted_agents |= result.restricted_agents
                    summary.revalidated_count += result.revalidated_count
                if self.policy_store is not None:
                    await self.policy_store.save_policy_version(document, snapshot)
            except BaseException:
                with anyio.CancelScope(shield=True):
                    await self._roll_back(started)
                self._document = previous_document
                self._policy_hash = previous_hash
                logger.error(f"Hot reload to {policy_hash[:12]} failed; previous policy restored")
                raise

            self._history.append(snapshot)

        result = HotReloadResult(
            policy_hash=policy_hash,
            previous_policy_hash=previous_hash,
            invalidated_agents=summary.invalidated_agents,
            restricted_agents=summary.restricted_agents,
            revalidated_count=summary.revalidated_count,
        )

        self.metrics.policy_reload()
        logger.info(
            f"Hot reloaded policy '{document.name}' v{document.version}: "
            f"hash={policy_hash[:12]}, revalidated={result.revalidated_count}, "
            f"restricted={len(result.restricted_agents)}, "
            f"invalidated={len(result.invalidated_agents)}"
        )
        if self.audit_logger:
            self.audit_logger.emit(
                AuditEventType.POLICY_RELOAD,
                policy_hash=policy_hash,
                metadata={
                    "previous_policy_hash": previous_hash,
                    "version": document.version,
                    "revalidated_count": result.revalidated_count,
                    "restricted_agents": sorted(result.restricted_agents),
                    "invalidated_agents": sorted(result.invalidated_agents),
                },
            )
        return result

    @staticmethod
    async def _roll_back(rollbacks: List[ReloadRollback]) -> None:
        for rollback in reversed(rollbacks):
            try:
                await rollback()
            except Exception as e:
                logger.error(f"Hot reload rollback failed: {e}")


def validate_policy_document(document: PolicyDocument) -> List[str]:
    """
    Check rule shapes that the model alone cannot express.

    Returns:
        List of error messages (empty if valid)
    """
    errors: List[str] = []
    names = set()
    for rule in document.rules:
        if rule.name in names:
            errors.append(f"duplicate rule name '{rule.name}'")
        names.add(rule.name)
        if rule.kind in _NUMERIC_RULES and rule.limit is None:
            errors.append(f"rule '{rule.name}' ({rule.kind.value}) requires a limit")
        if rule.kind == RuleKind.CUSTOM and not rule.validator:
            errors.append(f"rule '{rule.name}' (custom) requires a validator")
    return errors


def parse_policy_yaml(yaml_content: str) -> PolicyDocument:
    """
    Parse a policy document from YAML text.

    Raises:
        PolicyLoadError: If the YAML or its structure is invalid
    """
    try:
        data = yaml.safe_load(yaml_content)
    except yaml.YAMLError as e:
        raise PolicyLoadError(f"Invalid YAML in policy: {e}")
    if not isinstance(data, dict):
        raise PolicyLoadError("Policy document must be a mapping")
    try:
        return PolicyDocument.model_validate(data)
    except ValidationError as e:
        raise PolicyLoadError(f"Invalid policy structure: {e}")


def read_policy_file(path: Union[str, Path]) -> PolicyDocument:
    """
    Read a policy document from a YAML or JSON file.

    Raises:
        PolicyLoadError: If the file is missing or invalid
    """
    policy_path = Path(path)
    if not policy_path.exists():
        raise PolicyLoadError(f"Policy not found: {policy_path}")

    content = policy_path.read_text(encoding="utf-8")
    if policy_path.suffix == ".json":
        try:
            return PolicyDocument.model_validate(json.loads(content))
        except (json.JSONDecodeError, ValidationError) as e:
            raise PolicyLoadError(f"Invalid policy in {policy_path}: {e}")
    return parse_policy_yaml(content)
