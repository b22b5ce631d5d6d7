"""
Wiring for the governance core.

The host application builds one ``GovernanceCore`` at startup and owns its
lifetime; nothing here is a module-level singleton.
"""

import logging
from typing import Optional

from .audit_logger import AuditLogger, create_audit_logger
from .config import GovernanceConfig
from .governance import GovernanceStateMachine
from .metrics import GovernanceMetrics
from .orchestrator import Orchestrator
from .planner import Planner
from .policy_engine import PolicyEngine
from .proofs import ProofEngine
from .remediation import Remediator
from .runner import AgentTaskRunner
from .storage import AgentStore, InMemoryAgentStore, InMemoryPolicyStore, PolicyStore
from .thinker import Thinker
from .tools import ToolRegistry


logger = logging.getLogger(__name__)


class GovernanceCore:
    """All governance components, constructed against one config."""

    def __init__(
        self,
        config: GovernanceConfig,
        tool_registry: ToolRegistry,
        thinker: Thinker,
        agent_store: Optional[AgentStore] = None,
        policy_store: Optional[PolicyStore] = None,
        audit_logger: Optional[AuditLogger] = None,
        planner: Optional[Planner] = None,
    ):
        self.config = config
        self.tool_registry = tool_registry
        self.agent_store = agent_store or InMemoryAgentStore()
        self.policy_store = policy_store or InMemoryPolicyStore()
        self.audit_logger = audit_logger or create_audit_logger(config.audit_log_path)
        self.metrics = GovernanceMetrics(enabled=config.enable_metrics)

        self.proof_engine = ProofEngine.from_config(config)
        self.policy_engine = PolicyEngine.from_config(
            config,
            self.proof_engine,
            policy_store=self.policy_store,
            audit_logger=self.audit_logger,
            metrics=self.metrics,
        )
        self.governance = GovernanceStateMachine(
            self.policy_engine,
            self.proof_engine,
            self.agent_store,
            tool_registry,
            audit_logger=self.audit_logger,
            metrics=self.metrics,
        )
        self.runner = AgentTaskRunner(
            self.agent_store,
            tool_registry,
            thinker,
            config=config,
            audit_logger=self.audit_logger,
            metrics=self.metrics,
        )
        self.orchestrator = Orchestrator(
            self.governance,
            self.runner,
            planner=planner,
            config=config,
            audit_logger=self.audit_logger,
            metrics=self.metrics,
        )
        self.remediator = Remediator(self.governance, audit_logger=self.audit_logger)

    async def start(self) -> None:
        """Restore the active policy from the policy store when none is loaded."""
        if not self.policy_engine.has_policy:
            policy_hash = await self.policy_engine.load_active_policy()
            if policy_hash:
                logger.info(f"Restored active policy {policy_hash[:12]} from store")
        if not self.policy_engine.has_policy:
            logger.warning("Governance core started without an active policy")

    def close(self) -> None:
        self.audit_logger.close()
