"""
Shared fixtures for governance core tests.

Module: agent_governance/tests/conftest.py
"""

import pytest

from agent_governance.service.audit_logger import AuditLogger, MemoryAuditSink
from agent_governance.service.config import GovernanceConfig
from agent_governance.service.governance import GovernanceStateMachine
from agent_governance.service.models import ViolationSeverity
from agent_governance.service.policy_engine import PolicyEngine
from agent_governance.service.proofs import ProofEngine
from agent_governance.service.storage import InMemoryAgentStore, InMemoryPolicyStore
from agent_governance.service.tools import FunctionTool, ToolRegistry

from .factories import FakeClock, flaky, make_policy, search, send_email


@pytest.fixture
def config() -> GovernanceConfig:
    """Create test configuration."""
    return GovernanceConfig(
        proof_signing_key="test-signing-key",
        enable_metrics=False,
        subtask_timeout_seconds=5.0,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def tool_registry() -> ToolRegistry:
    """Registry with pure, side-effecting and failing tools."""
    return ToolRegistry(
        [
            FunctionTool("search", search),
            FunctionTool("send_email", send_email, side_effects=["network"]),
            FunctionTool("flaky", flaky),
            FunctionTool("shell", lambda command="": command, side_effects=["process"]),
        ]
    )


@pytest.fixture
def memory_sink() -> MemoryAuditSink:
    return MemoryAuditSink()


@pytest.fixture
def audit_logger(memory_sink: MemoryAuditSink) -> AuditLogger:
    return AuditLogger(sinks=[memory_sink])


@pytest.fixture
def proof_engine(config: GovernanceConfig) -> ProofEngine:
    return ProofEngine.from_config(config)


@pytest.fixture
def agent_store() -> InMemoryAgentStore:
    return InMemoryAgentStore()


@pytest.fixture
def policy_store() -> InMemoryPolicyStore:
    return InMemoryPolicyStore()


@pytest.fixture
def policy_engine(
    proof_engine: ProofEngine,
    policy_store: InMemoryPolicyStore,
    audit_logger: AuditLogger,
) -> PolicyEngine:
    return PolicyEngine(
        proof_engine,
        document=make_policy(),
        policy_store=policy_store,
        default_severity=ViolationSeverity.INVALIDATE,
        audit_logger=audit_logger,
    )


@pytest.fixture
def governance(
    policy_engine: PolicyEngine,
    proof_engine: ProofEngine,
    agent_store: InMemoryAgentStore,
    tool_registry: ToolRegistry,
    audit_logger: AuditLogger,
    clock: FakeClock,
) -> GovernanceStateMachine:
    return GovernanceStateMachine(
        policy_engine,
        proof_engine,
        agent_store,
        tool_registry,
        audit_logger=audit_logger,
        clock=clock,
    )

