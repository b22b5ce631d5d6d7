"""
Agent governance and multi-agent orchestration core.

This package provides:
- Content hashing and signed proof bundles for agent specs
- Policy evaluation with live hot reload
- The sandbox -> governed agent lifecycle with tamper-evident admission
- Iterative think/act/observe agent tasks
- Dependency-ordered, parallel multi-agent orchestration
"""

__version__ = "1.0.0"

from .service.config import GovernanceConfig
from .service.core import GovernanceCore
from .service.errors import (
    AgentAlreadyExistsError,
    AgentNotFoundError,
    GovernanceError,
    PlanValidationError,
    PolicyLoadError,
    PolicyNotLoadedError,
    TaskNotFoundError,
    UnknownToolError,
)
from .service.models import (
    AdmissionDecision,
    Agent,
    AgentSpec,
    AgentTask,
    GovernanceStatus,
    OrchestratedTask,
    OrchestrationStatus,
    Plan,
    PlanStep,
    PolicyDocument,
    PolicyRule,
    ProofBundle,
    SandboxConstraints,
    TaskStatus,
    ToolAction,
    ViolationSeverity,
)

__all__ = [
    "GovernanceConfig",
    "GovernanceCore",
    "GovernanceError",
    "AgentAlreadyExistsError",
    "AgentNotFoundError",
    "PlanValidationError",
    "PolicyLoadError",
    "PolicyNotLoadedError",
    "TaskNotFoundError",
    "UnknownToolError",
    "AdmissionDecision",
    "Agent",
    "AgentSpec",
    "AgentTask",
    "GovernanceStatus",
    "OrchestratedTask",
    "OrchestrationStatus",
    "Plan",
    "PlanStep",
    "PolicyDocument",
    "PolicyRule",
    "ProofBundle",
    "SandboxConstraints",
    "TaskStatus",
    "ToolAction",
    "ViolationSeverity",
]
