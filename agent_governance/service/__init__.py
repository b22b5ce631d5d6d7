"""
Governance core service implementation.

Contains the proof and policy engines, the governance state machine, the
agent task runner and the multi-agent orchestrator.
"""

from .config import GovernanceConfig, configure_logging
from .core import GovernanceCore
from .governance import GovernanceStateMachine
from .orchestrator import Orchestrator
from .planner import GraphPlanner, LinearPlanner, ParallelPlanner, Planner
from .policy_engine import PolicyEngine
from .proofs import ProofCheck, ProofEngine
from .remediation import Remediator
from .runner import AgentTaskRunner
from .thinker import CallableThinker, ScriptedThinker, Thinker
from .tools import FunctionTool, Tool, ToolRegistry

__all__ = [
    "GovernanceConfig",
    "configure_logging",
    "GovernanceCore",
    "GovernanceStateMachine",
    "Orchestrator",
    "Planner",
    "LinearPlanner",
    "ParallelPlanner",
    "GraphPlanner",
    "PolicyEngine",
    "ProofCheck",
    "ProofEngine",
    "Remediator",
    "AgentTaskRunner",
    "Thinker",
    "ScriptedThinker",
    "CallableThinker",
    "Tool",
    "FunctionTool",
    "ToolRegistry",
]
