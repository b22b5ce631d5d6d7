"""
Prometheus metrics for the governance core.
"""

from prometheus_client import Counter, Histogram

promotions_total = Counter(
    "agent_governance_promotions_total", "Promotion attempts", ["outcome"]
)
admissions_total = Counter(
    "agent_governance_admissions_total", "Admission checks", ["decision", "status"]
)
policy_reloads_total = Counter(
    "agent_governance_policy_reloads_total", "Policy hot reloads"
)
revalidations_total = Counter(
    "agent_governance_revalidations_total", "Hot reload revalidation outcomes", ["outcome"]
)
agent_tasks_total = Counter(
    "agent_governance_agent_tasks_total", "Agent tasks reaching a terminal state", ["status"]
)
orchestrations_total = Counter(
    "agent_governance_orchestrations_total",
    "Orchestrated tasks reaching a terminal state",
    ["status"],
)
step_duration = Histogram(
    "agent_governance_step_duration_seconds", "Plan step execution duration"
)


class GovernanceMetrics:
    """Thin switch over the module-level collectors."""

    def __init__(self, enabled: bool = True) -> None:
        self.enabled = enabled

    def promotion(self, success: bool) -> None:
        if self.enabled:
            promotions_total.labels(outcome="success" if success else "denied").inc()

    def admission(self, allowed: bool, status: str) -> None:
        if self.enabled:
            admissions_total.labels(
                decision="allowed" if allowed else "denied", status=status
            ).inc()

    def policy_reload(self) -> None:
        if self.enabled:
            policy_reloads_total.inc()

    def revalidation(self, outcome: str) -> None:
        if self.enabled:
            revalidations_total.labels(outcome=outcome).inc()

    def agent_task(self, status: str) -> None:
        if self.enabled:
            agent_tasks_total.labels(status=status).inc()

    def orchestration(self, status: str) -> None:
        if self.enabled:
            orchestrations_total.labels(status=status).inc()

    def step_finished(self, seconds: float) -> None:
        if self.enabled:
            step_duration.observe(seconds)
