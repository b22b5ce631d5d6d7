"""
Configuration module for the agent governance core.

Uses pydantic-settings for environment variable management with type validation.
"""

import logging
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class GovernanceConfig(BaseSettings):
    """Configuration for governance, task execution and orchestration."""

    model_config = SettingsConfigDict(
        env_prefix="GOVERNANCE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    log_level: str = Field(
        default="INFO", description="Logging level (DEBUG, INFO, WARNING, ERROR)"
    )

    # Proofs
    proof_signing_key: str = Field(
        ..., min_length=16, description="HMAC key used to sign proof bundles"
    )
    proof_authority: str = Field(
        default="governance-core", description="Signer recorded in proof bundles"
    )
    hash_algorithm: str = Field(
        default="sha256", description="Content hash algorithm (sha256, sha384, sha512)"
    )

    # Policy
    policy_path: Optional[str] = Field(
        default=None, description="Policy document loaded at startup (YAML or JSON)"
    )
    default_violation_severity: str = Field(
        default="invalidate",
        description="Severity for policy rules that do not declare one",
    )

    # Agent task loop
    default_max_iterations: int = Field(
        default=10, ge=1, description="Iteration budget when the agent sets none"
    )
    completion_marker: str = Field(
        default="task complete",
        description="Case-insensitive marker that ends a task when found in a thought",
    )
    iteration_delay_seconds: float = Field(
        default=0.0, ge=0.0, description="Pause between iterations of one task"
    )

    # Orchestration
    subtask_timeout_seconds: float = Field(
        default=60.0, gt=0.0, description="Hard timeout for each plan step"
    )
    orchestration_timeout_seconds: Optional[float] = Field(
        default=None, description="Aggregate deadline for one orchestrated task"
    )

    # Observability
    audit_log_path: Optional[str] = Field(
        default=None, description="JSONL file receiving audit events"
    )
    enable_metrics: bool = Field(default=True, description="Enable Prometheus metrics")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is one of the allowed values."""
        allowed_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v_upper = v.upper()
        if v_upper not in allowed_levels:
            raise ValueError(f"log_level must be one of {allowed_levels}")
        return v_upper

    @field_validator("hash_algorithm")
    @classmethod
    def validate_hash_algorithm(cls, v: str) -> str:
        """Validate hash algorithm is supported."""
        allowed = {"sha256", "sha384", "sha512"}
        v_lower = v.lower()
        if v_lower not in allowed:
            raise ValueError(f"hash_algorithm must be one of {allowed}")
        return v_lower

    @field_validator("default_violation_severity")
    @classmethod
    def validate_severity(cls, v: str) -> str:
        """Validate the default violation severity."""
        allowed = {"restrict", "invalidate"}
        v_lower = v.lower()
        if v_lower not in allowed:
            raise ValueError(f"default_violation_severity must be one of {allowed}")
        return v_lower


def configure_logging(config: GovernanceConfig) -> None:
    """Configure root logging from the given config."""
    logging.basicConfig(
        level=getattr(logging, config.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
