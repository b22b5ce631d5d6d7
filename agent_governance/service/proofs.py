"""
Proof engine for governance proofs.

Module: agent_governance/service/proofs.py

Computes content hashes of agent specs and policy documents, signs proof
bundles binding the two, and verifies bundles against current hashes. One
verification detects both a tampered spec (agent hash mismatch) and a stale
proof (policy hash mismatch).
"""

import hashlib
import hmac
import json
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Set

from pydantic import BaseModel

from .config import GovernanceConfig
from .models import ProofBundle, utc_now


logger = logging.getLogger(__name__)


class ProofCheck(str, Enum):
    """Outcome of checking a proof bundle."""

    VALID = "valid"
    AGENT_HASH_MISMATCH = "agent_hash_mismatch"
    POLICY_HASH_MISMATCH = "policy_hash_mismatch"
    SIGNATURE_INVALID = "signature_invalid"
    SIGNER_REVOKED = "signer_revoked"


def canonical_json(payload: Any) -> str:
    """Serialize deterministically: sorted keys, no whitespace."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


class ProofEngine:
    """
    Hashes governed content and signs proof bundles.

    Signatures are HMACs keyed by a secret that never leaves the governance
    trust boundary, so bundles cannot be forged by holders of agent specs.
    """

    def __init__(
        self,
        signing_key: str,
        authority: str = "governance-core",
        hash_algorithm: str = "sha256",
    ):
        """
        Initialize proof engine.

        Args:
            signing_key: HMAC key for bundle signatures
            authority: Signer name recorded in issued bundles
            hash_algorithm: Algorithm for content hashes (sha256, sha384, sha512)
        """
        if not signing_key:
            raise ValueError("signing_key must not be empty")
        self._signing_key = signing_key.encode("utf-8")
        self.authority = authority
        self.hash_algorithm = hash_algorithm
        self._revoked_signers: Set[str] = set()

    @classmethod
    def from_config(cls, config: GovernanceConfig) -> "ProofEngine":
        return cls(
            signing_key=config.proof_signing_key,
            authority=config.proof_authority,
            hash_algorithm=config.hash_algorithm,
        )

    # =========================================================================
    # Hashing
    # =========================================================================

    def hash(self, content: Any) -> str:
        """
        Create a deterministic content hash.

        Args:
            content: bytes, str, a pydantic model or JSON-serializable data

        Returns:
            Hex digest
        """
        if isinstance(content, bytes):
            serialized = content
        elif isinstance(content, str):
            serialized = content.encode("utf-8")
        elif isinstance(content, BaseModel):
            serialized = canonical_json(content.model_dump(mode="json")).encode("utf-8")
        else:
            serialized = canonical_json(content).encode("utf-8")

        hasher = hashlib.new(self.hash_algorithm)
        hasher.update(serialized)
        return hasher.hexdigest()

    # =========================================================================
    # Signing
    # =========================================================================

    def sign(
        self,
        agent_hash: str,
        policy_hash: str,
        timestamp: datetime,
        authority: Optional[str] = None,
    ) -> str:
        """Sign the binding of an agent hash to a policy hash at a time."""
        payload = {
            "agent_hash": agent_hash,
            "policy_hash": policy_hash,
            "evaluated_at": timestamp.isoformat(),
            "authority": authority or self.authority,
        }
        raw = canonical_json(payload).encode("utf-8")
        return hmac.new(self._signing_key, raw, hashlib.sha256).hexdigest()

    def issue(
        self,
        agent_hash: str,
        policy_hash: str,
        evaluated_at: Optional[datetime] = None,
    ) -> ProofBundle:
        """Build and sign a new proof bundle."""
        evaluated_at = evaluated_at or utc_now()
        return ProofBundle(
            agent_hash=agent_hash,
            policy_hash=policy_hash,
            signature=self.sign(agent_hash, policy_hash, evaluated_at),
            evaluated_at=evaluated_at,
            authority=self.authority,
        )

    # =========================================================================
    # Verification
    # =========================================================================

    def check(
        self,
        bundle: ProofBundle,
        current_agent_hash: str,
        current_policy_hash: str,
    ) -> ProofCheck:
        """
        Check a bundle against the current hashes.

        Mismatches are reported in order: agent hash, policy hash, signer
        revocation, signature.
        """
        if bundle.agent_hash != current_agent_hash:
            return ProofCheck.AGENT_HASH_MISMATCH
        if bundle.policy_hash != current_policy_hash:
            return ProofCheck.POLICY_HASH_MISMATCH
        if bundle.authority in self._revoked_signers:
            return ProofCheck.SIGNER_REVOKED

        expected = self.sign(
            bundle.agent_hash, bundle.policy_hash, bundle.evaluated_at, bundle.authority
        )
        if not hmac.compare_digest(expected, bundle.signature):
            return ProofCheck.SIGNATURE_INVALID
        return ProofCheck.VALID

    def verify(
        self,
        bundle: ProofBundle,
        current_agent_hash: str,
        current_policy_hash: str,
    ) -> bool:
        """Return True only if both hashes match and the signature is valid."""
        return self.check(bundle, current_agent_hash, current_policy_hash) == ProofCheck.VALID

    # =========================================================================
    # Signer revocation
    # =========================================================================

    def revoke_signer(self, authority: str) -> None:
        self._revoked_signers.add(authority)
        logger.warning(f"Revoked proof signer {authority}")

    def restore_signer(self, authority: str) -> None:
        self._revoked_signers.discard(authority)
        logger.info(f"Restored proof signer {authority}")

    def revoked_signers(self) -> Set[str]:
        return set(self._revoked_signers)
