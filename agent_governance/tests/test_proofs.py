"""
Tests for the Proof Engine.

Module: agent_governance/tests/test_proofs.py
"""

from datetime import timedelta

import pytest

from agent_governance.service.proofs import ProofCheck, ProofEngine, canonical_json

from .factories import NOW, make_policy, make_spec


@pytest.fixture
def engine() -> ProofEngine:
    return ProofEngine(signing_key="unit-test-key", authority="unit-authority")


class TestHashing:
    """Tests for content hashing."""

    def test_same_spec_same_hash(self, engine: ProofEngine) -> None:
        """Hashing is deterministic for equal specs."""
        assert engine.hash(make_spec()) == engine.hash(make_spec())

    def test_set_order_does_not_matter(self, engine: ProofEngine) -> None:
        """Tool sets hash the same regardless of construction order."""
        a = make_spec(tools=["search", "send_email", "flaky"])
        b = make_spec(tools=["flaky", "search", "send_email"])
        assert engine.hash(a) == engine.hash(b)

    @pytest.mark.parametrize(
        "changes",
        [
            {"system_prompt": "You are reckless."},
            {"role_class": "operator"},
            {"tools": {"search", "send_email"}},
            {"name": "Renamed"},
            {"max_iterations": 3},
        ],
    )
    def test_any_field_change_changes_hash(self, engine: ProofEngine, changes) -> None:
        """Every spec field participates in the hash."""
        assert engine.hash(make_spec()) != engine.hash(make_spec(**changes))

    def test_sandbox_constraint_change_changes_hash(self, engine: ProofEngine) -> None:
        """Nested sandbox constraints participate in the hash."""
        spec = make_spec()
        edited = spec.model_copy(
            update={
                "sandbox_constraints": spec.sandbox_constraints.model_copy(
                    update={"max_budget": 101.0}
                )
            }
        )
        assert engine.hash(spec) != engine.hash(edited)

    def test_policy_hash_changes_with_version(self, engine: ProofEngine) -> None:
        assert engine.hash(make_policy("1")) != engine.hash(make_policy("2"))

    def test_hash_accepts_bytes_and_text(self, engine: ProofEngine) -> None:
        assert engine.hash(b"abc") == engine.hash("abc")

    def test_canonical_json_is_key_sorted(self) -> None:
        assert canonical_json({"b": 1, "a": [1, 2]}) == '{"a":[1,2],"b":1}'

    def test_configured_algorithm(self) -> None:
        """sha512 digests are 128 hex characters."""
        engine = ProofEngine(signing_key="k", hash_algorithm="sha512")
        assert len(engine.hash("x")) == 128


class TestProofBundles:
    """Tests for signing and verification."""

    def test_issue_and_verify(self, engine: ProofEngine) -> None:
        """A freshly issued bundle verifies against its own hashes."""
        bundle = engine.issue("agent-hash", "policy-hash", evaluated_at=NOW)

        assert bundle.authority == "unit-authority"
        assert bundle.evaluated_at == NOW
        assert engine.verify(bundle, "agent-hash", "policy-hash")
        assert engine.check(bundle, "agent-hash", "policy-hash") == ProofCheck.VALID

    def test_agent_hash_mismatch(self, engine: ProofEngine) -> None:
        bundle = engine.issue("agent-hash", "policy-hash")
        assert not engine.verify(bundle, "other-agent", "policy-hash")
        assert engine.check(bundle, "other-agent", "policy-hash") == ProofCheck.AGENT_HASH_MISMATCH

    def test_policy_hash_mismatch(self, engine: ProofEngine) -> None:
        bundle = engine.issue("agent-hash", "policy-hash")
        assert engine.check(bundle, "agent-hash", "new-policy") == ProofCheck.POLICY_HASH_MISMATCH

    def test_agent_mismatch_reported_before_policy(self, engine: ProofEngine) -> None:
        """When both hashes differ the tamper is reported."""
        bundle = engine.issue("agent-hash", "policy-hash")
        assert engine.check(bundle, "x", "y") == ProofCheck.AGENT_HASH_MISMATCH

    def test_forged_signature_rejected(self, engine: ProofEngine) -> None:
        bundle = engine.issue("agent-hash", "policy-hash")
        forged = bundle.model_copy(update={"signature": "0" * 64})
        assert engine.check(forged, "agent-hash", "policy-hash") == ProofCheck.SIGNATURE_INVALID

    def test_shifted_timestamp_invalidates_signature(self, engine: ProofEngine) -> None:
        """The evaluation time is bound into the signature."""
        bundle = engine.issue("agent-hash", "policy-hash", evaluated_at=NOW)
        shifted = bundle.model_copy(update={"evaluated_at": NOW + timedelta(seconds=1)})
        assert not engine.verify(shifted, "agent-hash", "policy-hash")

    def test_other_key_cannot_verify(self, engine: ProofEngine) -> None:
        """Bundles cannot be forged without the signing key."""
        bundle = ProofEngine(signing_key="attacker-key", authority="unit-authority").issue(
            "agent-hash", "policy-hash"
        )
        assert engine.check(bundle, "agent-hash", "policy-hash") == ProofCheck.SIGNATURE_INVALID

    def test_revoked_signer(self, engine: ProofEngine) -> None:
        bundle = engine.issue("agent-hash", "policy-hash")

        engine.revoke_signer("unit-authority")
        assert engine.check(bundle, "agent-hash", "policy-hash") == ProofCheck.SIGNER_REVOKED
        assert engine.revoked_signers() == {"unit-authority"}

        engine.restore_signer("unit-authority")
        assert engine.verify(bundle, "agent-hash", "policy-hash")

    def test_empty_signing_key_rejected(self) -> None:
        with pytest.raises(ValueError):
            ProofEngine(signing_key="")
