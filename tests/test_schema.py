"""
Tests for the escrow Pydantic models.

Validates:
- Namespace configuration invariants and the time source
- Lockup validity and legacy normalization
- Proposal tally, quorum and pass rules
- Vote record shape
"""

from __future__ import annotations

import pytest

from vescrow.escrow.errors import ArithmeticOverflowError, InvalidVoteChoiceError
from vescrow.escrow.checked import U64_MAX
from vescrow.escrow.schema import (
    LOCKUP_LEGACY_SCHEMA_VERSION,
    LOCKUP_LEGACY_SIZE,
    LOCKUP_SCHEMA_VERSION,
    MAX_VOTING_CHOICES,
    Lockup,
    Namespace,
    Proposal,
    VoteRecord,
    schema_version_for_size,
)


def make_namespace(**overrides) -> Namespace:
    params = {
        "token_mint": "MINT",
        "deployer": "DEPLOYER",
        "security_council": "SC",
        "review_council": "RC",
    }
    params.update(overrides)
    return Namespace(**params)


class TestNamespace:

    def test_defaults_are_valid(self):
        ns = make_namespace()
        assert ns.valid()
        assert ns.key == "MINT:DEPLOYER"

    @pytest.mark.parametrize(
        "overrides",
        [
            {"lockup_min_duration": 0},
            {"lockup_min_amount": 0},
            {"lockup_max_saturation": 86400 * 14},
            {"lockup_default_target_rewards_pct": 99},
            {"lockup_default_target_voting_pct": 99},
            {"lockup_default_target_voting_pct": 2501},
            {"proposal_min_voting_power_for_quorum": 0},
            {"proposal_min_pass_pct": 0},
            {"proposal_min_pass_pct": 101},
        ],
    )
    def test_invalid_configurations(self, overrides):
        assert not make_namespace(**overrides).valid()

    def test_target_voting_pct_bounds_inclusive(self):
        assert make_namespace(lockup_default_target_voting_pct=100).valid()
        assert make_namespace(lockup_default_target_voting_pct=2500).valid()

    def test_override_now_wins(self):
        ns = make_namespace(override_now=1234)
        assert ns.now(lambda: 99) == 1234

    def test_injected_clock(self):
        ns = make_namespace()
        assert ns.now(lambda: 99) == 99


class TestLockup:

    def setup_method(self):
        self.ns = make_namespace(lockup_min_amount=1000)

    def _lockup(self, **overrides) -> Lockup:
        params = {
            "ns": self.ns.key,
            "owner": "alice",
            "amount": 5000,
            "start_ts": 1000,
            "end_ts": 1000 + 86400 * 30,
            "weighted_start_ts": 1000,
            "target_rewards_pct": 100,
            "target_voting_pct": 2000,
        }
        params.update(overrides)
        return Lockup(**params)

    def test_valid_lockup(self):
        assert self._lockup().valid(self.ns, now=1000)
        assert self._lockup().key == "MINT:DEPLOYER/alice"

    def test_below_min_amount(self):
        assert not self._lockup(amount=999).valid(self.ns, now=1000)

    def test_end_before_min_end(self):
        lockup = self._lockup(end_ts=1000 + 86400 * 13)
        assert not lockup.valid(self.ns, now=1000)

    def test_unset_end_is_valid(self):
        assert self._lockup(end_ts=0).valid(self.ns, now=1000)

    def test_target_voting_pct_out_of_range(self):
        assert not self._lockup(target_voting_pct=50).valid(self.ns, now=1000)
        assert not self._lockup(target_voting_pct=3000).valid(self.ns, now=1000)

    def test_effective_start_falls_back_to_start(self):
        assert self._lockup(weighted_start_ts=0).effective_start_ts() == 1000
        assert self._lockup(weighted_start_ts=5000).effective_start_ts() == 5000

    def test_normalize_legacy_record(self):
        lockup = self._lockup(weighted_start_ts=0, schema_version=LOCKUP_LEGACY_SCHEMA_VERSION)
        lockup.normalize_weighted_start_ts()
        assert lockup.weighted_start_ts == 1000
        assert lockup.schema_version == LOCKUP_SCHEMA_VERSION

    def test_normalize_runs_once(self):
        lockup = self._lockup(weighted_start_ts=0, schema_version=LOCKUP_LEGACY_SCHEMA_VERSION)
        lockup.normalize_weighted_start_ts()
        lockup.weighted_start_ts = 0
        lockup.normalize_weighted_start_ts()
        assert lockup.weighted_start_ts == 0

    def test_normalize_current_record_untouched(self):
        lockup = self._lockup(weighted_start_ts=0)
        lockup.normalize_weighted_start_ts()
        assert lockup.weighted_start_ts == 0

    def test_schema_version_for_size(self):
        assert LOCKUP_LEGACY_SIZE == 340
        assert schema_version_for_size(LOCKUP_LEGACY_SIZE) == LOCKUP_LEGACY_SCHEMA_VERSION
        assert schema_version_for_size(LOCKUP_LEGACY_SIZE + 8) == LOCKUP_SCHEMA_VERSION

    def test_is_expired(self):
        lockup = self._lockup()
        assert not lockup.is_expired(lockup.end_ts - 1)
        assert lockup.is_expired(lockup.end_ts)
        assert not self._lockup(end_ts=0).is_expired(10**12)


class TestProposal:
    """Quorum and pass rules, including the reference tally cases."""

    def _proposal(self, choices: list[int]) -> Proposal:
        return Proposal(
            ns="MINT:DEPLOYER",
            nonce=0,
            owner="RC",
            uri="https://123",
            start_ts=0,
            end_ts=100,
            voting_power_choices=choices,
        )

    def test_has_quorum_false(self):
        ns = make_namespace(override_now=1, proposal_min_voting_power_for_quorum=100000)
        assert not self._proposal([10000, 0, 0, 0, 0, 0]).has_quorum(ns)

    def test_has_quorum_true(self):
        ns = make_namespace(override_now=90, proposal_min_voting_power_for_quorum=100)
        assert self._proposal([100, 100, 0, 0, 0, 0]).has_quorum(ns)

    def test_quorum_is_strictly_greater(self):
        ns = make_namespace(proposal_min_voting_power_for_quorum=200)
        assert not self._proposal([100, 100, 0, 0, 0, 0]).has_quorum(ns)

    def test_has_passed(self):
        ns = make_namespace(override_now=101, proposal_min_voting_power_for_quorum=100)
        assert self._proposal([10000, 0, 0, 0, 0, 0]).has_passed(ns)

    def test_not_passed_before_end(self):
        ns = make_namespace(override_now=99, proposal_min_voting_power_for_quorum=100)
        assert not self._proposal([10000, 0, 0, 0, 0, 0]).has_passed(ns)

    def test_not_passed_without_majority(self):
        ns = make_namespace(override_now=101, proposal_min_voting_power_for_quorum=100)
        assert not self._proposal([500, 500, 0, 0, 0, 0]).has_passed(ns)

    def test_cast_vote_accumulates(self):
        proposal = self._proposal([0] * MAX_VOTING_CHOICES)
        proposal.cast_vote(2, 40)
        proposal.cast_vote(2, 2)
        assert proposal.voting_power_choices == [0, 0, 42, 0, 0, 0]
        assert proposal.total_voting_power() == 42
        assert not proposal.can_update()

    def test_cast_vote_rejects_bad_choice(self):
        proposal = self._proposal([0] * MAX_VOTING_CHOICES)
        with pytest.raises(InvalidVoteChoiceError):
            proposal.cast_vote(MAX_VOTING_CHOICES, 1)

    def test_cast_vote_overflow(self):
        proposal = self._proposal([U64_MAX, 0, 0, 0, 0, 0])
        with pytest.raises(ArithmeticOverflowError):
            proposal.cast_vote(0, 1)

    def test_validity(self):
        assert self._proposal([0] * 6).valid()
        too_long = self._proposal([0] * 6).model_copy(update={"uri": "x" * 256})
        assert not too_long.valid()
        empty_window = self._proposal([0] * 6).model_copy(update={"end_ts": 0})
        assert not empty_window.valid()


class TestVoteRecord:

    def test_valid_choice(self):
        record = VoteRecord(
            ns="MINT:DEPLOYER", owner="alice", proposal=0,
            lockup="MINT:DEPLOYER/alice", choice=5, voting_power=10,
        )
        assert record.valid()
        assert not record.model_copy(update={"choice": 6}).valid()
