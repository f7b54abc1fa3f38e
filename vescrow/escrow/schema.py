"""
Escrow Schema — Pydantic models for the vote-escrow records.

These models are the canonical in-memory shape of every persisted record:
Namespace (per-deployment configuration and running totals), Lockup (one
per namespace/owner pair), Proposal (with its per-choice tally) and
VoteRecord (one per namespace/owner/proposal).

Percent-like fields are integers scaled so that 100 means 1x. They are not
basis points.

Predicates on the models (valid, can_update, has_quorum, ...) are pure.
The tally mutators (Proposal.cast_vote) work in place; transitions call
them on copies so that a failed operation never touches its inputs.
"""

from __future__ import annotations

import time
from typing import Callable

from pydantic import BaseModel, Field, computed_field

from vescrow.escrow.checked import (
    I64_MAX,
    I64_MIN,
    U16_MAX,
    U32_MAX,
    U64_MAX,
    checked_add,
    checked_div,
    checked_mul,
    checked_sum,
)
from vescrow.escrow.errors import InvalidVoteChoiceError


# ════════════════════════════════════════════════════════════════
# Constants
# ════════════════════════════════════════════════════════════════

MAX_VOTING_CHOICES = 6
MAX_URI_LENGTH = 255

PCT_SCALE = 100  # 100 == 1x
MIN_TARGET_VOTING_PCT = 100
MAX_TARGET_VOTING_PCT = 2500  # 25x

# Byte length of a lockup record persisted before weighted_start_ts existed:
# discriminator(8) + ns(32) + owner(32) + amount(8) + start_ts(8) + end_ts(8)
# + target_rewards_pct(2) + target_voting_pct(2) + padding(240).
# Must stay fixed so size-based detection of old records keeps working.
LOCKUP_LEGACY_SIZE = 8 + 32 + 32 + 8 + 8 + 8 + 2 + 2 + 240

LOCKUP_LEGACY_SCHEMA_VERSION = 1
LOCKUP_SCHEMA_VERSION = 2


def system_clock() -> int:
    """Wall-clock unix timestamp in whole seconds."""
    return int(time.time())


def schema_version_for_size(data_len: int) -> int:
    """Map a stored record byte length to the lockup schema version."""
    if data_len <= LOCKUP_LEGACY_SIZE:
        return LOCKUP_LEGACY_SCHEMA_VERSION
    return LOCKUP_SCHEMA_VERSION


# ════════════════════════════════════════════════════════════════
# Namespace
# ════════════════════════════════════════════════════════════════


class Namespace(BaseModel):
    """
    Per-deployment governance parameters and running totals.

    Created once per deployment. Only the running totals change during
    normal operation: lockup_amount on every deposit/withdrawal, and
    proposal_nonce on every new proposal.
    """

    token_mint: str = Field(description="Identity of the escrowed token")
    deployer: str = Field(description="Identity of the deploying authority")
    security_council: str = Field(description="Authority allowed to deposit on behalf of owners")
    review_council: str = Field(description="Authority allowed to create and edit proposals")

    override_now: int = Field(
        default=0, ge=I64_MIN, le=I64_MAX,
        description="Fixed timestamp used instead of the clock when nonzero",
    )

    lockup_default_target_rewards_pct: int = Field(default=100, ge=0, le=U16_MAX)
    lockup_default_target_voting_pct: int = Field(default=2000, ge=0, le=U16_MAX)
    lockup_min_duration: int = Field(default=86400 * 14, ge=I64_MIN, le=I64_MAX)
    lockup_min_amount: int = Field(default=1, ge=0, le=U64_MAX)
    lockup_max_saturation: int = Field(default=86400 * 365 * 4, ge=0, le=U64_MAX)

    proposal_min_voting_power_for_quorum: int = Field(default=1, ge=0, le=U64_MAX)
    proposal_min_pass_pct: int = Field(default=60, ge=0, le=U16_MAX)
    proposal_can_update_after_votes: bool = False

    # Realtime stats
    lockup_amount: int = Field(default=0, ge=0, le=U64_MAX)
    proposal_nonce: int = Field(default=0, ge=0, le=U32_MAX)

    @computed_field
    @property
    def key(self) -> str:
        """Storage key of this namespace."""
        return f"{self.token_mint}:{self.deployer}"

    def now(self, clock: Callable[[], int] | None = None) -> int:
        """Current time: override_now when set, otherwise the clock."""
        if self.override_now != 0:
            return self.override_now
        return int((clock or system_clock)())

    def valid(self) -> bool:
        return (
            self.lockup_min_duration > 0
            and self.lockup_min_amount > 0
            and self.lockup_max_saturation > self.lockup_min_duration
            and self.lockup_default_target_rewards_pct >= PCT_SCALE
            and MIN_TARGET_VOTING_PCT
            <= self.lockup_default_target_voting_pct
            <= MAX_TARGET_VOTING_PCT
            and self.proposal_min_voting_power_for_quorum > 0
            and 0 < self.proposal_min_pass_pct <= 100
        )


# ════════════════════════════════════════════════════════════════
# Lockup
# ════════════════════════════════════════════════════════════════


class Lockup(BaseModel):
    """
    A balance committed until end_ts by one owner within one namespace.

    weighted_start_ts is a synthetic anchor that replaces start_ts once
    top-ups or extensions happen, keeping a stake-weighted average of the
    remaining lock time. Zero means "not established yet".
    """

    ns: str = Field(default="", description="Namespace key")
    owner: str = Field(default="", description="Owner identity")
    amount: int = Field(default=0, ge=0, le=U64_MAX)

    start_ts: int = Field(default=0, ge=I64_MIN, le=I64_MAX)
    end_ts: int = Field(default=0, ge=I64_MIN, le=I64_MAX)
    weighted_start_ts: int = Field(default=0, ge=I64_MIN, le=I64_MAX)

    target_rewards_pct: int = Field(default=0, ge=0, le=U16_MAX)
    target_voting_pct: int = Field(default=0, ge=0, le=U16_MAX)

    schema_version: int = Field(
        default=LOCKUP_SCHEMA_VERSION,
        description="Persisted layout version; 1 predates weighted_start_ts",
    )

    @computed_field
    @property
    def key(self) -> str:
        """Storage key of this lockup."""
        return f"{self.ns}/{self.owner}"

    def min_end_ts(self, ns: Namespace, now: int | None = None) -> int:
        now = ns.now() if now is None else now
        return checked_add(now, ns.lockup_min_duration, "i64")

    def valid(self, ns: Namespace, now: int | None = None) -> bool:
        return (
            self.amount >= ns.lockup_min_amount
            and self.start_ts >= 0
            and (self.end_ts == 0 or self.end_ts >= self.min_end_ts(ns, now))
            and (self.end_ts == 0 or self.end_ts >= self.start_ts)
            and MIN_TARGET_VOTING_PCT <= self.target_voting_pct <= MAX_TARGET_VOTING_PCT
        )

    def effective_start_ts(self) -> int:
        """Anchor used for duration: weighted start once established."""
        if self.weighted_start_ts == 0:
            return self.start_ts
        return self.weighted_start_ts

    def normalize_weighted_start_ts(self) -> None:
        """
        One-time upgrade of a legacy record.

        Legacy records have no weighted start; default it to start_ts.
        Idempotent: the schema version is bumped so it never runs twice.
        """
        if self.schema_version >= LOCKUP_SCHEMA_VERSION:
            return
        if self.weighted_start_ts == 0:
            self.weighted_start_ts = self.start_ts
        self.schema_version = LOCKUP_SCHEMA_VERSION

    def is_expired(self, now: int) -> bool:
        return self.end_ts != 0 and now >= self.end_ts


# ════════════════════════════════════════════════════════════════
# Proposal (tally)
# ════════════════════════════════════════════════════════════════


class Proposal(BaseModel):
    """A governance question with a cumulative voting-power tally per choice."""

    ns: str = Field(description="Namespace key")
    nonce: int = Field(ge=0, le=U32_MAX)
    owner: str
    start_ts: int = Field(ge=I64_MIN, le=I64_MAX)
    end_ts: int = Field(ge=I64_MIN, le=I64_MAX)
    status: int = Field(default=0, ge=0, le=255, description="Reserved placeholder")
    voting_power_choices: list[int] = Field(
        default_factory=lambda: [0] * MAX_VOTING_CHOICES,
        min_length=MAX_VOTING_CHOICES,
        max_length=MAX_VOTING_CHOICES,
    )
    uri: str = Field(default="", description="Reference to the proposal text")

    @computed_field
    @property
    def key(self) -> str:
        return f"{self.ns}#{self.nonce}"

    def valid(self) -> bool:
        return len(self.uri) <= MAX_URI_LENGTH and self.start_ts < self.end_ts

    def can_update(self) -> bool:
        return self.total_voting_power() == 0

    def cast_vote(self, choice: int, voting_power: int) -> None:
        if not 0 <= choice < MAX_VOTING_CHOICES:
            raise InvalidVoteChoiceError(f"Invalid choice {choice}")
        self.voting_power_choices[choice] = checked_add(
            self.voting_power_choices[choice], voting_power
        )

    def total_voting_power(self) -> int:
        return checked_sum(self.voting_power_choices)

    def has_quorum(self, ns: Namespace) -> bool:
        return self.total_voting_power() > ns.proposal_min_voting_power_for_quorum

    def has_passed(self, ns: Namespace, now: int | None = None) -> bool:
        if not self.has_quorum(ns):
            return False
        now = ns.now() if now is None else now
        if now < self.end_ts:
            return False
        pass_threshold = checked_div(
            checked_mul(self.total_voting_power(), ns.proposal_min_pass_pct), 100
        )
        return any(choice > pass_threshold for choice in self.voting_power_choices)


# ════════════════════════════════════════════════════════════════
# Vote record
# ════════════════════════════════════════════════════════════════


class VoteRecord(BaseModel):
    """Marker that an owner has voted on a proposal; never created twice."""

    ns: str
    owner: str
    proposal: int = Field(description="Proposal nonce")
    lockup: str = Field(description="Key of the lockup that supplied the voting power")
    choice: int = Field(ge=0, le=255)
    voting_power: int = Field(ge=0, le=U64_MAX)

    def valid(self) -> bool:
        return self.choice < MAX_VOTING_CHOICES
