"""
Vote casting — lockup voting power into a proposal tally.

One vote per (namespace, owner, proposal). The VoteRecord produced here is
the replay guard: callers must pass any existing record for the same key,
and the vote is refused if one exists.
"""

from __future__ import annotations

import logging

from vescrow.escrow.errors import (
    DuplicateVoteError,
    InsufficientVotingPowerError,
    InvalidLockupError,
    InvalidProposalError,
    InvalidTimestampError,
    InvalidVoteChoiceError,
    InvariantViolationError,
)
from vescrow.escrow.schema import (
    MAX_VOTING_CHOICES,
    Lockup,
    Namespace,
    Proposal,
    VoteRecord,
)
from vescrow.escrow.voting_power import voting_power

logger = logging.getLogger(__name__)


def cast_vote(
    ns: Namespace,
    lockup: Lockup,
    proposal: Proposal,
    owner: str,
    choice: int,
    *,
    now: int,
    existing_record: VoteRecord | None = None,
) -> tuple[Proposal, VoteRecord]:
    """
    Weight a vote by the lockup's current voting power.

    Args:
        ns: Namespace the lockup and proposal belong to.
        lockup: The voter's lockup.
        proposal: Proposal being voted on.
        owner: Voter identity; must own the lockup.
        choice: Index into the proposal's choices, [0, MAX_VOTING_CHOICES).
        now: Current time as seen by the namespace.
        existing_record: Vote record already stored for this key, if any.

    Returns:
        (updated_proposal, vote_record); the input proposal is not modified.

    Raises:
        DuplicateVoteError: A vote record already exists.
        InvalidVoteChoiceError: Choice out of range.
        InvalidTimestampError: Outside the proposal's voting window.
        InsufficientVotingPowerError: The lockup has no voting power now.
    """
    if existing_record is not None:
        raise DuplicateVoteError(
            f"{owner} already voted on proposal {proposal.key}"
        )
    if not 0 <= choice < MAX_VOTING_CHOICES:
        raise InvalidVoteChoiceError(
            f"Choice {choice} outside [0, {MAX_VOTING_CHOICES})"
        )
    if lockup.ns != ns.key or lockup.owner != owner:
        raise InvalidLockupError(f"Lockup {lockup.key} does not belong to {owner} in {ns.key}")
    if proposal.ns != ns.key:
        raise InvalidProposalError(f"Proposal {proposal.key} is not in namespace {ns.key}")
    if not proposal.start_ts <= now < proposal.end_ts:
        raise InvalidTimestampError(
            f"Proposal {proposal.key} accepts votes in [{proposal.start_ts}, "
            f"{proposal.end_ts}); now={now}"
        )

    power = voting_power(lockup, ns, now)
    if power == 0:
        raise InsufficientVotingPowerError(f"Lockup {lockup.key} has no voting power")

    updated = proposal.model_copy(deep=True)
    updated.cast_vote(choice, power)

    record = VoteRecord(
        ns=ns.key,
        owner=owner,
        proposal=proposal.nonce,
        lockup=lockup.key,
        choice=choice,
        voting_power=power,
    )
    if not record.valid():
        raise InvariantViolationError(f"Vote record for {proposal.key} has choice {choice}")

    logger.info(
        "Vote computed: proposal=%s owner=%s choice=%d power=%d",
        proposal.key, owner, choice, power,
    )
    return updated, record
