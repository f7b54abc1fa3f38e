"""
Proposal lifecycle — creation and content updates by the review council.

Proposals are numbered by the namespace's monotonically increasing
proposal_nonce. Content may change freely until the first vote is cast;
after that only if the namespace allows post-vote edits.
"""

from __future__ import annotations

import logging

from vescrow.escrow.checked import checked_add, narrow
from vescrow.escrow.errors import (
    InvalidNamespaceError,
    InvalidProposalError,
    ProposalLockedError,
    UnauthorizedError,
)
from vescrow.escrow.schema import MAX_URI_LENGTH, Namespace, Proposal

logger = logging.getLogger(__name__)


def _require_review_council(ns: Namespace, caller: str) -> None:
    if caller != ns.review_council:
        raise UnauthorizedError(
            f"{caller} is not the review council of namespace {ns.key}"
        )


def _require_valid(proposal: Proposal) -> None:
    if not proposal.valid():
        raise InvalidProposalError(
            f"Proposal {proposal.key} is invalid: uri length {len(proposal.uri)} "
            f"(max {MAX_URI_LENGTH}), start_ts={proposal.start_ts} end_ts={proposal.end_ts}"
        )


def create_proposal(
    ns: Namespace,
    caller: str,
    uri: str,
    start_ts: int,
    end_ts: int,
) -> tuple[Proposal, Namespace]:
    """
    Open a new proposal under the next namespace nonce.

    Returns:
        (proposal, new_namespace) with proposal_nonce advanced by one.
    """
    if not ns.valid():
        raise InvalidNamespaceError(f"Namespace {ns.key} configuration is invalid")
    _require_review_council(ns, caller)

    proposal = Proposal(
        ns=ns.key,
        nonce=ns.proposal_nonce,
        owner=caller,
        start_ts=narrow(start_ts, "i64"),
        end_ts=narrow(end_ts, "i64"),
        uri=uri,
    )
    _require_valid(proposal)

    ns = ns.model_copy(deep=True)
    ns.proposal_nonce = checked_add(ns.proposal_nonce, 1, "u32")

    logger.info(
        "Proposal created: %s window=[%d, %d) uri='%s'",
        proposal.key, proposal.start_ts, proposal.end_ts, uri[:80],
    )
    return proposal, ns


def update_proposal(
    ns: Namespace,
    proposal: Proposal,
    caller: str,
    uri: str,
    start_ts: int,
    end_ts: int,
) -> Proposal:
    """Replace a proposal's content and voting window; tallies are kept."""
    _require_review_council(ns, caller)
    if not (ns.proposal_can_update_after_votes or proposal.can_update()):
        raise ProposalLockedError(
            f"Proposal {proposal.key} already has {proposal.total_voting_power()} "
            f"voting power cast and cannot be edited"
        )

    updated = proposal.model_copy(deep=True)
    updated.uri = uri
    updated.start_ts = narrow(start_ts, "i64")
    updated.end_ts = narrow(end_ts, "i64")
    _require_valid(updated)

    logger.info("Proposal updated: %s", updated.key)
    return updated
