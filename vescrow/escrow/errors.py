"""
Escrow error taxonomy.

Three families, all deriving from EscrowError:

- EscrowValidationError: bad input or a rejected state transition; the
  caller may resubmit with corrected inputs.
- ArithmeticOverflowError: a checked integer operation left its range.
  Recoverable and distinguishable from validation failures.
- InvariantViolationError: a state that validated inputs should never
  produce. Signals a programming defect.

Every error aborts the current operation before anything is committed.
"""

from __future__ import annotations


class EscrowError(Exception):
    """Base class for all vote-escrow errors."""


# ════════════════════════════════════════════════════════════════
# Validation errors
# ════════════════════════════════════════════════════════════════


class EscrowValidationError(EscrowError):
    """A request or resulting state failed validation."""


class InvalidAmountError(EscrowValidationError):
    """Amount below the namespace minimum, or above the available balance."""


class InvalidTimestampError(EscrowValidationError):
    """Expiry too early, lockup shortened, lockup expired, or outside a voting window."""


class InvalidLockupError(EscrowValidationError):
    """The resulting lockup does not satisfy its invariants."""


class InvalidNamespaceError(EscrowValidationError):
    """Namespace configuration does not satisfy its invariants."""


class DuplicateNamespaceError(EscrowValidationError):
    """A namespace with the same key already exists."""


class InvalidProposalError(EscrowValidationError):
    """Proposal fields do not satisfy the proposal invariants."""


class ProposalLockedError(EscrowValidationError):
    """Proposal content cannot change once votes have been cast."""


class InvalidVoteChoiceError(EscrowValidationError):
    """Vote choice outside [0, MAX_VOTING_CHOICES)."""


class DuplicateVoteError(EscrowValidationError):
    """The owner already voted on this proposal."""


class InsufficientVotingPowerError(EscrowValidationError):
    """The lockup carries no voting power at the time of the vote."""


class UnauthorizedError(EscrowValidationError):
    """Caller identity does not match the required authority."""


class RecordNotFoundError(EscrowValidationError):
    """A referenced record does not exist."""


# ════════════════════════════════════════════════════════════════
# Arithmetic / invariant errors
# ════════════════════════════════════════════════════════════════


class ArithmeticOverflowError(EscrowError):
    """A checked integer operation overflowed or underflowed its range."""

    def __init__(self, operation: str, *operands: int, bits: str = "") -> None:
        self.operation = operation
        self.operands = operands
        self.bits = bits
        detail = ", ".join(str(o) for o in operands)
        suffix = f" ({bits})" if bits else ""
        super().__init__(f"arithmetic overflow in {operation}({detail}){suffix}")


class InvariantViolationError(EscrowError):
    """Internal invariant broken despite validated inputs."""
