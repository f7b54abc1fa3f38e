"""
Lockup Ledger — deposit, extend and withdraw state transitions.

Every transition is a pure function over (Lockup, Namespace) that returns
new copies. On any error the inputs are left untouched and nothing is
returned, so the storage layer commits either a fully validated new state
or nothing at all.

Deposits on an existing lockup follow the area-conservation rule: the
stake-weighted "amount x remaining time" area is preserved and re-anchored
at the new expiry, so a balance added late only earns area for the time it
will actually remain locked.
"""

from __future__ import annotations

import logging

from vescrow.escrow.checked import (
    I64_MAX,
    checked_add,
    checked_div,
    checked_mul,
    checked_sub,
    narrow,
)
from vescrow.escrow.errors import (
    InvalidAmountError,
    InvalidLockupError,
    InvalidNamespaceError,
    InvalidTimestampError,
    InvariantViolationError,
    UnauthorizedError,
)
from vescrow.escrow.schema import Lockup, Namespace

logger = logging.getLogger(__name__)


def check_deposit_request(
    lockup: Lockup,
    ns: Namespace,
    amount: int,
    end_ts: int,
    *,
    now: int,
    available_balance: int,
) -> None:
    """
    Request-level checks made before any state is computed.

    Raises:
        InvalidAmountError: Insufficient balance, or amount below the minimum
            when this is not a pure extension of a funded lockup.
        InvalidTimestampError: Requested expiry too close, or the current
            lockup has already expired.
    """
    if amount < 0:
        raise InvalidAmountError(f"Amount {amount} must be non-negative")
    if end_ts < 0:
        raise InvalidTimestampError(f"end_ts {end_ts} must be non-negative")
    if amount > available_balance:
        raise InvalidAmountError(
            f"Insufficient balance: requested {amount}, available {available_balance}"
        )
    if not (amount >= ns.lockup_min_amount or (amount == 0 and lockup.amount != 0)):
        raise InvalidAmountError(
            f"Lockup amount {amount} below minimum {ns.lockup_min_amount}"
        )
    if end_ts != 0 and end_ts < lockup.min_end_ts(ns, now):
        raise InvalidTimestampError(
            f"end_ts {end_ts} is earlier than the minimum lock end {lockup.min_end_ts(ns, now)}"
        )
    if lockup.end_ts != 0 and lockup.end_ts < now:
        raise InvalidTimestampError(
            f"Lockup expired at {lockup.end_ts}; it can no longer be topped up or extended"
        )


def deposit(
    lockup: Lockup,
    ns: Namespace,
    amount: int,
    end_ts: int,
    *,
    owner: str,
    now: int,
    available_balance: int,
    target_rewards_pct: int | None = None,
    target_voting_pct: int | None = None,
) -> tuple[Lockup, Namespace]:
    """
    Create, top up or extend a lockup.

    Args:
        lockup: Current lockup state (a zero Lockup if none exists yet).
        ns: Current namespace.
        amount: Additional amount to lock; 0 means pure extension.
        end_ts: Requested expiry; 0 leaves it unset on a first deposit.
        owner: Owner identity written back onto the lockup.
        now: Current time as seen by the namespace.
        available_balance: Funds the depositor can move.
        target_rewards_pct: Override for the first deposit only.
        target_voting_pct: Override for the first deposit only.

    Returns:
        (new_lockup, new_namespace) as copies; inputs are never modified.
    """
    if not ns.valid():
        raise InvalidNamespaceError(f"Namespace {ns.key} configuration is invalid")
    check_deposit_request(
        lockup, ns, amount, end_ts, now=now, available_balance=available_balance
    )

    lockup = lockup.model_copy(deep=True)
    ns = ns.model_copy(deep=True)
    lockup.normalize_weighted_start_ts()

    max_end = checked_add(lockup.start_ts, ns.lockup_max_saturation, "i64")

    if lockup.amount == 0:
        # Targets are fixed here and never re-derived on later deposits.
        lockup.target_rewards_pct = (
            ns.lockup_default_target_rewards_pct
            if target_rewards_pct is None
            else target_rewards_pct
        )
        lockup.target_voting_pct = (
            ns.lockup_default_target_voting_pct
            if target_voting_pct is None
            else target_voting_pct
        )
        lockup.start_ts = now
        lockup.weighted_start_ts = now
        lockup.end_ts = min(end_ts, checked_add(now, ns.lockup_max_saturation, "i64"))
        lockup.amount = amount
    else:
        _top_up(lockup, amount, end_ts, now=now, max_end=max_end)

    lockup.ns = ns.key
    lockup.owner = owner
    ns.lockup_amount = checked_add(ns.lockup_amount, amount)

    if not lockup.valid(ns, now):
        raise InvalidLockupError(
            f"Resulting lockup {lockup.key} is invalid: amount={lockup.amount} "
            f"end_ts={lockup.end_ts} target_voting_pct={lockup.target_voting_pct}"
        )
    if not ns.valid():
        raise InvariantViolationError(f"Namespace {ns.key} became invalid after deposit")

    logger.debug(
        "Deposit computed: lockup=%s amount=%d end_ts=%d weighted_start_ts=%d",
        lockup.key, lockup.amount, lockup.end_ts, lockup.weighted_start_ts,
    )
    return lockup, ns


def deposit_for(
    lockup: Lockup,
    ns: Namespace,
    amount: int,
    end_ts: int,
    *,
    authority: str,
    owner: str,
    now: int,
    available_balance: int,
    target_rewards_pct: int,
    target_voting_pct: int,
) -> tuple[Lockup, Namespace]:
    """
    Deposit on behalf of ``owner`` with security-council funds.

    On a first deposit the supplied targets replace the namespace defaults,
    and later self-deposits by the owner keep them.
    """
    if authority != ns.security_council:
        raise UnauthorizedError(
            f"{authority} is not the security council of namespace {ns.key}"
        )
    return deposit(
        lockup,
        ns,
        amount,
        end_ts,
        owner=owner,
        now=now,
        available_balance=available_balance,
        target_rewards_pct=narrow(target_rewards_pct, "u16"),
        target_voting_pct=narrow(target_voting_pct, "u16"),
    )


def _top_up(lockup: Lockup, amount: int, end_ts: int, *, now: int, max_end: int) -> None:
    """Apply a deposit to an already funded lockup, in place."""
    if end_ts <= now:
        raise InvalidTimestampError(f"end_ts {end_ts} must be in the future (now={now})")

    new_amount = checked_add(lockup.amount, amount)
    capped_end = min(end_ts, max_end)

    if lockup.end_ts == 0:
        # Expiry was never set: treat as a fresh commitment.
        lockup.end_ts = capped_end
        lockup.weighted_start_ts = now
        lockup.amount = new_amount
        return

    if lockup.end_ts <= lockup.start_ts:
        raise InvalidTimestampError(
            f"Lockup end_ts {lockup.end_ts} is not after start_ts {lockup.start_ts}"
        )
    if end_ts < lockup.end_ts:
        raise InvalidTimestampError(
            f"end_ts {end_ts} would shorten the lockup (current {lockup.end_ts})"
        )

    old_duration = lockup.end_ts - lockup.effective_start_ts()
    if old_duration < 0 or old_duration > I64_MAX:
        raise InvalidTimestampError(f"Lockup duration {old_duration} is out of range")

    old_area = checked_mul(lockup.amount, old_duration, "u128")
    extension = max(0, capped_end - lockup.end_ts)
    extension_area = checked_mul(lockup.amount, extension, "u128")
    remaining = capped_end - now
    added_area = checked_mul(amount, remaining, "u128")

    new_area = checked_add(checked_add(old_area, extension_area, "u128"), added_area, "u128")
    # Truncating division: the weighted start lands at or after the exact value.
    new_weighted_start = narrow(
        capped_end - checked_div(new_area, new_amount, "u128"), "i64"
    )

    lockup.amount = new_amount
    lockup.end_ts = capped_end
    lockup.weighted_start_ts = new_weighted_start


def withdraw(lockup: Lockup, ns: Namespace, *, now: int) -> tuple[Lockup, Namespace, int]:
    """
    Release an expired lockup back to its owner.

    The record is reset to the zero state rather than removed, so the next
    deposit re-initialises it as a first deposit.

    Returns:
        (new_lockup, new_namespace, released_amount)
    """
    if lockup.amount == 0:
        raise InvalidAmountError(f"Lockup {lockup.key} holds nothing to withdraw")
    if lockup.end_ts == 0 or now < lockup.end_ts:
        raise InvalidTimestampError(
            f"Lockup {lockup.key} is locked until {lockup.end_ts} (now={now})"
        )

    released = lockup.amount
    ns = ns.model_copy(deep=True)
    ns.lockup_amount = checked_sub(ns.lockup_amount, released)

    reset = Lockup(ns=lockup.ns, owner=lockup.owner, schema_version=lockup.schema_version)
    return reset, ns, released
