"""
Voting Power Curve — lockup duration to voting power.

Summary:
1. Expired or malformed lockups carry no power.
2. Maximum power is amount * target_voting_pct / 100.
3. At or below the minimum duration, power is 100% of the amount.
4. At or beyond the saturation duration, power is the maximum.
5. In between, power rises linearly from amount to the maximum.

                 Voting Power
                  ^
Max Voting Power  |           ----
                  |         /
                  |        /
                  |       /
            100%  |    /
                  | ---
                  +---------------------> Lockup Time (EndTs - EffectiveStartTs)
                    MinTime   MaxTime

All intermediate products are unbounded Python ints checked against u128;
the result is narrowed to u64.
"""

from __future__ import annotations

from vescrow.escrow.checked import checked_div, checked_mul, narrow
from vescrow.escrow.schema import PCT_SCALE, Lockup, Namespace


def voting_power(lockup: Lockup, ns: Namespace, now: int | None = None) -> int:
    """Voting power of a lockup at ``now`` (defaults to the namespace clock)."""
    now = ns.now() if now is None else now

    if now >= lockup.end_ts:
        return 0
    if lockup.end_ts <= lockup.start_ts:
        return 0

    duration = lockup.end_ts - lockup.effective_start_ts()
    max_voting_power = checked_div(
        checked_mul(lockup.amount, lockup.target_voting_pct, "u128"), PCT_SCALE, "u128"
    )
    if duration <= ns.lockup_min_duration:
        return lockup.amount
    if duration >= ns.lockup_max_saturation:
        return narrow(max_voting_power, "u64")

    amount = lockup.amount
    span = ns.lockup_max_saturation - ns.lockup_min_duration
    # max_voting_power >= amount because target_voting_pct >= 100 on valid lockups
    bonus = checked_div(
        checked_mul(max_voting_power - amount, duration - ns.lockup_min_duration, "u128"),
        span,
        "u128",
    )
    return narrow(amount + bonus, "u64")


def rewards_power(lockup: Lockup, ns: Namespace, now: int | None = None) -> int:
    """
    Share of voting power eligible for rewards, scaled by target_rewards_pct.

    Not used by voting; exposed for reward distribution consumers.
    """
    return checked_div(
        checked_mul(voting_power(lockup, ns, now), lockup.target_rewards_pct), PCT_SCALE
    )
