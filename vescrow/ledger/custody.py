"""
Token custody — balance movements between holders.

Transfers run inside the caller's SQLAlchemy session, so a transfer and the
record updates around it commit or roll back together.
"""

from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from vescrow.escrow.checked import checked_add
from vescrow.escrow.errors import InvalidAmountError
from vescrow.escrow.schema import Lockup
from vescrow.ledger.models import BalanceDB

logger = logging.getLogger(__name__)


def vault_holder(lockup: Lockup) -> str:
    """Holder id of the account that custodies a lockup's balance."""
    return f"vault:{lockup.key}"


class TokenCustody:
    """Moves custodied balances; never commits on its own."""

    def balance_of(self, session: Session, holder: str) -> int:
        row = session.get(BalanceDB, holder)
        return row.amount if row is not None else 0

    def credit(self, session: Session, holder: str, amount: int) -> int:
        """Add newly custodied funds to a holder. Returns the new balance."""
        if amount < 0:
            raise InvalidAmountError(f"Cannot credit negative amount {amount}")
        row = session.get(BalanceDB, holder, with_for_update=True)
        if row is None:
            row = BalanceDB(holder=holder, amount=0)
            session.add(row)
        row.amount = checked_add(row.amount, amount)
        return row.amount

    def transfer(self, session: Session, source: str, dest: str, amount: int) -> None:
        """
        Move ``amount`` from ``source`` to ``dest``.

        Raises:
            InvalidAmountError: Non-positive amount or insufficient source balance.
        """
        if amount <= 0:
            raise InvalidAmountError(f"Transfer amount must be positive, got {amount}")

        src = session.get(BalanceDB, source, with_for_update=True)
        available = src.amount if src is not None else 0
        if available < amount:
            raise InvalidAmountError(
                f"Insufficient balance in {source}: {available} < {amount}"
            )
        src.amount = available - amount
        self.credit(session, dest, amount)

        logger.debug("Transfer: %s -> %s amount=%d", source, dest, amount)
