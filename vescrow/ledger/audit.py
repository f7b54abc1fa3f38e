"""
Escrow Ledger Audit Tool — Independent invariant verification.

Connects directly to the database and recomputes every aggregate the
engine maintains, reporting any record that disagrees with the others:

- Namespace configuration satisfies Namespace.valid()
- Sum of lockup amounts equals the namespace running total
- Every funded lockup was valid when it was opened (end after start plus
  the minimum duration, amount and voting target within bounds)
- Each lockup's vault balance equals the lockup amount
- Each proposal's per-choice tally equals the sum of its vote records

Usage:
    python -m vescrow.ledger.audit
    python -m vescrow.ledger.audit --database-url sqlite:///vescrow.db
    python -m vescrow.ledger.audit --namespace MINT:DEPLOYER --verbose
"""

from __future__ import annotations

import argparse
import sys
import time

import structlog
from rich.console import Console
from rich.table import Table

from vescrow.config import settings
from vescrow.escrow.schema import MAX_VOTING_CHOICES, Lockup, Namespace
from vescrow.escrow.voting_power import voting_power
from vescrow.ledger.custody import vault_holder
from vescrow.ledger.service import EscrowLedgerService
from vescrow.logging_setup import configure_logging

console = Console()
logger = structlog.get_logger(__name__)


def _lockup_problems(lockup: Lockup, ns: Namespace, vault_balance: int) -> list[str]:
    problems = []
    if lockup.amount != 0 and not lockup.valid(ns, now=lockup.start_ts):
        problems.append(
            f"lockup {lockup.key} invalid: amount={lockup.amount} start_ts={lockup.start_ts} "
            f"end_ts={lockup.end_ts} target_voting_pct={lockup.target_voting_pct}"
        )
    if vault_balance != lockup.amount:
        problems.append(
            f"vault of {lockup.key} holds {vault_balance}, lockup records {lockup.amount}"
        )
    return problems


def audit_namespace(service: EscrowLedgerService, ns: Namespace) -> list[str]:
    """Return every inconsistency found in one namespace (empty if clean)."""
    problems: list[str] = []
    if not ns.valid():
        problems.append(f"namespace {ns.key} configuration is invalid")

    lockups = service.list_lockups(ns.key)
    locked_total = sum(lockup.amount for lockup in lockups)
    if locked_total != ns.lockup_amount:
        problems.append(
            f"lockup amounts sum to {locked_total}, namespace records {ns.lockup_amount}"
        )
    for lockup in lockups:
        vault_balance = service.balance_of(vault_holder(lockup))
        problems.extend(_lockup_problems(lockup, ns, vault_balance))

    for proposal in service.list_proposals(ns.key):
        expected = [0] * MAX_VOTING_CHOICES
        for record in service.list_vote_records(ns.key, proposal.nonce):
            expected[record.choice] += record.voting_power
        if expected != proposal.voting_power_choices:
            problems.append(
                f"proposal {proposal.key} tally {proposal.voting_power_choices} "
                f"!= vote records {expected}"
            )
    return problems


def run_audit(
    database_url: str, namespace_key: str | None = None, verbose: bool = False
) -> bool:
    """
    Run a full invariant audit.

    Args:
        database_url: SQLAlchemy connection string.
        namespace_key: Audit only this namespace; all namespaces if None.
        verbose: Print the lockup listing of each namespace if True.

    Returns:
        True if every audited namespace is consistent, False otherwise.
    """
    console.print("\n[bold blue]═══ Escrow Ledger Invariant Audit ═══[/bold blue]\n")

    service = EscrowLedgerService(database_url)
    if namespace_key is not None:
        ns = service.get_namespace(namespace_key)
        if ns is None:
            console.print(f"[bold red]✗ Namespace {namespace_key} not found[/bold red]")
            return False
        namespaces = [ns]
    else:
        namespaces = service.list_namespaces()

    if not namespaces:
        console.print("[yellow]⚠ Ledger is empty — no namespaces to verify[/yellow]")
        return True

    all_valid = True
    start_time = time.time()
    for ns in namespaces:
        console.print(f"  Namespace [bold]{ns.key}[/bold]...", end=" ")
        problems = audit_namespace(service, ns)
        if problems:
            all_valid = False
            console.print("[bold red]✗ INVALID[/bold red]")
            for problem in problems:
                console.print(f"    - {problem}")
            logger.warning("audit_failed", namespace=ns.key, problems=len(problems))
        else:
            console.print("[bold green]✓ VALID[/bold green]")

        if verbose:
            now = ns.now(service.clock)
            table = Table(show_lines=True)
            table.add_column("Owner", style="cyan")
            table.add_column("Amount", justify="right")
            table.add_column("Start", justify="right")
            table.add_column("Weighted start", justify="right", style="dim")
            table.add_column("End", justify="right")
            table.add_column("Voting power", justify="right", style="green")
            for lockup in service.list_lockups(ns.key):
                table.add_row(
                    lockup.owner,
                    str(lockup.amount),
                    str(lockup.start_ts),
                    str(lockup.weighted_start_ts),
                    str(lockup.end_ts) if lockup.end_ts else "—",
                    str(voting_power(lockup, ns, now)),
                )
            console.print(table)

    console.print(f"  Verification time: {time.time() - start_time:.3f}s")
    console.print("\n[bold blue]═══ Audit Complete ═══[/bold blue]\n")
    return all_valid


def main() -> None:
    parser = argparse.ArgumentParser(description="vescrow ledger invariant auditor")
    parser.add_argument(
        "--database-url",
        default=None,
        help="SQLAlchemy connection string (defaults to .env settings)",
    )
    parser.add_argument(
        "--namespace",
        default=None,
        help="Audit only this namespace key (token_mint:deployer)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Show the lockup listing of each namespace",
    )
    args = parser.parse_args()

    configure_logging()
    db_url = args.database_url or settings.database_url
    is_valid = run_audit(db_url, namespace_key=args.namespace, verbose=args.verbose)
    sys.exit(0 if is_valid else 1)


if __name__ == "__main__":
    main()
