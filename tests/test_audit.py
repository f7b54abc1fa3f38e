"""
Tests for the ledger invariant audit.

Validates:
- A consistent ledger passes
- Drift between aggregates and records is reported
"""

from __future__ import annotations

from vescrow.ledger.audit import run_audit
from vescrow.ledger.custody import vault_holder
from vescrow.ledger.models import BalanceDB, NamespaceDB, ProposalDB
from vescrow.ledger.service import EscrowLedgerService

DAY = 86400
YEAR = DAY * 365
T0 = 1_700_000_000


class TestAudit:

    def setup_method(self):
        self.now = T0

    def _populated(self, tmp_path) -> tuple[EscrowLedgerService, str]:
        url = f"sqlite:///{tmp_path / 'audit.db'}"
        service = EscrowLedgerService(url, clock=lambda: self.now)
        service.initialize()
        ns = service.init_namespace("MINT", "DEPLOYER", "SC", "RC")
        service.credit("alice", 5000)
        service.credit("bob", 3000)
        service.deposit(ns.key, "alice", 5000, T0 + 4 * YEAR)
        service.deposit(ns.key, "bob", 3000, T0 + YEAR)
        service.create_proposal(ns.key, "RC", "ipfs://proposal", T0, T0 + 7 * DAY)
        service.vote(ns.key, "alice", 0, 1)
        service.vote(ns.key, "bob", 0, 2)
        return service, url

    def test_empty_ledger_passes(self, tmp_path):
        url = f"sqlite:///{tmp_path / 'empty.db'}"
        EscrowLedgerService(url).initialize()
        assert run_audit(url)

    def test_consistent_ledger_passes(self, tmp_path):
        _, url = self._populated(tmp_path)
        assert run_audit(url, verbose=True)
        assert run_audit(url, namespace_key="MINT:DEPLOYER")

    def test_after_withdraw_passes(self, tmp_path):
        service, url = self._populated(tmp_path)
        self.now = T0 + YEAR
        service.withdraw("MINT:DEPLOYER", "bob")
        assert run_audit(url)

    def test_unknown_namespace_fails(self, tmp_path):
        _, url = self._populated(tmp_path)
        assert not run_audit(url, namespace_key="OTHER:DEPLOYER")

    def test_running_total_drift_detected(self, tmp_path):
        service, url = self._populated(tmp_path)
        with service.SessionLocal() as session:
            session.get(NamespaceDB, "MINT:DEPLOYER").lockup_amount = 7999
            session.commit()
        assert not run_audit(url)

    def test_vault_drift_detected(self, tmp_path):
        service, url = self._populated(tmp_path)
        lockup = service.get_lockup("MINT:DEPLOYER", "alice")
        with service.SessionLocal() as session:
            session.get(BalanceDB, vault_holder(lockup)).amount = 1
            session.commit()
        assert not run_audit(url)

    def test_tally_drift_detected(self, tmp_path):
        service, url = self._populated(tmp_path)
        with service.SessionLocal() as session:
            row = session.query(ProposalDB).filter_by(ns="MINT:DEPLOYER", nonce=0).one()
            row.voting_power_choices = ["0", "1", "0", "0", "0", "0"]
            session.commit()
        assert not run_audit(url)
