"""
Escrow Ledger Service — persistent, serialized execution of escrow operations.

This service is the storage collaborator of the escrow engine. It provides:
- Keyed records for namespaces, lockups, proposals and vote records
- Exclusive access per record set for the full duration of an operation
- All-or-nothing commits: custody transfers and record updates share one
  database transaction, and any error rolls the whole operation back

Each operation locks the keys it touches in sorted order, loads rows, runs
the pure transition from vescrow.escrow or vescrow.governance, then writes
the results back and commits.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Callable, Iterator

from pydantic import ValidationError
from sqlalchemy import create_engine, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from vescrow.config import settings
from vescrow.escrow import lockup_ledger
from vescrow.escrow.errors import (
    DuplicateNamespaceError,
    DuplicateVoteError,
    EscrowError,
    InvalidNamespaceError,
    InvariantViolationError,
    RecordNotFoundError,
)
from vescrow.escrow.schema import (
    Lockup,
    Namespace,
    Proposal,
    VoteRecord,
    schema_version_for_size,
    system_clock,
)
from vescrow.escrow.voting_power import voting_power
from vescrow.governance import proposals as proposal_ops
from vescrow.governance import voting
from vescrow.ledger.custody import TokenCustody, vault_holder
from vescrow.ledger.models import (
    Base,
    LockupDB,
    NamespaceDB,
    ProposalDB,
    VoteRecordDB,
)

logger = logging.getLogger(__name__)


class KeyedLocks:
    """
    Per-key mutual exclusion within one process.

    Keys are acquired in sorted order so that overlapping operations cannot
    deadlock. Entries are reference-counted and dropped once no caller holds
    or waits on them. Cross-process exclusion comes from SELECT ... FOR UPDATE
    on backends that support it.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        self._refs: dict[str, int] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, *keys: str) -> Iterator[None]:
        ordered = sorted(set(keys))
        with self._guard:
            for key in ordered:
                if key not in self._locks:
                    self._locks[key] = threading.Lock()
                    self._refs[key] = 0
                self._refs[key] += 1
            locks = [self._locks[key] for key in ordered]

        acquired: list[threading.Lock] = []
        try:
            for lock in locks:
                lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
            with self._guard:
                for key in ordered:
                    self._refs[key] -= 1
                    if self._refs[key] == 0:
                        del self._refs[key]
                        del self._locks[key]


class EscrowLedgerService:
    """
    Vote-escrow ledger service — the entry point for all escrow operations.

    Usage:
        service = EscrowLedgerService("sqlite:///vescrow.db")
        service.initialize()

        ns = service.init_namespace(
            token_mint="MINT", deployer="DEPLOYER",
            security_council="SC", review_council="RC",
        )
        service.credit("alice", 10_000)
        service.deposit(ns.key, "alice", 5_000, end_ts=now + 365 * 86400)
    """

    def __init__(
        self,
        database_url: str | None = None,
        clock: Callable[[], int] | None = None,
        echo: bool | None = None,
    ) -> None:
        """
        Initialize the ledger service.

        Args:
            database_url: SQLAlchemy URL; defaults to settings.database_url.
            clock: Source of the current unix time; defaults to wall clock.
            echo: Echo SQL statements; defaults to settings.database_echo.
        """
        database_url = database_url or settings.database_url
        engine_kwargs: dict = {
            "echo": settings.database_echo if echo is None else echo,
        }
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            # One shared connection so every session sees the same in-memory DB
            engine_kwargs["connect_args"] = {"check_same_thread": False}
            engine_kwargs["poolclass"] = StaticPool

        self.engine = create_engine(database_url, **engine_kwargs)
        self.SessionLocal = sessionmaker(bind=self.engine)
        self.clock = clock or system_clock
        self.custody = TokenCustody()
        self.locks = KeyedLocks()

    def initialize(self) -> None:
        """Create the database schema if it does not exist yet."""
        Base.metadata.create_all(self.engine)

    @contextmanager
    def _operation(self, name: str, *keys: str) -> Iterator[Session]:
        """Hold ``keys`` exclusively and run one transaction; commit on success."""
        with self.locks.hold(*keys), self.SessionLocal() as session:
            try:
                yield session
                session.commit()
            except InvariantViolationError:
                session.rollback()
                logger.critical("Invariant violation in %s; operation aborted", name, exc_info=True)
                raise
            except EscrowError as e:
                session.rollback()
                logger.warning("%s rejected: %s: %s", name, type(e).__name__, e)
                raise

    # ── Namespace ───────────────────────────────────────────────

    def init_namespace(
        self,
        token_mint: str,
        deployer: str,
        security_council: str,
        review_council: str,
        **params,
    ) -> Namespace:
        """
        Create a namespace; unspecified parameters come from settings.

        Raises:
            InvalidNamespaceError: Parameters out of range or failing Namespace.valid().
            DuplicateNamespaceError: The namespace already exists.
        """
        try:
            ns = Namespace(
                token_mint=token_mint,
                deployer=deployer,
                security_council=security_council,
                review_council=review_council,
                **{**settings.namespace_defaults(), **params},
            )
        except ValidationError as e:
            raise InvalidNamespaceError(
                f"Namespace {token_mint}:{deployer} parameters out of range: "
                f"{e.error_count()} error(s)"
            ) from e
        if not ns.valid():
            raise InvalidNamespaceError(f"Namespace {ns.key} configuration is invalid")

        with self._operation("init_namespace", ns.key) as session:
            if session.get(NamespaceDB, ns.key) is not None:
                raise DuplicateNamespaceError(f"Namespace {ns.key} already exists")
            session.add(NamespaceDB.from_model(ns))

        logger.info("Namespace initialized: %s", ns.key)
        return ns

    def get_namespace(self, ns_key: str) -> Namespace | None:
        with self.SessionLocal() as session:
            row = session.get(NamespaceDB, ns_key)
            return row.to_model() if row is not None else None

    def list_namespaces(self) -> list[Namespace]:
        with self.SessionLocal() as session:
            rows = session.execute(select(NamespaceDB).order_by(NamespaceDB.key)).scalars()
            return [row.to_model() for row in rows]

    # ── Custody ─────────────────────────────────────────────────

    def credit(self, holder: str, amount: int) -> int:
        """Deposit funds into custody for ``holder``. Returns the new balance."""
        with self._operation("credit", f"balance:{holder}") as session:
            balance = self.custody.credit(session, holder, amount)
        return balance

    def balance_of(self, holder: str) -> int:
        with self.SessionLocal() as session:
            return self.custody.balance_of(session, holder)

    # ── Lockups ─────────────────────────────────────────────────

    def deposit(self, ns_key: str, owner: str, amount: int, end_ts: int) -> Lockup:
        """Create, top up or extend the owner's lockup with the owner's funds."""
        return self._deposit(ns_key, owner, owner, amount, end_ts)

    def deposit_for(
        self,
        ns_key: str,
        authority: str,
        owner: str,
        amount: int,
        end_ts: int,
        target_rewards_pct: int,
        target_voting_pct: int,
    ) -> Lockup:
        """Deposit into ``owner``'s lockup with security-council funds."""
        return self._deposit(
            ns_key, authority, owner, amount, end_ts,
            targets=(target_rewards_pct, target_voting_pct),
        )

    def _deposit(
        self,
        ns_key: str,
        payer: str,
        owner: str,
        amount: int,
        end_ts: int,
        targets: tuple[int, int] | None = None,
    ) -> Lockup:
        target = Lockup(ns=ns_key, owner=owner)
        lockup_key = target.key
        with self._operation(
            "deposit", ns_key, lockup_key, f"balance:{payer}", f"balance:{vault_holder(target)}"
        ) as session:
            ns_row = self._namespace_row(session, ns_key)
            ns = ns_row.to_model()
            now = ns.now(self.clock)

            lockup_row = self._lockup_row(session, ns_key, owner)
            lockup = lockup_row.to_model() if lockup_row is not None else target
            available = self.custody.balance_of(session, payer)

            if targets is None:
                new_lockup, new_ns = lockup_ledger.deposit(
                    lockup, ns, amount, end_ts,
                    owner=owner, now=now, available_balance=available,
                )
            else:
                new_lockup, new_ns = lockup_ledger.deposit_for(
                    lockup, ns, amount, end_ts,
                    authority=payer, owner=owner, now=now, available_balance=available,
                    target_rewards_pct=targets[0], target_voting_pct=targets[1],
                )

            if amount > 0:
                self.custody.transfer(session, payer, vault_holder(new_lockup), amount)

            if lockup_row is None:
                session.add(LockupDB.from_model(new_lockup))
            else:
                lockup_row.update_from(new_lockup)
            ns_row.update_from(new_ns)

        logger.info(
            "Deposit committed: lockup=%s payer=%s added=%d amount=%d end_ts=%d weighted_start_ts=%d",
            new_lockup.key, payer, amount, new_lockup.amount,
            new_lockup.end_ts, new_lockup.weighted_start_ts,
        )
        return new_lockup

    def withdraw(self, ns_key: str, owner: str) -> int:
        """Return an expired lockup's balance to its owner. Returns the amount."""
        target = Lockup(ns=ns_key, owner=owner)
        lockup_key = target.key
        with self._operation(
            "withdraw", ns_key, lockup_key, f"balance:{owner}", f"balance:{vault_holder(target)}"
        ) as session:
            ns_row = self._namespace_row(session, ns_key)
            ns = ns_row.to_model()
            lockup_row = self._lockup_row(session, ns_key, owner)
            if lockup_row is None:
                raise RecordNotFoundError(f"No lockup for {owner} in {ns_key}")
            lockup = lockup_row.to_model()

            new_lockup, new_ns, released = lockup_ledger.withdraw(
                lockup, ns, now=ns.now(self.clock)
            )
            self.custody.transfer(session, vault_holder(lockup), owner, released)
            lockup_row.update_from(new_lockup)
            ns_row.update_from(new_ns)

        logger.info("Withdrawal committed: lockup=%s released=%d", lockup_key, released)
        return released

    def restore_lockup(self, lockup: Lockup, data_len: int) -> Lockup:
        """
        Import a lockup record persisted by byte-sized storage.

        The schema version is derived from the stored byte length; legacy
        records are upgraded lazily on their next deposit.
        """
        restored = lockup.model_copy(update={"schema_version": schema_version_for_size(data_len)})
        with self._operation("restore_lockup", restored.ns, restored.key) as session:
            self._namespace_row(session, restored.ns)
            row = self._lockup_row(session, restored.ns, restored.owner)
            if row is None:
                session.add(LockupDB.from_model(restored))
            else:
                row.update_from(restored)

        logger.info(
            "Lockup restored: %s data_len=%d schema_version=%d",
            restored.key, data_len, restored.schema_version,
        )
        return restored

    def get_lockup(self, ns_key: str, owner: str) -> Lockup | None:
        with self.SessionLocal() as session:
            row = self._lockup_row(session, ns_key, owner, lock=False)
            return row.to_model() if row is not None else None

    def list_lockups(self, ns_key: str) -> list[Lockup]:
        with self.SessionLocal() as session:
            rows = session.execute(
                select(LockupDB).where(LockupDB.ns == ns_key).order_by(LockupDB.owner)
            ).scalars()
            return [row.to_model() for row in rows]

    def voting_power(self, ns_key: str, owner: str) -> int:
        """Current voting power of the owner's lockup (0 if none)."""
        with self.SessionLocal() as session:
            ns_row = session.get(NamespaceDB, ns_key)
            if ns_row is None:
                raise RecordNotFoundError(f"Namespace {ns_key} not found")
            ns = ns_row.to_model()
            lockup_row = self._lockup_row(session, ns_key, owner, lock=False)
            if lockup_row is None:
                return 0
            lockup = lockup_row.to_model()
        return voting_power(lockup, ns, ns.now(self.clock))

    # ── Proposals & votes ───────────────────────────────────────

    def create_proposal(
        self, ns_key: str, caller: str, uri: str, start_ts: int, end_ts: int
    ) -> Proposal:
        with self._operation("create_proposal", ns_key) as session:
            ns_row = self._namespace_row(session, ns_key)
            proposal, new_ns = proposal_ops.create_proposal(
                ns_row.to_model(), caller, uri, start_ts, end_ts
            )
            session.add(ProposalDB.from_model(proposal))
            ns_row.update_from(new_ns)
        return proposal

    def update_proposal(
        self, ns_key: str, nonce: int, caller: str, uri: str, start_ts: int, end_ts: int
    ) -> Proposal:
        proposal_key = f"{ns_key}#{nonce}"
        with self._operation("update_proposal", ns_key, proposal_key) as session:
            ns = self._namespace_row(session, ns_key).to_model()
            row = self._proposal_row(session, ns_key, nonce)
            updated = proposal_ops.update_proposal(
                ns, row.to_model(), caller, uri, start_ts, end_ts
            )
            row.update_from(updated)
        return updated

    def vote(self, ns_key: str, owner: str, nonce: int, choice: int) -> VoteRecord:
        """
        Cast the owner's lockup voting power for ``choice`` on a proposal.

        Raises:
            DuplicateVoteError: The owner already voted on this proposal.
        """
        lockup_key = Lockup(ns=ns_key, owner=owner).key
        proposal_key = f"{ns_key}#{nonce}"
        with self._operation("vote", ns_key, lockup_key, proposal_key) as session:
            ns = self._namespace_row(session, ns_key).to_model()
            lockup_row = self._lockup_row(session, ns_key, owner)
            if lockup_row is None:
                raise RecordNotFoundError(f"No lockup for {owner} in {ns_key}")
            proposal_row = self._proposal_row(session, ns_key, nonce)
            existing = self._vote_record_row(session, ns_key, owner, nonce)

            updated, record = voting.cast_vote(
                ns,
                lockup_row.to_model(),
                proposal_row.to_model(),
                owner,
                choice,
                now=ns.now(self.clock),
                existing_record=existing.to_model() if existing is not None else None,
            )
            proposal_row.update_from(updated)
            session.add(VoteRecordDB.from_model(record))
            try:
                session.flush()
            except IntegrityError as e:
                raise DuplicateVoteError(f"{owner} already voted on proposal {proposal_key}") from e

        logger.info(
            "Vote committed: proposal=%s owner=%s choice=%d power=%d",
            proposal_key, owner, record.choice, record.voting_power,
        )
        return record

    def get_proposal(self, ns_key: str, nonce: int) -> Proposal | None:
        with self.SessionLocal() as session:
            row = session.execute(
                select(ProposalDB).where(ProposalDB.ns == ns_key, ProposalDB.nonce == nonce)
            ).scalar_one_or_none()
            return row.to_model() if row is not None else None

    def list_proposals(self, ns_key: str) -> list[Proposal]:
        with self.SessionLocal() as session:
            rows = session.execute(
                select(ProposalDB).where(ProposalDB.ns == ns_key).order_by(ProposalDB.nonce)
            ).scalars()
            return [row.to_model() for row in rows]

    def get_vote_record(self, ns_key: str, owner: str, nonce: int) -> VoteRecord | None:
        with self.SessionLocal() as session:
            row = self._vote_record_row(session, ns_key, owner, nonce)
            return row.to_model() if row is not None else None

    def list_vote_records(self, ns_key: str, nonce: int) -> list[VoteRecord]:
        with self.SessionLocal() as session:
            rows = session.execute(
                select(VoteRecordDB)
                .where(VoteRecordDB.ns == ns_key, VoteRecordDB.proposal == nonce)
                .order_by(VoteRecordDB.owner)
            ).scalars()
            return [row.to_model() for row in rows]

    # ── Internal ────────────────────────────────────────────────

    @staticmethod
    def _namespace_row(session: Session, ns_key: str) -> NamespaceDB:
        row = session.execute(
            select(NamespaceDB).where(NamespaceDB.key == ns_key).with_for_update()
        ).scalar_one_or_none()
        if row is None:
            raise RecordNotFoundError(f"Namespace {ns_key} not found")
        return row

    @staticmethod
    def _lockup_row(
        session: Session, ns_key: str, owner: str, lock: bool = True
    ) -> LockupDB | None:
        stmt = select(LockupDB).where(LockupDB.ns == ns_key, LockupDB.owner == owner)
        if lock:
            stmt = stmt.with_for_update()
        return session.execute(stmt).scalar_one_or_none()

    @staticmethod
    def _proposal_row(session: Session, ns_key: str, nonce: int) -> ProposalDB:
        row = session.execute(
            select(ProposalDB)
            .where(ProposalDB.ns == ns_key, ProposalDB.nonce == nonce)
            .with_for_update()
        ).scalar_one_or_none()
        if row is None:
            raise RecordNotFoundError(f"Proposal {ns_key}#{nonce} not found")
        return row

    @staticmethod
    def _vote_record_row(
        session: Session, ns_key: str, owner: str, nonce: int
    ) -> VoteRecordDB | None:
        return session.execute(
            select(VoteRecordDB).where(
                VoteRecordDB.ns == ns_key,
                VoteRecordDB.owner == owner,
                VoteRecordDB.proposal == nonce,
            )
        ).scalar_one_or_none()
