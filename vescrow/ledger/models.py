"""
Escrow Ledger — SQLAlchemy models for persisted vote-escrow records.

One table per record kind, keyed the way the engine addresses them:

- namespaces    : by namespace key
- lockups       : unique per (ns, owner)
- proposals     : unique per (ns, nonce)
- vote_records  : unique per (ns, owner, proposal); the unique constraint is
                  the storage-level half of the double-vote guard
- balances      : custodied token balances, by holder id

u64 quantities exceed signed BIGINT, so they are stored as decimal strings
through U64String and come back as exact Python ints.
"""

from __future__ import annotations

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.types import TypeDecorator

from vescrow.escrow.schema import (
    LOCKUP_SCHEMA_VERSION,
    Lockup,
    Namespace,
    Proposal,
    VoteRecord,
)


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for all escrow ledger models."""
    pass


class U64String(TypeDecorator):
    """Unsigned 64-bit integer stored losslessly as a decimal string."""

    impl = String(20)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return None if value is None else str(int(value))

    def process_result_value(self, value, dialect):
        return None if value is None else int(value)


class NamespaceDB(Base):
    """Per-deployment configuration and running totals, mirrors schema.Namespace."""

    __tablename__ = "namespaces"

    key = Column(String(200), primary_key=True, comment="token_mint:deployer")
    token_mint = Column(String(100), nullable=False)
    deployer = Column(String(100), nullable=False)
    security_council = Column(String(100), nullable=False)
    review_council = Column(String(100), nullable=False)
    override_now = Column(BigInteger, nullable=False, default=0)

    lockup_default_target_rewards_pct = Column(Integer, nullable=False)
    lockup_default_target_voting_pct = Column(Integer, nullable=False)
    lockup_min_duration = Column(BigInteger, nullable=False)
    lockup_min_amount = Column(U64String, nullable=False)
    lockup_max_saturation = Column(U64String, nullable=False)
    proposal_min_voting_power_for_quorum = Column(U64String, nullable=False)
    proposal_min_pass_pct = Column(Integer, nullable=False)
    proposal_can_update_after_votes = Column(Boolean, nullable=False, default=False)

    lockup_amount = Column(
        U64String, nullable=False, default=0,
        comment="Running total of locked amount across all lockups",
    )
    proposal_nonce = Column(BigInteger, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())

    _FIELDS = (
        "token_mint", "deployer", "security_council", "review_council",
        "override_now", "lockup_default_target_rewards_pct",
        "lockup_default_target_voting_pct", "lockup_min_duration",
        "lockup_min_amount", "lockup_max_saturation",
        "proposal_min_voting_power_for_quorum", "proposal_min_pass_pct",
        "proposal_can_update_after_votes", "lockup_amount", "proposal_nonce",
    )

    @classmethod
    def from_model(cls, ns: Namespace) -> NamespaceDB:
        row = cls(key=ns.key)
        row.update_from(ns)
        return row

    def update_from(self, ns: Namespace) -> None:
        for name in self._FIELDS:
            setattr(self, name, getattr(ns, name))

    def to_model(self) -> Namespace:
        return Namespace(**{name: getattr(self, name) for name in self._FIELDS})

    def __repr__(self) -> str:
        return f"<Namespace key={self.key} locked={self.lockup_amount} nonce={self.proposal_nonce}>"


class LockupDB(Base):
    """One lockup per (namespace, owner), mirrors schema.Lockup."""

    __tablename__ = "lockups"

    id = Column(Integer, primary_key=True, autoincrement=True)
    ns = Column(String(200), ForeignKey("namespaces.key"), nullable=False)
    owner = Column(String(100), nullable=False)
    amount = Column(U64String, nullable=False, default=0)
    start_ts = Column(BigInteger, nullable=False, default=0)
    end_ts = Column(BigInteger, nullable=False, default=0)
    weighted_start_ts = Column(BigInteger, nullable=False, default=0)
    target_rewards_pct = Column(Integer, nullable=False, default=0)
    target_voting_pct = Column(Integer, nullable=False, default=0)
    schema_version = Column(
        Integer, nullable=False, default=LOCKUP_SCHEMA_VERSION,
        comment="1 = legacy layout without weighted_start_ts",
    )
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=func.now(), onupdate=func.now(),
    )

    __table_args__ = (
        UniqueConstraint("ns", "owner", name="uq_lockup_ns_owner"),
        Index("ix_lockup_ns", "ns"),
    )

    _FIELDS = (
        "ns", "owner", "amount", "start_ts", "end_ts", "weighted_start_ts",
        "target_rewards_pct", "target_voting_pct", "schema_version",
    )

    @classmethod
    def from_model(cls, lockup: Lockup) -> LockupDB:
        row = cls()
        row.update_from(lockup)
        return row

    def update_from(self, lockup: Lockup) -> None:
        for name in self._FIELDS:
            setattr(self, name, getattr(lockup, name))

    def to_model(self) -> Lockup:
        return Lockup(**{name: getattr(self, name) for name in self._FIELDS})


class ProposalDB(Base):
    """Proposal content and per-choice tally, mirrors schema.Proposal."""

    __tablename__ = "proposals"

    id = Column(Integer, primary_key=True, autoincrement=True)
    ns = Column(String(200), ForeignKey("namespaces.key"), nullable=False)
    nonce = Column(BigInteger, nullable=False)
    owner = Column(String(100), nullable=False)
    start_ts = Column(BigInteger, nullable=False)
    end_ts = Column(BigInteger, nullable=False)
    status = Column(Integer, nullable=False, default=0)
    voting_power_choices = Column(
        JSON, nullable=False,
        comment="Cumulative voting power per choice, as decimal strings",
    )
    uri = Column(String(256), nullable=False, default="")

    __table_args__ = (
        UniqueConstraint("ns", "nonce", name="uq_proposal_ns_nonce"),
    )

    @classmethod
    def from_model(cls, proposal: Proposal) -> ProposalDB:
        row = cls(ns=proposal.ns, nonce=proposal.nonce)
        row.update_from(proposal)
        return row

    def update_from(self, proposal: Proposal) -> None:
        self.owner = proposal.owner
        self.start_ts = proposal.start_ts
        self.end_ts = proposal.end_ts
        self.status = proposal.status
        self.voting_power_choices = [str(v) for v in proposal.voting_power_choices]
        self.uri = proposal.uri

    def to_model(self) -> Proposal:
        return Proposal(
            ns=self.ns,
            nonce=self.nonce,
            owner=self.owner,
            start_ts=self.start_ts,
            end_ts=self.end_ts,
            status=self.status,
            voting_power_choices=[int(v) for v in self.voting_power_choices],
            uri=self.uri,
        )


class VoteRecordDB(Base):
    """Vote marker, at most one per (ns, owner, proposal)."""

    __tablename__ = "vote_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    ns = Column(String(200), ForeignKey("namespaces.key"), nullable=False)
    owner = Column(String(100), nullable=False)
    proposal = Column(BigInteger, nullable=False, comment="Proposal nonce")
    lockup = Column(String(300), nullable=False, comment="Key of the voting lockup")
    choice = Column(Integer, nullable=False)
    voting_power = Column(U64String, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())

    __table_args__ = (
        UniqueConstraint("ns", "owner", "proposal", name="uq_vote_ns_owner_proposal"),
        Index("ix_vote_ns_proposal", "ns", "proposal"),
    )

    @classmethod
    def from_model(cls, record: VoteRecord) -> VoteRecordDB:
        return cls(**record.model_dump())

    def to_model(self) -> VoteRecord:
        return VoteRecord(
            ns=self.ns,
            owner=self.owner,
            proposal=self.proposal,
            lockup=self.lockup,
            choice=self.choice,
            voting_power=self.voting_power,
        )


class BalanceDB(Base):
    """Custodied token balance of a holder (owner wallet or lockup vault)."""

    __tablename__ = "balances"

    holder = Column(String(300), primary_key=True)
    amount = Column(U64String, nullable=False, default=0)

    def __repr__(self) -> str:
        return f"<Balance holder={self.holder} amount={self.amount}>"
