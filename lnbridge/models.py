"""
SQLAlchemy database models for lnbridge.

Users carry the Lightning identity and the authoritative sat balance; login
challenges and withdrawals are the single-use secrets driven by wallets.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def generate_uuid():
    """Generate a UUID string for primary keys."""
    return str(uuid.uuid4())


def utc_now():
    """Current UTC time as a naive datetime, which is what the columns round-trip."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class WithdrawalStatus:
    PENDING = "PENDING"
    CLAIMED = "CLAIMED"
    PAID = "PAID"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"

    ALL = (PENDING, CLAIMED, PAID, FAILED, EXPIRED)
    TERMINAL = (PAID, FAILED, EXPIRED)
    REFUNDABLE = (FAILED, EXPIRED)


class User(Base):
    """
    Application identity - only the fields the Lightning engine touches.
    """

    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    name = Column(String(255), nullable=False)
    email = Column(String(255), unique=True)
    role = Column(String(20), default="USER", nullable=False)
    auth_provider = Column(String(20), default="LIGHTNING", nullable=False)
    lightning_pubkey = Column(String(66), unique=True)  # compressed secp256k1 key, hex
    lightning_bonus_awarded = Column(Boolean, default=False, nullable=False)
    balance_sats = Column(BigInteger, default=0, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utc_now, nullable=False)
    last_login = Column(DateTime)

    withdrawals = relationship("Withdrawal", back_populates="user", cascade="all, delete-orphan")
    ledger_entries = relationship("LedgerEntry", back_populates="user", cascade="all, delete-orphan")

    __table_args__ = (
        CheckConstraint("balance_sats >= 0", name="ck_user_balance_non_negative"),
        Index("idx_user_balance", "balance_sats"),
    )

    def __repr__(self):
        return f"<User(id={self.id}, name={self.name}, balance={self.balance_sats})>"


class LoginChallenge(Base):
    """
    LNURL-auth challenges (LUD-04). ``resolved_key`` is set iff ``used``.
    """

    __tablename__ = "lightning_challenges"

    k1 = Column(String(64), primary_key=True)
    purpose = Column(String(10), default="login", nullable=False)  # 'login' or 'link'
    created_at = Column(DateTime, default=utc_now, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    used = Column(Boolean, default=False, nullable=False)
    used_at = Column(DateTime)
    resolved_key = Column(String(66))

    __table_args__ = (Index("idx_challenge_expires", "expires_at"),)

    def __repr__(self):
        return f"<LoginChallenge(k1={self.k1[:16]}..., used={self.used})>"


class Withdrawal(Base):
    """
    LNURL-withdraw offers (LUD-03). ``amount_sats`` never changes after insert.
    """

    __tablename__ = "withdrawals"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    k1 = Column(String(64), unique=True, nullable=False, index=True)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    amount_sats = Column(BigInteger, nullable=False)
    description = Column(Text)
    status = Column(String(10), default=WithdrawalStatus.PENDING, nullable=False)
    invoice = Column(Text)
    payment_hash = Column(String(64))
    paid_at = Column(DateTime)
    failure_reason = Column(Text)
    funded_from_balance = Column(Boolean, default=False, nullable=False)
    refunded_at = Column(DateTime)
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=utc_now, nullable=False)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now, nullable=False)

    user = relationship("User", back_populates="withdrawals")

    __table_args__ = (
        CheckConstraint("amount_sats > 0", name="ck_withdrawal_amount_positive"),
        Index("idx_withdrawal_status_expires", "status", "expires_at"),
        Index("idx_withdrawal_user", "user_id", "created_at"),
    )

    def __repr__(self):
        return f"<Withdrawal(id={self.id}, amount={self.amount_sats}, status={self.status})>"


class LedgerEntry(Base):
    """
    Append-only record of every balance mutation.
    """

    __tablename__ = "ledger_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    delta_sats = Column(BigInteger, nullable=False)
    balance_after = Column(BigInteger, nullable=False)
    kind = Column(String(10), nullable=False)  # 'credit', 'debit', 'set'
    reason = Column(Text)
    withdrawal_id = Column(String(36), ForeignKey("withdrawals.id", ondelete="SET NULL"))
    created_at = Column(DateTime, default=utc_now, nullable=False)

    user = relationship("User", back_populates="ledger_entries")

    __table_args__ = (Index("idx_ledger_user", "user_id", "created_at"),)

    def __repr__(self):
        return f"<LedgerEntry(user={self.user_id}, delta={self.delta_sats}, kind={self.kind})>"
