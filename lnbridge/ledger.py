"""
Balance ledger.

The ``users.balance_sats`` column is the authoritative per-user balance.
Credits and debits are single conditional UPDATEs, so concurrent mutations on
one user never lose an update and a debit can never take the balance below
zero. Every mutation also appends a ``LedgerEntry`` in the same transaction.
"""

import logging
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from lnbridge.audit_logger import get_audit_logger
from lnbridge.database import session_scope
from lnbridge.exceptions import IdentityNotFound, InsufficientBalance, InvalidAmount
from lnbridge.models import LedgerEntry, User
from lnbridge.utils import isoformat

logger = logging.getLogger(__name__)
audit_logger = get_audit_logger()


def _check_amount(amount, allow_zero: bool = False) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmount("Amount must be an integer number of sats")
    if amount < 0 or (amount == 0 and not allow_zero):
        raise InvalidAmount("Balance cannot be negative" if allow_zero else "Amount must be positive")
    return amount


@contextmanager
def _scope(session: Optional[Session]) -> Iterator[Session]:
    """Join the caller's transaction if one is given, otherwise open our own."""
    if session is not None:
        yield session
    else:
        with session_scope() as own:
            yield own


class BalanceLedger:
    """Credit, debit and report per-user sat balances."""

    def _record(
        self,
        session: Session,
        user_id: str,
        kind: str,
        delta: int,
        reason: Optional[str],
        withdrawal_id: Optional[str],
    ) -> int:
        balance = session.query(User.balance_sats).filter(User.id == user_id).scalar()
        session.add(
            LedgerEntry(
                user_id=user_id,
                delta_sats=delta,
                balance_after=balance,
                kind=kind,
                reason=reason,
                withdrawal_id=withdrawal_id,
            )
        )
        audit_logger.log_ledger_change(user_id, kind, delta, balance, reason)
        return balance

    def credit(
        self,
        user_id: str,
        amount: int,
        reason: Optional[str] = None,
        session: Optional[Session] = None,
        withdrawal_id: Optional[str] = None,
    ) -> Dict:
        """
        Add ``amount`` sats to a user's balance.

        Credits never fail on balance grounds.

        Raises:
            InvalidAmount: amount is not a positive integer
            IdentityNotFound: unknown user
        """
        amount = _check_amount(amount)

        with _scope(session) as s:
            count = (
                s.query(User)
                .filter(User.id == user_id)
                .update({User.balance_sats: User.balance_sats + amount}, synchronize_session=False)
            )
            if count == 0:
                raise IdentityNotFound(user_id)
            new_balance = self._record(s, user_id, "credit", amount, reason, withdrawal_id)

        logger.info(f"Credited {amount} sats to {user_id} ({reason or 'N/A'}); new balance {new_balance}")
        return {"userId": user_id, "newBalance": new_balance, "credited": amount}

    def debit(
        self,
        user_id: str,
        amount: int,
        reason: Optional[str] = None,
        session: Optional[Session] = None,
        withdrawal_id: Optional[str] = None,
    ) -> Dict:
        """
        Remove ``amount`` sats from a user's balance if they have it.

        Raises:
            InvalidAmount: amount is not a positive integer
            IdentityNotFound: unknown user
            InsufficientBalance: balance is below ``amount``; nothing changes
        """
        amount = _check_amount(amount)

        with _scope(session) as s:
            count = (
                s.query(User)
                .filter(User.id == user_id, User.balance_sats >= amount)
                .update({User.balance_sats: User.balance_sats - amount}, synchronize_session=False)
            )
            if count == 0:
                available = s.query(User.balance_sats).filter(User.id == user_id).scalar()
                if available is None:
                    raise IdentityNotFound(user_id)
                raise InsufficientBalance(available, amount)
            new_balance = self._record(s, user_id, "debit", -amount, reason, withdrawal_id)

        logger.info(f"Debited {amount} sats from {user_id}; new balance {new_balance}")
        return {"userId": user_id, "newBalance": new_balance, "debited": amount}

    def set_balance(self, user_id: str, amount: int, reason: Optional[str] = None) -> Dict:
        """Overwrite a user's balance (admin correction)."""
        amount = _check_amount(amount, allow_zero=True)

        with session_scope() as s:
            previous = s.query(User.balance_sats).filter(User.id == user_id).with_for_update().scalar()
            if previous is None:
                raise IdentityNotFound(user_id)
            s.query(User).filter(User.id == user_id).update(
                {User.balance_sats: amount}, synchronize_session=False
            )
            self._record(s, user_id, "set", amount - previous, reason or "Admin set balance", None)

        return {"userId": user_id, "newBalance": amount}

    def get_balance(self, user_id: str) -> int:
        """Current balance; 0 for unknown users."""
        with session_scope() as s:
            balance = s.query(User.balance_sats).filter(User.id == user_id).scalar()
        return balance or 0

    def list_balances(self, nonzero_only: bool = False) -> List[Dict]:
        """Active users ordered by balance, richest first."""
        with session_scope() as s:
            query = s.query(User).filter(User.is_active.is_(True))
            if nonzero_only:
                query = query.filter(User.balance_sats > 0)
            users = query.order_by(User.balance_sats.desc(), User.created_at).all()
            return [
                {
                    "id": user.id,
                    "name": user.name,
                    "email": user.email,
                    "role": user.role,
                    "balanceSats": user.balance_sats,
                }
                for user in users
            ]

    def stats(self) -> Dict[str, int]:
        with session_scope() as s:
            total, maximum = s.query(func.sum(User.balance_sats), func.max(User.balance_sats)).one()
            with_balance = s.query(func.count(User.id)).filter(User.balance_sats > 0).scalar()

        total = int(total or 0)
        return {
            "totalOutstanding": total,
            "usersWithBalance": with_balance,
            "averageBalance": round(total / with_balance) if with_balance else 0,
            "maxBalance": int(maximum or 0),
        }

    def history(self, user_id: str, limit: int = 50) -> List[Dict]:
        """Most recent ledger entries for a user."""
        with session_scope() as s:
            entries = (
                s.query(LedgerEntry)
                .filter(LedgerEntry.user_id == user_id)
                .order_by(LedgerEntry.created_at.desc(), LedgerEntry.id.desc())
                .limit(limit)
                .all()
            )
            return [
                {
                    "id": entry.id,
                    "kind": entry.kind,
                    "deltaSats": entry.delta_sats,
                    "balanceAfter": entry.balance_after,
                    "reason": entry.reason,
                    "withdrawalId": entry.withdrawal_id,
                    "createdAt": isoformat(entry.created_at),
                }
                for entry in entries
            ]
