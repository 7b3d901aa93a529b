"""
Balance-funded withdrawals.

A user cashes out part or all of their ledger balance: the balance is debited
first, then the LNURL-withdraw offer is created. If the offer cannot be
created the debit is reversed before the error propagates, and if the offer
later ends FAILED or EXPIRED the amount is credited back exactly once.
"""

import logging
from typing import Any, Dict, Mapping, Optional

from lnbridge.database import session_scope
from lnbridge.exceptions import IdentityNotFound, InsufficientBalance, InvalidAmount
from lnbridge.ledger import BalanceLedger
from lnbridge.models import User, Withdrawal, WithdrawalStatus, utc_now
from lnbridge.withdrawals import WithdrawalEngine

logger = logging.getLogger(__name__)


class PayoutService:
    def __init__(
        self,
        cfg: Mapping[str, Any],
        ledger: BalanceLedger,
        engine: WithdrawalEngine,
        clock=None,
    ):
        self.ledger = ledger
        self.engine = engine
        self.min_withdrawal_sats = int(cfg.get("MIN_WITHDRAWAL_SATS", 100))
        self.clock = clock or utc_now
        engine.add_terminal_listener(self.on_withdrawal_terminal)

    def initiate_withdrawal(self, user_id: str, amount_sats: Optional[int] = None) -> Dict[str, Any]:
        """
        Turn ledger balance into a withdrawal offer.

        Args:
            user_id: Account cashing out
            amount_sats: Amount to withdraw; the full balance when omitted

        Returns:
            The withdrawal offer (see ``WithdrawalEngine.create_withdrawal``)

        Raises:
            IdentityNotFound, InvalidAmount, InsufficientBalance, and anything
            offer creation raises (after the debit has been refunded)
        """
        with session_scope() as session:
            user = session.query(User).filter_by(id=user_id).first()
            if user is None:
                raise IdentityNotFound(user_id)
            balance, name = user.balance_sats, user.name

        amount = balance if amount_sats is None else amount_sats
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise InvalidAmount("Amount must be an integer number of sats")
        if amount <= 0:
            raise InvalidAmount("No balance to withdraw" if amount_sats is None else "Amount must be positive")
        if amount > balance:
            raise InsufficientBalance(balance, amount)
        if amount < self.min_withdrawal_sats:
            raise InvalidAmount(f"Minimum withdrawal is {self.min_withdrawal_sats} sats")

        self.ledger.debit(user_id, amount, reason="Balance withdrawal")
        try:
            offer = self.engine.create_withdrawal(
                user_id,
                amount,
                description=f"Balance withdrawal - {name}",
                funded_from_balance=True,
            )
        except Exception:
            logger.warning(f"Withdrawal creation failed for {user_id}; refunding {amount} sats")
            self.ledger.credit(user_id, amount, reason="Refund - withdrawal creation failed")
            raise

        logger.info(f"Created balance withdrawal {offer['withdrawal']['id']} for {amount} sats")
        return offer

    def on_withdrawal_terminal(self, withdrawal_id: str, status: str) -> bool:
        """
        Refund a balance-funded withdrawal that ended FAILED or EXPIRED.

        ``refunded_at`` is claimed with a conditional UPDATE in the same
        transaction as the credit, so repeated calls refund once.

        Returns:
            True if this call performed the refund
        """
        if status not in WithdrawalStatus.REFUNDABLE:
            return False

        with session_scope() as session:
            withdrawal = session.query(Withdrawal).filter_by(id=withdrawal_id).first()
            if withdrawal is None:
                logger.error(f"Withdrawal {withdrawal_id} not found for refund")
                return False
            if not withdrawal.funded_from_balance or withdrawal.status not in WithdrawalStatus.REFUNDABLE:
                return False

            user_id, amount, final_status = withdrawal.user_id, withdrawal.amount_sats, withdrawal.status
            count = (
                session.query(Withdrawal)
                .filter(
                    Withdrawal.id == withdrawal_id,
                    Withdrawal.refunded_at.is_(None),
                    Withdrawal.funded_from_balance.is_(True),
                    Withdrawal.status.in_(WithdrawalStatus.REFUNDABLE),
                )
                .update({Withdrawal.refunded_at: self.clock()}, synchronize_session=False)
            )
            if count == 0:
                return False

            self.ledger.credit(
                user_id,
                amount,
                reason=f"Refund - withdrawal {final_status.lower()}",
                session=session,
                withdrawal_id=withdrawal_id,
            )

        logger.info(f"Refunded {amount} sats to {user_id} (withdrawal {withdrawal_id} {final_status})")
        return True

    def reconcile_refunds(self) -> int:
        """Refund terminal balance-funded withdrawals whose refund never landed."""
        with session_scope() as session:
            rows = (
                session.query(Withdrawal.id, Withdrawal.status)
                .filter(
                    Withdrawal.funded_from_balance.is_(True),
                    Withdrawal.refunded_at.is_(None),
                    Withdrawal.status.in_(WithdrawalStatus.REFUNDABLE),
                )
                .all()
            )
            pending = [(row.id, row.status) for row in rows]

        count = sum(1 for withdrawal_id, status in pending if self.on_withdrawal_terminal(withdrawal_id, status))
        if count:
            logger.warning(f"Reconciled {count} missing withdrawal refunds")
        return count
