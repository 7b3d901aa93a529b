"""
LNURL-withdraw protocol engine (LUD-03).

Lifecycle of a withdrawal::

    PENDING -> CLAIMED -> PAID
    PENDING -> CLAIMED -> FAILED
    PENDING -> CLAIMED -> PENDING   (node call raised; wallet may retry)
    PENDING -> EXPIRED

Every transition is a conditional UPDATE on the expected prior status, so two
wallets racing on one k1 cannot both claim it and nothing leaves a terminal
state.
"""

import logging
from datetime import timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional

from sqlalchemy import func

from lnbridge.audit_logger import get_audit_logger
from lnbridge.codec import encode_lnurl, is_hex
from lnbridge.config import MAX_WITHDRAWAL_EXPIRY_HOURS
from lnbridge.database import session_scope
from lnbridge.exceptions import (
    IdentityNotFound,
    InsufficientNodeLiquidity,
    InvalidAmount,
    LightningNodeError,
    NodeNotConfigured,
    WithdrawalError,
)
from lnbridge.models import User, Withdrawal, WithdrawalStatus, utc_now
from lnbridge.node_gateway import NodeGateway
from lnbridge.notifications import Notifier
from lnbridge.utils import isoformat, secure_random_hex

logger = logging.getLogger(__name__)
audit_logger = get_audit_logger()


TerminalListener = Callable[[str, str], None]


def _error(reason: str) -> Dict[str, str]:
    return {"status": "ERROR", "reason": reason}


def _row_to_dict(withdrawal: Withdrawal, user: Optional[User] = None) -> Dict[str, Any]:
    data = {
        "id": withdrawal.id,
        "k1": withdrawal.k1,
        "userId": withdrawal.user_id,
        "amountSats": withdrawal.amount_sats,
        "description": withdrawal.description,
        "status": withdrawal.status,
        "invoice": withdrawal.invoice,
        "paymentHash": withdrawal.payment_hash,
        "paidAt": isoformat(withdrawal.paid_at),
        "failureReason": withdrawal.failure_reason,
        "fundedFromBalance": withdrawal.funded_from_balance,
        "refundedAt": isoformat(withdrawal.refunded_at),
        "expiresAt": isoformat(withdrawal.expires_at),
        "createdAt": isoformat(withdrawal.created_at),
        "updatedAt": isoformat(withdrawal.updated_at),
        # Raw value for expiry comparisons; stripped before serialising.
        "_expires_at": withdrawal.expires_at,
    }
    if user is not None:
        data["user"] = {"id": user.id, "name": user.name, "email": user.email}
    return data


def _public(row: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in row.items() if not k.startswith("_")}


class WithdrawalEngine:
    def __init__(
        self,
        cfg: Mapping[str, Any],
        node: NodeGateway,
        notifier: Optional[Notifier] = None,
        clock: Optional[Callable] = None,
    ):
        self.base_url = str(cfg.get("LNURL_BASE_URL") or "").rstrip("/")
        self.default_expiry_hours = int(cfg.get("WITHDRAWAL_EXPIRY_HOURS", 24))
        self.description_prefix = cfg.get("WITHDRAWAL_DESCRIPTION_PREFIX") or "Payout"
        self.node = node
        self.notifier = notifier
        self.clock = clock or utc_now
        self._terminal_listeners: List[TerminalListener] = []

    # ----------------- URLs -----------------

    def request_url(self, k1: str) -> str:
        return f"{self.base_url}/api/lnurl/withdraw?k1={k1}"

    def callback_url(self) -> str:
        return f"{self.base_url}/api/lnurl/withdraw/callback"

    def _lnurl_fields(self, k1: str) -> Dict[str, str]:
        lnurl = encode_lnurl(self.request_url(k1))
        return {"lnurl": lnurl, "qrData": lnurl.upper(), "lightningUri": f"lightning:{lnurl}"}

    # ----------------- listeners -----------------

    def add_terminal_listener(self, listener: TerminalListener) -> None:
        """Register ``listener(withdrawal_id, status)`` for PAID/FAILED/EXPIRED."""
        self._terminal_listeners.append(listener)

    def _fire_terminal(self, withdrawal_id: str, status: str) -> None:
        for listener in self._terminal_listeners:
            try:
                listener(withdrawal_id, status)
            except Exception:
                # Refund reconciliation picks up anything a listener failed to finish.
                logger.exception(f"Terminal listener failed for withdrawal {withdrawal_id} ({status})")

    # ----------------- transitions -----------------

    def _transition(
        self, withdrawal_id: str, from_status: str, to_status: str, unexpired: bool = False, **values: Any
    ) -> bool:
        """
        Move a row from ``from_status`` to ``to_status``; False if the row was not in ``from_status``.

        With ``unexpired`` the row must also still be inside its deadline.
        """
        now = self.clock()
        updates = {Withdrawal.status: to_status, Withdrawal.updated_at: now}
        for name, value in values.items():
            updates[getattr(Withdrawal, name)] = value

        with session_scope() as session:
            query = session.query(Withdrawal).filter(
                Withdrawal.id == withdrawal_id, Withdrawal.status == from_status
            )
            if unexpired:
                query = query.filter(Withdrawal.expires_at > now)
            count = query.update(updates, synchronize_session=False)

        if count:
            audit_logger.log_withdrawal_transition(withdrawal_id, from_status, to_status, values.get("failure_reason"))
        return count == 1

    def _expire(self, withdrawal_id: str) -> bool:
        if self._transition(withdrawal_id, WithdrawalStatus.PENDING, WithdrawalStatus.EXPIRED):
            self._fire_terminal(withdrawal_id, WithdrawalStatus.EXPIRED)
            return True
        return False

    def _load_by_k1(self, k1: str) -> Optional[Dict[str, Any]]:
        with session_scope() as session:
            row = (
                session.query(Withdrawal, User)
                .join(User, Withdrawal.user_id == User.id)
                .filter(Withdrawal.k1 == k1)
                .first()
            )
            return _row_to_dict(*row) if row else None

    def _check_claimable(self, k1: Optional[str]):
        """Shared validation for both wallet calls. Returns (row, error)."""
        if not k1:
            return None, _error("Missing k1 parameter")
        if not is_hex(k1, 32):
            return None, _error("Invalid k1")

        withdrawal = self._load_by_k1(k1.lower())
        if withdrawal is None:
            return None, _error("Withdrawal not found")
        if withdrawal["status"] != WithdrawalStatus.PENDING:
            return None, _error(f"Withdrawal already {withdrawal['status'].lower()}")
        if withdrawal["_expires_at"] <= self.clock():
            self._expire(withdrawal["id"])
            return None, _error("Withdrawal expired")
        return withdrawal, None

    # ----------------- creation -----------------

    def create_withdrawal(
        self,
        user_id: str,
        amount_sats: int,
        description: Optional[str] = None,
        expires_in_hours: Optional[int] = None,
        funded_from_balance: bool = False,
    ) -> Dict[str, Any]:
        """
        Create a PENDING withdrawal offer.

        Returns:
            ``{"withdrawal": {id, k1, amountSats, status, expiresAt}, "lnurl", "qrData", "lightningUri"}``

        Raises:
            InvalidAmount, IdentityNotFound, NodeNotConfigured,
            InsufficientNodeLiquidity, NodeUnavailable, NodeError
        """
        if isinstance(amount_sats, bool) or not isinstance(amount_sats, int) or amount_sats < 1:
            raise InvalidAmount("Amount must be at least 1 sat")

        hours = expires_in_hours if expires_in_hours is not None else self.default_expiry_hours
        if isinstance(hours, bool) or not isinstance(hours, int):
            raise WithdrawalError("Expiry must be a whole number of hours")
        if not 0 < hours <= MAX_WITHDRAWAL_EXPIRY_HOURS:
            raise WithdrawalError(f"Expiry must be between 1 and {MAX_WITHDRAWAL_EXPIRY_HOURS} hours")

        with session_scope() as session:
            if session.query(User.id).filter(User.id == user_id).first() is None:
                raise IdentityNotFound(user_id)

        if not self.node.is_configured():
            raise NodeNotConfigured()

        available = self.node.get_channel_balance()["availableSats"]
        if available < amount_sats:
            raise InsufficientNodeLiquidity(available, amount_sats)

        now = self.clock()
        with session_scope() as session:
            withdrawal = Withdrawal(
                k1=secure_random_hex(32),
                user_id=user_id,
                amount_sats=amount_sats,
                description=description,
                status=WithdrawalStatus.PENDING,
                funded_from_balance=funded_from_balance,
                expires_at=now + timedelta(hours=hours),
                created_at=now,
                updated_at=now,
            )
            session.add(withdrawal)
            session.flush()
            summary = {
                "id": withdrawal.id,
                "k1": withdrawal.k1,
                "amountSats": withdrawal.amount_sats,
                "status": withdrawal.status,
                "expiresAt": isoformat(withdrawal.expires_at),
            }

        audit_logger.log_event(
            "withdrawal.created",
            withdrawal_id=summary["id"],
            user_id=user_id,
            amount_sats=amount_sats,
            funded_from_balance=funded_from_balance,
        )
        return {"withdrawal": summary, **self._lnurl_fields(summary["k1"])}

    # ----------------- wallet protocol -----------------

    def handle_withdraw_request(self, k1: Optional[str]) -> Dict[str, Any]:
        """First wallet call: describe the fixed-amount withdrawal."""
        withdrawal, error = self._check_claimable(k1)
        if error:
            return error

        amount_msat = withdrawal["amountSats"] * 1000
        return {
            "tag": "withdrawRequest",
            "callback": self.callback_url(),
            "k1": withdrawal["k1"],
            "minWithdrawable": amount_msat,
            "maxWithdrawable": amount_msat,
            "defaultDescription": withdrawal["description"]
            or f"{self.description_prefix} - {withdrawal['user']['name']}",
        }

    def handle_withdraw_callback(self, k1: Optional[str], pr: Optional[str]) -> Dict[str, str]:
        """Second wallet call: pay the submitted invoice."""
        withdrawal, error = self._check_claimable(k1)
        if error:
            return error
        if not pr:
            return _error("Missing pr (payment request) parameter")

        pr = pr.strip()
        if not pr.lower().startswith("ln"):
            return _error("Invalid payment request")

        withdrawal_id = withdrawal["id"]
        amount = withdrawal["amountSats"]

        try:
            decoded = self.node.decode_invoice(pr)
        except LightningNodeError as e:
            logger.warning(f"Could not decode invoice for withdrawal {withdrawal_id}: {e}")
            return _error(e.message)

        invoice_amount = decoded["amountSats"]
        if invoice_amount > 0 and invoice_amount != amount:
            return _error(f"Invoice amount ({invoice_amount}) doesn't match withdrawal ({amount})")

        if not self._transition(
            withdrawal_id, WithdrawalStatus.PENDING, WithdrawalStatus.CLAIMED, unexpired=True, invoice=pr
        ):
            current = self._load_by_k1(withdrawal["k1"])
            if current and current["status"] == WithdrawalStatus.PENDING:
                if current["_expires_at"] <= self.clock():
                    # Deadline passed while the invoice was being decoded
                    self._expire(withdrawal_id)
                    return _error("Withdrawal expired")
                return _error("Withdrawal is being processed, try again")
            status = current["status"].lower() if current else "claimed"
            return _error(f"Withdrawal already {status}")

        try:
            result = self.node.pay_invoice(pr, amount)
        except Exception as e:
            logger.exception(f"Payment attempt for withdrawal {withdrawal_id} raised; resetting to PENDING")
            self._transition(withdrawal_id, WithdrawalStatus.CLAIMED, WithdrawalStatus.PENDING, invoice=None)
            reason = e.message if isinstance(e, LightningNodeError) else "Failed to process withdrawal"
            return _error(reason)

        if result.get("success"):
            self._transition(
                withdrawal_id,
                WithdrawalStatus.CLAIMED,
                WithdrawalStatus.PAID,
                payment_hash=result.get("paymentHash") or decoded.get("paymentHash"),
                paid_at=self.clock(),
            )
            logger.info(f"Paid {amount} sats for withdrawal {withdrawal_id}")
            self._fire_terminal(withdrawal_id, WithdrawalStatus.PAID)
            if self.notifier:
                try:
                    self.notifier.withdrawal_processed(withdrawal["user"]["name"], amount, withdrawal_id)
                except Exception:
                    logger.exception(f"Notification failed for paid withdrawal {withdrawal_id}")
            return {"status": "OK"}

        reason = result.get("error") or "Payment failed"
        logger.error(f"Payment failed for withdrawal {withdrawal_id}: {reason}")
        self._transition(withdrawal_id, WithdrawalStatus.CLAIMED, WithdrawalStatus.FAILED, failure_reason=reason)
        self._fire_terminal(withdrawal_id, WithdrawalStatus.FAILED)
        return _error(reason)

    # ----------------- management -----------------

    def cancel_withdrawal(self, withdrawal_id: str) -> bool:
        """Cancel a PENDING withdrawal (it becomes EXPIRED). False if not pending."""
        return self._expire(withdrawal_id)

    def cleanup_expired(self) -> int:
        """Expire every PENDING withdrawal whose deadline has passed."""
        now = self.clock()
        with session_scope() as session:
            ids = [
                row.id
                for row in session.query(Withdrawal.id).filter(
                    Withdrawal.status == WithdrawalStatus.PENDING,
                    Withdrawal.expires_at <= now,
                )
            ]

        count = sum(1 for withdrawal_id in ids if self._expire(withdrawal_id))
        if count:
            logger.info(f"Expired {count} stale withdrawals")
        return count

    def get_withdrawal(self, withdrawal_id: str) -> Optional[Dict[str, Any]]:
        """Withdrawal with owner, plus LNURL data while it is still claimable."""
        with session_scope() as session:
            row = (
                session.query(Withdrawal, User)
                .join(User, Withdrawal.user_id == User.id)
                .filter(Withdrawal.id == withdrawal_id)
                .first()
            )
            if row is None:
                return None
            data = _row_to_dict(*row)

        if data["status"] == WithdrawalStatus.PENDING:
            data.update(self._lnurl_fields(data["k1"]))
        return _public(data)

    def list_withdrawals(
        self, status: Optional[str] = None, user_id: Optional[str] = None, limit: int = 50
    ) -> List[Dict[str, Any]]:
        with session_scope() as session:
            query = session.query(Withdrawal, User).join(User, Withdrawal.user_id == User.id)
            if status:
                query = query.filter(Withdrawal.status == status)
            if user_id:
                query = query.filter(Withdrawal.user_id == user_id)
            rows = query.order_by(Withdrawal.created_at.desc()).limit(limit).all()
            return [_public(_row_to_dict(w, u)) for w, u in rows]

    def user_withdrawals(self, user_id: str) -> List[Dict[str, Any]]:
        with session_scope() as session:
            rows = (
                session.query(Withdrawal)
                .filter(Withdrawal.user_id == user_id)
                .order_by(Withdrawal.created_at.desc())
                .all()
            )
            return [_public(_row_to_dict(w)) for w in rows]

    def stats(self) -> Dict[str, int]:
        with session_scope() as session:
            counts = dict(
                session.query(Withdrawal.status, func.count(Withdrawal.id)).group_by(Withdrawal.status).all()
            )
            total_paid = (
                session.query(func.sum(Withdrawal.amount_sats))
                .filter(Withdrawal.status == WithdrawalStatus.PAID)
                .scalar()
            )

        return {
            "pending": counts.get(WithdrawalStatus.PENDING, 0),
            "claimed": counts.get(WithdrawalStatus.CLAIMED, 0),
            "paid": counts.get(WithdrawalStatus.PAID, 0),
            "failed": counts.get(WithdrawalStatus.FAILED, 0),
            "expired": counts.get(WithdrawalStatus.EXPIRED, 0),
            "totalPaidSats": int(total_paid or 0),
        }

    def node_status(self) -> Dict[str, Any]:
        if not self.node.is_configured():
            return {"configured": False, "connected": False, "error": "Lightning node not configured"}

        connection = self.node.verify_connection()
        if not connection["connected"]:
            return {"configured": True, "connected": False, "error": connection.get("error")}

        try:
            balance = self.node.get_channel_balance()
        except LightningNodeError as e:
            return {"configured": True, "connected": False, "error": str(e)}

        return {
            "configured": True,
            "connected": True,
            "nodeAlias": connection.get("nodeAlias"),
            "balanceSats": balance["availableSats"],
            "pendingSats": balance["pendingSats"],
        }
