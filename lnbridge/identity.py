"""
Identity resolver.

Maps a verified Lightning public key to an application user, creating the
user on first login, and awards the one-time Lightning bonus.
"""

import logging
from typing import Any, Dict, Mapping, Optional

from sqlalchemy.exc import IntegrityError

from lnbridge.audit_logger import get_audit_logger
from lnbridge.database import session_scope
from lnbridge.exceptions import AccountDeactivated, AlreadyLinked, IdentityNotFound
from lnbridge.ledger import BalanceLedger
from lnbridge.models import User, utc_now
from lnbridge.notifications import Notifier
from lnbridge.tokens import issue_session_token
from lnbridge.utils import isoformat

logger = logging.getLogger(__name__)
audit_logger = get_audit_logger()

LINKED_HERE = "This Lightning wallet is already linked to your account"
LINKED_ELSEWHERE = "This Lightning wallet is already linked to another account"
ACCOUNT_HAS_WALLET = "This account is already linked to a different Lightning wallet"


def serialize_user(user: User) -> Dict[str, Any]:
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "role": user.role,
        "authProvider": user.auth_provider,
        "lightningPubkey": user.lightning_pubkey,
        "balanceSats": user.balance_sats,
        "isActive": user.is_active,
        "createdAt": isoformat(user.created_at),
        "lastLogin": isoformat(user.last_login),
    }


def display_name_for(pubkey: str) -> str:
    return f"Lightning_{pubkey[:8]}"


class IdentityResolver:
    def __init__(
        self,
        cfg: Mapping[str, Any],
        ledger: BalanceLedger,
        notifier: Optional[Notifier] = None,
        clock=None,
    ):
        self.cfg = cfg
        self.ledger = ledger
        self.notifier = notifier
        self.bonus_sats = int(cfg.get("LIGHTNING_BONUS_SATS", 1))
        self.clock = clock or utc_now

    def issue_token(self, user: Dict[str, Any]) -> str:
        token = issue_session_token(user["id"], user["role"], self.cfg)
        audit_logger.log_token_issued(user["id"])
        return token

    def get_user(self, user_id: str) -> Dict[str, Any]:
        with session_scope() as session:
            user = session.query(User).filter_by(id=user_id).first()
            if user is None:
                raise IdentityNotFound(user_id)
            return serialize_user(user)

    def _login_existing(self, pubkey: str) -> Optional[Dict[str, Any]]:
        with session_scope() as session:
            user = session.query(User).filter_by(lightning_pubkey=pubkey).first()
            if user is None:
                return None
            if not user.is_active:
                raise AccountDeactivated()
            user.last_login = self.clock()
            session.flush()
            return serialize_user(user)

    def resolve_login(self, pubkey: str) -> Dict[str, Any]:
        """
        Find or create the user owning ``pubkey``.

        Returns:
            ``{"user": dict, "isNew": bool, "bonusAwarded": bool}``

        Raises:
            AccountDeactivated: the owning account is deactivated
        """
        existing = self._login_existing(pubkey)
        if existing is not None:
            audit_logger.log_auth_attempt(existing["id"], "lightning", True)
            return {"user": existing, "isNew": False, "bonusAwarded": False}

        try:
            with session_scope() as session:
                now = self.clock()
                user = User(
                    name=display_name_for(pubkey),
                    auth_provider="LIGHTNING",
                    lightning_pubkey=pubkey,
                    created_at=now,
                    last_login=now,
                )
                session.add(user)
                session.flush()
                user_id = user.id
        except IntegrityError:
            # A concurrent first login created the row; that one is the user.
            logger.info(f"Concurrent signup for {pubkey[:16]}..., using the existing user")
            existing = self._login_existing(pubkey)
            if existing is None:
                raise
            return {"user": existing, "isNew": False, "bonusAwarded": False}

        bonus_awarded = self.award_lightning_bonus(user_id)
        user = self.get_user(user_id)

        audit_logger.log_event("identity.created", user_id=user_id, pubkey=pubkey)
        audit_logger.log_auth_attempt(user_id, "lightning", True)
        if self.notifier:
            try:
                self.notifier.new_lightning_user(user["name"])
            except Exception:
                logger.exception(f"Notification failed for new user {user_id}")

        return {"user": user, "isNew": True, "bonusAwarded": bonus_awarded}

    def link_to_existing_identity(self, user_id: str, pubkey: str) -> Dict[str, Any]:
        """
        Attach ``pubkey`` to an account that has none yet.

        Raises:
            AlreadyLinked: the wallet belongs to an account, or this account has another wallet
            IdentityNotFound: unknown ``user_id``
        """
        try:
            with session_scope() as session:
                owner = session.query(User).filter_by(lightning_pubkey=pubkey).first()
                if owner is not None:
                    same = owner.id == user_id
                    raise AlreadyLinked(LINKED_HERE if same else LINKED_ELSEWHERE, same_account=same)

                user = session.query(User).filter_by(id=user_id).first()
                if user is None:
                    raise IdentityNotFound(user_id)
                if user.lightning_pubkey:
                    raise AlreadyLinked(ACCOUNT_HAS_WALLET)

                count = (
                    session.query(User)
                    .filter(User.id == user_id, User.lightning_pubkey.is_(None))
                    .update({User.lightning_pubkey: pubkey}, synchronize_session=False)
                )
                if count == 0:
                    raise AlreadyLinked(ACCOUNT_HAS_WALLET)
        except IntegrityError:
            raise AlreadyLinked(LINKED_ELSEWHERE) from None

        bonus_awarded = self.award_lightning_bonus(user_id)
        audit_logger.log_event("identity.linked", user_id=user_id, pubkey=pubkey)
        return {"user": self.get_user(user_id), "bonusAwarded": bonus_awarded}

    def award_lightning_bonus(self, user_id: str) -> bool:
        """
        Credit the one-time Lightning bonus.

        The flag flip and the credit share one transaction, so the bonus is
        paid at most once per user however often this is called.
        """
        if self.bonus_sats <= 0:
            return False

        with session_scope() as session:
            count = (
                session.query(User)
                .filter(User.id == user_id, User.lightning_bonus_awarded.is_(False))
                .update({User.lightning_bonus_awarded: True}, synchronize_session=False)
            )
            if count == 0:
                return False
            self.ledger.credit(user_id, self.bonus_sats, reason="Lightning signup bonus", session=session)

        logger.info(f"Awarded {self.bonus_sats} sat Lightning bonus to {user_id}")
        return True
