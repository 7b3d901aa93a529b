"""
Database-backed storage for LNURL-auth login challenges.

Rows are single-use: ``mark_used`` is the only write after insert and is a
conditional UPDATE, so exactly one concurrent callback can win a given k1.
"""

import logging
from datetime import datetime
from typing import Dict, Optional

from lnbridge.database import session_scope
from lnbridge.models import LoginChallenge

logger = logging.getLogger(__name__)


def _to_dict(challenge: LoginChallenge) -> Dict:
    return {
        "k1": challenge.k1,
        "purpose": challenge.purpose,
        "created_at": challenge.created_at,
        "expires_at": challenge.expires_at,
        "used": bool(challenge.used),
        "used_at": challenge.used_at,
        "resolved_key": challenge.resolved_key,
    }


def create(k1: str, created_at: datetime, expires_at: datetime, purpose: str = "login") -> Dict:
    """Store a fresh, unused challenge."""
    with session_scope() as session:
        challenge = LoginChallenge(
            k1=k1,
            purpose=purpose,
            created_at=created_at,
            expires_at=expires_at,
            used=False,
        )
        session.add(challenge)
        session.flush()
        return _to_dict(challenge)


def get(k1: str) -> Optional[Dict]:
    """Return the challenge row as a dict, or None. No side effects."""
    with session_scope() as session:
        challenge = session.query(LoginChallenge).filter_by(k1=k1).first()
        return _to_dict(challenge) if challenge else None


def mark_used(k1: str, key: str, now: datetime) -> bool:
    """
    Atomically flip an unused, unexpired challenge to used.

    Returns:
        True if this caller performed the transition
    """
    with session_scope() as session:
        count = (
            session.query(LoginChallenge)
            .filter(
                LoginChallenge.k1 == k1,
                LoginChallenge.used.is_(False),
                LoginChallenge.expires_at > now,
            )
            .update(
                {
                    LoginChallenge.used: True,
                    LoginChallenge.resolved_key: key,
                    LoginChallenge.used_at: now,
                },
                synchronize_session=False,
            )
        )
    return count == 1


def purge_expired(now: datetime) -> int:
    """
    Delete challenges past their expiry, verified or not.

    Returns:
        Number of challenges removed
    """
    with session_scope() as session:
        count = (
            session.query(LoginChallenge)
            .filter(LoginChallenge.expires_at <= now)
            .delete(synchronize_session=False)
        )

    if count:
        logger.info(f"Purged {count} expired login challenges")
    return count

