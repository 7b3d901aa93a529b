"""
LNURL-auth protocol engine (LUD-04).

Issues login challenges, verifies wallet signatures against them and answers
status polls. Wallet-facing results are LNURL JSON dicts; nothing here raises
across the wire boundary.
"""

import logging
from datetime import timedelta
from typing import Any, Callable, Dict, Mapping, Optional

from lnbridge import challenge_store
from lnbridge.audit_logger import get_audit_logger
from lnbridge.codec import encode_lnurl, hex_to_bytes, is_compressed_pubkey_hex, is_hex, verify_signature
from lnbridge.models import utc_now
from lnbridge.utils import secure_random_hex

logger = logging.getLogger(__name__)
audit_logger = get_audit_logger()

CHALLENGE_PURPOSES = ("login", "link")


def _error(reason: str) -> Dict[str, str]:
    return {"status": "ERROR", "reason": reason}


class LnurlAuthEngine:
    """
    Challenge/response login state machine.

    A challenge is PENDING until a wallet proves ownership of a key, at which
    point it becomes VERIFIED for good; if nobody does before ``expires_at``
    it is EXPIRED. Both outcomes are read from the persisted row.
    """

    def __init__(self, cfg: Mapping[str, Any], clock: Optional[Callable] = None):
        self.auth_url = str(cfg.get("LIGHTNING_AUTH_URL") or "").rstrip("/")
        self.ttl_seconds = int(cfg.get("LOGIN_CHALLENGE_TTL_SECONDS", 300))
        self.clock = clock or utc_now

    def callback_url(self, k1: str) -> str:
        return f"{self.auth_url}/callback?tag=login&k1={k1}"

    def create_challenge(self, purpose: str = "login") -> Dict[str, Any]:
        """
        Generate and persist a fresh k1.

        Returns:
            Dict with ``k1``, ``secret`` (same value), ``lnurl``,
            ``expiresAt`` and ``expiresIn`` (seconds)
        """
        if purpose not in CHALLENGE_PURPOSES:
            raise ValueError(f"Unknown challenge purpose: {purpose}")

        k1 = secure_random_hex(32)
        now = self.clock()
        expires_at = now + timedelta(seconds=self.ttl_seconds)
        challenge_store.create(k1, created_at=now, expires_at=expires_at, purpose=purpose)

        lnurl = encode_lnurl(self.callback_url(k1))
        audit_logger.log_event("lnurl.challenge_created", k1=k1[:16], purpose=purpose)

        return {
            "k1": k1,
            "secret": k1,
            "lnurl": lnurl,
            "expiresAt": expires_at.isoformat() + "Z",
            "expiresIn": self.ttl_seconds,
        }

    def handle_callback(
        self,
        tag: Optional[str],
        k1: Optional[str],
        sig: Optional[str],
        key: Optional[str],
    ) -> Dict[str, str]:
        """
        Process a wallet's signed answer to a challenge.

        Returns:
            ``{"status": "OK"}`` or ``{"status": "ERROR", "reason": ...}``
        """
        if tag != "login":
            return _error("Invalid tag")
        if not k1 or not sig or not key:
            return _error("Missing parameters")
        if not is_hex(k1, 32):
            return _error("Invalid k1")
        if not is_compressed_pubkey_hex(key):
            return _error("Invalid key")
        if not is_hex(sig):
            return _error("Invalid signature encoding")

        k1 = k1.lower()
        key = key.lower()

        try:
            return self._verify(k1, sig, key)
        except Exception:
            logger.exception("LNURL-auth callback failed")
            return _error("Verification failed")

    def _verify(self, k1: str, sig: str, key: str) -> Dict[str, str]:
        challenge = challenge_store.get(k1)
        if challenge is None:
            return self._reject(k1, "Challenge not found")
        if challenge["used"]:
            return self._reject(k1, "Challenge already used")

        now = self.clock()
        if challenge["expires_at"] <= now:
            return self._reject(k1, "Challenge expired")

        valid = verify_signature(hex_to_bytes(k1), hex_to_bytes(sig), hex_to_bytes(key, 33))
        audit_logger.log_signature_verification(key, valid)
        if not valid:
            return self._reject(k1, "Invalid signature")

        # Another callback may have consumed the challenge since the read above.
        if not challenge_store.mark_used(k1, key, now):
            return self._reject(k1, "Challenge already used")

        audit_logger.log_event("lnurl.verify_success", k1=k1[:16], pubkey=key)
        return {"status": "OK"}

    def _reject(self, k1: str, reason: str) -> Dict[str, str]:
        audit_logger.log_event("lnurl.verify_failed", k1=k1[:16], reason=reason)
        return _error(reason)

    def poll_status(self, k1: str) -> Dict[str, Any]:
        """
        Report a challenge's state without touching it.

        A verified challenge stays verified however often it is polled, even
        after its expiry passes.
        """
        challenge = challenge_store.get((k1 or "").lower())
        if challenge is None:
            return {"status": "expired"}
        if challenge["used"]:
            return {"status": "verified", "pubkey": challenge["resolved_key"], "purpose": challenge["purpose"]}
        if challenge["expires_at"] <= self.clock():
            return {"status": "expired"}
        return {"status": "pending"}

    def purge_expired(self) -> int:
        return challenge_store.purge_expired(self.clock())
