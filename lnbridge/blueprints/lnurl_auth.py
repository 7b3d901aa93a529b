"""
LNURL-Auth Blueprint - Lightning Network Authentication

Login and wallet linking via LNURL-auth challenge-response. The callback is
called by wallets and always answers with LNURL JSON; the challenge and status
endpoints are polled by the frontend.
"""

import logging

from flask import Blueprint, g, jsonify, request

from lnbridge.audit_logger import get_audit_logger
from lnbridge.exceptions import AccountDeactivated, AlreadyLinked, LightningServiceError
from lnbridge.security import POLL_RATE_LIMIT, WALLET_RATE_LIMIT, limiter
from lnbridge.services import get_services
from lnbridge.tokens import require_auth
from lnbridge.utils import qr_data_url

logger = logging.getLogger(__name__)
audit_logger = get_audit_logger()

auth_bp = Blueprint("lnurl_auth", __name__)


def _challenge_response(purpose: str):
    challenge = get_services().auth.create_challenge(purpose)
    return jsonify(
        {
            "k1": challenge["k1"],
            "secret": challenge["secret"],
            "lnurl": challenge["lnurl"],
            "qrCode": qr_data_url(challenge["lnurl"].upper()),
            "expiresAt": challenge["expiresAt"],
            "expiresIn": challenge["expiresIn"],
        }
    )


@auth_bp.route("/lightning/challenge", methods=["GET"])
@limiter.limit(WALLET_RATE_LIMIT)
def lightning_challenge():
    """
    Create LNURL-auth login challenge.

    Returns:
        JSON with k1, lnurl, QR code data URL and TTL
    """
    return _challenge_response("login")


@auth_bp.route("/lightning/callback", methods=["GET"])
@limiter.limit(WALLET_RATE_LIMIT)
def lightning_callback():
    """
    LNURL-auth callback endpoint (called by the wallet).

    Query parameters:
        - tag: must be "login"
        - k1: Challenge (hex)
        - sig: DER signature over k1 (hex)
        - key: Compressed public key (hex)

    Returns:
        JSON LNURL response, always HTTP 200
    """
    try:
        result = get_services().auth.handle_callback(
            request.args.get("tag"),
            request.args.get("k1"),
            request.args.get("sig"),
            request.args.get("key"),
        )
    except Exception:
        logger.exception("Lightning callback error")
        result = {"status": "ERROR", "reason": "Server error"}
    return jsonify(result)


@auth_bp.route("/lightning/status/<k1>", methods=["GET"])
@limiter.limit(POLL_RATE_LIMIT)
def lightning_status(k1: str):
    """
    Poll a login challenge; on verification, log the wallet's user in.

    Returns:
        JSON with status pending/expired, or verified with token and user
    """
    services = get_services()
    status = services.auth.poll_status(k1)
    if status["status"] != "verified":
        return jsonify({"status": status["status"]})

    try:
        result = services.identity.resolve_login(status["pubkey"])
    except AccountDeactivated as e:
        audit_logger.log_auth_attempt(None, "lightning", False, request.remote_addr)
        return jsonify({"error": e.message}), e.status_code

    return jsonify(
        {
            "status": "verified",
            "token": services.identity.issue_token(result["user"]),
            "user": result["user"],
            "isNew": result["isNew"],
            "bonusAwarded": result["bonusAwarded"],
        }
    )


@auth_bp.route("/link-lightning/challenge", methods=["GET"])
@require_auth
@limiter.limit(WALLET_RATE_LIMIT)
def link_lightning_challenge():
    """Create a challenge whose verified key is linked to the current account."""
    return _challenge_response("link")


@auth_bp.route("/link-lightning/status/<k1>", methods=["GET"])
@require_auth
@limiter.limit(POLL_RATE_LIMIT)
def link_lightning_status(k1: str):
    """
    Poll a link challenge; on verification, attach the wallet key to the
    current account. Polling again after linking keeps answering "linked".
    """
    services = get_services()
    user_id = g.current_user["id"]

    status = services.auth.poll_status(k1)
    if status["status"] != "verified":
        return jsonify({"status": status["status"]})

    bonus_awarded = False
    try:
        result = services.identity.link_to_existing_identity(user_id, status["pubkey"])
        user, bonus_awarded = result["user"], result["bonusAwarded"]
    except AlreadyLinked as e:
        if not e.same_account:
            return jsonify({"error": e.message}), e.status_code
        user = services.identity.get_user(user_id)
    except LightningServiceError as e:
        return jsonify({"error": e.message}), e.status_code

    return jsonify(
        {
            "status": "linked",
            "user": user,
            "token": services.identity.issue_token(user),
            "bonusAwarded": bonus_awarded,
        }
    )


@auth_bp.route("/me", methods=["GET"])
@require_auth
def me():
    """Current authenticated user."""
    return jsonify({"user": get_services().identity.get_user(g.current_user["id"])})
