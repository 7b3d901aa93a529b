"""
LNURL-Withdraw Blueprint (LUD-03)

Called by Lightning wallets, not by the frontend:

1. Wallet decodes the LNURL and calls GET /api/lnurl/withdraw?k1=...
2. We answer with the fixed amount and the callback URL
3. Wallet calls GET /api/lnurl/withdraw/callback?k1=...&pr=lnbc...
4. We pay the invoice

Every response is HTTP 200 LNURL JSON, including internal failures.
"""

import logging

from flask import Blueprint, jsonify, request

from lnbridge.security import WALLET_RATE_LIMIT, limiter
from lnbridge.services import get_services

logger = logging.getLogger(__name__)

lnurl_bp = Blueprint("lnurl_withdraw", __name__)


@lnurl_bp.route("/withdraw", methods=["GET"])
@limiter.limit(WALLET_RATE_LIMIT)
def withdraw_request():
    try:
        result = get_services().withdrawals.handle_withdraw_request(request.args.get("k1"))
    except Exception:
        logger.exception("Withdraw request error")
        result = {"status": "ERROR", "reason": "Internal error"}
    return jsonify(result)


@lnurl_bp.route("/withdraw/callback", methods=["GET"])
@limiter.limit(WALLET_RATE_LIMIT)
def withdraw_callback():
    try:
        result = get_services().withdrawals.handle_withdraw_callback(
            request.args.get("k1"), request.args.get("pr")
        )
    except Exception:
        logger.exception("Withdraw callback error")
        result = {"status": "ERROR", "reason": "Internal error"}
    return jsonify(result)
