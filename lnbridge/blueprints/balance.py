"""
Balance Blueprint - user balances, balance withdrawals and admin adjustments.

Service errors carry their own HTTP status and are rendered by the app's
error handlers.
"""

import logging

from flask import Blueprint, g, jsonify, request

from lnbridge.services import get_services
from lnbridge.tokens import require_admin, require_auth

logger = logging.getLogger(__name__)

balance_bp = Blueprint("balance", __name__)


def _limit_arg(default: int = 50, maximum: int = 500) -> int:
    try:
        return max(1, min(int(request.args.get("limit", default)), maximum))
    except (TypeError, ValueError):
        return default


# ============================================================================
# User endpoints
# ============================================================================


@balance_bp.route("", methods=["GET"])
@require_auth
def get_balance():
    return jsonify({"balanceSats": get_services().ledger.get_balance(g.current_user["id"])})


@balance_bp.route("/history", methods=["GET"])
@require_auth
def balance_history():
    entries = get_services().ledger.history(g.current_user["id"], limit=_limit_arg())
    return jsonify({"entries": entries})


@balance_bp.route("/withdraw", methods=["POST"])
@require_auth
def withdraw():
    """
    Cash out balance as an LNURL-withdraw offer.

    Expected JSON body:
        - amountSats: optional, defaults to the full balance

    Returns:
        JSON withdrawal offer with lnurl, qrData and lightningUri
    """
    data = request.get_json(silent=True) or {}
    offer = get_services().payouts.initiate_withdrawal(g.current_user["id"], data.get("amountSats"))
    return jsonify(offer)


@balance_bp.route("/withdrawal/<withdrawal_id>/status", methods=["GET"])
@require_auth
def withdrawal_status(withdrawal_id: str):
    """Poll a withdrawal the current user owns."""
    withdrawal = get_services().withdrawals.get_withdrawal(withdrawal_id)
    if withdrawal is None:
        return jsonify({"error": "Withdrawal not found"}), 404
    if withdrawal["userId"] != g.current_user["id"]:
        return jsonify({"error": "Not authorized"}), 403

    return jsonify(
        {
            "id": withdrawal["id"],
            "status": withdrawal["status"],
            "amountSats": withdrawal["amountSats"],
            "paidAt": withdrawal["paidAt"],
            "refunded": withdrawal["refundedAt"] is not None,
        }
    )


# ============================================================================
# Admin endpoints
# ============================================================================


@balance_bp.route("/admin/all", methods=["GET"])
@require_admin
def admin_all_balances():
    return jsonify(get_services().ledger.list_balances())


@balance_bp.route("/admin/with-balance", methods=["GET"])
@require_admin
def admin_users_with_balance():
    return jsonify(get_services().ledger.list_balances(nonzero_only=True))


@balance_bp.route("/admin/stats", methods=["GET"])
@require_admin
def admin_balance_stats():
    return jsonify(get_services().ledger.stats())


@balance_bp.route("/admin/user/<user_id>", methods=["GET"])
@require_admin
def admin_user_balance(user_id: str):
    return jsonify({"userId": user_id, "balanceSats": get_services().ledger.get_balance(user_id)})


@balance_bp.route("/admin/credit", methods=["POST"])
@require_admin
def admin_credit():
    """
    Credit sats to a user (rewards, corrections).

    Expected JSON body:
        - userId
        - amountSats: positive integer
        - reason: optional
    """
    data = request.get_json(silent=True) or {}
    if not data.get("userId") or data.get("amountSats") is None:
        return jsonify({"error": "userId and amountSats are required"}), 400

    reason = data.get("reason") or f"Admin credit by {g.current_user['name']}"
    result = get_services().ledger.credit(data["userId"], data["amountSats"], reason=reason)
    return jsonify(result)


@balance_bp.route("/admin/set", methods=["POST"])
@require_admin
def admin_set():
    data = request.get_json(silent=True) or {}
    if not data.get("userId") or data.get("amountSats") is None:
        return jsonify({"error": "userId and amountSats are required"}), 400

    reason = data.get("reason") or f"Admin set by {g.current_user['name']}"
    result = get_services().ledger.set_balance(data["userId"], data["amountSats"], reason=reason)
    return jsonify(result)
