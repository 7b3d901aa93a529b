"""
Withdrawals Blueprint - admin management of LNURL-withdraw payouts, plus a
read-only view of a user's own withdrawals.
"""

import logging

from flask import Blueprint, g, jsonify, request

from lnbridge.models import WithdrawalStatus
from lnbridge.services import get_services
from lnbridge.tokens import require_admin, require_auth

logger = logging.getLogger(__name__)

withdrawals_bp = Blueprint("withdrawals", __name__)


# ============================================================================
# Admin endpoints
# ============================================================================


@withdrawals_bp.route("", methods=["POST"])
@require_admin
def create_withdrawal():
    """
    Create a withdrawal for a user (prize payouts). Not funded from balance,
    so it is never refunded to the ledger.

    Expected JSON body:
        - userId
        - amountSats
        - description: optional
        - expiresInHours: optional
    """
    data = request.get_json(silent=True) or {}
    if not data.get("userId") or data.get("amountSats") is None:
        return jsonify({"error": "userId and amountSats are required"}), 400

    offer = get_services().withdrawals.create_withdrawal(
        data["userId"],
        data["amountSats"],
        description=data.get("description"),
        expires_in_hours=data.get("expiresInHours"),
    )
    return jsonify(offer), 201


@withdrawals_bp.route("", methods=["GET"])
@require_admin
def list_withdrawals():
    status = request.args.get("status")
    if status and status not in WithdrawalStatus.ALL:
        return jsonify({"error": f"Unknown status: {status}"}), 400

    try:
        limit = int(request.args.get("limit", 50))
    except ValueError:
        limit = 50

    withdrawals = get_services().withdrawals.list_withdrawals(
        status=status, user_id=request.args.get("userId"), limit=limit
    )
    return jsonify(withdrawals)


@withdrawals_bp.route("/stats", methods=["GET"])
@require_admin
def withdrawal_stats():
    return jsonify(get_services().withdrawals.stats())


@withdrawals_bp.route("/node-status", methods=["GET"])
@require_admin
def node_status():
    return jsonify(get_services().withdrawals.node_status())


@withdrawals_bp.route("/cleanup", methods=["POST"])
@require_admin
def cleanup():
    count = get_services().withdrawals.cleanup_expired()
    return jsonify({"message": f"Cleaned up {count} expired withdrawals", "count": count})


@withdrawals_bp.route("/<withdrawal_id>", methods=["GET"])
@require_admin
def get_withdrawal(withdrawal_id: str):
    withdrawal = get_services().withdrawals.get_withdrawal(withdrawal_id)
    if withdrawal is None:
        return jsonify({"error": "Withdrawal not found"}), 404
    return jsonify(withdrawal)


@withdrawals_bp.route("/<withdrawal_id>", methods=["DELETE"])
@require_admin
def cancel_withdrawal(withdrawal_id: str):
    if not get_services().withdrawals.cancel_withdrawal(withdrawal_id):
        return jsonify({"error": "Cannot cancel withdrawal (not found or not pending)"}), 400
    return jsonify({"message": "Withdrawal cancelled"})


# ============================================================================
# User endpoints
# ============================================================================


@withdrawals_bp.route("/my", methods=["GET"])
@require_auth
def my_withdrawals():
    return jsonify(get_services().withdrawals.user_withdrawals(g.current_user["id"]))


@withdrawals_bp.route("/my/<withdrawal_id>", methods=["GET"])
@require_auth
def my_withdrawal(withdrawal_id: str):
    withdrawal = get_services().withdrawals.get_withdrawal(withdrawal_id)
    if withdrawal is None:
        return jsonify({"error": "Withdrawal not found"}), 404
    if withdrawal["userId"] != g.current_user["id"]:
        return jsonify({"error": "Not authorized"}), 403
    return jsonify(withdrawal)
