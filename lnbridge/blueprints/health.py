"""
Health Blueprint - liveness and dependency checks.
"""

import logging
import time
from typing import Any, Dict

from flask import Blueprint, current_app, jsonify

from lnbridge.database import get_health_status
from lnbridge.services import get_services

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__)


@health_bp.route("/health")
def health():
    """
    Health check covering database, Redis and the Lightning node.

    Returns:
        JSON health status; HTTP 503 when the database is down
    """
    cfg = current_app.config["APP_CONFIG"]
    components = get_health_status()
    components["lightning_node"] = get_services().node.verify_connection()

    status = "healthy"
    if components["database"]["status"] != "healthy":
        status = "unhealthy"
    elif not components["lightning_node"]["connected"] or components["redis"]["status"] == "unhealthy":
        status = "degraded"

    body: Dict[str, Any] = {
        "status": status,
        "timestamp": time.time(),
        "service": cfg.get("APP_NAME", "lnbridge"),
        "version": cfg.get("APP_VERSION", "1.0.0"),
        "components": components,
    }
    return jsonify(body), 503 if status == "unhealthy" else 200
