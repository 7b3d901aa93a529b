"""Helpers for issuing signed session JWTs and guarding routes with them."""

from __future__ import annotations

import logging
import time
from functools import wraps
from typing import Any, Dict, Mapping, Optional

import jwt
from flask import current_app, g, jsonify, request

from lnbridge.config import DEFAULT_JWT_SECRET
from lnbridge.database import session_scope
from lnbridge.models import User

logger = logging.getLogger(__name__)


def _resolve_ttl(cfg: Mapping[str, Any]) -> int:
    hours = cfg.get("JWT_EXPIRATION_HOURS", 168)
    try:
        return int(hours) * 3600
    except (TypeError, ValueError):
        return 168 * 3600


def issue_session_token(user_id: str, role: str, cfg: Mapping[str, Any], claims: Optional[Dict[str, Any]] = None) -> str:
    """Issue an HS256 session token for ``user_id``."""
    now = int(time.time())
    payload: Dict[str, Any] = {
        "iss": cfg.get("JWT_ISSUER") or cfg.get("LNURL_BASE_URL"),
        "aud": cfg.get("JWT_AUDIENCE") or "lnbridge",
        "sub": user_id,
        "role": role,
        "iat": now,
        "exp": now + _resolve_ttl(cfg),
    }
    if claims:
        payload.update(claims)

    secret = cfg.get("JWT_SECRET") or DEFAULT_JWT_SECRET
    return jwt.encode(payload, str(secret), algorithm=cfg.get("JWT_ALGORITHM") or "HS256")


def decode_session_token(token: str, cfg: Mapping[str, Any]) -> Dict[str, Any]:
    """Decode and validate a session token. Raises ``jwt.InvalidTokenError``."""
    secret = cfg.get("JWT_SECRET") or DEFAULT_JWT_SECRET
    return jwt.decode(
        token,
        str(secret),
        algorithms=[cfg.get("JWT_ALGORITHM") or "HS256"],
        audience=cfg.get("JWT_AUDIENCE") or "lnbridge",
        issuer=cfg.get("JWT_ISSUER") or cfg.get("LNURL_BASE_URL"),
    )


def _bearer_token() -> Optional[str]:
    header = request.headers.get("Authorization", "")
    if header.lower().startswith("bearer "):
        return header[7:].strip() or None
    return None


def _authenticate():
    token = _bearer_token()
    if not token:
        return None, (jsonify({"error": "unauthorized", "message": "Authentication required"}), 401)

    try:
        claims = decode_session_token(token, current_app.config["APP_CONFIG"])
    except jwt.InvalidTokenError as e:
        logger.info(f"Rejected session token: {e}")
        return None, (jsonify({"error": "unauthorized", "message": "Invalid or expired token"}), 401)

    with session_scope() as session:
        user = session.query(User).filter_by(id=claims.get("sub")).first()
        if user is None or not user.is_active:
            return None, (jsonify({"error": "unauthorized", "message": "Account not found or deactivated"}), 401)
        current = {"id": user.id, "name": user.name, "role": user.role}

    return current, None


def require_auth(f):
    """Require a valid bearer session token; sets ``g.current_user``."""

    @wraps(f)
    def decorated(*args, **kwargs):
        current, error = _authenticate()
        if error:
            return error
        g.current_user = current
        return f(*args, **kwargs)

    return decorated


def require_admin(f):
    """Require a bearer session token belonging to an ADMIN account."""

    @wraps(f)
    def decorated(*args, **kwargs):
        current, error = _authenticate()
        if error:
            return error
        if current["role"] != "ADMIN":
            return jsonify({"error": "forbidden", "message": "Admin access required"}), 403
        g.current_user = current
        return f(*args, **kwargs)

    return decorated
