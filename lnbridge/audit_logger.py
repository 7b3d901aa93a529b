"""
Audit logging for lnbridge.

Security-relevant events (logins, signature checks, balance changes,
withdrawal transitions) go to the dedicated ``audit`` logger so they can be
shipped separately from application logs.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

_logger = logging.getLogger("audit")
_audit_logger = None  # Will be initialized by init_audit_logger


def init_audit_logger():
    """Initialize the audit logger."""
    global _audit_logger

    _logger.setLevel(logging.INFO)

    if not _logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s - AUDIT - %(levelname)s - %(message)s"))
        _logger.addHandler(handler)

    _audit_logger = AuditLogger()
    _logger.info("Audit logger initialized")


def get_audit_logger():
    """Get the audit logger instance."""
    global _audit_logger

    if _audit_logger is None:
        init_audit_logger()
    return _audit_logger


def _short(value: Optional[str], length: int = 16) -> str:
    if not value:
        return "-"
    return f"{value[:length]}..." if len(value) > length else value


class AuditLogger:
    """
    Audit logging interface for security and money-moving events.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or _logger

    def log_event(self, event: str, **details: Any) -> None:
        """Generic structured audit event."""

        payload = {"event": event, **details, "timestamp": datetime.now(timezone.utc).isoformat()}
        self.logger.info(json.dumps(payload, default=str))

    def log_auth_attempt(self, user_id: Optional[str], method: str, success: bool, ip_address: Optional[str] = None):
        """Log authentication attempt."""
        status = "SUCCESS" if success else "FAILURE"
        self.logger.info(f"AUTH_ATTEMPT | user={user_id} | method={method} | status={status} | ip={ip_address}")

    def log_token_issued(self, user_id: str, token_type: str = "session"):
        self.logger.info(f"TOKEN_ISSUED | user={user_id} | type={token_type}")

    def log_signature_verification(self, pubkey: str, success: bool, signature_type: str = "lnurl-auth"):
        """Log cryptographic signature verification."""
        status = "SUCCESS" if success else "FAILURE"
        self.logger.info(f"SIG_VERIFY | pubkey={_short(pubkey)} | type={signature_type} | status={status}")

    def log_ledger_change(self, user_id: str, kind: str, delta: int, balance_after: int, reason: Optional[str] = None):
        """Log a balance mutation."""
        self.logger.info(
            f"LEDGER | user={user_id} | kind={kind} | delta={delta} | balance={balance_after} | reason={reason}"
        )

    def log_withdrawal_transition(
        self, withdrawal_id: str, from_status: str, to_status: str, detail: Optional[str] = None
    ):
        """Log a withdrawal state change."""
        msg = f"WITHDRAWAL | id={withdrawal_id} | {from_status} -> {to_status}"
        if detail:
            msg += f" | detail={detail}"
        self.logger.info(msg)

    def log_security_event(self, event_type: str, severity: str, details: Dict[str, Any]):
        """Log security event."""
        self.logger.warning(f"SECURITY_EVENT | type={event_type} | severity={severity} | details={details}")

    def log_rate_limit_exceeded(self, ip_address: str, endpoint: str):
        """Log rate limit violation."""
        self.logger.warning(f"RATE_LIMIT_EXCEEDED | ip={ip_address} | endpoint={endpoint}")

    def log_error(self, error_type: str, error_msg: str, context: Optional[Dict[str, Any]] = None):
        """Log application error."""
        msg = f"ERROR | type={error_type} | msg={error_msg}"
        if context:
            msg += f" | context={context}"
        self.logger.error(msg)
