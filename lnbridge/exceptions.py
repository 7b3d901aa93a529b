"""Exception hierarchy for lnbridge.

Every error carries an HTTP ``status_code`` so the factory's error handlers
can render it; wallet-facing routes translate all of them into the LNURL
``{"status": "ERROR"}`` shape instead.
"""

from typing import Optional


class LightningServiceError(Exception):
    """Base exception for lnbridge errors."""

    status_code = 400

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


# Codec


class DecodeError(LightningServiceError):
    """Raised when an LNURL or hex value cannot be decoded."""


class MalformedSignature(LightningServiceError):
    """Raised when a DER signature deviates from SEQUENCE{INTEGER r, INTEGER s}."""


# Identity


class IdentityNotFound(LightningServiceError):
    status_code = 404

    def __init__(self, user_id: str):
        super().__init__("User not found")
        self.user_id = user_id


class AlreadyLinked(LightningServiceError):
    status_code = 409

    def __init__(self, message: str, same_account: bool = False):
        super().__init__(message)
        self.same_account = same_account


class AccountDeactivated(LightningServiceError):
    status_code = 403

    def __init__(self):
        super().__init__("Account is deactivated")


# Ledger


class InvalidAmount(LightningServiceError):
    pass


class InsufficientBalance(LightningServiceError):
    def __init__(self, available: int, requested: int):
        super().__init__(f"Insufficient balance. Have {available} sats, need {requested} sats.")
        self.available = available
        self.requested = requested


# Node


class LightningNodeError(LightningServiceError):
    """Base class for failures talking to the Lightning node."""

    status_code = 502


class NodeNotConfigured(LightningNodeError):
    status_code = 503

    def __init__(self):
        super().__init__("Lightning payments not configured. Set LND_REST_URL and LND_MACAROON.")


class NodeUnavailable(LightningNodeError):
    """The node could not be reached (connection refused, timeout)."""

    status_code = 503


class NodeError(LightningNodeError):
    """The node answered with an error status or an unreadable body."""


# Withdrawals


class WithdrawalError(LightningServiceError):
    pass


class InsufficientNodeLiquidity(WithdrawalError):
    status_code = 503

    def __init__(self, available: int, requested: int):
        super().__init__(f"Insufficient node balance. Have {available} sats, need {requested} sats.")
        self.available = available
        self.requested = requested
