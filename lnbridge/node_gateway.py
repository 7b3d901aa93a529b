"""Lightning node gateway over the LND REST API."""

import base64
import binascii
import logging
from typing import Any, Dict, Mapping, Optional

import requests

from lnbridge.audit_logger import get_audit_logger
from lnbridge.codec import is_hex
from lnbridge.exceptions import NodeError, NodeNotConfigured, NodeUnavailable

logger = logging.getLogger(__name__)
audit_logger = get_audit_logger()


def _to_int(value: Any) -> int:
    # LND encodes int64 fields as JSON strings.
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def _bytes_field_to_hex(value: Optional[str]) -> Optional[str]:
    """LND returns proto ``bytes`` as base64; callers want hex."""
    if not value:
        return None
    if is_hex(value, 32):
        return value.lower()
    try:
        return base64.b64decode(value, validate=True).hex()
    except (binascii.Error, ValueError):
        logger.warning("Unexpected encoding for LND bytes field")
        return value


class NodeGateway:
    """
    Capability wrapper over a remote LND node: node info, channel balance,
    invoice decode and invoice payment.

    Transport failures raise ``NodeUnavailable``, error responses raise
    ``NodeError``. ``pay_invoice`` reports payment-level failures (amount
    mismatch, low liquidity, routing errors) as ``{"success": False}``.
    """

    def __init__(self, cfg: Mapping[str, Any], session: Optional[requests.Session] = None):
        self.base_url = str(cfg.get("LND_REST_URL") or "").rstrip("/")
        self.macaroon = cfg.get("LND_MACAROON") or ""
        self.tls_cert_path = cfg.get("LND_TLS_CERT_PATH")
        self.timeout = int(cfg.get("LND_TIMEOUT_SECONDS", 30))
        self.session = session or requests.Session()

    def is_configured(self) -> bool:
        return bool(self.base_url and self.macaroon)

    def _headers(self) -> Dict[str, str]:
        return {"Grpc-Metadata-macaroon": self.macaroon, "Content-Type": "application/json"}

    def _request(self, method: str, endpoint: str, body: Optional[dict] = None) -> Dict[str, Any]:
        if not self.is_configured():
            raise NodeNotConfigured()

        url = f"{self.base_url}{endpoint}"
        logger.debug(f"LND {method} {endpoint}")
        try:
            resp = self.session.request(
                method,
                url,
                json=body,
                headers=self._headers(),
                timeout=self.timeout,
                verify=self.tls_cert_path or True,
            )
        except (requests.ConnectionError, requests.Timeout) as e:
            audit_logger.log_error("lnd_unreachable", str(e), {"endpoint": endpoint})
            raise NodeUnavailable(f"Lightning node unreachable: {e}") from e
        except requests.RequestException as e:
            raise NodeError(f"LND request failed: {e}") from e

        if resp.status_code >= 300:
            logger.error(f"LND error on {endpoint}: {resp.status_code} - {resp.text[:200]}")
            raise NodeError(f"LND API error: {resp.status_code} - {resp.text[:200]}")

        try:
            return resp.json()
        except ValueError as e:
            raise NodeError(f"LND returned an unreadable response for {endpoint}") from e

    def get_node_info(self) -> Dict[str, Any]:
        return self._request("GET", "/v1/getinfo")

    def get_channel_balance(self) -> Dict[str, int]:
        """Spendable and pending channel balance in sats."""
        data = self._request("GET", "/v1/balance/channels")
        local = (data.get("local_balance") or {}).get("sat")
        return {
            "availableSats": _to_int(local if local is not None else data.get("balance")),
            "pendingSats": _to_int(data.get("pending_open_balance")),
        }

    def decode_invoice(self, bolt11: str) -> Dict[str, Any]:
        data = self._request("GET", f"/v1/payreq/{bolt11}")
        return {
            "destination": data.get("destination"),
            "paymentHash": data.get("payment_hash"),
            "amountSats": _to_int(data.get("num_satoshis")),
            "expiry": _to_int(data.get("expiry")),
            "timestamp": _to_int(data.get("timestamp")),
            "description": data.get("description") or "",
        }

    def pay_invoice(self, bolt11: str, expected_amount_sats: Optional[int] = None) -> Dict[str, Any]:
        """
        Pay a BOLT11 invoice.

        Decodes first, refuses an invoice whose nonzero amount differs from
        ``expected_amount_sats`` and re-reads channel balance right before
        sending.

        Returns:
            ``{"success": True, "paymentHash", "preimage"}`` or
            ``{"success": False, "error"}``

        Raises:
            NodeNotConfigured, NodeUnavailable, NodeError
        """
        decoded = self.decode_invoice(bolt11)
        invoice_amount = decoded["amountSats"]
        destination = decoded["destination"] or ""
        logger.info(f"Paying invoice: {invoice_amount} sats to {destination[:16]}...")

        if expected_amount_sats and invoice_amount > 0 and invoice_amount != expected_amount_sats:
            return {
                "success": False,
                "error": f"Invoice amount ({invoice_amount}) doesn't match expected ({expected_amount_sats})",
            }

        amount_to_pay = invoice_amount or expected_amount_sats or 0
        available = self.get_channel_balance()["availableSats"]
        if available < amount_to_pay:
            return {
                "success": False,
                "error": f"Insufficient balance. Have {available} sats, need {amount_to_pay} sats",
            }

        body: Dict[str, Any] = {"payment_request": bolt11}
        if invoice_amount == 0 and expected_amount_sats:
            body["amt"] = str(expected_amount_sats)

        result = self._request("POST", "/v1/channels/transactions", body)

        if result.get("payment_error"):
            logger.error(f"Payment failed: {result['payment_error']}")
            return {"success": False, "error": result["payment_error"]}

        payment_hash = _bytes_field_to_hex(result.get("payment_hash")) or decoded["paymentHash"]
        logger.info(f"Payment successful, hash {payment_hash}")
        return {
            "success": True,
            "paymentHash": payment_hash,
            "preimage": _bytes_field_to_hex(result.get("payment_preimage")),
        }

    def verify_connection(self) -> Dict[str, Any]:
        """Connection check for dashboards; never raises."""
        if not self.is_configured():
            return {"connected": False, "error": "Lightning node not configured"}

        try:
            info = self.get_node_info()
        except (NodeUnavailable, NodeError) as e:
            return {"connected": False, "error": str(e)}

        return {"connected": True, "nodeAlias": info.get("alias")}
