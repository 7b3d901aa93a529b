"""Best-effort event notifications (webhook POSTs off the request thread)."""

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Dict, Mapping, Optional

import requests

from lnbridge.audit_logger import get_audit_logger

logger = logging.getLogger(__name__)
audit_logger = get_audit_logger()


class Notifier:
    """
    Dispatch "withdrawal processed" and "new Lightning user" events.

    The audit log always records the event. If ``NOTIFY_WEBHOOK_URL`` is set
    the JSON payload is also POSTed from a small worker pool; delivery
    failures are logged and never reach the caller.
    """

    def __init__(self, cfg: Mapping[str, Any], http: Optional[requests.Session] = None, max_workers: int = 2):
        self.webhook_url = cfg.get("NOTIFY_WEBHOOK_URL")
        self.timeout = 10
        self._http = http or requests.Session()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="notify")

    def _post(self, payload: Dict[str, Any]) -> None:
        try:
            resp = self._http.post(self.webhook_url, json=payload, timeout=self.timeout)
            if resp.status_code >= 300:
                logger.warning(f"Notification webhook returned {resp.status_code} for {payload['event']}")
        except requests.RequestException as e:
            logger.warning(f"Notification webhook failed for {payload['event']}: {e}")

    def notify(self, event: str, **details: Any) -> Optional[Future]:
        audit_logger.log_event(f"notify.{event}", **details)
        if not self.webhook_url:
            return None
        return self._executor.submit(self._post, {"event": event, **details})

    def withdrawal_processed(self, user_name: str, amount_sats: int, withdrawal_id: str) -> Optional[Future]:
        return self.notify(
            "withdrawal_processed", user=user_name, amountSats=amount_sats, withdrawalId=withdrawal_id
        )

    def new_lightning_user(self, user_name: str) -> Optional[Future]:
        return self.notify("new_user", user=user_name, authProvider="LIGHTNING")

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
