"""Wiring of the engines into one container stored on the Flask app."""

from typing import Any, Callable, Mapping, Optional

import requests
from flask import current_app

from lnbridge.identity import IdentityResolver
from lnbridge.ledger import BalanceLedger
from lnbridge.lnurl_auth import LnurlAuthEngine
from lnbridge.node_gateway import NodeGateway
from lnbridge.notifications import Notifier
from lnbridge.payouts import PayoutService
from lnbridge.withdrawals import WithdrawalEngine

EXTENSION_KEY = "lnbridge"


class LightningServices:
    """
    Every engine built from one config mapping and one clock.

    ``node`` may be swapped for a fake in tests; it is the only component
    that talks to the outside world apart from the notifier.
    """

    def __init__(
        self,
        cfg: Mapping[str, Any],
        clock: Optional[Callable] = None,
        node: Optional[NodeGateway] = None,
        http: Optional[requests.Session] = None,
    ):
        self.cfg = cfg
        self.notifier = Notifier(cfg, http=http)
        self.ledger = BalanceLedger()
        self.node = node or NodeGateway(cfg, session=http)
        self.auth = LnurlAuthEngine(cfg, clock=clock)
        self.identity = IdentityResolver(cfg, self.ledger, notifier=self.notifier, clock=clock)
        self.withdrawals = WithdrawalEngine(cfg, self.node, notifier=self.notifier, clock=clock)
        self.payouts = PayoutService(cfg, self.ledger, self.withdrawals, clock=clock)

    def run_maintenance(self) -> dict:
        """One sweep of the periodic jobs; meant for an external scheduler."""
        return {
            "challengesPurged": self.auth.purge_expired(),
            "withdrawalsExpired": self.withdrawals.cleanup_expired(),
            "refundsReconciled": self.payouts.reconcile_refunds(),
        }

    def shutdown(self) -> None:
        self.notifier.shutdown(wait=False)


def get_services() -> LightningServices:
    return current_app.extensions[EXTENSION_KEY]
