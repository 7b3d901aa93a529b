"""lnbridge - Lightning login (LNURL-auth) and payout (LNURL-withdraw) engine."""

__version__ = "1.0.0"
