"""
Utility functions for lnbridge.

Random secrets, QR rendering and small formatting helpers shared by the
engines and blueprints.
"""

import base64
import secrets
from datetime import datetime
from io import BytesIO
from typing import Optional

import qrcode


def secure_random_hex(nbytes: int = 32) -> str:
    """
    Generate cryptographically secure random hex string.

    Args:
        nbytes: Number of random bytes

    Returns:
        Hex-encoded random string
    """
    return secrets.token_hex(nbytes)


def generate_qr_code(data: str, *, box_size: int = 10, border: int = 4) -> str:
    """Render ``data`` as a PNG QR code and return it base64-encoded."""
    qr = qrcode.QRCode(
        version=None,
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=box_size,
        border=border,  # quiet zone in modules (4 is the ISO minimum)
    )
    qr.add_data(data)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")

    buf = BytesIO()
    img.save(buf, format="PNG")
    return base64.b64encode(buf.getvalue()).decode("utf-8")


def qr_data_url(data: str) -> str:
    """QR code as a ``data:image/png`` URL, ready for an ``<img src>``."""
    return f"data:image/png;base64,{generate_qr_code(data)}"


def isoformat(value: Optional[datetime]) -> Optional[str]:
    """ISO-8601 with an explicit UTC suffix for the naive UTC timestamps stored in the DB."""
    if value is None:
        return None
    return value.isoformat() + "Z"
