"""
LNURL and signature codec helpers.

Pure functions, no I/O:
- bech32 LNURL encode/decode (LUD-01)
- hex <-> bytes with length checks
- DER ECDSA signature parsing/encoding
- secp256k1 verification for LNURL-auth (LUD-04)
"""

import hashlib
import logging
import re
from typing import Optional, Tuple

from bech32 import CHARSET, bech32_encode, bech32_verify_checksum, convertbits
from coincurve import PublicKey

from lnbridge.exceptions import DecodeError, MalformedSignature

logger = logging.getLogger(__name__)

LNURL_HRP = "lnurl"
LNURL_MAX_LENGTH = 1023

# secp256k1 group order
SECP256K1_N = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141

_HEX_RE = re.compile(r"^[0-9a-fA-F]*$")


# ----------------- LNURL (bech32) -----------------


def encode_lnurl(url: str) -> str:
    """Encode a URL as a bech32 LNURL string (lower case)."""
    data = convertbits(url.encode("utf-8"), 8, 5)
    lnurl = bech32_encode(LNURL_HRP, data)
    if len(lnurl) > LNURL_MAX_LENGTH:
        raise ValueError(f"LNURL exceeds {LNURL_MAX_LENGTH} characters")
    return lnurl


def decode_lnurl(lnurl: str) -> str:
    """Decode a bech32 LNURL back into its URL.

    Accepts upper-case input (QR form) and a ``lightning:`` URI prefix. The
    segwit 90-character limit does not apply to LNURLs, so the checksum is
    verified here instead of through ``bech32_decode``.
    """
    value = (lnurl or "").strip()
    if value.lower().startswith("lightning:"):
        value = value[len("lightning:"):]

    if any(ord(ch) < 33 or ord(ch) > 126 for ch in value):
        raise DecodeError("LNURL contains invalid characters")
    if value.lower() != value and value.upper() != value:
        raise DecodeError("LNURL mixes upper and lower case")

    value = value.lower()
    pos = value.rfind("1")
    if pos < 1 or pos + 7 > len(value) or len(value) > LNURL_MAX_LENGTH:
        raise DecodeError("LNURL has an invalid length or separator")

    hrp = value[:pos]
    if hrp != LNURL_HRP:
        raise DecodeError(f"Invalid LNURL prefix: {hrp!r}")

    try:
        data = [CHARSET.index(ch) for ch in value[pos + 1:]]
    except ValueError:
        raise DecodeError("LNURL contains non-bech32 characters") from None

    if not bech32_verify_checksum(hrp, data):
        raise DecodeError("LNURL checksum mismatch")

    decoded = convertbits(data[:-6], 5, 8, False)
    if decoded is None:
        raise DecodeError("LNURL payload has invalid padding")

    try:
        return bytes(decoded).decode("utf-8")
    except UnicodeDecodeError:
        raise DecodeError("LNURL payload is not UTF-8") from None


# ----------------- hex -----------------


def is_hex(value: Optional[str], length: Optional[int] = None) -> bool:
    """Return True if ``value`` is an even-length hex string (of ``length`` bytes)."""
    if not value or len(value) % 2 or not _HEX_RE.match(value):
        return False
    return length is None or len(value) == length * 2


def hex_to_bytes(value: str, expected_len: Optional[int] = None) -> bytes:
    if not is_hex(value):
        raise DecodeError("Value is not valid hex")
    raw = bytes.fromhex(value)
    if expected_len is not None and len(raw) != expected_len:
        raise DecodeError(f"Expected {expected_len} bytes, got {len(raw)}")
    return raw


def bytes_to_hex(data: bytes) -> str:
    return data.hex()


def is_compressed_pubkey_hex(value: Optional[str]) -> bool:
    return is_hex(value, 33) and value[:2] in ("02", "03")


def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


# ----------------- DER signatures -----------------


def _read_length(der: bytes, offset: int) -> Tuple[int, int]:
    if offset >= len(der):
        raise MalformedSignature("Truncated DER length")
    first = der[offset]
    offset += 1
    if first < 0x80:
        return first, offset
    # Long form; a signature never needs more than one length byte.
    if first != 0x81 or offset >= len(der):
        raise MalformedSignature("Unsupported DER length encoding")
    return der[offset], offset + 1


def _read_integer(der: bytes, offset: int, name: str) -> Tuple[bytes, int]:
    if offset >= len(der) or der[offset] != 0x02:
        raise MalformedSignature(f"Expected INTEGER for {name}")
    length, offset = _read_length(der, offset + 1)
    if length == 0:
        raise MalformedSignature(f"Empty INTEGER for {name}")
    end = offset + length
    if end > len(der):
        raise MalformedSignature(f"Truncated INTEGER for {name}")
    raw = der[offset:end]
    if raw[0] & 0x80:
        raise MalformedSignature(f"Negative INTEGER for {name}")

    value = raw.lstrip(b"\x00")
    if len(value) > 32:
        raise MalformedSignature(f"INTEGER for {name} exceeds 32 bytes")
    if not value:
        raise MalformedSignature(f"Zero INTEGER for {name}")
    return value.rjust(32, b"\x00"), end


def parse_der_signature(der: bytes) -> Tuple[bytes, bytes]:
    """Parse a DER ``SEQUENCE { INTEGER r, INTEGER s }``.

    Args:
        der: Raw signature bytes as sent by the wallet

    Returns:
        Tuple ``(r, s)``, each left-padded to 32 bytes

    Raises:
        MalformedSignature: On any structural deviation
    """
    if not der or der[0] != 0x30:
        raise MalformedSignature("Expected DER SEQUENCE")

    seq_len, offset = _read_length(der, 1)
    if offset + seq_len != len(der):
        raise MalformedSignature("DER SEQUENCE length does not match signature size")

    r, offset = _read_integer(der, offset, "r")
    s, offset = _read_integer(der, offset, "s")
    if offset != len(der):
        raise MalformedSignature("Trailing bytes after DER signature")
    return r, s


def _encode_der_integer(x: bytes) -> bytes:
    x = x.lstrip(b"\x00") or b"\x00"
    if x[0] & 0x80:
        x = b"\x00" + x
    return b"\x02" + bytes([len(x)]) + x


def encode_der_signature(r: bytes, s: bytes) -> bytes:
    """Strict DER encoding of an ``(r, s)`` pair."""
    seq = _encode_der_integer(r) + _encode_der_integer(s)
    return b"\x30" + bytes([len(seq)]) + seq


def _normalize_low_s(s: bytes) -> bytes:
    # libsecp256k1 only accepts low-S; (r, n - s) is the same signature.
    value = int.from_bytes(s, "big")
    if value > SECP256K1_N // 2:
        value = SECP256K1_N - value
    return value.to_bytes(32, "big")


def verify_signature(message: bytes, der_sig: bytes, pubkey: bytes) -> bool:
    """Verify an LNURL-auth signature.

    Wallets are expected to sign ``sha256(k1)``; some sign the raw 32-byte
    k1 instead, so the raw form is tried only when the hashed one fails.
    """
    try:
        r, s = parse_der_signature(der_sig)
        if int.from_bytes(r, "big") >= SECP256K1_N or int.from_bytes(s, "big") >= SECP256K1_N:
            return False
        normalized = encode_der_signature(r, _normalize_low_s(s))
        key = PublicKey(pubkey)
    except (MalformedSignature, ValueError, TypeError) as e:
        logger.debug("Signature rejected before verification: %s", e)
        return False

    try:
        if key.verify(normalized, sha256(message), hasher=None):
            return True
        if len(message) == 32 and key.verify(normalized, message, hasher=None):
            logger.debug("Signature verified over raw k1 (unhashed wallet)")
            return True
    except ValueError as e:
        logger.debug("Signature verification error: %s", e)
    return False
