"""OpenPhone webhook signature verification.

The provider signs every delivery and sends the result in a single header::

    openphone-signature: hmac;1;1639710054089;mw1K4fvh5m9XzsGon4C5N3KvL0bkmPZSAy

The fields are ``scheme;version;timestamp;signature``. The signature is a
base64 HMAC-SHA256 digest of ``"{timestamp}.{raw body}"`` keyed with the
base64-decoded signing secret.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import logging
from dataclasses import dataclass

SIGNATURE_HEADER = "openphone-signature"
LEGACY_SIGNATURE_HEADER = "x-openphone-signature"
SUPPORTED_SCHEMES = frozenset({"hmac"})

logger = logging.getLogger("callsync.telephony.signature")


@dataclass(frozen=True, slots=True)
class SignatureHeader:
    scheme: str
    version: str
    timestamp: str
    signature: str


def parse_signature_header(value: str) -> SignatureHeader | None:
    parts = [part.strip() for part in value.split(";")]
    if len(parts) != 4:
        return None
    scheme, version, timestamp, signature = parts
    if scheme.lower() not in SUPPORTED_SCHEMES or not timestamp or not signature:
        return None
    return SignatureHeader(scheme=scheme.lower(), version=version, timestamp=timestamp, signature=signature)


def compute_signature(raw_payload: bytes, timestamp: str, signing_key_b64: str) -> str:
    key = base64.b64decode(signing_key_b64, validate=True)
    signed = timestamp.encode("utf-8") + b"." + raw_payload
    digest = hmac.new(key, signed, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def build_signature_header(raw_payload: bytes, timestamp: str, signing_key_b64: str, version: str = "1") -> str:
    return f"hmac;{version};{timestamp};{compute_signature(raw_payload, timestamp, signing_key_b64)}"


def verify(raw_payload: bytes, signature_header: str | None, signing_key_b64: str) -> bool:
    """Return True only for a well-formed header whose digest matches the payload."""
    if not signature_header:
        return False
    try:
        parsed = parse_signature_header(signature_header)
        if parsed is None:
            return False
        expected = compute_signature(raw_payload, parsed.timestamp, signing_key_b64)
        delivered = base64.b64decode(parsed.signature, validate=True)
        return hmac.compare_digest(base64.b64decode(expected), delivered)
    except (binascii.Error, TypeError, ValueError) as exc:
        logger.info("webhook.signature_malformed", extra={"error": str(exc)})
        return False


def signature_failure_reason(signature_header: str | None) -> str:
    if not signature_header:
        return "missing"
    if parse_signature_header(signature_header) is None:
        return "malformed"
    return "mismatch"
