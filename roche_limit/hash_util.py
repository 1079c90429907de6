"""SHA-256 and HMAC-SHA256 helpers returning lowercase hex digests."""

from __future__ import annotations

import hashlib
import hmac


def _as_bytes(value: str | bytes) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else bytes(value)


def sha256_hex(data: str | bytes) -> str:
    """Return the SHA-256 digest of ``data`` as 64 lowercase hex characters."""
    return hashlib.sha256(_as_bytes(data)).hexdigest()


def hmac_sha256_hex(key: str | bytes, data: str | bytes) -> str:
    """Return the HMAC-SHA256 of ``data`` under ``key`` as lowercase hex."""
    return hmac.new(_as_bytes(key), _as_bytes(data), hashlib.sha256).hexdigest()