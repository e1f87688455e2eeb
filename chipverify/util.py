"""
Utility functions for the chip verification service.

Canonical JSON, HMAC and id/time helpers.
"""

import hashlib
import hmac
import json
import uuid
from datetime import datetime, timezone
from typing import Any, Union


def canonicalize(obj: Any) -> bytes:
    """Sorted-key, whitespace-free UTF-8 JSON, so equal events give equal bytes."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def _as_bytes(data: Union[bytes, str]) -> bytes:
    if isinstance(data, str):
        return data.encode('utf-8')
    return data


def hmac_sha256(key: Union[bytes, str], message: Union[bytes, str]) -> bytes:
    """Compute HMAC-SHA256 and return the raw digest."""
    return hmac.new(_as_bytes(key), _as_bytes(message), hashlib.sha256).digest()


def hmac_sha256_hex(key: Union[bytes, str], message: Union[bytes, str]) -> str:
    """Compute HMAC-SHA256 and return it as lowercase hex."""
    return hmac_sha256(key, message).hex()


def constant_time_compare(a: Union[str, bytes], b: Union[str, bytes]) -> bool:
    """Constant-time equality for secrets and signatures."""
    return hmac.compare_digest(_as_bytes(a), _as_bytes(b))


def utc_now_rfc3339() -> str:
    """Current time as an RFC3339 UTC string with millisecond precision."""
    return datetime.now(timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z')


def generate_id() -> str:
    """Generate a random opaque identifier."""
    return str(uuid.uuid4())
