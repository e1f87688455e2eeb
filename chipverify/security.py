"""
Security module for the chip verification service.

Provides input validation and request metadata helpers.
"""

import re
from typing import Any, Mapping, Optional

from .exceptions import CounterParseError


# ============================================================
# Input Validation
# ============================================================

HEX_PATTERN = re.compile(r'^(?:[a-fA-F0-9]{2})+$')
DIGITS_PATTERN = re.compile(r'^[0-9]+$')

# chips.counter is a signed 64-bit column
MAX_COUNTER = 2 ** 63 - 1

MAX_TAG_ID_LENGTH = 256
MAX_KEY_ID_LENGTH = 256
MAX_SIGNATURE_LENGTH = 1024
# Leading zeros allowed; bounds the work int() does on hostile input
MAX_COUNTER_TEXT_LENGTH = 64
MAX_ARTWORK_ID_LENGTH = 128


def decode_hex_signature(value: Any) -> Optional[bytes]:
    """
    Decode a caller-supplied hex signature.

    Case-insensitive. Returns None for anything that is not an even-length
    run of hex digits, so callers can treat it as a non-match.
    """
    if not isinstance(value, str):
        return None
    value = value.strip()
    if len(value) > MAX_SIGNATURE_LENGTH or not HEX_PATTERN.match(value):
        return None
    return bytes.fromhex(value)


def parse_counter(value: Any) -> int:
    """
    Parse a presented chip counter.

    Args:
        value: The counter as presented (string of decimal digits)

    Returns:
        The counter as an int

    Raises:
        CounterParseError: If the value is not a non-negative integer that
            fits the counter column
    """
    if isinstance(value, bool) or not isinstance(value, (str, int)):
        raise CounterParseError(value)

    text = str(value).strip()
    if len(text) > MAX_COUNTER_TEXT_LENGTH or not DIGITS_PATTERN.match(text):
        raise CounterParseError(value)

    counter = int(text)
    if counter > MAX_COUNTER:
        raise CounterParseError(value)
    return counter


# ============================================================
# Request Metadata
# ============================================================

def extract_client_ip(headers: Mapping[str, str], fallback: Optional[str] = None) -> Optional[str]:
    """
    Extract the originating client address for the audit trail.
    Uses the first hop of x-forwarded-for when present.
    """
    forwarded = headers.get("x-forwarded-for", "")
    if forwarded:
        first = forwarded.split(',')[0].strip()
        if first:
            return first
    return fallback
