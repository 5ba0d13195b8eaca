"""
Run identifiers and UTC timestamp helpers.

- **generate_run_id():** time-sortable 26-char identifier (Crockford base32)
- **utc_now():** timezone-aware UTC datetime

Run ids sort by creation time so journals and reports list naturally.
"""

import random
import time
from datetime import UTC, datetime

# Crockford's base32 alphabet
_ENCODING = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
_ENCODING_LEN = len(_ENCODING)


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(UTC)


def generate_run_id() -> str:
    """
    Generate a ULID-like run identifier.

    Format: 26 characters, base32 encoded, time-sortable.
    """
    timestamp_ms = int(time.time() * 1000)
    timestamp_chars = _encode_base32(timestamp_ms, 10)
    random_part = "".join(random.choices(_ENCODING, k=16))
    return timestamp_chars + random_part


def _encode_base32(value: int, length: int) -> str:
    """Encode integer to base32 string of fixed length."""
    result = []
    for _ in range(length):
        result.append(_ENCODING[value % _ENCODING_LEN])
        value //= _ENCODING_LEN
    return "".join(reversed(result))
