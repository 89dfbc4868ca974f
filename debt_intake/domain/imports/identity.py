"""
National-ID (SSN) normalization.

Vendors send SSNs formatted (``600-12-9645``), unformatted, padded with
spaces, or with redacted digits masked as ``z``. The normalized identity
key is the bare 9-digit string; it is the only value used to match and
deduplicate persons.
"""
import re
from typing import Any, Optional

IDENTITY_KEY_LENGTH = 9

_NON_DIGITS = re.compile(r"\D")


def normalize_identity(value: Any) -> Optional[str]:
    """
    Return the 9-digit identity key for ``value`` or None when it cannot be one.

    ``z``/``Z`` are read as ``0`` before every other non-digit is removed.
    The function is idempotent: a key normalizes to itself.
    """
    if value is None:
        return None
    text = str(value).replace("z", "0").replace("Z", "0")
    digits = _NON_DIGITS.sub("", text)
    if len(digits) != IDENTITY_KEY_LENGTH:
        return None
    return digits


def format_identity(key: Optional[str]) -> Optional[str]:
    """Render a 9-digit key as ``###-##-####``; anything else is returned unchanged."""
    if not key or len(key) != IDENTITY_KEY_LENGTH or not key.isdigit():
        return key
    return f"{key[:3]}-{key[3:5]}-{key[5:]}"


def mask_identity(key: Optional[str]) -> Optional[str]:
    """Render a key for logs and API payloads with only the last four digits visible."""
    formatted = format_identity(key)
    if not formatted:
        return formatted
    return f"***-**-{formatted[-4:]}"
