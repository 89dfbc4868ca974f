"""
Phone number standardization utilities.

Phone satellites are stored and deduplicated in US national format
(``(415) 555-1234``); validation accepts 10 to 15 digits.
"""

import logging
import re
from typing import Any, Optional

logger = logging.getLogger(__name__)

MIN_PHONE_DIGITS = 10
MAX_PHONE_DIGITS = 15


def standardize_phone(
    value: Any,
    *,
    default_country_code: Optional[str] = "1",
    output_format: str = "national",
    min_digits: int = MIN_PHONE_DIGITS,
    max_digits: int = MAX_PHONE_DIGITS,
) -> Optional[str]:
    """
    Standardize phone numbers to a single output format.

    Handles various input formats:
    - (415) 555-1234
    - 415.555.1234
    - +1 415 555 1234

    Args:
        value: Phone number in any format
        default_country_code: Country code assumed for 10-digit numbers
        output_format: "national", "e164" or "digits_only"
        min_digits: Minimum number of digits to consider valid
        max_digits: Maximum number of digits to consider valid

    Returns:
        Standardized phone string or None if invalid/empty
    """
    if value is None:
        return None

    text = str(value).strip()
    if not text:
        return None

    digits = re.sub(r'\D', '', text)
    if len(digits) < min_digits or len(digits) > max_digits:
        logger.debug(
            "Phone number '%s' has %d digits, expected between %d and %d",
            value, len(digits), min_digits, max_digits,
        )
        return None

    country_code = default_country_code
    local_number = digits
    if digits.startswith('1') and len(digits) == 11:
        country_code, local_number = '1', digits[1:]
    elif len(digits) > 10:
        country_code, local_number = None, digits

    if output_format == "digits_only":
        return digits
    if output_format == "e164":
        return f"+{country_code}{local_number}" if country_code else f"+{local_number}"
    if output_format != "national":
        logger.warning("Unknown output_format '%s', defaulting to national", output_format)

    if len(local_number) == 10:
        return f"({local_number[:3]}) {local_number[3:6]}-{local_number[6:]}"
    # International numbers without a known layout: group by threes.
    return ' '.join(local_number[i:i + 3] for i in range(0, len(local_number), 3))


def validate_phone(value: Any, *, min_digits: int = MIN_PHONE_DIGITS, max_digits: int = MAX_PHONE_DIGITS) -> bool:
    """Return True when ``value`` carries an acceptable number of digits."""
    if value is None:
        return False
    digits = re.sub(r'\D', '', str(value))
    return min_digits <= len(digits) <= max_digits
