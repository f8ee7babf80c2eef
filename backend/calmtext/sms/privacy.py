"""
CalmText - Phone Number Privacy Utilities

Phone number masking and normalization for the SMS integration.

IMPORTANT:
    Raw phone numbers must NEVER be logged in cleartext. Every log line
    that refers to a user goes through mask_phone_number().
"""

import re
from typing import Optional

E164_PATTERN = re.compile(r"^\+[1-9]\d{1,14}$")


def mask_phone_number(number: Optional[str], show_last_digits: int = 4) -> str:
    """
    Mask a phone number for privacy.

    Examples:
        +14155551234 → ***1234
        5551234      → ***1234
        None         → unknown

    Args:
        number: Phone number to mask
        show_last_digits: Number of digits to show (default: 4)

    Returns:
        Masked phone number string
    """
    if not number:
        return "unknown"

    digits = re.sub(r'\D', '', str(number))

    if len(digits) < show_last_digits:
        return "***"

    return f"***{digits[-show_last_digits:]}"


def validate_phone_number(number: Optional[str]) -> bool:
    """Check that a number is in E.164 form (+ followed by up to 15 digits)."""
    if not number:
        return False
    return bool(E164_PATTERN.match(number))


def format_phone_number(number: str) -> str:
    """
    Normalize a phone number to E.164.

    Ten-digit numbers are assumed to be US numbers and get a leading 1.

    Examples:
        (415) 555-1234 → +14155551234
        +44 20 7946 0958 → +442079460958
    """
    digits = re.sub(r'\D', '', number)

    if len(digits) == 10:
        digits = "1" + digits

    return f"+{digits}"
