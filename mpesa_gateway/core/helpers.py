"""
Helpers for building M-PESA requests.

- Gateway timestamp (YYYYMMDDHHMMSS)
- STK push password derivation
- Payer phone number normalization
"""
import base64
import re
from datetime import datetime
from typing import Optional

from mpesa_gateway.core.exceptions import PaymentValidationError

# Characters people type into phone numbers that carry no meaning
_PHONE_SEPARATORS = re.compile(r"[\s\-().]")

SUBSCRIBER_NUMBER_LENGTH = 9


def get_timestamp(now: Optional[datetime] = None) -> str:
    """Return the gateway timestamp for ``now`` (local time by default)."""
    return (now or datetime.now()).strftime("%Y%m%d%H%M%S")


def generate_password(short_code: str, passkey: str, timestamp: str) -> str:
    """
    Derive the STK push password.

    Args:
        short_code: Business short code
        passkey: Passkey issued with the short code
        timestamp: Same timestamp sent in the request body

    Returns:
        str: base64(short_code + passkey + timestamp)
    """
    raw = f"{short_code}{passkey}{timestamp}".encode()
    return base64.b64encode(raw).decode()


def normalize_phone_number(raw: str, country_code: str = "251") -> str:
    """
    Normalize a payer phone number to international form without '+'.

    Accepted shapes (country code 251)::

        0712345678      -> 251712345678
        +251712345678   -> 251712345678
        251712345678    -> 251712345678
        712345678       -> 251712345678

    Raises:
        PaymentValidationError: If the number has any other shape
    """
    if not isinstance(raw, str) or not raw.strip():
        raise PaymentValidationError("Phone number is required")

    number = _PHONE_SEPARATORS.sub("", raw.strip())
    if number.startswith("+"):
        number = number[1:]

    if not number.isdigit():
        raise PaymentValidationError(f"Phone number must contain digits only: {raw!r}")

    if number.startswith("0"):
        number = country_code + number[1:]
    elif len(number) == SUBSCRIBER_NUMBER_LENGTH:
        number = country_code + number

    if not number.startswith(country_code):
        raise PaymentValidationError(f"Unrecognized phone number format: {raw!r}")
    if len(number) != len(country_code) + SUBSCRIBER_NUMBER_LENGTH:
        raise PaymentValidationError(f"Phone number has the wrong length: {raw!r}")

    return number
