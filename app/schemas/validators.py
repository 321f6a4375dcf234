"""Custom validators and types."""

import re
from typing import Annotated

from pydantic import AfterValidator, Field

# Indian mobile number: +91 followed by a 10 digit number starting with 6-9
PHONE_PATTERN = re.compile(r"^\+91[6-9][0-9]{9}$")

CURRENCY_PATTERN = re.compile(r"^[A-Z]{3}$")


def validate_phone_number(value: str) -> str:
    """
    Validate and normalize an Indian mobile number.

    Accepts formats:
    - +919876543210
    - +91 98765 43210
    - +91-98765-43210
    - 9876543210 (country code assumed)

    Returns normalized format: +919876543210
    """
    # Remove spaces, dashes, parentheses
    normalized = re.sub(r"[\s\-\(\)]", "", value)
    if re.match(r"^[6-9][0-9]{9}$", normalized):
        normalized = f"+91{normalized}"

    if not PHONE_PATTERN.match(normalized):
        raise ValueError(
            "Invalid phone number. Use format: +91 XXXXX XXXXX (e.g., +91 98765 43210)"
        )

    return normalized


def validate_currency(value: str) -> str:
    """Normalize an ISO 4217 currency code to upper case."""
    normalized = value.strip().upper()
    if not CURRENCY_PATTERN.match(normalized):
        raise ValueError("Invalid currency code. Use a 3 letter ISO code (e.g., INR)")
    return normalized


# Annotated type for phone number validation
PhoneNumber = Annotated[
    str,
    Field(min_length=10, max_length=20),
    AfterValidator(validate_phone_number),
]

CurrencyCode = Annotated[
    str,
    Field(min_length=3, max_length=3),
    AfterValidator(validate_currency),
]
