"""Subscriber phone number normalisation."""

from __future__ import annotations

import re

from .errors import ValidationError

DEFAULT_COUNTRY_CODE = "254"
SUBSCRIBER_DIGITS = 9

_NON_DIGITS = re.compile(r"\D")


def normalize_phone(phone: str | None, country_code: str = DEFAULT_COUNTRY_CODE) -> str:
    """Return ``phone`` in international format without the leading ``+``.

    Accepted shapes (after stripping spaces, dashes and ``+``):

    * ``0`` followed by 9 digits: the ``0`` is replaced by the country code
    * 9 bare subscriber digits: the country code is prepended
    * country code followed by 9 digits: returned unchanged

    Raises:
        ValidationError: for any other shape.
    """
    digits = _NON_DIGITS.sub("", phone or "")

    if digits.startswith(country_code) and len(digits) == len(country_code) + SUBSCRIBER_DIGITS:
        return digits
    if digits.startswith("0") and len(digits) == SUBSCRIBER_DIGITS + 1:
        return country_code + digits[1:]
    if len(digits) == SUBSCRIBER_DIGITS and not digits.startswith("0"):
        return country_code + digits

    raise ValidationError(
        f"Invalid phone number shape: {mask_phone(phone)}",
        user_message="Please enter a valid phone number, e.g. 0712345678 or 254712345678.",
    )


def mask_phone(phone: str | None) -> str:
    """Mask all but the last four digits for logging."""
    digits = _NON_DIGITS.sub("", phone or "")
    if len(digits) <= 4:
        return "***"
    return f"***{digits[-4:]}"
