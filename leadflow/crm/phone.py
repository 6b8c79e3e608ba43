from __future__ import annotations

import re
from typing import NamedTuple

import phonenumbers
from phonenumbers import NumberParseException

_NON_DIGITS = re.compile(r"\D")
MIN_MEANINGFUL_DIGITS = 4


class NormalizedPhone(NamedTuple):
    country_code: str
    number: str


def strip_digits(raw: str | None) -> str:
    return _NON_DIGITS.sub("", raw or "")


def normalize_phone(raw: str | None, country_code: str) -> NormalizedPhone:
    """Reduce user input to ``(calling code, national significant number)``.

    ``+971 50 123 4567``, ``971501234567``, ``0501234567`` and ``501234567``
    all normalize to ``("971", "501234567")`` for the UAE default. Input that
    cannot be parsed falls back to its bare digits.
    """

    digits = strip_digits(raw)
    if len(digits) < MIN_MEANINGFUL_DIGITS:
        return NormalizedPhone(country_code, digits)

    try:
        if (raw or "").strip().startswith("+"):
            parsed = phonenumbers.parse(f"+{digits}", None)
        else:
            region = phonenumbers.region_code_for_country_code(int(country_code))
            if region == phonenumbers.UNKNOWN_REGION:
                return NormalizedPhone(country_code, digits)
            parsed = phonenumbers.parse(digits, region)
    except (NumberParseException, ValueError):
        return NormalizedPhone(country_code, digits)

    if not parsed.national_number:
        return NormalizedPhone(country_code, digits)
    return NormalizedPhone(str(parsed.country_code), str(parsed.national_number))
