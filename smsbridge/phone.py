"""Phone normalization to +E.164 using the tenant's default country."""

from __future__ import annotations

from typing import Optional

from smsbridge.runtime import only_digits

# Country name / ISO code -> calling code
COUNTRY_CALLING_CODES = {
    "Australia": ("AU", "61"),
    "United States": ("US", "1"),
    "United Kingdom": ("GB", "44"),
    "New Zealand": ("NZ", "64"),
    "Canada": ("CA", "1"),
    "Singapore": ("SG", "65"),
    "Malaysia": ("MY", "60"),
    "Philippines": ("PH", "63"),
    "India": ("IN", "91"),
    "Hong Kong": ("HK", "852"),
    "Thailand": ("TH", "66"),
    "Indonesia": ("ID", "62"),
    "Vietnam": ("VN", "84"),
}
_BY_ISO = {iso: code for iso, code in COUNTRY_CALLING_CODES.values()}


class PhoneFormatError(ValueError):
    pass


def country_code(country: Optional[str]) -> tuple[str, str]:
    """Resolve a country name or ISO code to ``(iso, calling_code)``."""
    name = (country or "Australia").strip()
    if name in COUNTRY_CALLING_CODES:
        return COUNTRY_CALLING_CODES[name]
    iso = name.upper()
    if iso in _BY_ISO:
        return iso, _BY_ISO[iso]
    raise PhoneFormatError(f"Unsupported country: {country}")


def format_phone(value: Optional[str], country: Optional[str] = "Australia") -> str:
    """Normalize ``value`` to +E.164.

    Numbers already carrying ``+`` keep their country code. Otherwise the
    leading trunk ``0`` is dropped (except for North American numbers) and
    the country calling code is prefixed unless already present.
    """
    if not value or not str(value).strip():
        raise PhoneFormatError("Phone number is required")
    raw = str(value).strip()
    digits = only_digits(raw)
    if not digits:
        raise PhoneFormatError(f"Invalid phone number: {value}")

    if raw.startswith("+"):
        result = digits
    elif raw.startswith("00") and len(digits) > 10:
        result = digits[2:]
    else:
        iso, code = country_code(country)
        national = digits
        if iso not in ("US", "CA") and national.startswith("0"):
            national = national[1:]
        if code == "1" and len(national) == 11 and national.startswith("1"):
            result = national
        elif national.startswith(code) and len(national) > len(code) + 7:
            result = national
        else:
            result = code + national

    if not 8 <= len(result) <= 15:
        raise PhoneFormatError(f"Invalid phone number: {value}")
    return f"+{result}"


def try_format_phone(value: Optional[str], country: Optional[str] = "Australia") -> Optional[str]:
    try:
        return format_phone(value, country)
    except PhoneFormatError:
        return None


def same_number(a: Optional[str], b: Optional[str]) -> bool:
    da, db = only_digits(a), only_digits(b)
    if not da or not db:
        return False
    return da == db or da[-9:] == db[-9:]
