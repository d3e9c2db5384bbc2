from __future__ import annotations

import re

from motcheck.errors import ValidationError

MIN_LENGTH = 2
MAX_LENGTH = 8

REGISTRATION_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"^[A-Z]{2}\d{2}[A-Z]{3}$"),  # current: AB12CDE
    re.compile(r"^[A-Z]\d{1,3}[A-Z]{3}$"),  # prefix: A123BCD
    re.compile(r"^[A-Z]{3}\d{1,3}[A-Z]$"),  # suffix: ABC123D
    re.compile(r"^[A-Z]{1,3}\d{1,4}$"),  # dateless: AB1234
    re.compile(r"^\d{1,4}[A-Z]{1,3}$"),  # dateless reversed: 1234AB
)

_WHITESPACE = re.compile(r"\s+")


def clean_registration(raw: str) -> str:
    return _WHITESPACE.sub("", raw or "").upper()


def is_valid_registration(raw: str) -> bool:
    reg = clean_registration(raw)
    if not MIN_LENGTH <= len(reg) <= MAX_LENGTH:
        return False
    return any(p.match(reg) for p in REGISTRATION_PATTERNS)


def normalize_registration(raw: str) -> str:
    """Return the canonical form of a UK registration (no spaces, upper case).

    Raises ValidationError when the cleaned value is outside 2-8 characters
    or matches none of the known registration formats.
    """
    reg = clean_registration(raw)
    if not is_valid_registration(reg):
        raise ValidationError(f"Invalid registration format: {raw!r}")
    return reg


def mask_registration(reg: str) -> str:
    reg = clean_registration(reg)
    if len(reg) <= 4:
        return reg[:1] + "*" * (len(reg) - 1)
    return reg[:4] + "***"
