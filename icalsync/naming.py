"""Stable identifiers and store paths for feed events.

Record identities are two salted 32-bit FNV-1a hashes in base 36. This is
short and safe for page names but not collision-free: two raw identities
hashing to the same token would share a location.
"""

from __future__ import annotations

import re

from icalsync.models import NormalizedEvent


FNV_PRIME = 0x01000193
FNV_OFFSET = 0x811C9DC5
SECOND_HASH_SALT = "_salt"
PATH_SEPARATOR = "/"

_BASE36_DIGITS = "0123456789abcdefghijklmnopqrstuvwxyz"


def _utf16_code_units(value: str) -> list[int]:
    raw = value.encode("utf-16-le", errors="surrogatepass")
    return [raw[i] | (raw[i + 1] << 8) for i in range(0, len(raw), 2)]


def fnv1a_32(value: str) -> int:
    # Hashes UTF-16 code units so tokens match those written by earlier releases.
    hash_value = FNV_OFFSET
    for unit in _utf16_code_units(value):
        hash_value ^= unit
        hash_value = (hash_value * FNV_PRIME) & 0xFFFFFFFF
    return hash_value


def to_base36(number: int) -> str:
    if number == 0:
        return "0"
    digits: list[str] = []
    while number:
        number, remainder = divmod(number, 36)
        digits.append(_BASE36_DIGITS[remainder])
    return "".join(reversed(digits))


def hash_content(content: str) -> str:
    return to_base36(fnv1a_32(content))


def derive_record_identity(event_identity: str) -> str:
    first = to_base36(fnv1a_32(event_identity))
    second = to_base36(fnv1a_32(event_identity + SECOND_HASH_SALT))
    return f"{first}{second}"


def sanitize_display_name(name: str) -> str:
    """Lowercase, hyphenate whitespace and drop anything but ``[a-z0-9-_]``.

    Returns an empty string when no letter or digit survives.
    """
    text = re.sub(r"\s+", "-", str(name or "").strip().lower())
    text = re.sub(r"[^a-z0-9\-_]", "", text)
    if not re.search(r"[a-z0-9]", text):
        return ""
    return text


def resolve_target_location(event: NormalizedEvent, calendar_display_name: str, prefix: str) -> str:
    segments = [
        str(prefix or "").strip(PATH_SEPARATOR),
        sanitize_display_name(calendar_display_name),
        derive_record_identity(event.identity),
    ]
    return PATH_SEPARATOR.join(segment for segment in segments if segment)
