"""Indonesian mobile number normalization.

Canonical form is ``628`` followed by the subscriber digits (country code 62,
mobile prefix 8).  Model lines that carry no plausible number are passed
through untouched; the export layer does the final validity filtering.
"""

from __future__ import annotations

import re

NOT_FOUND = "TIDAK_DITEMUKAN"

_NOT_FOUND_ALIASES = {"TIDAK_DITEMUKAN", "TIDAK DITEMUKAN"}

_PHONE_RE = re.compile(r"(?:^|\D)((?:62|0)8\d{8,11})(?:\D|$)")
_SEPARATOR_RE = re.compile(r"(?<=\d)[\s\-.()]+(?=\d)")
_NON_DIGIT_RE = re.compile(r"\D")
_EXPORTABLE_RE = re.compile(r"^628\d{8,11}$")


def is_not_found(raw: str | None) -> bool:
    return (raw or "").strip().upper() in _NOT_FOUND_ALIASES


def canonicalize(value: str) -> str:
    digits = _NON_DIGIT_RE.sub("", value or "")
    if digits.startswith("08"):
        return "628" + digits[2:]
    if digits.startswith("62"):
        return digits
    if digits.startswith("0"):
        return "62" + digits[1:]
    return "628" + digits


def normalize(raw: str) -> str:
    """Map one model answer line to a canonical number, the sentinel, or itself.

    The number pattern is first searched in the line as given, then once more
    with separators between digits collapsed (``0812-3456-7890``).
    """
    if is_not_found(raw):
        return NOT_FOUND

    text = (raw or "").strip()
    match = _PHONE_RE.search(text) or _PHONE_RE.search(_SEPARATOR_RE.sub("", text))
    if not match:
        return raw
    return canonicalize(match.group(1))


def is_exportable(value: str) -> bool:
    return bool(_EXPORTABLE_RE.match(value or ""))
