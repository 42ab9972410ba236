from __future__ import annotations

import re
from typing import Optional


# Standard bin code: <row A-Z><position 1-20>/<level 1-4>, e.g. A1/1, C15/4.
_STANDARD = re.compile(r"^([A-Z])([1-9]|1[0-9]|20)/([1-4])$")
# Legacy row/level/position, e.g. A/1/01.
_LEGACY = re.compile(r"^([A-Z])/([1-4])/([0-9]|[01][0-9]|20)$")
# Zero-padded position, e.g. A01/4.
_PADDED = re.compile(r"^([A-Z])([0-9]|[01][0-9]|20)/([1-4])$")
_SPLIT = re.compile(r"[/\-\s.]+")


def _fmt(row: str, position: int, level: int) -> Optional[str]:
    if not re.match(r"^[A-Z]$", row) or not (1 <= position <= 20) or not (1 <= level <= 4):
        return None
    return f"{row}{position}/{level}"


def normalize_location(location: Optional[str]) -> str:
    """
    Normalize a bin code to the standard `A1/1` form.
    Unrecognized codes are returned trimmed and upper-cased.
    """
    cleaned = (location or "").strip().upper()
    if not cleaned:
        return ""
    if _STANDARD.match(cleaned):
        return cleaned

    m = _LEGACY.match(cleaned)
    if m:
        row, level, position = m.groups()
        return _fmt(row, int(position), int(level)) or cleaned

    m = _PADDED.match(cleaned)
    if m:
        row, position, level = m.groups()
        return _fmt(row, int(position), int(level)) or cleaned

    parts = [p for p in _SPLIT.split(cleaned) if p]
    if len(parts) == 2 and re.match(r"^[A-Z]\d+$", parts[0]) and parts[1].isdigit():
        # A1-4, A1 4, A1.4
        out = _fmt(parts[0][0], int(parts[0][1:]), int(parts[1]))
        if out:
            return out
    if len(parts) >= 3 and parts[1].isdigit() and parts[2].isdigit():
        # A-1-4 / A.1.4 are row/level/position like the legacy format.
        out = _fmt(parts[0], int(parts[2]), int(parts[1]))
        if out:
            return out

    m = re.match(r"^([A-Z])(\d{2,3})$", cleaned)
    if m:
        row, digits = m.groups()
        if len(digits) == 2:
            # A14 -> position 1, level 4
            out = _fmt(row, int(digits[0]), int(digits[1]))
        else:
            # A144 -> position 14, level 4
            out = _fmt(row, int(digits[:2]), int(digits[2]))
        if out:
            return out

    return cleaned


def parse_location(location: Optional[str]) -> Optional[tuple[str, int, int]]:
    """Returns (row, level, position) for a recognizable bin code, else None."""
    m = _STANDARD.match(normalize_location(location))
    if not m:
        return None
    row, position, level = m.groups()
    return row, int(level), int(position)


def is_valid_location(location: Optional[str]) -> bool:
    return parse_location(location) is not None


def location_sort_key(location: Optional[str]) -> tuple:
    # Walking order: row, then level, then position. Unparseable codes go last, lexically.
    parsed = parse_location(location)
    if parsed:
        row, level, position = parsed
        return (0, row, level, position, "")
    return (1, "", 0, 0, normalize_location(location))


def zone_for_location(location: Optional[str]) -> str:
    parsed = parse_location(location)
    if parsed:
        return parsed[0]
    cleaned = normalize_location(location)
    return cleaned[:1] if cleaned[:1].isalpha() else ""
