"""
Normalization helpers for identity attributes.

Shared by the submission boundary (profile validation), the Identity Matcher
(field comparison) and the Risk Screener (watchlist lookups and submission
fingerprints). All functions are pure and deterministic.
"""

from __future__ import annotations

import re
import unicodedata
from datetime import date, datetime
from typing import Optional


# Accepted date layouts, most specific first. Two-digit years (MRZ YYMMDD)
# are handled separately because they need a pivot.
_DATE_FORMATS = (
    "%Y-%m-%d",   # ISO
    "%m/%d/%Y",   # client form (MM/DD/YYYY)
    "%d.%m.%Y",   # European ID cards
    "%Y%m%d",     # compact
    "%d %b %Y",   # 01 JAN 1990 (visual zone)
    "%d %B %Y",
)

_EXPIRY_WINDOW_YEARS = 50

_ADDRESS_ABBREVIATIONS = {
    "st": "street",
    "str": "street",
    "ave": "avenue",
    "av": "avenue",
    "rd": "road",
    "blvd": "boulevard",
    "dr": "drive",
    "ln": "lane",
    "ct": "court",
    "pl": "place",
    "sq": "square",
    "hwy": "highway",
    "apt": "apartment",
    "ste": "suite",
    "fl": "floor",
    "n": "north",
    "s": "south",
    "e": "east",
    "w": "west",
}


def strip_accents(value: str) -> str:
    return "".join(
        c for c in unicodedata.normalize("NFD", value)
        if unicodedata.category(c) != "Mn"
    )


def normalize_text(value: Optional[str]) -> str:
    """Accent-fold, drop punctuation, collapse whitespace, lowercase."""
    if not value:
        return ""
    value = strip_accents(value)
    value = re.sub(r"[^\w\s]", " ", value)
    value = re.sub(r"\s+", " ", value)
    return value.strip().lower()


def normalize_name(value: Optional[str]) -> str:
    """
    Normalized, token-sorted name.

    Token sorting makes "DOE JOHN" (document order) equal "John Doe"
    (profile order).
    """
    tokens = normalize_text(value).split()
    return " ".join(sorted(tokens))


def normalize_address(value: Optional[str]) -> str:
    tokens = normalize_text(value).split()
    return " ".join(_ADDRESS_ABBREVIATIONS.get(t, t) for t in tokens)


def normalize_document_number(value: Optional[str]) -> str:
    if not value:
        return ""
    return re.sub(r"[\s\-\.\,/<]", "", value).upper()


def parse_date(value: Optional[str]) -> Optional[date]:
    """
    Parse a date in any accepted layout.

    Returns None when the value cannot be parsed.
    """
    if not value:
        return None
    raw = value.strip()

    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(raw, fmt).date()
        except ValueError:
            continue

    if re.fullmatch(r"\d{6}", raw):
        return parse_mrz_date(raw)

    return None


def parse_mrz_date(value: str, *, future: bool = False) -> Optional[date]:
    """
    Parse an MRZ YYMMDD date.

    Birth dates pivot into the past. Expiry dates (future=True) use a
    sliding window: at most 50 years ahead of today, otherwise the previous
    century.
    """
    if not re.fullmatch(r"\d{6}", value or ""):
        return None

    yy, mm, dd = int(value[:2]), int(value[2:4]), int(value[4:6])
    if future:
        year = 2000 + yy
        if year > date.today().year + _EXPIRY_WINDOW_YEARS:
            year -= 100
    else:
        current = date.today().year % 100
        year = (2000 + yy) if yy <= current else (1900 + yy)

    try:
        return date(year, mm, dd)
    except ValueError:
        return None
