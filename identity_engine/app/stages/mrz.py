"""
Machine Readable Zone (ICAO Doc 9303) parsing and check-digit validation.

Supported layouts:
- TD3: passports, 2 lines x 44 characters
- TD1: ID cards / residence permits, 3 lines x 30 characters

Verification is deterministic and non-probabilistic.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional

_WEIGHTS = (7, 3, 1)


def char_value(ch: str) -> int:
    if ch.isdigit():
        return int(ch)
    if "A" <= ch <= "Z":
        return ord(ch) - ord("A") + 10
    if ch == "<":
        return 0
    raise ValueError(f"Invalid MRZ character: {ch!r}")


def check_digit(data: str) -> int:
    """ICAO 9303 check digit: weighted (7, 3, 1) sum modulo 10."""
    return sum(
        char_value(ch) * _WEIGHTS[i % 3] for i, ch in enumerate(data)
    ) % 10


def _digit_matches(data: str, digit: str) -> bool:
    # Filler '<' is an accepted check digit for an all-filler field.
    if digit == "<":
        return set(data) <= {"<"}
    if not digit.isdigit():
        return False
    return check_digit(data) == int(digit)


@dataclass(frozen=True)
class MrzData:
    layout: str
    document_code: str
    issuing_state: str
    document_number: str
    birth_date: str
    expiry_date: str
    nationality: str
    surname: str
    given_names: str
    checks: Dict[str, bool] = field(default_factory=dict)

    @property
    def valid(self) -> bool:
        return all(self.checks.values())

    @property
    def full_name(self) -> str:
        return f"{self.given_names} {self.surname}".strip()


def _clean(value: str) -> str:
    return value.replace("<", " ").strip()


def _split_name(name_field: str) -> tuple[str, str]:
    surname, _, given = name_field.partition("<<")
    return _clean(surname), " ".join(_clean(given).split())


def _parse_td3(lines: List[str]) -> MrzData:
    l1, l2 = lines
    surname, given = _split_name(l1[5:44])

    composite_data = l2[0:10] + l2[13:20] + l2[21:43]
    checks = {
        "document_number": _digit_matches(l2[0:9], l2[9]),
        "birth_date": _digit_matches(l2[13:19], l2[19]),
        "expiry_date": _digit_matches(l2[21:27], l2[27]),
        "personal_number": _digit_matches(l2[28:42], l2[42]),
        "composite": _digit_matches(composite_data, l2[43]),
    }

    return MrzData(
        layout="TD3",
        document_code=_clean(l1[0:2]),
        issuing_state=_clean(l1[2:5]),
        document_number=_clean(l2[0:9]),
        birth_date=l2[13:19],
        expiry_date=l2[21:27],
        nationality=_clean(l2[10:13]),
        surname=surname,
        given_names=given,
        checks=checks,
    )


def _parse_td1(lines: List[str]) -> MrzData:
    l1, l2, l3 = lines
    surname, given = _split_name(l3)

    composite_data = l1[5:30] + l2[0:7] + l2[8:15] + l2[18:29]
    checks = {
        "document_number": _digit_matches(l1[5:14], l1[14]),
        "birth_date": _digit_matches(l2[0:6], l2[6]),
        "expiry_date": _digit_matches(l2[8:14], l2[14]),
        "composite": _digit_matches(composite_data, l2[29]),
    }

    return MrzData(
        layout="TD1",
        document_code=_clean(l1[0:2]),
        issuing_state=_clean(l1[2:5]),
        document_number=_clean(l1[5:14]),
        birth_date=l2[0:6],
        expiry_date=l2[8:14],
        nationality=_clean(l2[15:18]),
        surname=surname,
        given_names=given,
        checks=checks,
    )


def parse_mrz(lines: List[str]) -> Optional[MrzData]:
    """
    Parse MRZ lines.

    Returns None when the lines do not form a supported layout or contain
    characters outside the MRZ alphabet.
    """
    cleaned = [line.strip().upper().replace(" ", "") for line in lines if line.strip()]

    try:
        if len(cleaned) == 2 and all(len(line) == 44 for line in cleaned):
            return _parse_td3(cleaned)
        if len(cleaned) == 3 and all(len(line) == 30 for line in cleaned):
            return _parse_td1(cleaned)
    except ValueError:
        return None

    return None
