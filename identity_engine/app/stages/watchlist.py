"""
Sanctions / PEP watchlist.

An in-memory list loaded once at startup from a JSON file. The file is
either a list of entries or an object with an "entries" list:

    {"entries": [{"entryId": "SDN-1", "name": "...", "aliases": [...],
                  "dateOfBirth": "1961", "listName": "OFAC-SDN"}]}
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import List, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from rapidfuzz import fuzz

from identity_engine.app.utils.normalization import normalize_name

logger = logging.getLogger("identity_engine.watchlist")

_YEAR = re.compile(r"(\d{4})")


def extract_year(value: Optional[str]) -> Optional[int]:
    if not value:
        return None
    match = _YEAR.search(value)
    return int(match.group(1)) if match else None


class WatchlistEntry(BaseModel):
    entry_id: str
    name: str
    aliases: List[str] = Field(default_factory=list)
    date_of_birth: Optional[str] = None
    list_name: str = "sanctions"

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        alias_generator=to_camel,
        populate_by_name=True,
    )

    @property
    def birth_year(self) -> Optional[int]:
        return extract_year(self.date_of_birth)


class WatchlistMatch(BaseModel):
    entry: WatchlistEntry
    matched_name: str
    score: float

    model_config = ConfigDict(frozen=True)


class Watchlist:
    def __init__(self, entries: Sequence[WatchlistEntry] = ()) -> None:
        # Names are normalized once; every lookup scans the full list.
        self._indexed = [
            (entry, name, normalize_name(name))
            for entry in entries
            for name in (entry.name, *entry.aliases)
        ]
        self._size = len(entries)

    def __len__(self) -> int:
        return self._size

    @classmethod
    def from_file(cls, path: Path) -> "Watchlist":
        with path.open("r", encoding="utf-8") as fh:
            raw = json.load(fh)

        items = raw.get("entries", []) if isinstance(raw, dict) else raw
        entries = [WatchlistEntry.model_validate(item) for item in items]

        logger.info(
            "watchlist_loaded",
            extra={"path": str(path), "entries": len(entries)},
        )
        return cls(entries)

    def search(self, full_name: str, *, min_score: float) -> List[WatchlistMatch]:
        """
        Best match per entry with token_sort_ratio >= min_score, highest
        score first.
        """
        query = normalize_name(full_name)
        if not query:
            return []

        best: dict[str, WatchlistMatch] = {}
        for entry, raw_name, candidate in self._indexed:
            score = round(fuzz.token_sort_ratio(query, candidate), 2)
            if score < min_score:
                continue
            current = best.get(entry.entry_id)
            if current is None or score > current.score:
                best[entry.entry_id] = WatchlistMatch(
                    entry=entry, matched_name=raw_name, score=score
                )

        return sorted(best.values(), key=lambda m: m.score, reverse=True)
