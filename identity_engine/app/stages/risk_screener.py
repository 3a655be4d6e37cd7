"""
Risk & Compliance Screener.

Deterministic rule set producing a risk tier:

    rule                     flag                       tier
    -----------------------  -------------------------  ------
    strong watchlist hit     sanctions_match            high
    weak watchlist hit       possible_sanctions_match   medium
    document number reuse    document_reuse             high
    submission velocity      velocity_exceeded          medium
    high-risk jurisdiction   high_risk_jurisdiction     medium

The tier is the maximum over triggered rules. High fails the stage; medium
passes with manual review required.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Dict, List, Optional, Set

from identity_engine.app.config import EngineSettings
from identity_engine.app.errors import InternalInvariantViolation
from identity_engine.app.schemas.results import (
    ExtractionResult,
    FailureReason,
    MatchResult,
    RiskAssessment,
    RiskTier,
    StageStatus,
    WatchlistHit,
)
from identity_engine.app.schemas.submission import Submission, UserProfile
from identity_engine.app.stages.watchlist import Watchlist
from identity_engine.app.utils.canonical import compute_sha256
from identity_engine.app.utils.normalization import (
    normalize_document_number,
    normalize_name,
    normalize_text,
)

logger = logging.getLogger("identity_engine.risk_screener")

MANUAL_REVIEW_FLAG = "manual_review"


def profile_fingerprint(profile: UserProfile) -> str:
    """Stable identity key: normalized name + ISO birth date."""
    return compute_sha256(
        f"{normalize_name(profile.full_name)}|{profile.birth_date.isoformat()}"
    )


class SubmissionLedger:
    """
    Screening history used by the velocity and document-reuse rules.

    Keyed by submission id so a retried screening never counts twice.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._by_fingerprint: Dict[str, Dict[str, float]] = {}
        self._by_document: Dict[str, Set[str]] = {}

    def record(
        self,
        *,
        submission_id: str,
        fingerprint: str,
        document_number: Optional[str],
    ) -> None:
        self._by_fingerprint.setdefault(fingerprint, {}).setdefault(
            submission_id, self._clock()
        )
        if document_number:
            self._by_document.setdefault(document_number, set()).add(fingerprint)

    def submissions_within(self, fingerprint: str, window_seconds: float) -> int:
        cutoff = self._clock() - window_seconds
        seen = self._by_fingerprint.get(fingerprint, {})
        return sum(1 for at in seen.values() if at >= cutoff)

    def other_profiles_using(
        self, document_number: str, fingerprint: str
    ) -> Set[str]:
        return self._by_document.get(document_number, set()) - {fingerprint}


class RiskScreener:
    def __init__(
        self,
        settings: EngineSettings,
        watchlist: Optional[Watchlist] = None,
        ledger: Optional[SubmissionLedger] = None,
    ) -> None:
        self._settings = settings
        self._watchlist = watchlist or Watchlist()
        self._ledger = ledger or SubmissionLedger()

    async def screen(
        self,
        submission: Submission,
        extraction: Optional[ExtractionResult],
        match: Optional[MatchResult],
    ) -> RiskAssessment:
        if match is None or not match.passed:
            raise InternalInvariantViolation(
                "Screening requires a passing MatchResult"
            )
        if extraction is None:
            raise InternalInvariantViolation(
                "Screening requires the ExtractionResult"
            )

        profile = submission.user_profile
        flags: Set[str] = set()
        tier = RiskTier.LOW

        def raise_tier(level: RiskTier, flag: str) -> None:
            nonlocal tier
            flags.add(flag)
            if level.rank > tier.rank:
                tier = level

        # --------------------------------------------------------------
        # Sanctions / PEP
        # --------------------------------------------------------------
        hits = self._watchlist_hits(profile)
        for hit, strong in hits:
            raise_tier(
                RiskTier.HIGH if strong else RiskTier.MEDIUM,
                "sanctions_match" if strong else "possible_sanctions_match",
            )

        # --------------------------------------------------------------
        # Velocity / duplicate document
        # --------------------------------------------------------------
        fingerprint = profile_fingerprint(profile)
        document_number = normalize_document_number(
            extraction.extracted_fields.get("document_number")
        )
        self._ledger.record(
            submission_id=submission.submission_id,
            fingerprint=fingerprint,
            document_number=document_number or None,
        )

        recent = self._ledger.submissions_within(
            fingerprint, self._settings.velocity_window_seconds
        )
        if recent > self._settings.velocity_max_submissions:
            raise_tier(RiskTier.MEDIUM, "velocity_exceeded")

        if document_number and self._ledger.other_profiles_using(
            document_number, fingerprint
        ):
            raise_tier(RiskTier.HIGH, "document_reuse")

        # --------------------------------------------------------------
        # Jurisdiction
        # --------------------------------------------------------------
        jurisdictions = {
            normalize_text(value)
            for value in (
                profile.nationality,
                profile.country,
                extraction.extracted_fields.get("nationality"),
            )
            if value
        }
        if jurisdictions & self._settings.high_risk_countries:
            raise_tier(RiskTier.MEDIUM, "high_risk_jurisdiction")

        manual_review = tier is RiskTier.MEDIUM
        if manual_review:
            flags.add(MANUAL_REVIEW_FLAG)

        failed = tier is RiskTier.HIGH

        logger.info(
            "risk_screened",
            extra={
                "submission_id": submission.submission_id,
                "risk_tier": tier.value,
                "flags": sorted(flags),
            },
        )

        return RiskAssessment(
            submission_id=submission.submission_id,
            status=StageStatus.FAIL if failed else StageStatus.PASS,
            reason=FailureReason.RISK_TOO_HIGH if failed else None,
            risk_tier=tier,
            screener_flags=frozenset(flags),
            manual_review_required=manual_review,
            watchlist_hits=[hit for hit, _ in hits],
        )

    def _watchlist_hits(self, profile: UserProfile) -> List[tuple[WatchlistHit, bool]]:
        """(hit, strong) pairs for every entry above the review ratio."""
        birth_year = profile.birth_date.year
        results = []
        for m in self._watchlist.search(
            profile.full_name, min_score=self._settings.sanctions_review_ratio
        ):
            entry_year = m.entry.birth_year
            year_compatible = entry_year is None or abs(entry_year - birth_year) <= 1
            strong = m.score >= self._settings.sanctions_hit_ratio and year_compatible
            results.append(
                (
                    WatchlistHit(
                        entry_id=m.entry.entry_id,
                        list_name=m.entry.list_name,
                        matched_name=m.matched_name,
                        score=m.score,
                    ),
                    strong,
                )
            )
        return results
