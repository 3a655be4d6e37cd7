"""
Identity Matcher.

Cross-checks the fields extracted from the document against the profile the
user declared, and optionally applies a face-match signal.

Matching rules:
- name:          normalized + token-sorted equality, else rapidfuzz
                 token_sort_ratio >= name_match_min_ratio
- date_of_birth: calendar date equality across accepted layouts
- address:       abbreviation-expanded equality, else rapidfuzz
                 token_set_ratio >= address_match_min_ratio

Documents without an address zone (passports, residence permits) that yield
no address leave the address field unverified rather than mismatched.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from rapidfuzz import fuzz

from identity_engine.app.config import EngineSettings
from identity_engine.app.errors import InternalInvariantViolation
from identity_engine.app.schemas.results import (
    ExtractionResult,
    FailureReason,
    MatchResult,
    StageStatus,
)
from identity_engine.app.schemas.submission import DocumentType, Submission
from identity_engine.app.stages.face_matcher import FaceMatcher
from identity_engine.app.utils.normalization import (
    normalize_address,
    normalize_name,
    parse_date,
)

logger = logging.getLogger("identity_engine.identity_matcher")

MATCHED_FIELDS = ("full_name", "date_of_birth", "address")

ADDRESS_OPTIONAL = frozenset(
    {DocumentType.PASSPORT, DocumentType.RESIDENCE_PERMIT}
)


class IdentityMatcher:
    def __init__(
        self,
        settings: EngineSettings,
        face_matcher: Optional[FaceMatcher] = None,
    ) -> None:
        self._settings = settings
        self._face_matcher = face_matcher

    async def match(
        self,
        submission: Submission,
        extraction: Optional[ExtractionResult],
    ) -> MatchResult:
        if extraction is None or not extraction.passed:
            raise InternalInvariantViolation(
                "MissingExtraction: matching requires a passing "
                "ExtractionResult"
            )
        if extraction.submission_id != submission.submission_id:
            raise InternalInvariantViolation(
                "ExtractionResult belongs to a different submission"
            )

        profile = submission.user_profile
        fields = extraction.extracted_fields

        field_matches: Dict[str, bool] = {}
        field_scores: Dict[str, float] = {}
        unverified: List[str] = []

        field_matches["full_name"], field_scores["full_name"] = self._match_name(
            profile.full_name, fields.get("full_name")
        )
        field_matches["date_of_birth"], field_scores["date_of_birth"] = (
            self._match_date(profile.date_of_birth, fields.get("date_of_birth"))
        )

        if (
            not fields.get("address")
            and submission.document_type in ADDRESS_OPTIONAL
        ):
            field_matches["address"] = True
            unverified.append("address")
        else:
            field_matches["address"], field_scores["address"] = (
                self._match_address(profile.address, fields.get("address"))
            )

        mismatched = [name for name in MATCHED_FIELDS if not field_matches[name]]
        if mismatched:
            logger.info(
                "profile_mismatch",
                extra={
                    "submission_id": submission.submission_id,
                    "fields": mismatched,
                },
            )
            return MatchResult(
                submission_id=submission.submission_id,
                status=StageStatus.FAIL,
                reason=FailureReason.PROFILE_MISMATCH,
                field_matches=field_matches,
                field_scores=field_scores,
                unverified_fields=unverified,
            )

        face_score = await self._face_score(submission)
        if (
            face_score is not None
            and face_score < self._settings.face_match_threshold
        ):
            logger.info(
                "face_mismatch",
                extra={
                    "submission_id": submission.submission_id,
                    "face_match_score": face_score,
                },
            )
            return MatchResult(
                submission_id=submission.submission_id,
                status=StageStatus.FAIL,
                reason=FailureReason.FACE_MISMATCH,
                field_matches=field_matches,
                field_scores=field_scores,
                face_match_score=face_score,
                unverified_fields=unverified,
            )

        return MatchResult(
            submission_id=submission.submission_id,
            status=StageStatus.PASS,
            field_matches=field_matches,
            field_scores=field_scores,
            face_match_score=face_score,
            unverified_fields=unverified,
        )

    # ------------------------------------------------------------------
    # Field comparison
    # ------------------------------------------------------------------

    def _match_name(
        self, declared: str, extracted: Optional[str]
    ) -> tuple[bool, float]:
        a, b = normalize_name(declared), normalize_name(extracted)
        if not a or not b:
            return False, 0.0
        if a == b:
            return True, 100.0
        score = round(fuzz.token_sort_ratio(a, b), 2)
        return score >= self._settings.name_match_min_ratio, score

    @staticmethod
    def _match_date(
        declared: str, extracted: Optional[str]
    ) -> tuple[bool, float]:
        a, b = parse_date(declared), parse_date(extracted)
        if a is None or b is None:
            return False, 0.0
        return (a == b), (100.0 if a == b else 0.0)

    def _match_address(
        self, declared: str, extracted: Optional[str]
    ) -> tuple[bool, float]:
        a, b = normalize_address(declared), normalize_address(extracted)
        if not a or not b:
            return False, 0.0
        if a == b:
            return True, 100.0
        score = round(fuzz.token_set_ratio(a, b), 2)
        return score >= self._settings.address_match_min_ratio, score

    async def _face_score(self, submission: Submission) -> Optional[float]:
        if submission.selfie_image_ref is None:
            return None
        if self._face_matcher is None:
            logger.warning(
                "face_matcher_not_configured",
                extra={"submission_id": submission.submission_id},
            )
            return None
        return await self._face_matcher.compare(
            document_image_ref=submission.document_image_ref,
            selfie_image_ref=submission.selfie_image_ref,
        )
