"""
Document Analyzer.

Classifies the submitted image as a readable document of the declared type,
extracts structured fields and produces an authenticity score.

The external reader supplies the raw reading and a visual authenticity
signal. This module applies deterministic checks on top of it:

    1. Classification gate (readable, declared type == detected type)
    2. MRZ presence (passports)
    3. MRZ check digits (ICAO 9303)
    4. MRZ / visual zone consistency
    5. Required field completeness
    6. Expiry

Each failed check multiplies the score by a configured penalty. A document
with no failed checks keeps the reader's score unchanged.

The Submission is never mutated.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Dict, List, Optional

from identity_engine.app.config import EngineSettings
from identity_engine.app.schemas.results import (
    DocumentCheck,
    ExtractionResult,
    FailureReason,
    StageStatus,
)
from identity_engine.app.schemas.submission import DocumentType, Submission
from identity_engine.app.stages.document_reader import (
    DocumentReader,
    DocumentReading,
)
from identity_engine.app.stages.mrz import MrzData, parse_mrz
from identity_engine.app.utils.normalization import (
    normalize_document_number,
    parse_date,
    parse_mrz_date,
)

logger = logging.getLogger("identity_engine.document_analyzer")


# Fields every document must yield, per type.
REQUIRED_FIELDS: Dict[DocumentType, tuple[str, ...]] = {
    DocumentType.PASSPORT: ("full_name", "date_of_birth", "document_number"),
    DocumentType.DRIVERS_LICENSE: (
        "full_name", "date_of_birth", "document_number", "address",
    ),
    DocumentType.NATIONAL_ID: (
        "full_name", "date_of_birth", "document_number", "address",
    ),
    DocumentType.RESIDENCE_PERMIT: (
        "full_name", "date_of_birth", "document_number",
    ),
}

# Document types that always carry a machine readable zone.
MRZ_REQUIRED = frozenset({DocumentType.PASSPORT})

MRZ_CHECKS = frozenset({"mrz_present", "mrz_check_digits", "mrz_consistency"})


class DocumentAnalyzer:
    """
    Stage 1 of the verification pipeline.

    Fully deterministic given the reader's output.
    """

    def __init__(self, settings: EngineSettings, reader: DocumentReader) -> None:
        self._settings = settings
        self._reader = reader

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def analyze(self, submission: Submission) -> ExtractionResult:
        reading = await self._reader.read(
            image_ref=submission.document_image_ref,
            declared_type=submission.document_type,
        )

        classification = self._classify(reading, submission.document_type)
        if not classification.passed:
            logger.info(
                "document_unreadable",
                extra={
                    "submission_id": submission.submission_id,
                    "detail": classification.detail,
                },
            )
            return ExtractionResult(
                submission_id=submission.submission_id,
                status=StageStatus.FAIL,
                reason=FailureReason.UNREADABLE_DOCUMENT,
                authenticity_score=0.0,
                detected_document_type=reading.detected_type,
                checks=[classification],
            )

        mrz = parse_mrz(reading.mrz_lines) if reading.mrz_lines else None
        fields = self._merge_fields(reading.fields, mrz)

        checks: List[DocumentCheck] = [classification]
        checks.extend(
            self._mrz_checks(submission.document_type, reading, mrz)
        )
        checks.append(self._required_fields_check(submission.document_type, fields))
        expiry = self._expiry_check(fields)
        if expiry is not None:
            checks.append(expiry)

        score = self._score(reading.visual_authenticity, checks)
        passed = score >= self._settings.authenticity_threshold

        logger.info(
            "document_analyzed",
            extra={
                "submission_id": submission.submission_id,
                "authenticity_score": score,
                "failed_checks": [c.name for c in checks if not c.passed],
            },
        )

        return ExtractionResult(
            submission_id=submission.submission_id,
            status=StageStatus.PASS if passed else StageStatus.FAIL,
            reason=(
                None if passed else FailureReason.AUTHENTICITY_BELOW_THRESHOLD
            ),
            extracted_fields=fields,
            authenticity_score=score,
            detected_document_type=reading.detected_type,
            checks=checks,
        )

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    @staticmethod
    def _classify(
        reading: DocumentReading, declared: DocumentType
    ) -> DocumentCheck:
        if not reading.readable:
            return DocumentCheck(
                name="classification", passed=False, detail="image not readable"
            )
        if reading.detected_type is None:
            return DocumentCheck(
                name="classification",
                passed=False,
                detail="document type could not be determined",
            )
        if reading.detected_type is not declared:
            return DocumentCheck(
                name="classification",
                passed=False,
                detail=(
                    f"declared {declared.value}, "
                    f"detected {reading.detected_type.value}"
                ),
            )
        return DocumentCheck(name="classification", passed=True)

    @staticmethod
    def _mrz_checks(
        document_type: DocumentType,
        reading: DocumentReading,
        mrz: Optional[MrzData],
    ) -> List[DocumentCheck]:
        checks: List[DocumentCheck] = []

        if not reading.mrz_lines:
            if document_type in MRZ_REQUIRED:
                checks.append(
                    DocumentCheck(
                        name="mrz_present",
                        passed=False,
                        detail="machine readable zone missing",
                    )
                )
            return checks

        if mrz is None:
            checks.append(
                DocumentCheck(
                    name="mrz_check_digits",
                    passed=False,
                    detail="machine readable zone could not be parsed",
                )
            )
            return checks

        failed = sorted(name for name, ok in mrz.checks.items() if not ok)
        checks.append(
            DocumentCheck(
                name="mrz_check_digits",
                passed=not failed,
                detail=", ".join(failed) if failed else None,
            )
        )

        # Visual zone vs MRZ. Only compared when the reader returned both.
        mismatches = []
        visual_number = reading.fields.get("document_number")
        if visual_number and (
            normalize_document_number(visual_number)
            != normalize_document_number(mrz.document_number)
        ):
            mismatches.append("document_number")

        visual_birth = parse_date(reading.fields.get("date_of_birth"))
        mrz_birth = parse_mrz_date(mrz.birth_date)
        if visual_birth and mrz_birth and visual_birth != mrz_birth:
            mismatches.append("date_of_birth")

        checks.append(
            DocumentCheck(
                name="mrz_consistency",
                passed=not mismatches,
                detail=", ".join(mismatches) if mismatches else None,
            )
        )
        return checks

    @staticmethod
    def _required_fields_check(
        document_type: DocumentType, fields: Dict[str, str]
    ) -> DocumentCheck:
        missing = [
            name for name in REQUIRED_FIELDS[document_type]
            if not fields.get(name)
        ]
        return DocumentCheck(
            name="required_fields",
            passed=not missing,
            detail=f"missing: {', '.join(missing)}" if missing else None,
        )

    @staticmethod
    def _expiry_check(fields: Dict[str, str]) -> Optional[DocumentCheck]:
        raw = fields.get("expiry_date")
        if not raw:
            return None
        expiry = parse_date(raw)
        if expiry is None:
            return DocumentCheck(
                name="not_expired", passed=False, detail="unparseable expiry"
            )
        if expiry < date.today():
            return DocumentCheck(
                name="not_expired",
                passed=False,
                detail=f"expired {expiry.isoformat()}",
            )
        return DocumentCheck(name="not_expired", passed=True)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _merge_fields(
        visual: Dict[str, str], mrz: Optional[MrzData]
    ) -> Dict[str, str]:
        """
        Visual zone fields take precedence. MRZ fills the gaps. Dates are
        rewritten as ISO when parseable.
        """
        fields = {k: v.strip() for k, v in visual.items() if v and v.strip()}

        if mrz is not None:
            mrz_birth = parse_mrz_date(mrz.birth_date)
            mrz_expiry = parse_mrz_date(mrz.expiry_date, future=True)
            fallbacks = {
                "full_name": mrz.full_name,
                "document_number": mrz.document_number,
                "nationality": mrz.nationality,
                "date_of_birth": mrz_birth.isoformat() if mrz_birth else "",
                "expiry_date": mrz_expiry.isoformat() if mrz_expiry else "",
            }
            for name, value in fallbacks.items():
                if value and not fields.get(name):
                    fields[name] = value

        for name in ("date_of_birth", "expiry_date"):
            parsed = parse_date(fields.get(name))
            if parsed is not None:
                fields[name] = parsed.isoformat()

        return fields

    def _score(self, visual: float, checks: List[DocumentCheck]) -> float:
        score = visual
        for check in checks:
            if check.passed:
                continue
            if check.name in MRZ_CHECKS:
                score *= self._settings.mrz_check_penalty
            else:
                score *= self._settings.document_check_penalty
        return round(max(0.0, min(1.0, score)), 4)
