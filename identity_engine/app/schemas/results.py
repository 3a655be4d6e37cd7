"""
Stage result schemas.

Each verification stage produces exactly one frozen result per submission.
Results carry a pass/fail status and, on failure, the originating reason.
A result is the only input the next stage is allowed to consume.
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from identity_engine.app.schemas.submission import DocumentType


_MODEL_CONFIG = ConfigDict(
    frozen=True,
    extra="forbid",
    alias_generator=to_camel,
    populate_by_name=True,
)


# ---------------------------------------------------------------------------
# Enumerations (FROZEN CONTRACTS)
# ---------------------------------------------------------------------------

class StageName(str, Enum):
    """Sequential pipeline stages. Ordering MUST remain stable."""

    ANALYZING = "analyzing"
    MATCHING = "matching"
    SCREENING = "screening"
    ISSUING = "issuing"


class StageStatus(str, Enum):
    PASS = "pass"
    FAIL = "fail"


class FailureReason(str, Enum):
    """Why a stage (and therefore its session) failed."""

    AUTHENTICITY_BELOW_THRESHOLD = "AuthenticityBelowThreshold"
    UNREADABLE_DOCUMENT = "UnreadableDocument"
    PROFILE_MISMATCH = "ProfileMismatch"
    FACE_MISMATCH = "FaceMismatch"
    RISK_TOO_HIGH = "RiskTooHigh"
    STAGE_UNAVAILABLE = "StageUnavailable"
    CANCELLED = "Cancelled"
    INTERNAL_INVARIANT_VIOLATION = "InternalInvariantViolation"


class RiskTier(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return {RiskTier.LOW: 0, RiskTier.MEDIUM: 1, RiskTier.HIGH: 2}[self]


# ---------------------------------------------------------------------------
# Shared invariants
# ---------------------------------------------------------------------------

class _StageOutcome(BaseModel):
    submission_id: str
    status: StageStatus
    reason: Optional[FailureReason] = None

    @model_validator(mode="after")
    def enforce_reason_invariant(self):
        """
        - FAIL MUST carry a reason
        - PASS MUST NOT carry a reason
        """
        if self.status is StageStatus.FAIL and self.reason is None:
            raise ValueError("A failed stage result must carry a reason")
        if self.status is StageStatus.PASS and self.reason is not None:
            raise ValueError("A passing stage result must not carry a reason")
        return self

    @property
    def passed(self) -> bool:
        return self.status is StageStatus.PASS

    model_config = _MODEL_CONFIG


# ---------------------------------------------------------------------------
# Document Analyzer
# ---------------------------------------------------------------------------

class DocumentCheck(BaseModel):
    """One deterministic authenticity check and its outcome."""

    name: str
    passed: bool
    detail: Optional[str] = None

    model_config = _MODEL_CONFIG


class ExtractionResult(_StageOutcome):
    extracted_fields: Dict[str, str] = Field(default_factory=dict)
    authenticity_score: float = Field(0.0, ge=0.0, le=1.0)
    detected_document_type: Optional[DocumentType] = None
    checks: List[DocumentCheck] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Identity Matcher
# ---------------------------------------------------------------------------

class MatchResult(_StageOutcome):
    field_matches: Dict[str, bool] = Field(default_factory=dict)
    field_scores: Dict[str, float] = Field(default_factory=dict)
    face_match_score: Optional[float] = Field(None, ge=0.0, le=1.0)
    unverified_fields: List[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Risk & Compliance Screener
# ---------------------------------------------------------------------------

class WatchlistHit(BaseModel):
    entry_id: str
    list_name: str
    matched_name: str
    score: float

    model_config = _MODEL_CONFIG


class RiskAssessment(_StageOutcome):
    risk_tier: RiskTier
    screener_flags: frozenset[str] = Field(default_factory=frozenset)
    manual_review_required: bool = False
    watchlist_hits: List[WatchlistHit] = Field(default_factory=list)

    @model_validator(mode="after")
    def enforce_tier_invariant(self):
        if self.risk_tier is RiskTier.HIGH and self.passed:
            raise ValueError("Risk tier HIGH must not pass")
        if self.manual_review_required != (self.risk_tier is RiskTier.MEDIUM):
            raise ValueError(
                "manual_review_required is set exactly for tier MEDIUM"
            )
        return self
