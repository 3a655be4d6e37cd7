"""
VerificationSession snapshot schema.

A session aggregates one Submission with its stage results and overall
state. Sessions are never deleted. The snapshot defined here is the
read-only view returned by `get_status`; the mutable record lives in the
session store and is written only by the orchestrator.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from identity_engine.app.events.models import SessionEvent
from identity_engine.app.schemas.credential import IssuedCredential
from identity_engine.app.schemas.results import (
    ExtractionResult,
    FailureReason,
    MatchResult,
    RiskAssessment,
    StageName,
    StageStatus,
)
from identity_engine.app.schemas.submission import Submission


_MODEL_CONFIG = ConfigDict(
    frozen=True,
    extra="forbid",
    alias_generator=to_camel,
    populate_by_name=True,
)


class SessionState(str, Enum):
    """
    Orchestrator states.

    Created -> Analyzing -> Matching -> Screening -> Issuing -> Completed
    Failed is reachable from any non-terminal state.
    """

    CREATED = "created"
    ANALYZING = "analyzing"
    MATCHING = "matching"
    SCREENING = "screening"
    ISSUING = "issuing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (SessionState.COMPLETED, SessionState.FAILED)

    @classmethod
    def for_stage(cls, stage: StageName) -> "SessionState":
        return cls(stage.value)


class StageRecord(BaseModel):
    """Summary of one executed stage."""

    stage: StageName
    status: StageStatus
    reason: Optional[FailureReason] = None
    attempts: int = Field(..., ge=1)
    started_at: datetime
    completed_at: datetime

    model_config = _MODEL_CONFIG


class VerificationSessionSnapshot(BaseModel):
    """
    Point-in-time copy of a verification session.

    THIS SCHEMA IS THE PUBLIC STATUS CONTRACT.
    """

    session_id: str
    submission: Submission
    state: SessionState
    failure_reason: Optional[FailureReason] = None
    failed_stage: Optional[StageName] = None

    stage_results: List[StageRecord] = Field(default_factory=list)
    extraction: Optional[ExtractionResult] = None
    match: Optional[MatchResult] = None
    risk: Optional[RiskAssessment] = None
    credential: Optional[IssuedCredential] = None

    manual_review_required: bool = False
    events: List[SessionEvent] = Field(default_factory=list)

    created_at: datetime
    updated_at: datetime

    # ------------------------------------------------------------------
    # Cross-stage invariants
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def enforce_terminal_invariants(self):
        """
        - COMPLETED iff a credential exists and all four stages passed
        - FAILED requires a failure reason
        - non-terminal sessions carry no failure reason
        """
        all_passed = (
            len(self.stage_results) == len(StageName)
            and all(r.status is StageStatus.PASS for r in self.stage_results)
        )

        if self.state is SessionState.COMPLETED:
            if self.credential is None or not all_passed:
                raise ValueError(
                    "COMPLETED requires an issued credential and four "
                    "passing stage results"
                )
        elif self.credential is not None:
            raise ValueError("A credential exists only for COMPLETED sessions")

        if self.state is SessionState.FAILED:
            if self.failure_reason is None:
                raise ValueError("FAILED sessions must record a reason")
        elif self.failure_reason is not None:
            raise ValueError("Only FAILED sessions carry a failure reason")

        return self

    def stage_record(self, stage: StageName) -> Optional[StageRecord]:
        for record in self.stage_results:
            if record.stage is stage:
                return record
        return None

    model_config = _MODEL_CONFIG
