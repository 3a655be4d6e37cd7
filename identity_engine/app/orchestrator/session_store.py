"""
Append-only session store.

Sessions live in an arena (list) addressed through an index (dict) from
session id to arena slot. Records are never removed. Each record carries its
own asyncio.Lock; the orchestrator is the single writer and mutates a record
only while holding that lock.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from identity_engine.app.errors import SessionNotFound
from identity_engine.app.events.models import SessionEvent, SessionEventKind
from identity_engine.app.schemas.credential import IssuedCredential
from identity_engine.app.schemas.results import (
    ExtractionResult,
    FailureReason,
    MatchResult,
    RiskAssessment,
    StageName,
)
from identity_engine.app.schemas.session import (
    SessionState,
    StageRecord,
    VerificationSessionSnapshot,
)
from identity_engine.app.schemas.submission import Submission


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SessionRecord:
    """Mutable per-session record. Only the orchestrator writes to it."""

    session_id: str
    submission: Submission
    state: SessionState = SessionState.CREATED
    failure_reason: Optional[FailureReason] = None
    failed_stage: Optional[StageName] = None

    stage_results: List[StageRecord] = field(default_factory=list)
    extraction: Optional[ExtractionResult] = None
    match: Optional[MatchResult] = None
    risk: Optional[RiskAssessment] = None
    credential: Optional[IssuedCredential] = None
    manual_review_required: bool = False

    events: List[SessionEvent] = field(default_factory=list)
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    lock: asyncio.Lock = field(
        default_factory=asyncio.Lock, repr=False, compare=False
    )

    def append_event(
        self,
        kind: SessionEventKind,
        *,
        stage: Optional[StageName] = None,
        detail: Optional[Dict[str, Any]] = None,
    ) -> SessionEvent:
        event = SessionEvent(
            session_id=self.session_id,
            sequence=len(self.events),
            kind=kind,
            stage=stage,
            detail=detail,
        )
        self.events.append(event)
        self.updated_at = event.at
        return event

    def snapshot(self) -> VerificationSessionSnapshot:
        # Results and events are frozen models; copying the containers is
        # enough to detach the snapshot from later writes.
        return VerificationSessionSnapshot(
            session_id=self.session_id,
            submission=self.submission,
            state=self.state,
            failure_reason=self.failure_reason,
            failed_stage=self.failed_stage,
            stage_results=list(self.stage_results),
            extraction=self.extraction,
            match=self.match,
            risk=self.risk,
            credential=self.credential,
            manual_review_required=self.manual_review_required,
            events=list(self.events),
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


class SessionStore:
    def __init__(self) -> None:
        self._arena: List[SessionRecord] = []
        self._index: Dict[str, int] = {}

    def create(self, submission: Submission) -> Tuple[SessionRecord, bool]:
        """
        Register a session for the submission.

        Returns (record, created). A submission id seen before yields the
        existing record and created=False.
        """
        slot = self._index.get(submission.submission_id)
        if slot is not None:
            return self._arena[slot], False

        record = SessionRecord(
            session_id=submission.submission_id,
            submission=submission,
        )
        self._index[record.session_id] = len(self._arena)
        self._arena.append(record)
        return record, True

    def get(self, session_id: str) -> SessionRecord:
        slot = self._index.get(session_id)
        if slot is None:
            raise SessionNotFound(session_id)
        return self._arena[slot]

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._index

    def __len__(self) -> int:
        return len(self._arena)

    def count_by_state(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for record in self._arena:
            counts[record.state.value] = counts.get(record.state.value, 0) + 1
        return counts
