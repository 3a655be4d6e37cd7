"""
Verification Orchestrator.

The orchestrator is the single entry and exit point for verification. It
owns the session state machine:

    Created -> Analyzing -> Matching -> Screening -> Issuing -> Completed
                 \\            \\           \\            \\
                  +------------+-----------+------------+--> Failed

It MUST NOT:
- interpret document content
- apply matching or risk heuristics

Its sole responsibilities are:
- enforcing stage order and hard stop conditions
- bounding retries and timeouts per stage
- serializing writes to each session record
- observing cancellation at stage boundaries

Each session runs as its own asyncio task. Sessions never share mutable
state beyond the append-only session store.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional, TypeVar
from urllib.parse import urlsplit

from identity_engine.app.config import EngineSettings
from identity_engine.app.errors import (
    CredentialNotFound,
    SessionAlreadyTerminal,
    StageUnavailableError,
    SubmissionValidationError,
)
from identity_engine.app.events import (
    SessionEvent,
    SessionEventEmitter,
    SessionEventKind,
)
from identity_engine.app.orchestrator.session_store import (
    SessionRecord,
    SessionStore,
)
from identity_engine.app.orchestrator.stage_runner import StageRun, StageRunner
from identity_engine.app.schemas.credential import IssuedCredential
from identity_engine.app.schemas.results import (
    FailureReason,
    StageName,
    StageStatus,
)
from identity_engine.app.schemas.session import (
    SessionState,
    StageRecord,
    VerificationSessionSnapshot,
)
from identity_engine.app.schemas.submission import Submission
from identity_engine.app.stages.did_issuer import DidIssuer
from identity_engine.app.stages.document_analyzer import DocumentAnalyzer
from identity_engine.app.stages.document_reader import DocumentReader
from identity_engine.app.stages.face_matcher import FaceMatcher
from identity_engine.app.stages.identity_matcher import IdentityMatcher
from identity_engine.app.stages.risk_screener import RiskScreener
from identity_engine.app.stages.watchlist import Watchlist

logger = logging.getLogger("identity_engine.orchestrator")

T = TypeVar("T")


class VerificationOrchestrator:
    """
    Per-submission state machine driver.

    Execution order:
        1. Document Analyzer (hard gate)
        2. Identity Matcher (hard gate)
        3. Risk & Compliance Screener (hard gate on tier high)
        4. DID Issuer
    """

    def __init__(
        self,
        settings: EngineSettings,
        *,
        analyzer: DocumentAnalyzer,
        matcher: IdentityMatcher,
        screener: RiskScreener,
        issuer: DidIssuer,
        store: Optional[SessionStore] = None,
        runner: Optional[StageRunner] = None,
    ) -> None:
        """
        Direct constructor.

        Intended for tests and explicit wiring.
        """
        self._settings = settings
        self._analyzer = analyzer
        self._matcher = matcher
        self._screener = screener
        self._issuer = issuer
        self._store = store or SessionStore()
        self._runner = runner or StageRunner(settings)

        self._tasks: Dict[str, asyncio.Task] = {}
        self._subscribers: Dict[str, List[SessionEventEmitter]] = {}
        self._slots = asyncio.Semaphore(settings.max_concurrent_sessions)

    # ------------------------------------------------------------------
    # Integration constructor (composition root)
    # ------------------------------------------------------------------

    @classmethod
    def from_settings(
        cls,
        settings: EngineSettings,
        *,
        document_reader: DocumentReader,
        face_matcher: Optional[FaceMatcher] = None,
        watchlist: Optional[Watchlist] = None,
    ) -> "VerificationOrchestrator":
        if watchlist is None and settings.watchlist_path is not None:
            watchlist = Watchlist.from_file(settings.watchlist_path)

        return cls(
            settings,
            analyzer=DocumentAnalyzer(settings, document_reader),
            matcher=IdentityMatcher(settings, face_matcher),
            screener=RiskScreener(settings, watchlist),
            issuer=DidIssuer(settings),
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def submit(self, submission: Submission) -> str:
        """
        Register a submission and start its session in the background.

        Returns the session id (equal to the submission id). Re-submitting
        a known submission id returns the existing session.
        """
        self._validate_boundary(submission)

        record, created = self._store.create(submission)
        if not created:
            logger.info(
                "duplicate_submission",
                extra={"session_id": record.session_id},
            )
            return record.session_id

        async with record.lock:
            event = record.append_event(
                SessionEventKind.SESSION_CREATED,
                detail={"document_type": submission.document_type.value},
            )
            await self._publish(record, [event])

        task = asyncio.create_task(
            self._run_session(record), name=f"session-{record.session_id}"
        )
        self._tasks[record.session_id] = task
        task.add_done_callback(
            lambda _t, sid=record.session_id: self._tasks.pop(sid, None)
        )

        logger.info(
            "session_submitted",
            extra={"session_id": record.session_id},
        )
        return record.session_id

    async def get_status(self, session_id: str) -> VerificationSessionSnapshot:
        record = self._store.get(session_id)
        async with record.lock:
            return record.snapshot()

    async def cancel(self, session_id: str) -> VerificationSessionSnapshot:
        """
        Mark a non-terminal session Failed/Cancelled.

        An in-flight stage call is not interrupted; its result is discarded
        at the next stage boundary.
        """
        record = self._store.get(session_id)
        async with record.lock:
            if record.state.terminal:
                raise SessionAlreadyTerminal(session_id, record.state.value)

            current = _stage_for_state(record.state)
            events = [
                record.append_event(
                    SessionEventKind.CANCEL_REQUESTED, stage=current
                )
            ]
            events.extend(
                self._fail(record, stage=current, reason=FailureReason.CANCELLED)
            )
            await self._publish(record, events)

            logger.info(
                "session_cancelled",
                extra={
                    "session_id": session_id,
                    "stage": current.value if current else None,
                },
            )
            return record.snapshot()

    async def wait(
        self, session_id: str, timeout: Optional[float] = None
    ) -> VerificationSessionSnapshot:
        """Block until the session's background task has finished."""
        self._store.get(session_id)
        task = self._tasks.get(session_id)
        if task is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout)
        return await self.get_status(session_id)

    def get_credential(self, did: str) -> IssuedCredential:
        credential = self._issuer.registry.resolve(did)
        if credential is None:
            raise CredentialNotFound(did)
        return credential

    async def subscribe(
        self, session_id: str, emitter: SessionEventEmitter
    ) -> None:
        """
        Replay the session log into the emitter, then forward new entries.
        """
        record = self._store.get(session_id)
        async with record.lock:
            for event in record.events:
                await self._safe_emit(emitter, event)
            if record.state.terminal or emitter.closed:
                return

            live = [
                e for e in self._subscribers.get(session_id, []) if not e.closed
            ]
            live.append(emitter)
            self._subscribers[session_id] = live

    def stats(self) -> Dict[str, int]:
        counts = self._store.count_by_state()
        counts["running"] = len(self._tasks)
        counts["subscribers"] = sum(len(e) for e in self._subscribers.values())
        return counts

    async def aclose(self) -> None:
        """Cancel running session tasks (process shutdown)."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Session execution
    # ------------------------------------------------------------------

    async def _run_session(self, record: SessionRecord) -> None:
        try:
            await self._execute(record)
        except Exception:
            # A defect in the orchestrator itself aborts this session only.
            logger.exception(
                "session_execution_failed",
                extra={"session_id": record.session_id},
            )
            async with record.lock:
                if not record.state.terminal:
                    events = self._fail(
                        record,
                        stage=_stage_for_state(record.state),
                        reason=FailureReason.INTERNAL_INVARIANT_VIOLATION,
                    )
                    await self._publish(record, events)

    async def _execute(self, record: SessionRecord) -> None:
        submission = record.submission

        async with self._slots:
            # 1. Document Analyzer
            extraction = await self._run_stage(
                record,
                StageName.ANALYZING,
                lambda: self._analyzer.analyze(submission),
            )
            if extraction is None:
                return

            # 2. Identity Matcher
            match = await self._run_stage(
                record,
                StageName.MATCHING,
                lambda: self._matcher.match(submission, extraction),
            )
            if match is None:
                return

            # 3. Risk & Compliance Screener
            risk = await self._run_stage(
                record,
                StageName.SCREENING,
                lambda: self._screener.screen(submission, extraction, match),
            )
            if risk is None:
                return

            # 4. DID Issuer
            await self._run_stage(
                record,
                StageName.ISSUING,
                lambda: self._issuer.issue(submission, risk),
            )

    async def _run_stage(
        self,
        record: SessionRecord,
        stage: StageName,
        call: Callable[[], Awaitable[T]],
    ) -> Optional[T]:
        """
        Run one stage. Returns the passing result, or None when the session
        is terminal after this stage.
        """
        # --------------------------------------------------------------
        # Stage boundary (entry)
        # --------------------------------------------------------------
        async with record.lock:
            if record.state.terminal:
                return None

            record.state = SessionState.for_stage(stage)
            events = [
                record.append_event(
                    SessionEventKind.STATE_CHANGED,
                    stage=stage,
                    detail={"state": record.state.value},
                ),
                record.append_event(SessionEventKind.STAGE_STARTED, stage=stage),
            ]
            await self._publish(record, events)

        logger.info(
            "stage_started",
            extra={"session_id": record.session_id, "stage": stage.value},
        )

        async def on_attempt_failed(
            stage: StageName, attempt: int, error: StageUnavailableError
        ) -> None:
            async with record.lock:
                event = record.append_event(
                    SessionEventKind.STAGE_ATTEMPT_FAILED,
                    stage=stage,
                    detail={"attempt": attempt, "cause": error.cause},
                )
                await self._publish(record, [event])

        run = await self._runner.run(
            stage,
            call,
            session_id=record.session_id,
            on_attempt_failed=on_attempt_failed,
        )

        # --------------------------------------------------------------
        # Stage boundary (exit)
        # --------------------------------------------------------------
        async with record.lock:
            if record.state.terminal:
                # Cancelled while the stage was in flight.
                if stage is StageName.ISSUING and run.result is not None:
                    self._issuer.registry.discard(record.session_id)
                event = record.append_event(
                    SessionEventKind.STAGE_RESULT_DISCARDED,
                    stage=stage,
                    detail={"state": record.state.value},
                )
                await self._publish(record, [event])
                logger.info(
                    "stage_result_discarded",
                    extra={
                        "session_id": record.session_id,
                        "stage": stage.value,
                    },
                )
                return None

            if run.error is not None:
                reason = (
                    FailureReason.STAGE_UNAVAILABLE
                    if run.unavailable
                    else FailureReason.INTERNAL_INVARIANT_VIOLATION
                )
                events = self._record_stage(record, run, StageStatus.FAIL, reason)
                events.extend(self._fail(record, stage=stage, reason=reason))
                await self._publish(record, events)
                return None

            if stage is StageName.ISSUING:
                events = self._complete(record, run)
                await self._publish(record, events)
                return run.result

            result = run.result
            if stage is StageName.ANALYZING:
                record.extraction = result
            elif stage is StageName.MATCHING:
                record.match = result
            elif stage is StageName.SCREENING:
                record.risk = result
                record.manual_review_required = result.manual_review_required

            events = self._record_stage(record, run, result.status, result.reason)
            if not result.passed:
                events.extend(self._fail(record, stage=stage, reason=result.reason))
                await self._publish(record, events)
                return None

            await self._publish(record, events)
            return result

    # ------------------------------------------------------------------
    # State transitions (caller holds record.lock)
    # ------------------------------------------------------------------

    @staticmethod
    def _record_stage(
        record: SessionRecord,
        run: StageRun,
        status: StageStatus,
        reason: Optional[FailureReason],
    ) -> List[SessionEvent]:
        record.stage_results.append(
            StageRecord(
                stage=run.stage,
                status=status,
                reason=reason,
                attempts=run.attempts,
                started_at=run.started_at,
                completed_at=run.completed_at,
            )
        )
        detail = {"status": status.value, "attempts": run.attempts}
        if reason is not None:
            detail["reason"] = reason.value
        return [
            record.append_event(
                SessionEventKind.STAGE_COMPLETED, stage=run.stage, detail=detail
            )
        ]

    def _complete(
        self, record: SessionRecord, run: StageRun
    ) -> List[SessionEvent]:
        credential = self._issuer.registry.activate(record.session_id)

        events = self._record_stage(record, run, StageStatus.PASS, None)
        record.credential = credential
        record.state = SessionState.COMPLETED

        events.append(
            record.append_event(
                SessionEventKind.CREDENTIAL_ISSUED,
                stage=StageName.ISSUING,
                detail={"did": credential.did},
            )
        )
        events.append(
            record.append_event(
                SessionEventKind.STATE_CHANGED,
                detail={"state": record.state.value},
            )
        )
        events.append(
            record.append_event(
                SessionEventKind.SESSION_COMPLETED,
                detail={
                    "did": credential.did,
                    "manual_review_required": record.manual_review_required,
                },
            )
        )

        logger.info(
            "session_completed",
            extra={
                "session_id": record.session_id,
                "did": credential.did,
                "manual_review_required": record.manual_review_required,
            },
        )
        return events

    @staticmethod
    def _fail(
        record: SessionRecord,
        *,
        stage: Optional[StageName],
        reason: FailureReason,
    ) -> List[SessionEvent]:
        record.state = SessionState.FAILED
        record.failure_reason = reason
        record.failed_stage = stage

        events = [
            record.append_event(
                SessionEventKind.STATE_CHANGED,
                stage=stage,
                detail={"state": record.state.value},
            ),
            record.append_event(
                SessionEventKind.SESSION_FAILED,
                stage=stage,
                detail={"reason": reason.value},
            ),
        ]

        logger.info(
            "session_failed",
            extra={
                "session_id": record.session_id,
                "stage": stage.value if stage else None,
                "reason": reason.value,
            },
        )
        return events

    # ------------------------------------------------------------------
    # Events (observational only)
    # ------------------------------------------------------------------

    async def _publish(
        self, record: SessionRecord, events: List[SessionEvent]
    ) -> None:
        emitters = self._subscribers.get(record.session_id)
        if not emitters:
            return
        for event in events:
            for emitter in emitters:
                if not emitter.closed:
                    await self._safe_emit(emitter, event)

        # Nothing follows a terminal entry except discarded-result notices.
        if record.state.terminal:
            self._subscribers.pop(record.session_id, None)
            return

        live = [e for e in emitters if not e.closed]
        if live:
            self._subscribers[record.session_id] = live
        else:
            self._subscribers.pop(record.session_id, None)

    @staticmethod
    async def _safe_emit(
        emitter: SessionEventEmitter, event: SessionEvent
    ) -> None:
        try:
            await emitter.emit(event)
        except Exception:
            # Emitters never influence session execution.
            logger.warning(
                "event_emission_failed",
                extra={
                    "session_id": event.session_id,
                    "kind": event.kind.value,
                },
            )

    # ------------------------------------------------------------------
    # Submission boundary
    # ------------------------------------------------------------------

    def _validate_boundary(self, submission: Submission) -> None:
        allowed = self._settings.allowed_image_ref_schemes
        refs = [("documentImageRef", submission.document_image_ref)]
        if submission.selfie_image_ref is not None:
            refs.append(("selfieImageRef", submission.selfie_image_ref))

        for field, ref in refs:
            scheme = urlsplit(ref).scheme.lower()
            if scheme not in allowed:
                raise SubmissionValidationError(
                    f"{field} must use one of: {', '.join(sorted(allowed))}",
                    field=field,
                    code="UNSUPPORTED_IMAGE_REF",
                )


def _stage_for_state(state: SessionState) -> Optional[StageName]:
    try:
        return StageName(state.value)
    except ValueError:
        return None

