import logging
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import StreamingResponse

from identity_engine.app.api.schemas import (
    ErrorResponse,
    SessionStateView,
    SubmissionAccepted,
    SubmissionRequest,
)
from identity_engine.app.errors import (
    CredentialNotFound,
    SessionAlreadyTerminal,
    SessionNotFound,
    SubmissionValidationError,
)
from identity_engine.app.events import MemoryQueueEventEmitter
from identity_engine.app.orchestrator.orchestrator import VerificationOrchestrator
from identity_engine.app.schemas.credential import CredentialPublicView
from identity_engine.app.schemas.session import VerificationSessionSnapshot
from identity_engine.app.stages.did_issuer import verify_credential

logger = logging.getLogger("identity_engine.api")

router = APIRouter(tags=["Identity Verification"])


# =============================================================================
# Dependency providers
# =============================================================================

def get_orchestrator(request: Request) -> VerificationOrchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise RuntimeError("orchestrator not initialized")
    return orchestrator


Orchestrator = Annotated[VerificationOrchestrator, Depends(get_orchestrator)]


def _error(
    status_code: int, code: str, message: str, field: Optional[str] = None
) -> HTTPException:
    return HTTPException(
        status_code=status_code,
        detail=ErrorResponse(code=code, message=message, field=field).model_dump(
            by_alias=True, exclude_none=True
        ),
    )


def _session_not_found(exc: SessionNotFound) -> HTTPException:
    return _error(status.HTTP_404_NOT_FOUND, "SESSION_NOT_FOUND", str(exc))


# =============================================================================
# POST /submissions
# =============================================================================

@router.post(
    "/submissions",
    summary="Start identity verification for a submission",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=SubmissionAccepted,
    responses={422: {"description": "Malformed submission"}},
)
async def create_submission(
    body: SubmissionRequest,
    orchestrator: Orchestrator,
    wait: Annotated[
        bool,
        Query(description="Block until the session reaches a terminal state"),
    ] = False,
) -> SubmissionAccepted:
    """
    Register the submission and start verification in the background.

    Validation failures are rejected before any session is created.
    """
    try:
        session_id = await orchestrator.submit(body.to_submission())
    except SubmissionValidationError as exc:
        logger.info(
            "submission_rejected",
            extra={"field": exc.field, "code": exc.code},
        )
        raise _error(
            status.HTTP_422_UNPROCESSABLE_ENTITY, exc.code, str(exc), exc.field
        )

    if wait:
        snapshot = await orchestrator.wait(session_id)
    else:
        snapshot = await orchestrator.get_status(session_id)

    return SubmissionAccepted(
        submission_id=session_id,
        session_id=session_id,
        state=snapshot.state,
    )


# =============================================================================
# GET /submissions/{id}/status
# =============================================================================

@router.get(
    "/submissions/{submission_id}/status",
    summary="Verification session snapshot",
    response_model=VerificationSessionSnapshot,
    responses={404: {"model": ErrorResponse}},
)
async def get_submission_status(
    submission_id: str,
    orchestrator: Orchestrator,
) -> VerificationSessionSnapshot:
    try:
        return await orchestrator.get_status(submission_id)
    except SessionNotFound as exc:
        raise _session_not_found(exc)


# =============================================================================
# POST /submissions/{id}/cancel
# =============================================================================

@router.post(
    "/submissions/{submission_id}/cancel",
    summary="Cancel a non-terminal verification session",
    response_model=SessionStateView,
    responses={
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
    },
)
async def cancel_submission(
    submission_id: str,
    orchestrator: Orchestrator,
) -> SessionStateView:
    """
    Cancellation is cooperative: an in-flight stage finishes, but its result
    is discarded and no later stage runs.
    """
    try:
        snapshot = await orchestrator.cancel(submission_id)
    except SessionNotFound as exc:
        raise _session_not_found(exc)
    except SessionAlreadyTerminal as exc:
        raise _error(status.HTTP_409_CONFLICT, "SESSION_TERMINAL", str(exc))

    return SessionStateView(
        session_id=snapshot.session_id,
        state=snapshot.state,
        failure_reason=snapshot.failure_reason,
    )


# =============================================================================
# GET /submissions/{id}/events (SSE)
# =============================================================================

@router.get(
    "/submissions/{submission_id}/events",
    summary="Stream the session log (Server-Sent Events)",
    responses={404: {"model": ErrorResponse}},
)
async def stream_submission_events(
    submission_id: str,
    orchestrator: Orchestrator,
) -> StreamingResponse:
    """
    Replays the session log, then streams new entries until the session
    reaches a terminal state.

    Observational only: client disconnects do NOT cancel the session.
    """
    emitter = MemoryQueueEventEmitter()
    try:
        await orchestrator.subscribe(submission_id, emitter)
    except SessionNotFound as exc:
        raise _session_not_found(exc)

    async def event_stream():
        try:
            async for event in emitter.stream():
                yield event.to_sse_payload()
        finally:
            # Client disconnected or stream ended; session continues and
            # the orchestrator drops the closed subscriber.
            await emitter.close()

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        },
    )


# =============================================================================
# GET /credentials/{did}
# =============================================================================

@router.get(
    "/credentials/{did}",
    summary="Public portion of an issued credential",
    response_model=CredentialPublicView,
    responses={404: {"model": ErrorResponse}},
)
async def get_credential(
    did: str,
    orchestrator: Orchestrator,
) -> CredentialPublicView:
    """
    Public verification material only. Private keys are never retained.
    """
    try:
        credential = orchestrator.get_credential(did)
    except CredentialNotFound as exc:
        raise _error(status.HTTP_404_NOT_FOUND, "CREDENTIAL_NOT_FOUND", str(exc))

    return CredentialPublicView.from_credential(
        credential, signature_valid=verify_credential(credential)
    )
