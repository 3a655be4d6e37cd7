"""
Exception taxonomy for the Identity Engine.

Caller-facing errors (validation, not-found, terminal-state) surface
immediately with no retry. Stage-level transient errors are retried by the
orchestrator and converted into a recorded StageUnavailable failure once the
retry budget is exhausted. Invariant violations abort only the affected
session.
"""

from __future__ import annotations

from typing import Optional


class EngineError(Exception):
    """Base class for all engine errors."""


# ---------------------------------------------------------------------------
# Caller-facing errors
# ---------------------------------------------------------------------------

class SubmissionValidationError(EngineError):
    """
    Malformed submission, rejected before a session is created.

    Attributes:
        field: The offending field (dotted path) when known
        code: Error code for programmatic handling
    """

    def __init__(
        self,
        message: str,
        field: str = "unknown",
        code: str = "VALIDATION_ERROR",
    ) -> None:
        self.field = field
        self.code = code
        super().__init__(message)


class NotFoundError(EngineError):
    """Unknown submission / session id or DID."""


class SessionNotFound(NotFoundError):
    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class CredentialNotFound(NotFoundError):
    def __init__(self, did: str) -> None:
        self.did = did
        super().__init__(f"Credential not found: {did}")


class SessionAlreadyTerminal(EngineError):
    """Raised when cancelling a session that already completed or failed."""

    def __init__(self, session_id: str, state: str) -> None:
        self.session_id = session_id
        self.state = state
        super().__init__(
            f"Session {session_id} is already terminal (state={state})"
        )


# ---------------------------------------------------------------------------
# Engine-internal errors
# ---------------------------------------------------------------------------

class IssuanceConflict(EngineError):
    """
    A credential already exists for this submission.

    Never surfaced to callers: the issuer resolves it by returning the
    existing credential.
    """

    def __init__(self, submission_id: str) -> None:
        self.submission_id = submission_id
        super().__init__(
            f"Credential already issued for submission {submission_id}"
        )


class InternalInvariantViolation(EngineError):
    """
    Programming-contract violation (a defect, not a stage failure).

    Aborts the affected session with a distinct reason for diagnosis.
    """


class StageUnavailableError(EngineError):
    """
    Transient stage failure. Retryable by the orchestrator.
    """

    def __init__(self, message: str, *, cause: Optional[str] = None) -> None:
        self.cause = cause
        super().__init__(message)


class CollaboratorUnavailable(StageUnavailableError):
    """An external collaborator (reader, face matcher) could not be reached."""


class StageTimeout(StageUnavailableError):
    """A stage attempt exceeded its configured timeout."""
