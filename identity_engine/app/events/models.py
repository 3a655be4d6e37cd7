from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from identity_engine.app.schemas.results import StageName


# ----------------------------------------------------------------------
# Event Kinds (Finite and Versioned)
# ----------------------------------------------------------------------
class SessionEventKind(str, Enum):
    """
    Progression events recorded in a verification session log.

    NOTE:
    This enum is finite and versioned.
    New entries must preserve append-only log semantics.
    """

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------
    SESSION_CREATED = "session_created"
    STATE_CHANGED = "state_changed"
    CANCEL_REQUESTED = "cancel_requested"
    SESSION_COMPLETED = "session_completed"
    SESSION_FAILED = "session_failed"

    # ------------------------------------------------------------------
    # Stage execution
    # ------------------------------------------------------------------
    STAGE_STARTED = "stage_started"
    STAGE_ATTEMPT_FAILED = "stage_attempt_failed"
    STAGE_COMPLETED = "stage_completed"
    STAGE_RESULT_DISCARDED = "stage_result_discarded"

    # ------------------------------------------------------------------
    # Issuance
    # ------------------------------------------------------------------
    CREDENTIAL_ISSUED = "credential_issued"


TERMINAL_EVENT_KINDS = frozenset(
    {
        SessionEventKind.SESSION_COMPLETED,
        SessionEventKind.SESSION_FAILED,
    }
)


# ----------------------------------------------------------------------
# Event Model
# ----------------------------------------------------------------------
class SessionEvent(BaseModel):
    """
    An immutable entry of a verification session log.

    Entries are appended in order under the session's single-writer lock;
    `sequence` is strictly increasing within a session and `at` is
    non-decreasing.
    """

    session_id: str = Field(..., description="The verification session id")
    sequence: int = Field(..., ge=0)
    kind: SessionEventKind
    stage: Optional[StageName] = None
    at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    # Optional contextual metadata (attempt, reason, state, ...)
    detail: Optional[Dict[str, Any]] = None

    def to_sse_payload(self) -> str:
        """Server-Sent Events frame for this event."""
        return (
            f"event: {self.kind.value}\n"
            f"data: {self.model_dump_json(by_alias=True)}\n\n"
        )

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        alias_generator=to_camel,
        populate_by_name=True,
    )
