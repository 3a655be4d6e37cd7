"""
HTTP request / response envelopes.

Field names are camelCase on the wire.
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from identity_engine.app.schemas.results import FailureReason
from identity_engine.app.schemas.session import SessionState
from identity_engine.app.schemas.submission import (
    DocumentType,
    Submission,
    UserProfile,
)


_WIRE_CONFIG = ConfigDict(
    extra="forbid",
    alias_generator=to_camel,
    populate_by_name=True,
)


class SubmissionRequest(BaseModel):
    """
    Body of POST /submissions.

    `submissionId` is optional; a client-supplied id makes retries of the
    same request idempotent.
    """

    submission_id: Optional[str] = Field(
        None, min_length=1, max_length=128, pattern=r"^[A-Za-z0-9._-]+$"
    )
    document_type: DocumentType
    document_image_ref: str = Field(..., min_length=1, max_length=2048)
    selfie_image_ref: Optional[str] = Field(None, min_length=1, max_length=2048)
    user_profile: UserProfile

    model_config = _WIRE_CONFIG

    def to_submission(self) -> Submission:
        fields = {
            "user_profile": self.user_profile,
            "document_type": self.document_type,
            "document_image_ref": self.document_image_ref,
            "selfie_image_ref": self.selfie_image_ref,
        }
        if self.submission_id is not None:
            fields["submission_id"] = self.submission_id
        return Submission(**fields)


class SubmissionAccepted(BaseModel):
    submission_id: str
    session_id: str
    state: SessionState

    model_config = _WIRE_CONFIG


class SessionStateView(BaseModel):
    """Returned by POST /submissions/{id}/cancel."""

    session_id: str
    state: SessionState
    failure_reason: Optional[FailureReason] = None

    model_config = _WIRE_CONFIG


class ErrorResponse(BaseModel):
    code: str
    message: str
    field: Optional[str] = None

    model_config = _WIRE_CONFIG
