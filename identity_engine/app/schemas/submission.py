"""
Submission schema.

A Submission is created when a client initiates verification and is
immutable once created. Document types are a closed enumeration validated
at the submission boundary; free-form strings are rejected.
"""

from __future__ import annotations

import re
from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from identity_engine.app.errors import InternalInvariantViolation
from identity_engine.app.utils.normalization import parse_date


PHONE_PATTERN = re.compile(r"^\+?[0-9]{10,15}$")


# ---------------------------------------------------------------------------
# Enumerations (CLOSED)
# ---------------------------------------------------------------------------

class DocumentType(str, Enum):
    """Identity document types accepted for verification."""

    PASSPORT = "passport"
    DRIVERS_LICENSE = "drivers_license"
    NATIONAL_ID = "national_id"
    RESIDENCE_PERMIT = "residence_permit"

    @property
    def label(self) -> str:
        return {
            DocumentType.PASSPORT: "Passport",
            DocumentType.DRIVERS_LICENSE: "Driver's License",
            DocumentType.NATIONAL_ID: "National ID Card",
            DocumentType.RESIDENCE_PERMIT: "Residence Permit",
        }[self]


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class UserProfile(BaseModel):
    """
    Self-declared subject attributes collected by the onboarding form.

    full_name, date_of_birth and address are the matched fields; the rest
    feed risk screening and credential claims.
    """

    full_name: str = Field(..., min_length=2, max_length=200)
    date_of_birth: str = Field(
        ...,
        description="MM/DD/YYYY or YYYY-MM-DD",
    )
    address: str = Field(..., min_length=3, max_length=300)

    city: Optional[str] = Field(None, max_length=100)
    country: Optional[str] = Field(None, max_length=100)
    postal_code: Optional[str] = Field(None, min_length=5, max_length=16)
    phone_number: Optional[str] = None
    nationality: Optional[str] = Field(None, max_length=100)

    @field_validator("full_name", "address")
    @classmethod
    def not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v

    @field_validator("date_of_birth")
    @classmethod
    def valid_past_date(cls, v: str) -> str:
        parsed = parse_date(v)
        if parsed is None:
            raise ValueError(
                "date_of_birth must be MM/DD/YYYY or YYYY-MM-DD"
            )
        if parsed >= date.today():
            raise ValueError("date_of_birth must be in the past")
        return v.strip()

    @field_validator("phone_number")
    @classmethod
    def valid_phone(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        compact = re.sub(r"\s", "", v)
        if not PHONE_PATTERN.match(compact):
            raise ValueError("phone_number must be 10-15 digits")
        return compact

    @property
    def birth_date(self) -> date:
        parsed = parse_date(self.date_of_birth)
        if parsed is None:
            raise InternalInvariantViolation(
                f"date_of_birth bypassed validation: {self.date_of_birth!r}"
            )
        return parsed

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        alias_generator=to_camel,
        populate_by_name=True,
    )


class Submission(BaseModel):
    """
    A verification request. Immutable once created.
    """

    submission_id: str = Field(default_factory=lambda: str(uuid4()))
    user_profile: UserProfile
    document_type: DocumentType
    document_image_ref: str = Field(..., min_length=1, max_length=2048)
    selfie_image_ref: Optional[str] = Field(
        None,
        max_length=2048,
        description="Optional live selfie; enables the face-match signal",
    )
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        alias_generator=to_camel,
        populate_by_name=True,
    )
