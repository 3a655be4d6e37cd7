from datetime import date

import pytest
from pydantic import ValidationError

from identity_engine.app.errors import InternalInvariantViolation
from identity_engine.app.schemas.submission import DocumentType, UserProfile
from identity_engine.tests.helpers import make_profile, make_submission


def test_profile_accepts_client_and_iso_birth_dates():
    assert make_profile(date_of_birth="08/12/1974").birth_date == date(1974, 8, 12)
    assert make_profile(date_of_birth="1974-08-12").birth_date == date(1974, 8, 12)


@pytest.mark.parametrize(
    "overrides",
    [
        {"date_of_birth": "12th of August"},
        {"date_of_birth": "2999-01-01"},
        {"full_name": "   "},
        {"phone_number": "12-34"},
        {"postal_code": "123"},
    ],
)
def test_profile_rejects_invalid_values(overrides):
    with pytest.raises(ValidationError):
        make_profile(**overrides)


def test_phone_number_is_compacted():
    assert make_profile(phone_number="+1 555 010 9999").phone_number == "+15550109999"


def test_document_type_is_closed():
    with pytest.raises(ValidationError):
        make_submission(document_type="library_card")

    assert DocumentType("residence_permit").label == "Residence Permit"


def test_birth_date_on_unvalidated_profile_raises():
    profile = UserProfile.model_construct(
        full_name="Anna Maria Eriksson",
        date_of_birth="not a date",
        address="12 Main St",
    )

    with pytest.raises(InternalInvariantViolation):
        profile.birth_date
