import pytest

from identity_engine.app.errors import InternalInvariantViolation
from identity_engine.app.schemas.results import (
    ExtractionResult,
    FailureReason,
    StageStatus,
)
from identity_engine.app.schemas.submission import DocumentType
from identity_engine.app.stages.identity_matcher import IdentityMatcher
from identity_engine.tests.fakes import StaticFaceMatcher
from identity_engine.tests.helpers import make_profile, make_settings, make_submission

pytestmark = pytest.mark.anyio


def _extraction(submission, **fields):
    values = {
        "full_name": "ERIKSSON ANNA MARIA",
        "date_of_birth": "1974-08-12",
        "address": "12 Main Street, Springfield",
        "document_number": "D23145890",
    }
    values.update(fields)
    return ExtractionResult(
        submission_id=submission.submission_id,
        status=StageStatus.PASS,
        extracted_fields={k: v for k, v in values.items() if v is not None},
        authenticity_score=0.9,
        detected_document_type=submission.document_type,
    )


def _id_card_submission(**kwargs):
    return make_submission(document_type=DocumentType.NATIONAL_ID, **kwargs)


async def test_all_fields_match_after_normalization():
    submission = _id_card_submission()
    matcher = IdentityMatcher(make_settings())

    result = await matcher.match(submission, _extraction(submission))

    assert result.status is StageStatus.PASS
    assert result.field_matches == {
        "full_name": True,
        "date_of_birth": True,
        "address": True,
    }
    assert result.face_match_score is None
    assert result.unverified_fields == []


async def test_accents_and_small_typos_are_tolerated():
    submission = _id_card_submission(
        profile=make_profile(full_name="Anna-Maria Eriksón")
    )
    matcher = IdentityMatcher(make_settings())

    result = await matcher.match(
        submission, _extraction(submission, full_name="ANNA MARIA ERIKSSON")
    )

    assert result.field_matches["full_name"] is True
    assert result.field_scores["full_name"] >= 92


async def test_different_name_is_a_profile_mismatch():
    submission = _id_card_submission()
    matcher = IdentityMatcher(make_settings())

    result = await matcher.match(
        submission, _extraction(submission, full_name="JOHN SMITH")
    )

    assert result.status is StageStatus.FAIL
    assert result.reason is FailureReason.PROFILE_MISMATCH
    assert result.field_matches["full_name"] is False


async def test_date_formats_compare_as_dates():
    submission = _id_card_submission()
    matcher = IdentityMatcher(make_settings())

    same = await matcher.match(
        submission, _extraction(submission, date_of_birth="12.08.1974")
    )
    different = await matcher.match(
        submission, _extraction(submission, date_of_birth="1974-12-08")
    )

    assert same.field_matches["date_of_birth"] is True
    assert different.field_matches["date_of_birth"] is False
    assert different.reason is FailureReason.PROFILE_MISMATCH


async def test_address_abbreviations_are_expanded():
    submission = _id_card_submission(
        profile=make_profile(address="40 N Oak Ave Apt 3")
    )
    matcher = IdentityMatcher(make_settings())

    result = await matcher.match(
        submission,
        _extraction(submission, address="40 North Oak Avenue Apartment 3"),
    )

    assert result.field_matches["address"] is True
    assert result.field_scores["address"] == 100.0


async def test_missing_address_on_id_card_is_a_mismatch():
    submission = _id_card_submission()
    matcher = IdentityMatcher(make_settings())

    result = await matcher.match(submission, _extraction(submission, address=None))

    assert result.field_matches["address"] is False
    assert result.reason is FailureReason.PROFILE_MISMATCH


async def test_passport_without_address_leaves_address_unverified():
    submission = make_submission(document_type=DocumentType.PASSPORT)
    matcher = IdentityMatcher(make_settings())

    result = await matcher.match(submission, _extraction(submission, address=None))

    assert result.status is StageStatus.PASS
    assert result.unverified_fields == ["address"]
    assert "address" not in result.field_scores


async def test_face_score_below_threshold_fails_with_face_mismatch():
    submission = _id_card_submission(
        selfie_image_ref="https://uploads.example.test/selfie.jpg"
    )
    face = StaticFaceMatcher(score=0.3)
    matcher = IdentityMatcher(make_settings(), face)

    result = await matcher.match(submission, _extraction(submission))

    assert result.status is StageStatus.FAIL
    assert result.reason is FailureReason.FACE_MISMATCH
    assert result.face_match_score == pytest.approx(0.3)
    assert face.calls == [
        (submission.document_image_ref, submission.selfie_image_ref)
    ]


async def test_face_score_above_threshold_passes():
    submission = _id_card_submission(
        selfie_image_ref="https://uploads.example.test/selfie.jpg"
    )
    matcher = IdentityMatcher(make_settings(), StaticFaceMatcher(score=0.8))

    result = await matcher.match(submission, _extraction(submission))

    assert result.status is StageStatus.PASS
    assert result.face_match_score == pytest.approx(0.8)


async def test_no_selfie_means_no_face_call():
    submission = _id_card_submission()
    face = StaticFaceMatcher(score=0.1)
    matcher = IdentityMatcher(make_settings(), face)

    result = await matcher.match(submission, _extraction(submission))

    assert result.status is StageStatus.PASS
    assert face.calls == []


async def test_matching_without_extraction_is_an_invariant_violation():
    matcher = IdentityMatcher(make_settings())

    with pytest.raises(InternalInvariantViolation, match="MissingExtraction"):
        await matcher.match(make_submission(), None)


async def test_matching_a_failed_extraction_is_an_invariant_violation():
    submission = make_submission()
    failed = ExtractionResult(
        submission_id=submission.submission_id,
        status=StageStatus.FAIL,
        reason=FailureReason.AUTHENTICITY_BELOW_THRESHOLD,
        authenticity_score=0.2,
    )

    with pytest.raises(InternalInvariantViolation):
        await IdentityMatcher(make_settings()).match(submission, failed)
