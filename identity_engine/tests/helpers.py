from __future__ import annotations

from typing import Any, Dict, Optional

from identity_engine.app.config import EngineSettings
from identity_engine.app.orchestrator.orchestrator import VerificationOrchestrator
from identity_engine.app.schemas.submission import (
    DocumentType,
    Submission,
    UserProfile,
)
from identity_engine.app.stages.did_issuer import DidIssuer
from identity_engine.app.stages.document_analyzer import DocumentAnalyzer
from identity_engine.app.stages.document_reader import DocumentReading
from identity_engine.app.stages.identity_matcher import IdentityMatcher
from identity_engine.app.stages.risk_screener import RiskScreener
from identity_engine.app.stages.watchlist import Watchlist
from identity_engine.tests.fakes import StaticDocumentReader
from identity_engine.tests.mrz_factory import td1_lines, td3_lines


def make_settings(**overrides: Any) -> EngineSettings:
    """Settings isolated from the environment, with instant retries."""
    values: Dict[str, Any] = {
        "retry_wait_min_seconds": 0.0,
        "retry_wait_max_seconds": 0.0,
    }
    values.update(overrides)
    return EngineSettings(_env_file=None, **values)


def make_profile(**overrides: Any) -> UserProfile:
    values: Dict[str, Any] = {
        "full_name": "Anna Maria Eriksson",
        "date_of_birth": "08/12/1974",
        "address": "12 Main St, Springfield",
        "country": "Utopia",
        "nationality": "UTO",
    }
    values.update(overrides)
    return UserProfile(**values)


def make_submission(
    submission_id: Optional[str] = None,
    *,
    document_type: DocumentType = DocumentType.PASSPORT,
    profile: Optional[UserProfile] = None,
    **overrides: Any,
) -> Submission:
    values: Dict[str, Any] = {
        "user_profile": profile or make_profile(),
        "document_type": document_type,
        "document_image_ref": "https://uploads.example.test/doc-front.jpg",
    }
    if submission_id is not None:
        values["submission_id"] = submission_id
    values.update(overrides)
    return Submission(**values)


def passport_reading(
    authenticity: float = 0.9, **field_overrides: str
) -> DocumentReading:
    """Clean passport with a valid TD3 MRZ for the default profile."""
    fields = {
        "full_name": "Anna Maria Eriksson",
        "date_of_birth": "12.08.1974",
        "document_number": "L898902C3",
        "nationality": "UTO",
        "expiry_date": "2034-12-31",
    }
    fields.update(field_overrides)
    return DocumentReading(
        readable=True,
        detected_type=DocumentType.PASSPORT,
        fields=fields,
        visual_authenticity=authenticity,
        mrz_lines=td3_lines(),
    )


def id_card_reading(
    authenticity: float = 0.9, **field_overrides: str
) -> DocumentReading:
    """Clean national ID card with address and a valid TD1 MRZ."""
    fields = {
        "full_name": "ERIKSSON ANNA MARIA",
        "date_of_birth": "1974-08-12",
        "document_number": "D23145890",
        "address": "12 Main Street, Springfield",
        "expiry_date": "2034-12-31",
    }
    fields.update(field_overrides)
    return DocumentReading(
        readable=True,
        detected_type=DocumentType.NATIONAL_ID,
        fields=fields,
        visual_authenticity=authenticity,
        mrz_lines=td1_lines(),
    )


def build_orchestrator(
    settings: Optional[EngineSettings] = None,
    *,
    reader=None,
    face_matcher=None,
    watchlist: Optional[Watchlist] = None,
    screener=None,
    issuer=None,
) -> VerificationOrchestrator:
    settings = settings or make_settings()
    return VerificationOrchestrator(
        settings,
        analyzer=DocumentAnalyzer(
            settings, reader or StaticDocumentReader(passport_reading())
        ),
        matcher=IdentityMatcher(settings, face_matcher),
        screener=screener or RiskScreener(settings, watchlist),
        issuer=issuer or DidIssuer(settings),
    )
