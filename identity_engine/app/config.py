"""
Runtime configuration for the Identity Engine.

Pydantic v2 settings management. All thresholds used by the verification
stages are configurable defaults, not mandated constants. Configuration is
parsed once at startup, frozen, and fails fast when invalid.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Annotated, FrozenSet, Optional

from pydantic import AnyHttpUrl, Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# -------------------------------------------------------------------------
# Reusable Type Aliases
# -------------------------------------------------------------------------

UnitScore = Annotated[
    float,
    Field(ge=0.0, le=1.0, description="Score on the closed interval [0, 1]"),
]

MatchRatio = Annotated[
    float,
    Field(ge=0.0, le=100.0, description="rapidfuzz similarity ratio (0-100)"),
]

StageTimeout = Annotated[
    float,
    Field(gt=0.0, le=300.0, description="Per-attempt stage timeout in seconds"),
]


# -------------------------------------------------------------------------
# Settings Model
# -------------------------------------------------------------------------

class EngineSettings(BaseSettings):
    """
    Application settings parsed from the environment (IDENGINE_*).
    """

    # ---------------------------------------------------------------------
    # Document Analyzer
    # ---------------------------------------------------------------------

    authenticity_threshold: UnitScore = 0.6

    mrz_check_penalty: UnitScore = Field(
        0.5,
        description="Score multiplier applied per failed MRZ check",
    )

    document_check_penalty: UnitScore = Field(
        0.7,
        description="Score multiplier applied per failed non-MRZ check",
    )

    # ---------------------------------------------------------------------
    # Identity Matcher
    # ---------------------------------------------------------------------

    face_match_threshold: UnitScore = 0.5
    name_match_min_ratio: MatchRatio = 92.0
    address_match_min_ratio: MatchRatio = 90.0

    # ---------------------------------------------------------------------
    # Risk & Compliance Screener
    # ---------------------------------------------------------------------

    sanctions_hit_ratio: MatchRatio = 95.0
    sanctions_review_ratio: MatchRatio = 85.0

    watchlist_path: Optional[Path] = Field(
        None,
        description="JSON sanctions / PEP list. Empty list when unset.",
    )

    velocity_max_submissions: Annotated[int, Field(ge=1)] = 3
    velocity_window_seconds: Annotated[int, Field(ge=1)] = 86_400

    high_risk_countries: FrozenSet[str] = Field(
        default_factory=frozenset,
        description="Nationalities / countries that force manual review",
    )

    # ---------------------------------------------------------------------
    # DID Issuer
    # ---------------------------------------------------------------------

    did_method: Annotated[
        str,
        Field(pattern=r"^[a-z0-9]{1,32}$", description="DID method name"),
    ] = "key"

    credential_validity_days: Annotated[int, Field(ge=1, le=3650)] = 365

    # ---------------------------------------------------------------------
    # Orchestration
    # ---------------------------------------------------------------------

    analyzer_timeout_seconds: StageTimeout = 10.0
    matcher_timeout_seconds: StageTimeout = 10.0
    screener_timeout_seconds: StageTimeout = 15.0
    issuer_timeout_seconds: StageTimeout = 15.0

    stage_max_retries: Annotated[int, Field(ge=0, le=10)] = 2
    retry_wait_min_seconds: Annotated[float, Field(ge=0.0)] = 0.1
    retry_wait_max_seconds: Annotated[float, Field(ge=0.0)] = 2.0

    max_concurrent_sessions: Annotated[int, Field(ge=1)] = 64

    # ---------------------------------------------------------------------
    # Submission boundary
    # ---------------------------------------------------------------------

    allowed_image_ref_schemes: FrozenSet[str] = frozenset(
        {"https", "s3", "gs", "blob"}
    )

    # ---------------------------------------------------------------------
    # External collaborators
    # ---------------------------------------------------------------------

    document_reader_url: Optional[AnyHttpUrl] = None
    face_matcher_url: Optional[AnyHttpUrl] = None
    collaborator_http_timeout_seconds: Annotated[float, Field(gt=0.0)] = 30.0

    # ---------------------------------------------------------------------
    # Validators (Pydantic v2)
    # ---------------------------------------------------------------------

    @field_validator("sanctions_review_ratio")
    @classmethod
    def review_ratio_below_hit_ratio(
        cls, v: float, info: ValidationInfo
    ) -> float:
        hit = info.data.get("sanctions_hit_ratio")
        if hit is not None and v > hit:
            raise ValueError(
                "sanctions_review_ratio must not exceed sanctions_hit_ratio"
            )
        return v

    @field_validator("retry_wait_max_seconds")
    @classmethod
    def retry_wait_bounds_ordered(
        cls, v: float, info: ValidationInfo
    ) -> float:
        low = info.data.get("retry_wait_min_seconds")
        if low is not None and v < low:
            raise ValueError(
                "retry_wait_max_seconds must be >= retry_wait_min_seconds"
            )
        return v

    @field_validator("high_risk_countries", "allowed_image_ref_schemes")
    @classmethod
    def normalize_code_sets(cls, v: FrozenSet[str]) -> FrozenSet[str]:
        return frozenset(item.strip().lower() for item in v if item.strip())

    @field_validator("watchlist_path")
    @classmethod
    def watchlist_must_exist(cls, v: Optional[Path]) -> Optional[Path]:
        if v is None:
            return v
        if not v.exists():
            raise ValueError(f"Configured watchlist_path does not exist: {v}")
        if not v.is_file():
            raise ValueError(f"Configured watchlist_path is not a file: {v}")
        return v

    # ---------------------------------------------------------------------
    # Derived helpers
    # ---------------------------------------------------------------------

    def stage_timeout(self, stage: str) -> float:
        """Per-attempt timeout for a stage name (analyzing, matching, ...)."""
        return {
            "analyzing": self.analyzer_timeout_seconds,
            "matching": self.matcher_timeout_seconds,
            "screening": self.screener_timeout_seconds,
            "issuing": self.issuer_timeout_seconds,
        }[stage]

    model_config = SettingsConfigDict(
        env_prefix="IDENGINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
        frozen=True,
    )


# -------------------------------------------------------------------------
# Settings Dependency Provider
# -------------------------------------------------------------------------

@lru_cache(maxsize=1)
def get_settings() -> EngineSettings:
    """
    Dependency injection provider for application settings.

    Uses an explicit singleton pattern within the FastAPI lifecycle.
    """
    return EngineSettings()
