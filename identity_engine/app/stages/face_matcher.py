"""
Face match collaborator.

Compares the portrait on the identity document with a live selfie and
returns a similarity score in [0, 1]. Biometric processing is external;
the Identity Matcher only applies the threshold.
"""

from __future__ import annotations

import logging
from typing import Protocol

import httpx
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from identity_engine.app.errors import CollaboratorUnavailable

logger = logging.getLogger("identity_engine.face_matcher")


class FaceComparison(BaseModel):
    score: float = Field(..., ge=0.0, le=1.0)

    model_config = ConfigDict(frozen=True, extra="ignore")


class FaceMatcher(Protocol):
    async def compare(
        self,
        *,
        document_image_ref: str,
        selfie_image_ref: str,
    ) -> float:
        ...


class HttpFaceMatcher:
    """
    Face matcher backed by an HTTP biometrics service.

    Any non-2xx response or malformed body is treated as unavailability;
    a face comparison has no meaningful "unreadable" outcome.
    """

    def __init__(self, *, endpoint: str, http_client: httpx.AsyncClient) -> None:
        self._endpoint = endpoint.rstrip("/")
        self._client = http_client

    async def compare(
        self,
        *,
        document_image_ref: str,
        selfie_image_ref: str,
    ) -> float:
        try:
            response = await self._client.post(
                f"{self._endpoint}/compare",
                json={
                    "documentImageRef": document_image_ref,
                    "selfieImageRef": selfie_image_ref,
                },
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise CollaboratorUnavailable(
                "Face matcher rejected the request",
                cause=f"http_{exc.response.status_code}",
            ) from exc
        except httpx.TransportError as exc:
            logger.warning(
                "face_matcher_transport_error",
                extra={"error": type(exc).__name__},
            )
            raise CollaboratorUnavailable(
                "Face matcher unreachable", cause=type(exc).__name__
            ) from exc

        try:
            return FaceComparison.model_validate(response.json()).score
        except (ValueError, PydanticValidationError) as exc:
            raise CollaboratorUnavailable(
                "Face matcher returned a malformed response",
                cause="malformed_response",
            ) from exc
