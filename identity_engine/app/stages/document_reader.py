"""
Document reading collaborator.

The engine never decodes images itself. Optical reading, field extraction
and visual forensics are delegated to an external reader service; the
Document Analyzer applies deterministic checks on what the reader returns.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Protocol

import httpx
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from identity_engine.app.errors import CollaboratorUnavailable
from identity_engine.app.schemas.submission import DocumentType

logger = logging.getLogger("identity_engine.document_reader")

# Request Timeout and Too Many Requests are outages, not unreadable images.
_TRANSIENT_CLIENT_STATUSES = frozenset({408, 429})


class DocumentReading(BaseModel):
    """
    Raw output of the reader service.

    NON-AUTHORITATIVE: the analyzer decides pass/fail.
    """

    readable: bool
    detected_type: Optional[DocumentType] = None
    fields: Dict[str, str] = Field(default_factory=dict)
    visual_authenticity: float = Field(0.0, ge=0.0, le=1.0)
    mrz_lines: List[str] = Field(default_factory=list)

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        alias_generator=to_camel,
        populate_by_name=True,
    )


class DocumentReader(Protocol):
    async def read(
        self,
        *,
        image_ref: str,
        declared_type: DocumentType,
    ) -> DocumentReading:
        ...


class HttpDocumentReader:
    """
    Reader backed by an HTTP OCR / forensics service.

    Contract:
    - 2xx: JSON body shaped like DocumentReading
    - other 4xx: the image could not be read (non-retryable, unreadable)
    - 408, 429, 5xx, transport errors: CollaboratorUnavailable (retryable)
    """

    def __init__(self, *, endpoint: str, http_client: httpx.AsyncClient) -> None:
        self._endpoint = endpoint.rstrip("/")
        self._client = http_client

    async def read(
        self,
        *,
        image_ref: str,
        declared_type: DocumentType,
    ) -> DocumentReading:
        try:
            response = await self._client.post(
                f"{self._endpoint}/read",
                json={
                    "imageRef": image_ref,
                    "declaredType": declared_type.value,
                },
            )
        except httpx.TransportError as exc:
            logger.warning(
                "document_reader_transport_error",
                extra={"error": type(exc).__name__},
            )
            raise CollaboratorUnavailable(
                "Document reader unreachable", cause=type(exc).__name__
            ) from exc

        if response.status_code >= 500:
            raise CollaboratorUnavailable(
                "Document reader unavailable",
                cause=f"http_{response.status_code}",
            )

        if response.status_code in _TRANSIENT_CLIENT_STATUSES:
            raise CollaboratorUnavailable(
                "Document reader throttled or timed out",
                cause=f"http_{response.status_code}",
            )

        if response.status_code >= 400:
            logger.info(
                "document_reader_rejected_image",
                extra={"status_code": response.status_code},
            )
            return DocumentReading(readable=False)

        try:
            return DocumentReading.model_validate(response.json())
        except (ValueError, PydanticValidationError) as exc:
            raise CollaboratorUnavailable(
                "Document reader returned a malformed response",
                cause="malformed_response",
            ) from exc
