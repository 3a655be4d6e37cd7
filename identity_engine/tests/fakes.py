"""
Deterministic fakes for external collaborators and stages.

IMPORTANT:
- CI-safe: no network, no images
- Observable: every fake records how it was called
"""

from __future__ import annotations

import asyncio
from typing import List, Optional

from identity_engine.app.errors import CollaboratorUnavailable
from identity_engine.app.schemas.results import RiskAssessment
from identity_engine.app.schemas.submission import DocumentType, Submission
from identity_engine.app.stages.document_reader import DocumentReading


class StaticDocumentReader:
    """
    Returns a fixed reading.

    fail_times: number of leading calls that raise CollaboratorUnavailable
    delay:      seconds to sleep before answering (timeout tests)
    """

    def __init__(
        self,
        reading: DocumentReading,
        *,
        fail_times: int = 0,
        delay: float = 0.0,
    ) -> None:
        self._reading = reading
        self._fail_times = fail_times
        self._delay = delay
        self.calls: List[str] = []

    async def read(
        self,
        *,
        image_ref: str,
        declared_type: DocumentType,
    ) -> DocumentReading:
        self.calls.append(image_ref)
        if len(self.calls) <= self._fail_times:
            raise CollaboratorUnavailable(
                "reader offline", cause="test_unavailable"
            )
        if self._delay:
            await asyncio.sleep(self._delay)
        return self._reading


class BrokenDocumentReader:
    """Raises a non-transient error (a defect, not an outage)."""

    def __init__(self) -> None:
        self.calls = 0

    async def read(self, *, image_ref: str, declared_type: DocumentType):
        self.calls += 1
        raise KeyError("fields")


class StaticFaceMatcher:
    def __init__(self, score: float) -> None:
        self._score = score
        self.calls: List[tuple[str, str]] = []

    async def compare(
        self,
        *,
        document_image_ref: str,
        selfie_image_ref: str,
    ) -> float:
        self.calls.append((document_image_ref, selfie_image_ref))
        return self._score


class GatedScreener:
    """
    Wraps a screener and holds its result until `release()` is called.

    `entered` is set once screening has started.
    """

    def __init__(self, inner) -> None:
        self._inner = inner
        self.entered = asyncio.Event()
        self._gate = asyncio.Event()

    def release(self) -> None:
        self._gate.set()

    async def screen(self, submission, extraction, match) -> RiskAssessment:
        self.entered.set()
        await self._gate.wait()
        return await self._inner.screen(submission, extraction, match)


class RecordingIssuer:
    """Delegates to a real DidIssuer and records every invocation."""

    def __init__(self, inner) -> None:
        self._inner = inner
        self.calls: List[str] = []

    @property
    def registry(self):
        return self._inner.registry

    async def issue(self, submission: Submission, risk: Optional[RiskAssessment]):
        self.calls.append(submission.submission_id)
        return await self._inner.issue(submission, risk)


class GatedIssuer:
    """
    Mints through a real DidIssuer, then holds the credential until
    `release()` is called.

    `entered` is set once the credential has been minted.
    """

    def __init__(self, inner) -> None:
        self._inner = inner
        self.entered = asyncio.Event()
        self._gate = asyncio.Event()
        self.minted: List[str] = []

    @property
    def registry(self):
        return self._inner.registry

    def release(self) -> None:
        self._gate.set()

    async def issue(self, submission: Submission, risk: Optional[RiskAssessment]):
        credential = await self._inner.issue(submission, risk)
        self.minted.append(credential.did)
        self.entered.set()
        await self._gate.wait()
        return credential
