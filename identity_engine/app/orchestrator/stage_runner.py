"""
Bounded-retry stage execution.

Every stage call is one attempt under `asyncio.wait_for`. Transient errors
(timeouts, unavailable collaborators) are retried with a short exponential
backoff up to `stage_max_retries` times. Anything else is a defect of the
stage and is not retried.

The runner never raises for stage errors: it reports them on the returned
StageRun so the orchestrator can record the outcome under the session lock.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Generic, Optional, TypeVar

from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from identity_engine.app.config import EngineSettings
from identity_engine.app.errors import StageTimeout, StageUnavailableError
from identity_engine.app.schemas.results import StageName

logger = logging.getLogger("identity_engine.stage_runner")

T = TypeVar("T")

AttemptFailedHook = Callable[[StageName, int, StageUnavailableError], Awaitable[None]]


@dataclass
class StageRun(Generic[T]):
    stage: StageName
    attempts: int
    started_at: datetime
    completed_at: datetime
    result: Optional[T] = None
    error: Optional[Exception] = None

    @property
    def unavailable(self) -> bool:
        return isinstance(self.error, StageUnavailableError)


class StageRunner:
    def __init__(self, settings: EngineSettings) -> None:
        self._settings = settings

    async def run(
        self,
        stage: StageName,
        call: Callable[[], Awaitable[T]],
        *,
        session_id: str,
        on_attempt_failed: Optional[AttemptFailedHook] = None,
    ) -> StageRun[T]:
        timeout = self._settings.stage_timeout(stage.value)
        started_at = datetime.now(timezone.utc)
        attempts = 0

        retrying = AsyncRetrying(
            stop=stop_after_attempt(1 + self._settings.stage_max_retries),
            wait=wait_exponential(
                min=self._settings.retry_wait_min_seconds,
                max=self._settings.retry_wait_max_seconds,
            ),
            retry=retry_if_exception_type(StageUnavailableError),
            reraise=True,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    try:
                        result = await asyncio.wait_for(call(), timeout)
                    except asyncio.TimeoutError as exc:
                        error: StageUnavailableError = StageTimeout(
                            f"Stage {stage.value} exceeded {timeout}s",
                            cause="timeout",
                        )
                        await self._attempt_failed(
                            stage, attempts, error, session_id, on_attempt_failed
                        )
                        raise error from exc
                    except StageUnavailableError as exc:
                        await self._attempt_failed(
                            stage, attempts, exc, session_id, on_attempt_failed
                        )
                        raise

        except StageUnavailableError as exc:
            logger.warning(
                "stage_retries_exhausted",
                extra={
                    "session_id": session_id,
                    "stage": stage.value,
                    "attempts": attempts,
                    "cause": exc.cause,
                },
            )
            return StageRun(
                stage=stage,
                attempts=attempts,
                started_at=started_at,
                completed_at=datetime.now(timezone.utc),
                error=exc,
            )

        except Exception as exc:
            logger.exception(
                "stage_raised_unexpected_error",
                extra={"session_id": session_id, "stage": stage.value},
            )
            return StageRun(
                stage=stage,
                attempts=max(attempts, 1),
                started_at=started_at,
                completed_at=datetime.now(timezone.utc),
                error=exc,
            )

        return StageRun(
            stage=stage,
            attempts=attempts,
            started_at=started_at,
            completed_at=datetime.now(timezone.utc),
            result=result,
        )

    @staticmethod
    async def _attempt_failed(
        stage: StageName,
        attempt: int,
        error: StageUnavailableError,
        session_id: str,
        hook: Optional[AttemptFailedHook],
    ) -> None:
        logger.info(
            "stage_attempt_failed",
            extra={
                "session_id": session_id,
                "stage": stage.value,
                "attempt": attempt,
                "cause": error.cause,
            },
        )
        if hook is not None:
            await hook(stage, attempt, error)
