import asyncio

import pytest

from identity_engine.app.errors import CollaboratorUnavailable, StageTimeout
from identity_engine.app.events import SessionEventKind
from identity_engine.app.orchestrator.stage_runner import StageRunner
from identity_engine.app.schemas.results import FailureReason, StageName
from identity_engine.app.schemas.session import SessionState
from identity_engine.tests.fakes import StaticDocumentReader
from identity_engine.tests.helpers import (
    build_orchestrator,
    make_settings,
    make_submission,
    passport_reading,
)

pytestmark = pytest.mark.anyio


def _attempt_failures(snapshot):
    return [
        e for e in snapshot.events
        if e.kind is SessionEventKind.STAGE_ATTEMPT_FAILED
    ]


async def test_transient_reader_failure_is_retried_to_success():
    reader = StaticDocumentReader(passport_reading(), fail_times=2)
    orchestrator = build_orchestrator(reader=reader)

    session_id = await orchestrator.submit(make_submission())
    snapshot = await orchestrator.wait(session_id, timeout=5)

    assert snapshot.state is SessionState.COMPLETED
    assert snapshot.stage_record(StageName.ANALYZING).attempts == 3
    failures = _attempt_failures(snapshot)
    assert [e.detail["attempt"] for e in failures] == [1, 2]
    assert all(e.detail["cause"] == "test_unavailable" for e in failures)


async def test_exhausted_retries_fail_with_stage_unavailable():
    reader = StaticDocumentReader(passport_reading(), fail_times=10)
    orchestrator = build_orchestrator(reader=reader)

    session_id = await orchestrator.submit(make_submission())
    snapshot = await orchestrator.wait(session_id, timeout=5)

    assert snapshot.state is SessionState.FAILED
    assert snapshot.failure_reason is FailureReason.STAGE_UNAVAILABLE
    assert snapshot.failed_stage is StageName.ANALYZING
    assert snapshot.stage_record(StageName.ANALYZING).attempts == 3
    assert len(reader.calls) == 3
    assert snapshot.match is None


async def test_retry_bound_is_configurable():
    reader = StaticDocumentReader(passport_reading(), fail_times=1)
    orchestrator = build_orchestrator(
        make_settings(stage_max_retries=0), reader=reader
    )

    session_id = await orchestrator.submit(make_submission())
    snapshot = await orchestrator.wait(session_id, timeout=5)

    assert snapshot.failure_reason is FailureReason.STAGE_UNAVAILABLE
    assert len(reader.calls) == 1


async def test_slow_stage_times_out_and_fails_unavailable():
    reader = StaticDocumentReader(passport_reading(), delay=1.0)
    settings = make_settings(analyzer_timeout_seconds=0.05, stage_max_retries=1)
    orchestrator = build_orchestrator(settings, reader=reader)

    session_id = await orchestrator.submit(make_submission())
    snapshot = await orchestrator.wait(session_id, timeout=5)

    assert snapshot.failure_reason is FailureReason.STAGE_UNAVAILABLE
    assert snapshot.stage_record(StageName.ANALYZING).attempts == 2
    assert [e.detail["cause"] for e in _attempt_failures(snapshot)] == [
        "timeout",
        "timeout",
    ]


# ---------------------------------------------------------------------------
# StageRunner in isolation
# ---------------------------------------------------------------------------

async def test_runner_reports_result_and_attempt_count():
    runner = StageRunner(make_settings())
    calls = []

    async def flaky():
        calls.append(1)
        if len(calls) == 1:
            raise CollaboratorUnavailable("down", cause="http_503")
        return "ok"

    run = await runner.run(StageName.MATCHING, flaky, session_id="s-1")

    assert run.result == "ok"
    assert run.error is None
    assert run.attempts == 2
    assert run.started_at <= run.completed_at


async def test_runner_invokes_hook_per_failed_attempt():
    runner = StageRunner(make_settings(stage_max_retries=1))
    seen = []

    async def always_down():
        raise CollaboratorUnavailable("down", cause="transport_error")

    async def hook(stage, attempt, error):
        seen.append((stage, attempt, error.cause))

    run = await runner.run(
        StageName.SCREENING, always_down, session_id="s-2", on_attempt_failed=hook
    )

    assert run.unavailable
    assert run.result is None
    assert seen == [
        (StageName.SCREENING, 1, "transport_error"),
        (StageName.SCREENING, 2, "transport_error"),
    ]


async def test_runner_converts_timeout():
    runner = StageRunner(
        make_settings(issuer_timeout_seconds=0.01, stage_max_retries=0)
    )

    async def hang():
        await asyncio.sleep(1)

    run = await runner.run(StageName.ISSUING, hang, session_id="s-3")

    assert isinstance(run.error, StageTimeout)
    assert run.error.cause == "timeout"
    assert run.attempts == 1


async def test_runner_does_not_retry_defects():
    runner = StageRunner(make_settings())
    calls = []

    async def broken():
        calls.append(1)
        raise ValueError("bad state")

    run = await runner.run(StageName.ANALYZING, broken, session_id="s-4")

    assert isinstance(run.error, ValueError)
    assert not run.unavailable
    assert run.attempts == 1
    assert len(calls) == 1
