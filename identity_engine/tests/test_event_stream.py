import asyncio
import json

import pytest

from identity_engine.app.events import (
    MemoryQueueEventEmitter,
    NullEventEmitter,
    SessionEvent,
    SessionEventKind,
)
from identity_engine.app.schemas.results import StageName
from identity_engine.app.schemas.session import SessionState
from identity_engine.app.stages.risk_screener import RiskScreener
from identity_engine.tests.fakes import GatedScreener
from identity_engine.tests.helpers import (
    build_orchestrator,
    make_settings,
    make_submission,
)

pytestmark = pytest.mark.anyio


class ExplodingEmitter:
    closed = False

    def __init__(self) -> None:
        self.attempts = 0

    async def emit(self, event):
        self.attempts += 1
        raise RuntimeError("subscriber went away")


async def _drain(emitter):
    return [event async for event in emitter.stream()]


async def test_memory_emitter_closes_on_terminal_event():
    emitter = MemoryQueueEventEmitter()
    for sequence, kind in enumerate(
        [
            SessionEventKind.SESSION_CREATED,
            SessionEventKind.SESSION_FAILED,
            SessionEventKind.STAGE_RESULT_DISCARDED,
        ]
    ):
        await emitter.emit(
            SessionEvent(session_id="s", sequence=sequence, kind=kind)
        )

    events = await asyncio.wait_for(_drain(emitter), timeout=1)

    assert emitter.closed
    assert [e.kind for e in events] == [
        SessionEventKind.SESSION_CREATED,
        SessionEventKind.SESSION_FAILED,
    ]


async def test_sse_payload_is_camel_case_json():
    event = SessionEvent(
        session_id="s-1",
        sequence=3,
        kind=SessionEventKind.STAGE_STARTED,
        stage=StageName.MATCHING,
    )

    payload = event.to_sse_payload()
    head, data = payload.split("\n", 1)

    assert head == "event: stage_started"
    assert payload.endswith("\n\n")
    body = json.loads(data[len("data: "):])
    assert body["sessionId"] == "s-1"
    assert body["sequence"] == 3
    assert body["stage"] == "matching"


async def test_subscriber_receives_replay_then_live_events():
    settings = make_settings()
    screener = GatedScreener(RiskScreener(settings))
    orchestrator = build_orchestrator(settings, screener=screener)

    session_id = await orchestrator.submit(make_submission())
    await asyncio.wait_for(screener.entered.wait(), timeout=5)

    emitter = MemoryQueueEventEmitter()
    await orchestrator.subscribe(session_id, emitter)
    screener.release()

    events = await asyncio.wait_for(_drain(emitter), timeout=5)
    snapshot = await orchestrator.wait(session_id, timeout=5)

    assert events == snapshot.events
    assert events[-1].kind is SessionEventKind.SESSION_COMPLETED


async def test_late_subscriber_gets_full_log_and_closes():
    orchestrator = build_orchestrator()
    session_id = await orchestrator.submit(make_submission())
    snapshot = await orchestrator.wait(session_id, timeout=5)

    emitter = MemoryQueueEventEmitter()
    await orchestrator.subscribe(session_id, emitter)

    events = await asyncio.wait_for(_drain(emitter), timeout=1)
    assert events == snapshot.events


async def test_failing_emitters_do_not_affect_session():
    orchestrator = build_orchestrator()
    session_id = await orchestrator.submit(make_submission())

    exploding = ExplodingEmitter()
    await orchestrator.subscribe(session_id, exploding)
    await orchestrator.subscribe(session_id, NullEventEmitter())

    snapshot = await orchestrator.wait(session_id, timeout=5)

    assert snapshot.state is SessionState.COMPLETED
    assert exploding.attempts == len(snapshot.events)


async def test_emitter_drops_entries_it_has_already_delivered():
    emitter = MemoryQueueEventEmitter()
    created = SessionEvent(
        session_id="s", sequence=0, kind=SessionEventKind.SESSION_CREATED
    )
    failed = SessionEvent(
        session_id="s", sequence=1, kind=SessionEventKind.SESSION_FAILED
    )

    await emitter.emit(created)
    await emitter.emit(created)
    await emitter.emit(failed)

    events = await asyncio.wait_for(_drain(emitter), timeout=1)
    assert [e.sequence for e in events] == [0, 1]


async def test_emitter_is_bound_to_one_session():
    emitter = MemoryQueueEventEmitter()
    await emitter.emit(
        SessionEvent(session_id="a", sequence=0, kind=SessionEventKind.SESSION_CREATED)
    )

    with pytest.raises(ValueError):
        await emitter.emit(
            SessionEvent(
                session_id="b", sequence=1, kind=SessionEventKind.SESSION_CREATED
            )
        )


async def test_subscribers_are_released_when_closed_or_terminal():
    settings = make_settings()
    screener = GatedScreener(RiskScreener(settings))
    orchestrator = build_orchestrator(settings, screener=screener)

    session_id = await orchestrator.submit(make_submission())
    await asyncio.wait_for(screener.entered.wait(), timeout=5)

    disconnected = MemoryQueueEventEmitter()
    await orchestrator.subscribe(session_id, disconnected)
    await disconnected.close()
    watching = MemoryQueueEventEmitter()
    await orchestrator.subscribe(session_id, watching)

    assert orchestrator.stats()["subscribers"] == 1

    screener.release()
    await asyncio.wait_for(_drain(watching), timeout=5)
    await orchestrator.wait(session_id, timeout=5)

    assert orchestrator.stats()["subscribers"] == 0


async def test_subscribing_to_finished_session_registers_nothing():
    orchestrator = build_orchestrator()
    session_id = await orchestrator.submit(make_submission())
    await orchestrator.wait(session_id, timeout=5)

    await orchestrator.subscribe(session_id, NullEventEmitter())

    assert orchestrator.stats()["subscribers"] == 0
