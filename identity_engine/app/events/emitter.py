from __future__ import annotations

from typing import Protocol

from identity_engine.app.events.models import SessionEvent


class SessionEventEmitter(Protocol):
    """
    Interface for broadcasting session log entries.

    Implementations must be:
    - non-blocking (or minimally blocking)
    - fail-safe (emission failures must not affect the session)
    - observational only

    A closed emitter is dropped by the orchestrator and receives nothing
    further.
    """

    @property
    def closed(self) -> bool:
        ...

    async def emit(self, event: SessionEvent) -> None:
        ...


class NullEventEmitter:
    """
    A safe no-op emitter.

    Used when no client is streaming a session.
    """

    closed = False

    async def emit(self, event: SessionEvent) -> None:
        return
