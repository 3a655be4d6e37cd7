from __future__ import annotations

import asyncio
from typing import AsyncIterator, Optional

from identity_engine.app.events.models import SessionEvent, TERMINAL_EVENT_KINDS
from identity_engine.app.events.emitter import SessionEventEmitter


class MemoryQueueEventEmitter(SessionEventEmitter):
    """
    Per-subscriber buffer of one session's log, used for SSE streaming.

    Properties:
    - single-consumer, single-session
    - replay and live delivery may overlap; entries at or below the last
      delivered sequence are dropped, so each entry is yielded exactly once
      and in log order
    - terminates when the session reaches a terminal state or the consumer
      disconnects (`close()`)
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[SessionEvent | None] = asyncio.Queue()
        self._closed = False
        self._session_id: Optional[str] = None
        self._last_sequence = -1

    @property
    def closed(self) -> bool:
        return self._closed

    async def emit(self, event: SessionEvent) -> None:
        if self._closed:
            return

        if self._session_id is None:
            self._session_id = event.session_id
        elif event.session_id != self._session_id:
            raise ValueError(
                f"emitter bound to session {self._session_id}, "
                f"got {event.session_id}"
            )

        if event.sequence <= self._last_sequence:
            return
        self._last_sequence = event.sequence

        await self._queue.put(event)

        if event.kind in TERMINAL_EVENT_KINDS:
            await self.close()

    async def close(self) -> None:
        if not self._closed:
            self._closed = True
            await self._queue.put(None)

    async def stream(self) -> AsyncIterator[SessionEvent]:
        """
        Async generator yielding emitted events in order.
        """
        while True:
            event = await self._queue.get()
            if event is None:
                break
            yield event
