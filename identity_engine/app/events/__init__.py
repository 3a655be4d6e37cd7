from .models import SessionEvent, SessionEventKind, TERMINAL_EVENT_KINDS
from .emitter import SessionEventEmitter, NullEventEmitter
from .memory_emitter import MemoryQueueEventEmitter

__all__ = [
    "SessionEvent",
    "SessionEventKind",
    "TERMINAL_EVENT_KINDS",
    "SessionEventEmitter",
    "NullEventEmitter",
    "MemoryQueueEventEmitter",
]
