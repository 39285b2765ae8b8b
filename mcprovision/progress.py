"""
Progress events and cancellation shared between fetch workers and whatever
renders them (the CLI's tqdm bars, or a GUI).

Publishing never blocks: the queue sink keeps a bounded buffer and drops the
oldest pending update when it is full.
"""
import asyncio
import collections
import enum
import logging
import threading
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Deque, List, Optional, Protocol

log = logging.getLogger(__name__)


class ProgressStatus(enum.Enum):
    IN_PROGRESS = 'in_progress'
    COMPLETED = 'completed'
    FAILED = 'failed'
    CANCELLED = 'cancelled'


@dataclass(frozen=True)
class ProgressEvent:
    """
    One progress update.

    ``artifact_id`` is None for run-level events; a run-level event with a
    terminal status is the last one a run publishes. ``completed`` and
    ``total`` always carry the run's artifact counts at publish time.
    """
    artifact_id: Optional[str]
    bytes_done: int = 0
    bytes_total: Optional[int] = None
    status: ProgressStatus = ProgressStatus.IN_PROGRESS
    reason: Optional[str] = None
    completed: int = 0
    total: int = 0
    skipped: bool = False

    @property
    def final(self) -> bool:
        return self.artifact_id is None and self.status is not ProgressStatus.IN_PROGRESS


class ProgressSink(Protocol):
    def publish(self, event: ProgressEvent) -> None:
        """Must return immediately."""


class NullProgressSink:
    def publish(self, event: ProgressEvent) -> None:
        pass


class QueueProgressSink:
    """Bounded buffer of events consumed with ``get()`` or ``async for``."""

    def __init__(self, maxsize: int = 1024):
        if maxsize < 1:
            raise ValueError("maxsize must be at least 1")
        self.maxsize = maxsize
        self.dropped = 0
        self._events: Deque[ProgressEvent] = collections.deque(maxlen=maxsize)
        self._ready: Optional[asyncio.Event] = None
        self._closed = False

    def __len__(self) -> int:
        return len(self._events)

    def publish(self, event: ProgressEvent) -> None:
        if self._closed:
            return
        if len(self._events) == self.maxsize:
            self.dropped += 1
        self._events.append(event)
        if self._ready is not None:
            self._ready.set()

    def get_nowait(self) -> Optional[ProgressEvent]:
        if self._events:
            return self._events.popleft()
        return None

    async def get(self) -> Optional[ProgressEvent]:
        """Waits for the next event; returns None once closed and drained."""
        while not self._events:
            if self._closed:
                return None
            if self._ready is None:
                self._ready = asyncio.Event()
            self._ready.clear()
            await self._ready.wait()
        return self._events.popleft()

    def close(self) -> None:
        self._closed = True
        if self._ready is not None:
            self._ready.set()

    async def __aiter__(self) -> AsyncIterator[ProgressEvent]:
        while True:
            event = await self.get()
            if event is None:
                return
            yield event


class CancelToken:
    """
    Cancellation flag that may be set from any thread.

    Callbacks run synchronously inside ``cancel()``, on the cancelling
    thread; loop-bound listeners should hop over with
    ``loop.call_soon_threadsafe``.
    """

    def __init__(self):
        self._cancelled = False
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
            callbacks = list(self._callbacks)
        log.info("Cancellation requested.")
        for callback in callbacks:
            callback()

    def add_callback(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Registers ``callback`` and returns a function that unregisters it."""
        with self._lock:
            self._callbacks.append(callback)

        def _remove():
            with self._lock:
                if callback in self._callbacks:
                    self._callbacks.remove(callback)
        return _remove
