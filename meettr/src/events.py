"""
Typed progress events and the ordered channel that carries them.

A session or job owns one EventChannel. Consumers either register a
callback or pull events with a blocking receive; both see the same order.
"""

import logging
import queue
import threading
from dataclasses import dataclass, field
from typing import Callable, ClassVar, List, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Event:
    """Base class for all events."""
    kind: ClassVar[str] = "event"


# Capture process (adapter-level) events

@dataclass(frozen=True)
class CaptureStarted(Event):
    kind: ClassVar[str] = "started"
    output_path: str


@dataclass(frozen=True)
class CaptureProgress(Event):
    kind: ClassVar[str] = "progress"
    seconds: float


@dataclass(frozen=True)
class CaptureStopped(Event):
    kind: ClassVar[str] = "stopped"
    output_path: str
    returncode: Optional[int] = None
    forced: bool = False


@dataclass(frozen=True)
class CaptureFailed(Event):
    kind: ClassVar[str] = "error"
    reason: str
    returncode: Optional[int] = None


# Recording session events

@dataclass(frozen=True)
class RecordingStarted(Event):
    kind: ClassVar[str] = "recording-started"
    output_path: str


@dataclass(frozen=True)
class RecordingProgress(Event):
    kind: ClassVar[str] = "recording-progress"
    seconds: float


@dataclass(frozen=True)
class RecordingPaused(Event):
    kind: ClassVar[str] = "recording-paused"
    gap: object = None


@dataclass(frozen=True)
class RecordingResumed(Event):
    kind: ClassVar[str] = "recording-resumed"
    segment: object = None


@dataclass(frozen=True)
class RecordingStopped(Event):
    kind: ClassVar[str] = "recording-stopped"
    duration: float
    gaps: Tuple = field(default_factory=tuple)
    segments: Tuple = field(default_factory=tuple)


@dataclass(frozen=True)
class RecordingGap(Event):
    kind: ClassVar[str] = "recording-gap"
    gap: object


@dataclass(frozen=True)
class RecordingError(Event):
    kind: ClassVar[str] = "recording-error"
    reason: str


# Transcription job events

@dataclass(frozen=True)
class SplitComplete(Event):
    kind: ClassVar[str] = "split-complete"
    chunk_count: int


@dataclass(frozen=True)
class ChunkStarted(Event):
    kind: ClassVar[str] = "chunk-start"
    index: int
    total: int


@dataclass(frozen=True)
class ChunkCompleted(Event):
    kind: ClassVar[str] = "chunk-complete"
    index: int
    total: int


@dataclass(frozen=True)
class ChunkFailed(Event):
    kind: ClassVar[str] = "chunk-error"
    index: int
    reason: str


@dataclass(frozen=True)
class TranscriptionComplete(Event):
    kind: ClassVar[str] = "complete"
    paths: Tuple[str, ...]
    elapsed: float


@dataclass(frozen=True)
class TranscriptionFailed(Event):
    kind: ClassVar[str] = "error"
    reason: str


class EventChannel:
    """Single ordered stream of events with callback and pull consumers."""

    def __init__(self, buffered: bool = True):
        """
        Args:
            buffered: Keep published events for receive() and drain(). Turn
                off when only callbacks consume the channel.
        """
        self.buffered = buffered
        self._queue: "queue.Queue[Event]" = queue.Queue()
        self._callbacks: List[Callable[[Event], None]] = []
        self._lock = threading.Lock()
        self._closed = False

    def subscribe(self, callback: Callable[[Event], None]) -> None:
        with self._lock:
            self._callbacks.append(callback)

    def publish(self, event: Event) -> None:
        # Publishing under the lock keeps callback order identical to queue order
        with self._lock:
            if self._closed:
                logger.debug("Dropping %s on closed channel", event.kind)
                return
            if self.buffered:
                self._queue.put(event)
            for callback in list(self._callbacks):
                try:
                    callback(event)
                except Exception:
                    logger.exception("Event callback failed for %s", event.kind)

    def receive(self, timeout: Optional[float] = None) -> Optional[Event]:
        """
        Block until the next event is available.

        Args:
            timeout: Seconds to wait, or None to wait forever.

        Returns:
            The next event, or None if the timeout expired.
        """
        if not self.buffered:
            return None
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> List[Event]:
        """Return every event currently queued without blocking."""
        events = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                return events

    def close(self) -> None:
        with self._lock:
            self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed
