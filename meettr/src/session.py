"""
Recording session controller.

Owns one recording at a time: start, pause (ends the active segment and
opens a gap), resume (starts a new segment), stop (joins the segments), and
crash handling (a periodic liveness probe records the lost interval as a gap
and ends the recording).
"""

import logging
import os
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional

from .capture import CaptureMode, CaptureProcess, validate_devices
from .concat import ConcatenationError, concatenate_segments
from .events import (
    CaptureFailed,
    CaptureProgress,
    CaptureStopped,
    Event,
    EventChannel,
    RecordingError as RecordingErrorEvent,
    RecordingGap,
    RecordingPaused,
    RecordingProgress,
    RecordingResumed,
    RecordingStarted,
    RecordingStopped,
)
from .health import ProcessHealthCheck, default_health_check

logger = logging.getLogger(__name__)

DEFAULT_HEALTH_INTERVAL = 10.0


class RecordingError(Exception):
    """Exception raised for recording session failures."""
    pass


class SessionActiveError(RecordingError):
    """A recording session is already active."""
    pass


class InvalidStateError(RecordingError):
    """The operation is not allowed in the session's current state."""
    pass


class SessionState(str, Enum):
    IDLE = "idle"
    RECORDING = "recording"
    PAUSED = "paused"
    STOPPING = "stopping"
    STOPPED = "stopped"
    CRASHED = "crashed"


@dataclass(frozen=True)
class Segment:
    """One continuous capture-process output file."""
    path: str
    started_at: float
    index: int


@dataclass
class Gap:
    """An interval with no audio captured (pause or crash window)."""
    start: float
    end: Optional[float] = None
    duration: Optional[float] = None
    reason: str = "pause"

    @property
    def is_open(self) -> bool:
        return self.end is None

    def close(self, at: float) -> None:
        self.end = at
        self.duration = at - self.start

    def to_dict(self) -> Dict:
        return {"start": self.start, "end": self.end, "duration": self.duration, "reason": self.reason}


@dataclass
class RecordingSession:
    """State of one recording, returned by RecordingController.start()."""
    output_path: str
    mode: CaptureMode
    started_at: float
    mic_device: Optional[str] = None
    loopback_device: Optional[str] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    segments: List[Segment] = field(default_factory=list)
    gaps: List[Gap] = field(default_factory=list)
    state: SessionState = SessionState.IDLE
    stopped_at: Optional[float] = None
    last_alive_at: Optional[float] = None
    error: Optional[str] = None

    @property
    def open_gap(self) -> Optional[Gap]:
        if self.gaps and self.gaps[-1].is_open:
            return self.gaps[-1]
        return None

    def recorded_duration(self, now: float) -> float:
        """Wall-clock time since start minus every gap."""
        end = self.stopped_at if self.stopped_at is not None else now
        total = end - self.started_at
        for gap in self.gaps:
            if gap.is_open:
                total -= max(0.0, end - gap.start)
            else:
                total -= gap.duration
        return max(0.0, total)


@dataclass
class StopResult:
    """Outcome of RecordingController.stop()."""
    output_path: str
    duration: float
    gaps: List[Gap]
    segments: List[Segment]
    merge_error: Optional[str] = None
    crashed: bool = False

    @property
    def merged(self) -> bool:
        return self.merge_error is None


def segment_path(output_path: str, number: int) -> str:
    """Path of the ``number``-th segment file (the first uses ``output_path``)."""
    if number <= 1:
        return output_path
    stem, ext = os.path.splitext(output_path)
    return f"{stem}_segment{number}{ext}"


class RecordingController:
    """Drive a recording session across capture-process segments."""

    def __init__(
        self,
        events: Optional[EventChannel] = None,
        capture_factory: Optional[Callable[..., CaptureProcess]] = None,
        concatenator: Optional[Callable[[List[str]], str]] = None,
        health_check: Optional[ProcessHealthCheck] = None,
        health_interval: float = DEFAULT_HEALTH_INTERVAL,
        clock: Callable[[], float] = time.time,
        input_format: Optional[str] = None,
        ffmpeg: str = "ffmpeg",
        stop_timeout: float = 5.0
    ):
        """
        Initialize the controller.

        Args:
            events: Channel receiving Recording* events. Created if None.
            capture_factory: Builds a capture adapter from
                (mode, output_path, mic_device, loopback_device, listener).
            concatenator: Joins ordered segment paths into the first one.
            health_check: Liveness probe for the capture process.
            health_interval: Seconds between probes; 0 disables the timer.
            clock: Time source in seconds.
            input_format: FFmpeg capture input format for the default factory.
            ffmpeg: FFmpeg executable for the default factory and concatenator.
            stop_timeout: Graceful-stop timeout for the default factory.
        """
        self.events = events or EventChannel()
        self.health_check = health_check or default_health_check()
        self.health_interval = health_interval
        self.clock = clock
        self._ffmpeg = ffmpeg
        self._input_format = input_format
        self._stop_timeout = stop_timeout
        self._capture_factory = capture_factory or self._default_capture
        self._concatenator = concatenator or (lambda paths: concatenate_segments(paths, ffmpeg=ffmpeg))

        self._session: Optional[RecordingSession] = None
        self._capture = None
        self._progress_base = 0.0
        self._timer: Optional[threading.Timer] = None
        self._lock = threading.RLock()

    def _default_capture(self, mode, output_path, mic_device, loopback_device, listener):
        return CaptureProcess(
            mode,
            output_path,
            mic_device=mic_device,
            loopback_device=loopback_device,
            input_format=self._input_format,
            ffmpeg=self._ffmpeg,
            stop_timeout=self._stop_timeout,
            listener=listener,
        )

    @property
    def session(self) -> Optional[RecordingSession]:
        return self._session

    @property
    def state(self) -> SessionState:
        return self._session.state if self._session else SessionState.IDLE

    @property
    def is_active(self) -> bool:
        return self.state in (
            SessionState.RECORDING,
            SessionState.PAUSED,
            SessionState.STOPPING,
            SessionState.CRASHED,
        )

    def start(
        self,
        mode: CaptureMode,
        output_path: str,
        mic_device: Optional[str] = None,
        loopback_device: Optional[str] = None
    ) -> RecordingSession:
        """
        Start a new recording.

        Args:
            mode: Capture mode (mic, system, both).
            output_path: Final WAV path; also the first segment's path.
            mic_device: Microphone device identifier.
            loopback_device: System-loopback device identifier.

        Returns:
            The new RecordingSession.

        Raises:
            SessionActiveError: If a session has not been stopped yet.
            DeviceMissingError: If the mode's devices are not supplied.
            ProcessSpawnError: If the capture process fails to start.
        """
        with self._lock:
            if self.is_active:
                raise SessionActiveError("A recording is already in progress")

            mode = CaptureMode(mode)
            validate_devices(mode, mic_device, loopback_device)

            output_path = os.path.abspath(output_path)
            os.makedirs(os.path.dirname(output_path), exist_ok=True)

            now = self.clock()
            session = RecordingSession(
                output_path=output_path,
                mode=mode,
                started_at=now,
                mic_device=mic_device,
                loopback_device=loopback_device,
            )
            self._start_segment(session, output_path)

            session.state = SessionState.RECORDING
            session.last_alive_at = now
            self._session = session
            self._schedule_health_check()

        logger.info("Recording started (%s) -> %s", mode.value, output_path)
        self.events.publish(RecordingStarted(output_path=output_path))
        return session

    def pause(self) -> Gap:
        """
        Pause the recording: end the active segment and open a gap.

        Raises:
            InvalidStateError: If not recording.
        """
        with self._lock:
            session = self._require(SessionState.RECORDING, "pause")
            # Gap starts when the quit is sent
            gap = Gap(start=self.clock())
            self._capture.stop()
            self._capture = None

            session.gaps.append(gap)
            session.state = SessionState.PAUSED

        logger.info("Recording paused at %.1fs", session.recorded_duration(gap.start))
        self.events.publish(RecordingPaused(gap=gap))
        return gap

    def resume(self) -> Segment:
        """
        Resume a paused recording into a new segment file.

        Raises:
            InvalidStateError: If not paused.
            ProcessSpawnError: If the new capture process fails to start;
                the session stays paused.
        """
        with self._lock:
            session = self._require(SessionState.PAUSED, "resume")
            path = segment_path(session.output_path, len(session.segments) + 1)
            segment = self._start_segment(session, path)

            now = segment.started_at
            gap = session.open_gap
            if gap is not None:
                gap.close(now)
            session.state = SessionState.RECORDING
            session.last_alive_at = now

        logger.info("Recording resumed -> %s", path)
        self.events.publish(RecordingResumed(segment=segment))
        return segment

    def stop(self) -> StopResult:
        """
        Stop the recording and join its segments.

        A failed join does not fail the stop; the result carries
        ``merge_error`` and every segment file stays on disk.

        Raises:
            InvalidStateError: If no session is active.
        """
        with self._lock:
            session = self._session
            if session is None or not self.is_active:
                raise InvalidStateError("Cannot stop: no recording in progress")

            crashed = session.state == SessionState.CRASHED
            previous = session.state
            session.state = SessionState.STOPPING
            self._cancel_health_check()

            now = self.clock()
            if previous == SessionState.RECORDING and self._capture is not None:
                self._capture.stop()
            self._capture = None

            gap = session.open_gap
            if gap is not None:
                gap.close(now)
            if session.stopped_at is None:
                session.stopped_at = now

            merge_error = None
            if len(session.segments) > 1:
                try:
                    self._concatenator([s.path for s in session.segments])
                except (ConcatenationError, OSError) as e:
                    merge_error = str(e)
                    logger.warning("Segments left unjoined: %s", e)

            session.state = SessionState.STOPPED
            result = StopResult(
                output_path=session.output_path,
                duration=session.recorded_duration(now),
                gaps=list(session.gaps),
                segments=list(session.segments),
                merge_error=merge_error,
                crashed=crashed,
            )

        logger.info(
            "Recording stopped: %.1fs, %d segment(s), %d gap(s)",
            result.duration, len(result.segments), len(result.gaps),
        )
        self.events.publish(RecordingStopped(
            duration=result.duration,
            gaps=tuple(result.gaps),
            segments=tuple(result.segments),
        ))
        return result

    def status(self) -> Dict:
        """Snapshot of the current session for display."""
        session = self._session
        if session is None:
            return {"state": SessionState.IDLE.value, "elapsed": 0.0, "gaps": [], "segments": [], "pid": None}
        capture = self._capture
        return {
            "state": session.state.value,
            "id": session.id,
            "output_path": session.output_path,
            "mode": session.mode.value,
            "elapsed": session.recorded_duration(self.clock()),
            "gaps": [gap.to_dict() for gap in session.gaps],
            "segments": [s.path for s in session.segments],
            "pid": capture.pid if capture is not None else None,
            "error": session.error,
        }

    def check_health(self) -> bool:
        """
        Probe the capture process once.

        Returns:
            False if a crash was detected by this probe, True otherwise.
        """
        with self._lock:
            session = self._session
            if session is None or session.state != SessionState.RECORDING or self._capture is None:
                return True
            if self.health_check.is_alive(self._capture):
                session.last_alive_at = self.clock()
                return True
            self._handle_crash("Capture process is no longer running")
            return False

    def _require(self, state: SessionState, action: str) -> RecordingSession:
        session = self._session
        if session is None or session.state != state:
            current = session.state.value if session else SessionState.IDLE.value
            raise InvalidStateError(f"Cannot {action} while {current}")
        return session

    def _start_segment(self, session: RecordingSession, path: str) -> Segment:
        progress_base = session.recorded_duration(self.clock()) if session.segments else 0.0
        capture = self._capture_factory(
            session.mode,
            path,
            session.mic_device,
            session.loopback_device,
            self._on_capture_event,
        )
        capture.start()

        segment = Segment(path=path, started_at=self.clock(), index=len(session.segments))
        session.segments.append(segment)
        self._capture = capture
        self._progress_base = progress_base
        return segment

    def _on_capture_event(self, event: Event) -> None:
        # Runs on the capture reader thread
        if isinstance(event, CaptureProgress):
            session = self._session
            if session is not None and session.state == SessionState.RECORDING:
                session.last_alive_at = self.clock()
                self.events.publish(RecordingProgress(seconds=self._progress_base + event.seconds))
        elif isinstance(event, CaptureFailed):
            # pause/stop hold the lock while the reader drains; the next probe catches it
            if not self._lock.acquire(blocking=False):
                return
            try:
                session = self._session
                if session is not None and session.state == SessionState.RECORDING:
                    self._handle_crash(event.reason)
            finally:
                self._lock.release()
        elif isinstance(event, CaptureStopped):
            logger.debug("Capture segment closed: %s", event.output_path)

    def _handle_crash(self, reason: str) -> None:
        session = self._session
        now = self.clock()
        start = session.last_alive_at if session.last_alive_at is not None else now
        gap = Gap(start=start, reason="crash")
        gap.close(now)
        session.gaps.append(gap)
        session.stopped_at = now
        session.error = reason
        session.state = SessionState.CRASHED
        self._cancel_health_check()

        logger.error("Recording crashed: %s (lost %.1fs)", reason, gap.duration)
        self.events.publish(RecordingGap(gap=gap))

        capture, self._capture = self._capture, None
        if capture is not None:
            capture.force_stop()
        self.events.publish(RecordingErrorEvent(reason=reason))

    def _schedule_health_check(self) -> None:
        if self.health_interval <= 0:
            return
        self._timer = threading.Timer(self.health_interval, self._health_tick)
        self._timer.daemon = True
        self._timer.start()

    def _cancel_health_check(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _health_tick(self) -> None:
        self.check_health()
        with self._lock:
            if self._session is not None and self._session.state in (
                SessionState.RECORDING,
                SessionState.PAUSED,
            ):
                self._schedule_health_check()
