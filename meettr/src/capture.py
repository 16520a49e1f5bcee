"""
Capture process adapter using FFmpeg.

Runs one FFmpeg process per recording segment, capturing a microphone, a
system-loopback device, or both mixed together, into 48kHz stereo 16-bit
PCM WAV. Uncompressed output and wall-clock timestamps keep multi-hour
recordings free of codec and clock drift.
"""

import collections
import logging
import re
import subprocess
import sys
import threading
from enum import Enum
from typing import Callable, List, Optional

from .events import (
    CaptureFailed,
    CaptureProgress,
    CaptureStarted,
    CaptureStopped,
    Event,
)

logger = logging.getLogger(__name__)

# Output format
SAMPLE_RATE = 48000
CHANNELS = 2
SAMPLE_FORMAT = "s16"

# Input tuning
AUDIO_BUFFER_MS = 50
THREAD_QUEUE_SIZE = 512

# Gains: loopback sources are usually much quieter than microphones
MIC_GAIN = 3.0
SYSTEM_GAIN = 10.0
MIXED_MIC_GAIN = 1.5
MIXED_SYSTEM_GAIN = 3.0

STOP_TIMEOUT = 5.0
STARTUP_GRACE = 0.5

_PROGRESS_RE = re.compile(r"time=(\d{2}):(\d{2}):(\d{2})\.(\d{2})")
_QUIT_ACK_MARKERS = ("Exiting normally", "[q] command received")


class CaptureMode(str, Enum):
    """Which sources a recording captures."""
    MIC = "mic"
    SYSTEM = "system"
    BOTH = "both"


class CaptureError(Exception):
    """Exception raised when audio capture fails."""
    pass


class DeviceMissingError(CaptureError, ValueError):
    """A device required by the capture mode was not supplied."""
    pass


class ProcessSpawnError(CaptureError):
    """The capture process could not be started."""
    pass


def default_input_format() -> str:
    """Return the FFmpeg capture input format for this platform."""
    if sys.platform.startswith("win"):
        return "dshow"
    if sys.platform == "darwin":
        return "avfoundation"
    return "pulse"


def validate_devices(
    mode: CaptureMode,
    mic_device: Optional[str],
    loopback_device: Optional[str]
) -> None:
    """
    Check that the devices required by ``mode`` are present.

    Raises:
        DeviceMissingError: If a required device identifier is empty.
    """
    mode = CaptureMode(mode)
    if mode == CaptureMode.MIC and not mic_device:
        raise DeviceMissingError("Microphone device required for mic-only recording")
    if mode == CaptureMode.SYSTEM and not loopback_device:
        raise DeviceMissingError("Loopback device required for system-only recording")
    if mode == CaptureMode.BOTH and (not mic_device or not loopback_device):
        raise DeviceMissingError(
            "Both microphone and loopback devices required for mixed recording"
        )


def device_input_spec(input_format: str, device: str) -> str:
    """Format a device identifier the way the FFmpeg input device expects it."""
    if input_format == "dshow":
        return f"audio={device}"
    if input_format == "avfoundation":
        return device if device.startswith(":") else f":{device}"
    return device


def build_filter_graph(mode: CaptureMode) -> str:
    """Build the -filter_complex graph for a capture mode."""
    mode = CaptureMode(mode)
    if mode == CaptureMode.MIC:
        return f"[0:a]volume={MIC_GAIN},aresample={SAMPLE_RATE}"
    if mode == CaptureMode.SYSTEM:
        return (
            f"[0:a]volume={SYSTEM_GAIN},dynaudnorm=g=5:s=0.95:p=0.5,"
            f"aresample={SAMPLE_RATE}"
        )
    # Longest-duration mixing: output never ends before the longer input
    return (
        f"[0:a]volume={MIXED_MIC_GAIN},aresample={SAMPLE_RATE}[mic];"
        f"[1:a]volume={MIXED_SYSTEM_GAIN},aresample={SAMPLE_RATE}[sys];"
        f"[mic][sys]amix=inputs=2:duration=longest:dropout_transition=0"
    )


def build_capture_args(
    mode: CaptureMode,
    output_path: str,
    mic_device: Optional[str] = None,
    loopback_device: Optional[str] = None,
    input_format: Optional[str] = None,
    ffmpeg: str = "ffmpeg"
) -> List[str]:
    """
    Build the FFmpeg command line for one recording segment.

    Args:
        mode: Capture mode (mic, system, both).
        output_path: WAV file to write.
        mic_device: Microphone device identifier.
        loopback_device: System-loopback device identifier.
        input_format: FFmpeg input device format; platform default if None.
        ffmpeg: FFmpeg executable.

    Returns:
        Full argument list, executable first.
    """
    mode = CaptureMode(mode)
    validate_devices(mode, mic_device, loopback_device)
    input_format = input_format or default_input_format()

    devices = []
    if mode in (CaptureMode.MIC, CaptureMode.BOTH):
        devices.append(mic_device)
    if mode in (CaptureMode.SYSTEM, CaptureMode.BOTH):
        devices.append(loopback_device)

    cmd = [ffmpeg, "-hide_banner", "-stats"]
    for device in devices:
        cmd.extend(["-f", input_format])
        if input_format == "dshow":
            cmd.extend(["-audio_buffer_size", str(AUDIO_BUFFER_MS)])
        cmd.extend([
            "-thread_queue_size", str(THREAD_QUEUE_SIZE),
            "-use_wallclock_as_timestamps", "1",
            "-fflags", "+genpts",
            "-i", device_input_spec(input_format, device),
        ])

    cmd.extend([
        "-filter_complex", build_filter_graph(mode),
        "-ar", str(SAMPLE_RATE),
        "-ac", str(CHANNELS),
        "-sample_fmt", SAMPLE_FORMAT,
        "-f", "wav",
        "-y",
        output_path,
    ])
    return cmd


def parse_progress(line: str) -> Optional[float]:
    """Extract elapsed seconds from an FFmpeg status line, if present."""
    match = _PROGRESS_RE.search(line)
    if not match:
        return None
    hours, minutes, seconds, centis = (int(g) for g in match.groups())
    return hours * 3600 + minutes * 60 + seconds + centis / 100


class CaptureProcess:
    """Spawn and supervise the FFmpeg process for one recording segment."""

    def __init__(
        self,
        mode: CaptureMode,
        output_path: str,
        mic_device: Optional[str] = None,
        loopback_device: Optional[str] = None,
        input_format: Optional[str] = None,
        ffmpeg: str = "ffmpeg",
        stop_timeout: float = STOP_TIMEOUT,
        startup_grace: float = STARTUP_GRACE,
        listener: Optional[Callable[[Event], None]] = None,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen
    ):
        """
        Initialize the capture process adapter.

        Args:
            mode: Capture mode (mic, system, both).
            output_path: WAV file this segment is written to.
            mic_device: Microphone device identifier.
            loopback_device: System-loopback device identifier.
            input_format: FFmpeg input device format; platform default if None.
            ffmpeg: FFmpeg executable.
            stop_timeout: Seconds to wait for a graceful quit before killing.
            startup_grace: Seconds the process must survive to count as started.
            listener: Receives CaptureStarted/Progress/Stopped/Failed events.
            popen: Process factory, replaceable for tests.
        """
        self.mode = CaptureMode(mode)
        self.output_path = output_path
        self.mic_device = mic_device
        self.loopback_device = loopback_device
        self.input_format = input_format or default_input_format()
        self.ffmpeg = ffmpeg
        self.stop_timeout = stop_timeout
        self.startup_grace = startup_grace
        self.listener = listener
        self._popen = popen

        self.process = None
        self.last_progress: float = 0.0
        self._reader: Optional[threading.Thread] = None
        self._stderr_tail = collections.deque(maxlen=40)
        self._lock = threading.Lock()
        self._quit_requested = False
        self._quit_acknowledged = False
        self._forced = False
        self._exit_reported = False

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process is not None else None

    @property
    def is_running(self) -> bool:
        return self.process is not None and self.process.poll() is None

    @property
    def quit_acknowledged(self) -> bool:
        return self._quit_acknowledged

    @property
    def stderr_tail(self) -> str:
        return "\n".join(self._stderr_tail)

    def build_args(self) -> List[str]:
        return build_capture_args(
            self.mode,
            self.output_path,
            mic_device=self.mic_device,
            loopback_device=self.loopback_device,
            input_format=self.input_format,
            ffmpeg=self.ffmpeg,
        )

    def start(self) -> None:
        """
        Spawn FFmpeg and wait out the startup grace period.

        Raises:
            CaptureError: If this adapter already ran a process.
            DeviceMissingError: If the mode's devices are not supplied.
            ProcessSpawnError: If FFmpeg is missing or exits immediately.
        """
        if self.process is not None:
            raise CaptureError("Capture process already started")

        cmd = self.build_args()
        logger.debug("Starting capture: %s", " ".join(cmd))

        try:
            self.process = self._popen(
                cmd,
                stdin=subprocess.PIPE,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except FileNotFoundError:
            raise ProcessSpawnError(f"FFmpeg not found: {self.ffmpeg}")
        except OSError as e:
            raise ProcessSpawnError(f"FFmpeg spawn failed: {e}")

        try:
            returncode = self.process.wait(timeout=self.startup_grace)
        except subprocess.TimeoutExpired:
            returncode = None

        if returncode is not None:
            stderr = self.process.stderr.read() if self.process.stderr else ""
            self._exit_reported = True
            raise ProcessSpawnError(
                f"FFmpeg exited with code {returncode} during startup: {stderr[-500:]}"
            )

        self._reader = threading.Thread(
            target=self._read_stderr,
            name=f"capture-stderr-{self.process.pid}",
            daemon=True,
        )
        self._reader.start()

        logger.info("Capture started (pid %s) -> %s", self.process.pid, self.output_path)
        self._emit(CaptureStarted(output_path=self.output_path))

    def stop(self, timeout: Optional[float] = None) -> dict:
        """
        Stop the capture gracefully.

        Sends FFmpeg's interactive quit command so the WAV header is
        finalized, then force-kills if it has not exited within the timeout.

        Args:
            timeout: Seconds to wait; defaults to stop_timeout.

        Returns:
            Dictionary with success, forced and returncode.
        """
        if not self.is_running:
            return {"success": False, "error": "No recording in progress"}

        timeout = self.stop_timeout if timeout is None else timeout
        with self._lock:
            self._quit_requested = True

        try:
            self.process.stdin.write("q\n")
            self.process.stdin.flush()
            self.process.stdin.close()
            logger.debug("Sent quit command to FFmpeg (pid %s)", self.process.pid)
        except (OSError, ValueError, AttributeError):
            logger.warning("FFmpeg stdin unavailable, terminating pid %s", self.process.pid)
            self.process.terminate()

        try:
            returncode = self.process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            logger.warning("Graceful shutdown timed out after %ss, killing FFmpeg", timeout)
            with self._lock:
                self._forced = True
            self.process.kill()
            returncode = self.process.wait()

        self._join_reader()
        return {"success": True, "forced": self._forced, "returncode": returncode}

    def force_stop(self) -> None:
        """Terminate the process immediately without the quit handshake."""
        with self._lock:
            self._quit_requested = True
            self._forced = True
        if self.is_running:
            self.process.terminate()
            try:
                self.process.wait(timeout=self.stop_timeout)
            except subprocess.TimeoutExpired:
                self.process.kill()
                self.process.wait()
        self._join_reader()

    def _join_reader(self) -> None:
        if self._reader is not None and self._reader is not threading.current_thread():
            self._reader.join(timeout=2.0)

    def _read_stderr(self) -> None:
        """Drain FFmpeg's status stream until the process exits."""
        # Text mode splits on the carriage returns FFmpeg uses for status lines
        for line in self.process.stderr:
            line = line.rstrip()
            if not line:
                continue
            self._stderr_tail.append(line)
            if any(marker in line for marker in _QUIT_ACK_MARKERS):
                self._quit_acknowledged = True

            seconds = parse_progress(line)
            if seconds is not None:
                self.last_progress = seconds
                self._emit(CaptureProgress(seconds=seconds))
            else:
                logger.debug("ffmpeg: %s", line[:300])

        self._report_exit(self.process.wait())

    def _report_exit(self, returncode: int) -> None:
        with self._lock:
            if self._exit_reported:
                return
            self._exit_reported = True
            expected = self._quit_requested
            acknowledged = self._quit_acknowledged
            forced = self._forced

        if expected or returncode == 0:
            if expected and not acknowledged and not forced and returncode != 0:
                logger.warning(
                    "FFmpeg exited with code %s before acknowledging quit; %s may be truncated",
                    returncode, self.output_path,
                )
            logger.info(
                "Capture stopped (code %s, acknowledged=%s, forced=%s)",
                returncode, acknowledged, forced,
            )
            self._emit(CaptureStopped(
                output_path=self.output_path,
                returncode=returncode,
                forced=forced,
            ))
        else:
            reason = f"FFmpeg exited unexpectedly with code {returncode}: {self.stderr_tail[-500:]}"
            logger.error(reason)
            self._emit(CaptureFailed(reason=reason, returncode=returncode))

    def _emit(self, event: Event) -> None:
        if self.listener is not None:
            self.listener(event)
