import pytest

from meettr.src.capture import DeviceMissingError, ProcessSpawnError
from meettr.src.concat import ConcatenationError
from meettr.src.events import (
    CaptureFailed,
    CaptureProgress,
    EventChannel,
    RecordingError,
    RecordingGap,
    RecordingPaused,
    RecordingProgress,
    RecordingResumed,
    RecordingStarted,
    RecordingStopped,
)
from meettr.src.health import ExitCodeHealthCheck
from meettr.src.session import (
    InvalidStateError,
    RecordingController,
    SessionActiveError,
    SessionState,
    segment_path,
)


@pytest.fixture
def concatenated():
    return []


@pytest.fixture
def controller(clock, capture_factory, concatenated):
    def concatenator(paths):
        concatenated.append(list(paths))
        return paths[0]

    return RecordingController(
        events=EventChannel(),
        capture_factory=capture_factory,
        concatenator=concatenator,
        health_check=ExitCodeHealthCheck(),
        health_interval=0,
        clock=clock,
    )


def _kinds(controller):
    return [type(e) for e in controller.events.drain()]


def test_start_records_first_segment(controller, capture_factory, tmp_path):
    output = str(tmp_path / "meeting.wav")

    session = controller.start("mic", output, mic_device="Built-in Microphone")

    assert controller.state == SessionState.RECORDING
    assert [s.path for s in session.segments] == [output]
    assert capture_factory.current.output_path == output
    assert capture_factory.current.mic_device == "Built-in Microphone"
    assert _kinds(controller) == [RecordingStarted]


@pytest.mark.parametrize("mode, mic, loopback", [
    ("mic", None, "Stereo Mix"),
    ("system", "Mic", None),
    ("both", "Mic", None),
    ("both", None, "Stereo Mix"),
])
def test_start_requires_devices_for_mode(controller, capture_factory, tmp_path, mode, mic, loopback):
    with pytest.raises(DeviceMissingError):
        controller.start(mode, str(tmp_path / "m.wav"), mic_device=mic, loopback_device=loopback)

    assert capture_factory.created == []
    assert controller.state == SessionState.IDLE


def test_second_start_fails_fast(controller, tmp_path):
    controller.start("mic", str(tmp_path / "a.wav"), mic_device="Mic")

    with pytest.raises(SessionActiveError):
        controller.start("mic", str(tmp_path / "b.wav"), mic_device="Mic")


def test_spawn_failure_leaves_controller_idle(controller, capture_factory, tmp_path):
    capture_factory.fail_next = True

    with pytest.raises(ProcessSpawnError):
        controller.start("mic", str(tmp_path / "a.wav"), mic_device="Mic")

    assert controller.state == SessionState.IDLE
    controller.start("mic", str(tmp_path / "a.wav"), mic_device="Mic")


def test_pause_and_resume_records_gap(controller, clock, capture_factory, tmp_path):
    output = str(tmp_path / "meeting.wav")
    controller.start("both", output, mic_device="Mic", loopback_device="Stereo Mix")
    first = capture_factory.current

    clock.advance(10)
    gap = controller.pause()
    assert first.stopped
    assert controller.state == SessionState.PAUSED
    assert gap.end is None

    clock.advance(5)
    segment = controller.resume()

    assert (gap.start, gap.end, gap.duration) == (1010.0, 1015.0, 5.0)
    assert segment.path == str(tmp_path / "meeting_segment2.wav")
    assert segment.index == 1
    assert capture_factory.current.output_path == segment.path
    assert controller.state == SessionState.RECORDING
    assert _kinds(controller) == [RecordingStarted, RecordingPaused, RecordingResumed]


@pytest.mark.parametrize("pauses", [1, 2, 4])
def test_n_pauses_yield_n_gaps_and_n_plus_one_segments(controller, clock, tmp_path, concatenated, pauses):
    controller.start("mic", str(tmp_path / "m.wav"), mic_device="Mic")
    for i in range(pauses):
        clock.advance(30)
        controller.pause()
        clock.advance(i + 1)
        controller.resume()
    clock.advance(30)

    result = controller.stop()

    assert len(result.segments) == pauses + 1
    assert len(result.gaps) == pauses
    assert [g.duration for g in result.gaps] == [float(i + 1) for i in range(pauses)]
    assert result.duration == pytest.approx(30.0 * (pauses + 1))
    assert concatenated == [[s.path for s in result.segments]]


def test_pause_and_resume_require_matching_state(controller, tmp_path):
    with pytest.raises(InvalidStateError):
        controller.pause()

    controller.start("mic", str(tmp_path / "m.wav"), mic_device="Mic")
    with pytest.raises(InvalidStateError):
        controller.resume()

    controller.pause()
    with pytest.raises(InvalidStateError):
        controller.pause()


def test_stop_when_idle_fails(controller):
    with pytest.raises(InvalidStateError):
        controller.stop()


def test_stop_single_segment_skips_concatenation(controller, clock, capture_factory, tmp_path, concatenated):
    controller.start("mic", str(tmp_path / "m.wav"), mic_device="Mic")
    clock.advance(42)

    result = controller.stop()

    assert capture_factory.current.stopped
    assert concatenated == []
    assert result.duration == 42.0
    assert result.merge_error is None
    assert controller.state == SessionState.STOPPED
    events = controller.events.drain()
    assert isinstance(events[-1], RecordingStopped)
    assert events[-1].duration == 42.0


def test_stop_while_paused_closes_gap(controller, clock, tmp_path):
    controller.start("mic", str(tmp_path / "m.wav"), mic_device="Mic")
    clock.advance(20)
    controller.pause()
    clock.advance(7)

    result = controller.stop()

    assert result.gaps[0].duration == 7.0
    assert result.duration == 20.0


def test_concatenation_failure_is_soft(clock, capture_factory, tmp_path):
    def concatenator(paths):
        raise ConcatenationError("FFmpeg concat failed (exit code 1)")

    controller = RecordingController(
        capture_factory=capture_factory,
        concatenator=concatenator,
        health_check=ExitCodeHealthCheck(),
        health_interval=0,
        clock=clock,
    )
    controller.start("mic", str(tmp_path / "m.wav"), mic_device="Mic")
    controller.pause()
    controller.resume()

    result = controller.stop()

    assert result.merge_error == "FFmpeg concat failed (exit code 1)"
    assert not result.merged
    assert len(result.segments) == 2
    assert controller.state == SessionState.STOPPED


def test_os_error_while_joining_is_soft(clock, capture_factory, tmp_path):
    def concatenator(paths):
        raise PermissionError(13, "The process cannot access the file", paths[0])

    controller = RecordingController(
        events=EventChannel(),
        capture_factory=capture_factory,
        concatenator=concatenator,
        health_check=ExitCodeHealthCheck(),
        health_interval=0,
        clock=clock,
    )
    controller.start("mic", str(tmp_path / "m.wav"), mic_device="Mic")
    controller.pause()
    controller.resume()

    result = controller.stop()

    assert "cannot access" in result.merge_error
    assert controller.state == SessionState.STOPPED
    assert isinstance(controller.events.drain()[-1], RecordingStopped)


def test_stop_latency_is_not_recorded(controller, clock, capture_factory, tmp_path):
    controller.start("mic", str(tmp_path / "m.wav"), mic_device="Mic")
    clock.advance(10)
    capture_factory.current.on_stop = lambda: clock.advance(4)

    gap = controller.pause()
    assert gap.start == 1010.0

    clock.advance(6)
    controller.resume()
    assert (gap.end, gap.duration) == (1020.0, 10.0)

    clock.advance(20)
    capture_factory.current.on_stop = lambda: clock.advance(4)
    result = controller.stop()

    assert controller.session.stopped_at == 1040.0
    assert result.duration == 30.0


def test_health_probe_detects_crash(controller, clock, capture_factory, tmp_path):
    controller.start("mic", str(tmp_path / "m.wav"), mic_device="Mic")
    clock.advance(10)
    assert controller.check_health()

    clock.advance(10)
    capture_factory.current.alive = False
    clock.advance(3)

    assert controller.check_health() is False
    session = controller.session
    assert controller.state == SessionState.CRASHED
    crash_gap = session.gaps[-1]
    assert (crash_gap.start, crash_gap.end) == (1010.0, 1023.0)
    assert crash_gap.reason == "crash"
    assert capture_factory.current.forced

    events = controller.events.drain()
    kinds = [type(e) for e in events]
    assert kinds == [RecordingStarted, RecordingGap, RecordingError]
    assert events[1].gap is crash_gap


def test_crashed_session_can_be_stopped(controller, clock, capture_factory, tmp_path):
    controller.start("mic", str(tmp_path / "m.wav"), mic_device="Mic")
    clock.advance(10)
    capture_factory.current.alive = False
    controller.check_health()

    with pytest.raises(SessionActiveError):
        controller.start("mic", str(tmp_path / "n.wav"), mic_device="Mic")

    clock.advance(60)
    result = controller.stop()

    assert result.crashed
    assert result.duration == 0.0
    assert controller.state == SessionState.STOPPED


def test_health_probe_ignored_while_paused(controller, capture_factory, tmp_path):
    controller.start("mic", str(tmp_path / "m.wav"), mic_device="Mic")
    controller.pause()

    assert controller.check_health()
    assert controller.state == SessionState.PAUSED


def test_capture_failure_event_triggers_crash(controller, capture_factory, tmp_path):
    controller.start("mic", str(tmp_path / "m.wav"), mic_device="Mic")

    capture_factory.current.listener(CaptureFailed(reason="FFmpeg exited unexpectedly", returncode=1))

    assert controller.state == SessionState.CRASHED
    assert controller.session.error == "FFmpeg exited unexpectedly"


def test_progress_is_session_relative(controller, clock, capture_factory, tmp_path):
    controller.start("mic", str(tmp_path / "m.wav"), mic_device="Mic")
    clock.advance(30)
    controller.pause()
    clock.advance(100)
    controller.resume()
    controller.events.drain()

    capture_factory.current.listener(CaptureProgress(seconds=5.0))

    (event,) = controller.events.drain()
    assert isinstance(event, RecordingProgress)
    assert event.seconds == 35.0


def test_status_snapshot(controller, clock, capture_factory, tmp_path):
    assert controller.status()["state"] == "idle"
    controller.start("system", str(tmp_path / "m.wav"), loopback_device="Stereo Mix")
    clock.advance(12)

    status = controller.status()

    assert status["state"] == "recording"
    assert status["mode"] == "system"
    assert status["elapsed"] == 12.0
    assert status["pid"] == capture_factory.current.pid


def test_segment_path_naming():
    assert segment_path("/rec/meeting.wav", 1) == "/rec/meeting.wav"
    assert segment_path("/rec/meeting.wav", 3) == "/rec/meeting_segment3.wav"
