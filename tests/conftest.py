"""Pytest configuration helpers."""

import itertools
import queue
import subprocess
import sys
import threading
from pathlib import Path

import pytest


def _ensure_repo_on_path() -> None:
    """Allow tests to import meettr without installing it."""
    repo_root = Path(__file__).resolve().parents[1]
    path_str = str(repo_root)
    if path_str not in sys.path:
        sys.path.insert(0, path_str)


_ensure_repo_on_path()

from meettr.src.capture import ProcessSpawnError  # noqa: E402

_pids = itertools.count(4000)


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeStderr:
    """Line stream that blocks until the fake process ends it."""

    def __init__(self):
        self._queue = queue.Queue()

    def push(self, line: str) -> None:
        self._queue.put(line)

    def end(self) -> None:
        self._queue.put(None)

    def __iter__(self):
        while True:
            line = self._queue.get(timeout=5)
            if line is None:
                return
            yield line

    def read(self) -> str:
        lines = []
        while True:
            try:
                line = self._queue.get_nowait()
            except queue.Empty:
                break
            if line is None:
                break
            lines.append(line)
        return "".join(lines)


class FakeStdin:
    def __init__(self, process):
        self._process = process
        self.written = []
        self.closed = False

    def write(self, data: str) -> None:
        if self._process.broken_stdin:
            raise BrokenPipeError("stdin closed")
        self.written.append(data)
        if data.strip() == "q":
            self._process.on_quit()

    def flush(self) -> None:
        pass

    def close(self) -> None:
        self.closed = True


class FakeProcess:
    """Stand-in for a subprocess.Popen capture process."""

    def __init__(self, args, quit_exits=True, startup_exit=None, broken_stdin=False):
        self.args = args
        self.pid = next(_pids)
        self.returncode = None
        self.quit_exits = quit_exits
        self.broken_stdin = broken_stdin
        self.terminated = False
        self.killed = False
        self.stderr = FakeStderr()
        self.stdin = FakeStdin(self)
        self._exited = threading.Event()
        if startup_exit is not None:
            self.stderr.push("Could not find audio device\n")
            self.exit(startup_exit)

    def exit(self, code: int) -> None:
        if self._exited.is_set():
            return
        self.returncode = code
        self.stderr.end()
        self._exited.set()

    def on_quit(self) -> None:
        if self.quit_exits:
            self.stderr.push("[q] command received. Exiting.\n")
            self.exit(0)

    def poll(self):
        return self.returncode if self._exited.is_set() else None

    def wait(self, timeout=None):
        if not self._exited.wait(timeout):
            raise subprocess.TimeoutExpired(self.args, timeout)
        return self.returncode

    def terminate(self) -> None:
        self.terminated = True
        self.exit(-15)

    def kill(self) -> None:
        self.killed = True
        self.exit(-9)


class FakeCapture:
    """Capture adapter double used by the session controller tests."""

    def __init__(self, mode, output_path, mic_device, loopback_device, listener, fail_start=False):
        self.mode = mode
        self.output_path = output_path
        self.mic_device = mic_device
        self.loopback_device = loopback_device
        self.listener = listener
        self.fail_start = fail_start
        self.pid = next(_pids)
        self.alive = False
        self.stopped = False
        self.forced = False
        self.on_stop = None

    @property
    def is_running(self) -> bool:
        return self.alive

    def start(self) -> None:
        if self.fail_start:
            raise ProcessSpawnError("FFmpeg exited with code 1 during startup")
        self.alive = True

    def stop(self, timeout=None) -> dict:
        if self.on_stop is not None:
            self.on_stop()
        self.stopped = True
        self.alive = False
        return {"success": True, "forced": False, "returncode": 0}

    def force_stop(self) -> None:
        self.forced = True
        self.alive = False


class CaptureFactory:
    def __init__(self):
        self.created = []
        self.fail_next = False

    def __call__(self, mode, output_path, mic_device, loopback_device, listener):
        capture = FakeCapture(
            mode, output_path, mic_device, loopback_device, listener,
            fail_start=self.fail_next,
        )
        self.fail_next = False
        self.created.append(capture)
        return capture

    @property
    def current(self) -> FakeCapture:
        return self.created[-1]


@pytest.fixture
def clock():
    return FakeClock(1000.0)


@pytest.fixture
def capture_factory():
    return CaptureFactory()


@pytest.fixture
def fake_popen():
    created = []

    def factory(args, **kwargs):
        process = FakeProcess(args, **factory.options)
        factory.kwargs = kwargs
        created.append(process)
        return process

    factory.options = {}
    factory.created = created
    return factory
