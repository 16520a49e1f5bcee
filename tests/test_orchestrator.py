import json
import os

import pytest

from meettr.src import transcriber
from meettr.src.events import (
    ChunkCompleted,
    ChunkFailed,
    ChunkStarted,
    SplitComplete,
    TranscriptionComplete,
    TranscriptionFailed,
)
from meettr.src.orchestrator import (
    JobInProgressError,
    JobStatus,
    TranscriptionJobError,
    TranscriptionOrchestrator,
)
from meettr.src.processor import AudioProcessingError
from meettr.src.remote import ApiKeyPool, RateLimitedError, RemoteWorkerPool
from meettr.src.transcriber import ChunkProcessingError, LocalTranscriber
from meettr.src.transcript import Chunk, ChunkTranscript, TranscriptSegment


class FakeProcessor:
    def __init__(self, count, duration=60, error=None):
        self.count = count
        self.duration = duration
        self.error = error
        self.cleaned = []

    def split_into_chunks(self, audio_path, chunk_duration=60, output_dir=None):
        if self.error:
            raise AudioProcessingError(self.error)
        chunks = []
        for i in range(self.count):
            path = os.path.join(output_dir, f"chunk_{i:03d}.wav")
            with open(path, "wb") as f:
                f.write(b"RIFF")
            chunks.append(Chunk(path=path, index=i, duration=chunk_duration))
        return chunks

    def cleanup(self, path):
        self.cleaned.append(os.path.basename(path))


class FakeLocal:
    """Returns one segment per chunk; fails for chunk indices in ``failing``."""

    def __init__(self, failing=(), on_call=None):
        self.failing = set(failing)
        self.on_call = on_call
        self.calls = []

    def transcribe(self, chunk_path):
        index = int(os.path.basename(chunk_path)[6:9])
        self.calls.append(index)
        if self.on_call:
            self.on_call()
        if index in self.failing:
            raise ChunkProcessingError(f"engine crashed on chunk {index}")
        return _transcript(f"local {index}")


class FakeRemote:
    def __init__(self, raise_for=(), unexpected_for=()):
        self.raise_for = set(raise_for)
        self.unexpected_for = set(unexpected_for)

    def transcribe(self, chunk_path, api_key):
        index = int(os.path.basename(chunk_path)[6:9])
        if index in self.unexpected_for:
            raise RuntimeError("worker pool broke")
        if index in self.raise_for:
            raise RateLimitedError("Rate limited (HTTP 429)")
        return _transcript(f"remote {index}")


def _transcript(text):
    return ChunkTranscript(
        text=text,
        language="en",
        segments=[TranscriptSegment(start=0.0, end=2.0, text=text)],
    )


def _orchestrator(tmp_path, processor, local=None, remote=None, **kwargs):
    return TranscriptionOrchestrator(
        processor=processor,
        local=local or FakeLocal(),
        remote=remote,
        temp_dir=str(tmp_path / "work"),
        **kwargs
    )


def _pool(keys, fake, **kwargs):
    kwargs.setdefault("max_concurrent", 1)
    return RemoteWorkerPool(ApiKeyPool(keys), fake, sleep=lambda s: None, **kwargs)


def test_sequential_job_merges_in_global_time(tmp_path):
    processor = FakeProcessor(3)
    orchestrator = _orchestrator(tmp_path, processor)

    job = orchestrator.process_audio("meeting.wav")

    assert job.status == JobStatus.COMPLETED
    assert job.strategy == "sequential"
    result = job.result
    assert [s.start for s in result.segments] == [0.0, 60.0, 120.0]
    assert result.text == "local 0 local 1 local 2"
    assert result.chunk_count == 3
    assert processor.cleaned == ["chunk_000.wav", "chunk_001.wav", "chunk_002.wav"]
    assert not orchestrator.is_processing
    assert os.listdir(tmp_path / "work") == []


def test_chunk_failure_is_isolated(tmp_path):
    orchestrator = _orchestrator(tmp_path, FakeProcessor(3), local=FakeLocal(failing={1}))

    job = orchestrator.process_audio("meeting.wav")

    assert job.status == JobStatus.COMPLETED
    assert job.failed == {1: "engine crashed on chunk 1"}
    assert job.result.text == "local 0 local 2"
    assert job.result.chunk_count == 3
    events = orchestrator.events.drain()
    assert [type(e) for e in events] == [
        SplitComplete,
        ChunkStarted, ChunkCompleted,
        ChunkStarted, ChunkFailed,
        ChunkStarted, ChunkCompleted,
        TranscriptionComplete,
    ]


def test_every_chunk_failing_still_completes(tmp_path):
    orchestrator = _orchestrator(tmp_path, FakeProcessor(2), local=FakeLocal(failing={0, 1}))

    job = orchestrator.process_audio("meeting.wav")

    assert job.status == JobStatus.COMPLETED
    assert job.result.text == ""
    assert job.result.language == "unknown"
    assert job.result.chunk_count == 2
    assert job.result.segment_count == 0


def test_parallel_when_keys_are_configured(tmp_path):
    local = FakeLocal()
    remote = _pool(["k1", "k2"], FakeRemote(), max_concurrent=2)
    orchestrator = _orchestrator(tmp_path, FakeProcessor(5), local=local, remote=remote)

    job = orchestrator.process_audio("meeting.wav")

    assert job.strategy == "parallel"
    assert not job.fell_back
    assert local.calls == []
    assert job.result.text == " ".join(f"remote {i}" for i in range(5))
    assert [s.start for s in job.result.segments] == [0.0, 60.0, 120.0, 180.0, 240.0]


def test_parallel_chunk_failure_excluded(tmp_path):
    remote = _pool(["k1", "k2"], FakeRemote(raise_for={2}), max_retries=3)
    orchestrator = _orchestrator(tmp_path, FakeProcessor(3), remote=remote)

    job = orchestrator.process_audio("meeting.wav")

    assert list(job.failed) == [2]
    assert "after 4 attempt(s)" in job.failed[2]
    assert job.result.text == "remote 0 remote 1"


def test_empty_key_pool_runs_locally(tmp_path):
    local = FakeLocal()
    orchestrator = _orchestrator(tmp_path, FakeProcessor(2), local=local, remote=_pool([], FakeRemote()))

    job = orchestrator.process_audio("meeting.wav")

    assert job.strategy == "sequential"
    assert local.calls == [0, 1]


def test_pool_error_falls_back_for_unattempted_chunks(tmp_path):
    local = FakeLocal()
    remote = _pool(["k1"], FakeRemote(unexpected_for={2}))
    orchestrator = _orchestrator(tmp_path, FakeProcessor(4), local=local, remote=remote)

    job = orchestrator.process_audio("meeting.wav")

    assert job.fell_back
    assert local.calls == [2, 3]
    assert job.result.text == "remote 0 remote 1 local 2 local 3"
    assert job.status == JobStatus.COMPLETED


def test_outputs_written(tmp_path):
    out = tmp_path / "out"
    orchestrator = _orchestrator(tmp_path, FakeProcessor(2), markdown=True)

    job = orchestrator.process_audio("meeting.wav", output_dir=str(out))

    assert sorted(os.path.basename(p) for p in job.paths) == [
        "transcript.json", "transcript.md", "transcript.txt",
    ]
    data = json.loads((out / "transcript.json").read_text(encoding="utf-8"))
    assert data["chunkCount"] == 2
    assert (out / "transcript.txt").read_text(encoding="utf-8").splitlines() == [
        "[00:00:00] local 0",
        "[00:01:00] local 1",
    ]
    complete = orchestrator.events.drain()[-1]
    assert isinstance(complete, TranscriptionComplete)
    assert len(complete.paths) == 3


def test_split_failure_fails_job(tmp_path):
    orchestrator = _orchestrator(tmp_path, FakeProcessor(0, error="FFmpeg split failed"))

    with pytest.raises(TranscriptionJobError):
        orchestrator.process_audio("meeting.wav")

    job = orchestrator.current_job
    assert job.status == JobStatus.FAILED
    assert job.error == "FFmpeg split failed"
    assert isinstance(orchestrator.events.drain()[-1], TranscriptionFailed)
    assert not orchestrator.is_processing


def test_second_job_rejected_while_running(tmp_path):
    rejected = []

    def reenter():
        if not rejected:
            with pytest.raises(JobInProgressError):
                orchestrator.process_audio("other.wav")
            rejected.append(orchestrator.status())

    orchestrator = _orchestrator(tmp_path, FakeProcessor(1), local=FakeLocal(on_call=reenter))

    job = orchestrator.process_audio("meeting.wav")

    assert job.status == JobStatus.COMPLETED
    assert rejected[0]["is_processing"] is True
    assert rejected[0]["audio_path"] == "meeting.wav"


def test_unlaunchable_local_engine_fails_only_the_chunk(tmp_path, monkeypatch):
    def run(cmd, **kwargs):
        raise PermissionError(13, "Permission denied", cmd[0])

    monkeypatch.setattr(transcriber.subprocess, "run", run)
    orchestrator = _orchestrator(tmp_path, FakeProcessor(1), local=LocalTranscriber(command="engine.sh"))

    job = orchestrator.process_audio("meeting.wav")

    assert job.status == JobStatus.COMPLETED
    assert list(job.failed) == [0]
    assert job.result.text == ""
