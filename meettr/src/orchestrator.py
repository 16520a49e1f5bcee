"""
Transcription orchestrator.

Splits a finished recording into fixed-duration chunks, dispatches them to
the remote worker pool (when keys are configured) or the local worker, then
shifts and merges the results. Only one job runs at a time.
"""

import logging
import os
import shutil
import tempfile
import threading
import time
import uuid
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence

from . import merger
from .events import (
    ChunkCompleted,
    ChunkFailed,
    ChunkStarted,
    EventChannel,
    SplitComplete,
    TranscriptionComplete,
    TranscriptionFailed,
)
from .formatter import write_outputs
from .processor import DEFAULT_CHUNK_DURATION, AudioProcessingError, AudioProcessor
from .remote import RemoteWorkerPool
from .transcriber import ChunkProcessingError, LocalTranscriber
from .transcript import Chunk, ChunkTranscript, MergedTranscript

logger = logging.getLogger(__name__)


class JobInProgressError(Exception):
    """A transcription job is already running."""
    pass


class TranscriptionJobError(Exception):
    """A transcription job failed as a whole."""
    pass


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class TranscriptionJob:
    """Handle for one transcription job with thread-safe progress tracking."""

    def __init__(self, audio_path: str, clock: Callable[[], float] = time.time):
        self.id = uuid.uuid4().hex[:8]
        self.audio_path = audio_path
        self.status = JobStatus.PENDING
        self.strategy: Optional[str] = None
        self.fell_back = False
        self.chunk_count = 0
        self.completed: List[int] = []
        self.failed: Dict[int, str] = {}
        self.result: Optional[MergedTranscript] = None
        self.paths: List[str] = []
        self.error: Optional[str] = None
        self.started_at: Optional[float] = None
        self.completed_at: Optional[float] = None
        self._clock = clock
        self._lock = threading.Lock()

    @property
    def attempted(self) -> set:
        with self._lock:
            return set(self.completed) | set(self.failed)

    @property
    def elapsed(self) -> float:
        if self.started_at is None:
            return 0.0
        end = self.completed_at if self.completed_at is not None else self._clock()
        return end - self.started_at

    def start(self):
        with self._lock:
            self.status = JobStatus.RUNNING
            self.started_at = self._clock()

    def chunk_completed(self, index: int):
        with self._lock:
            self.completed.append(index)

    def chunk_failed(self, index: int, reason: str):
        with self._lock:
            self.failed[index] = reason

    def complete(self, result: MergedTranscript, paths: List[str]):
        with self._lock:
            self.status = JobStatus.COMPLETED
            self.result = result
            self.paths = list(paths)
            self.completed_at = self._clock()

    def fail(self, error: str):
        with self._lock:
            self.status = JobStatus.FAILED
            self.error = error
            self.completed_at = self._clock()

    def to_dict(self) -> dict:
        with self._lock:
            return {
                "id": self.id,
                "audio_path": self.audio_path,
                "status": self.status.value,
                "strategy": self.strategy,
                "fell_back": self.fell_back,
                "chunk_count": self.chunk_count,
                "completed": sorted(self.completed),
                "failed": dict(self.failed),
                "paths": list(self.paths),
                "error": self.error,
            }


class TranscriptionOrchestrator:
    """Run chunked transcription jobs, one at a time."""

    def __init__(
        self,
        processor: Optional[AudioProcessor] = None,
        local: Optional[LocalTranscriber] = None,
        remote: Optional[RemoteWorkerPool] = None,
        chunk_duration: float = DEFAULT_CHUNK_DURATION,
        temp_dir: Optional[str] = None,
        events: Optional[EventChannel] = None,
        markdown: bool = False,
        markdown_style: str = "timestamped",
        clock: Callable[[], float] = time.time
    ):
        """
        Initialize the orchestrator.

        Args:
            processor: Splits recordings into chunks.
            local: Sequential local worker.
            remote: Remote worker pool; used when it holds at least one key.
            chunk_duration: Chunk length in seconds.
            temp_dir: Parent directory for per-job chunk directories.
            events: Channel receiving job events. Created if None.
            markdown: Also write transcript.md.
            markdown_style: Markdown style name.
            clock: Time source in seconds.
        """
        self._processor = processor
        self._local = local
        self.remote = remote
        self.chunk_duration = chunk_duration
        self.temp_dir = temp_dir or os.path.join(tempfile.gettempdir(), "meettr")
        self.events = events or EventChannel()
        self.markdown = markdown
        self.markdown_style = markdown_style
        self.clock = clock

        self._slot = threading.Lock()
        self._job: Optional[TranscriptionJob] = None

    @property
    def processor(self) -> AudioProcessor:
        """Get or create the audio processor."""
        if self._processor is None:
            self._processor = AudioProcessor(temp_dir=self.temp_dir)
        return self._processor

    @property
    def local(self) -> LocalTranscriber:
        """Get or create the local worker."""
        if self._local is None:
            self._local = LocalTranscriber()
        return self._local

    @property
    def is_processing(self) -> bool:
        return self._slot.locked()

    @property
    def current_job(self) -> Optional[TranscriptionJob]:
        return self._job

    def status(self) -> dict:
        job = self._job
        return {
            "is_processing": self.is_processing,
            "audio_path": job.audio_path if job else None,
            "elapsed": job.elapsed if job else 0.0,
        }

    @property
    def use_remote(self) -> bool:
        return self.remote is not None and len(self.remote.keys) > 0

    def process_audio(self, audio_path: str, output_dir: Optional[str] = None) -> TranscriptionJob:
        """
        Transcribe a recording.

        Chunk failures are recorded on the job and never fail it; a job in
        which no chunk succeeds completes with an empty transcript.

        Args:
            audio_path: Recording to transcribe.
            output_dir: Directory for transcript files; nothing is written if None.

        Returns:
            The completed TranscriptionJob; ``job.result`` holds the transcript.

        Raises:
            JobInProgressError: If another job is running.
            TranscriptionJobError: If the recording cannot be split or the
                outputs cannot be written.
        """
        if not self._slot.acquire(blocking=False):
            raise JobInProgressError("A transcription job is already in progress")

        job = TranscriptionJob(audio_path, clock=self.clock)
        self._job = job
        try:
            job.start()
            os.makedirs(self.temp_dir, exist_ok=True)
            work_dir = tempfile.mkdtemp(prefix="job_", dir=self.temp_dir)
            try:
                self._run(job, work_dir, output_dir)
            except (AudioProcessingError, OSError) as e:
                job.fail(str(e))
                logger.error("Transcription of %s failed: %s", audio_path, e)
                self.events.publish(TranscriptionFailed(reason=str(e)))
                raise TranscriptionJobError(str(e)) from e
            finally:
                shutil.rmtree(work_dir, ignore_errors=True)
        finally:
            self._slot.release()
        return job

    def _run(self, job: TranscriptionJob, work_dir: str, output_dir: Optional[str]) -> None:
        chunks = self.processor.split_into_chunks(
            job.audio_path, chunk_duration=self.chunk_duration, output_dir=work_dir
        )
        job.chunk_count = len(chunks)
        self.events.publish(SplitComplete(chunk_count=len(chunks)))

        transcripts: Dict[int, ChunkTranscript] = {}
        remaining: Sequence[Chunk] = chunks

        if self.use_remote:
            job.strategy = "parallel"
            try:
                self._dispatch_parallel(job, chunks, transcripts)
                remaining = []
            except Exception as e:
                logger.error("Parallel dispatch failed, continuing locally: %s", e)
                job.fell_back = True
                attempted = job.attempted
                remaining = [c for c in chunks if c.index not in attempted]
        else:
            job.strategy = "sequential"

        if remaining:
            self._dispatch_sequential(job, remaining, transcripts)

        by_index = {c.index: c for c in chunks}
        shifted = [
            transcripts[i].shifted(by_index[i].offset)
            for i in sorted(transcripts)
        ]
        result = merger.merge(shifted, chunk_count=len(chunks))

        paths = []
        if output_dir:
            paths = write_outputs(
                result,
                output_dir,
                markdown=self.markdown,
                markdown_style=self.markdown_style,
                source_path=job.audio_path,
            )

        job.complete(result, paths)
        if job.failed:
            logger.warning("%d of %d chunk(s) failed", len(job.failed), len(chunks))
        logger.info("Transcription complete in %.1fs", job.elapsed)
        self.events.publish(TranscriptionComplete(paths=tuple(paths), elapsed=job.elapsed))

    def _dispatch_sequential(
        self,
        job: TranscriptionJob,
        chunks: Sequence[Chunk],
        transcripts: Dict[int, ChunkTranscript]
    ) -> None:
        logger.info("Transcribing %d chunk(s) locally", len(chunks))
        total = job.chunk_count
        for chunk in chunks:
            self.events.publish(ChunkStarted(index=chunk.index, total=total))
            try:
                transcripts[chunk.index] = self.local.transcribe(chunk.path)
            except ChunkProcessingError as e:
                self._record_failure(job, chunk, str(e))
            else:
                job.chunk_completed(chunk.index)
                self.events.publish(ChunkCompleted(index=chunk.index, total=total))
            finally:
                self.processor.cleanup(chunk.path)

    def _dispatch_parallel(
        self,
        job: TranscriptionJob,
        chunks: Sequence[Chunk],
        transcripts: Dict[int, ChunkTranscript]
    ) -> None:
        total = job.chunk_count

        def on_start(chunk: Chunk) -> None:
            self.events.publish(ChunkStarted(index=chunk.index, total=total))

        for outcome in self.remote.iter_outcomes(chunks, on_start=on_start):
            chunk = outcome.chunk
            if outcome.ok:
                transcripts[chunk.index] = outcome.transcript
                job.chunk_completed(chunk.index)
                self.events.publish(ChunkCompleted(index=chunk.index, total=total))
            else:
                self._record_failure(job, chunk, outcome.error)
            self.processor.cleanup(chunk.path)

    def _record_failure(self, job: TranscriptionJob, chunk: Chunk, reason: str) -> None:
        logger.warning("Chunk %d failed: %s", chunk.index, reason)
        job.chunk_failed(chunk.index, reason)
        self.events.publish(ChunkFailed(index=chunk.index, reason=reason))
