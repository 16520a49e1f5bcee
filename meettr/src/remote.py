"""
Remote speech-to-text worker pool.

Sends chunks to an OpenAI-compatible transcription endpoint (Groq by
default) in fixed-size concurrent batches. API keys are used round-robin;
each attempt for a chunk takes the next key, and retries happen only when
more than one key is configured.
"""

import logging
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Callable, Iterable, Iterator, List, Optional, Sequence

import requests

from .transcript import Chunk, ChunkTranscript

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.groq.com/openai/v1/audio/transcriptions"
DEFAULT_MODEL = "whisper-large-v3"
DEFAULT_MAX_CONCURRENT = 5
DEFAULT_MAX_RETRIES = 3
DEFAULT_BATCH_DELAY = 0.1
DEFAULT_TIMEOUT = 120


class RemoteTranscriptionError(Exception):
    """A single request to the remote API failed."""
    pass


class RateLimitedError(RemoteTranscriptionError):
    """The remote API answered 429 Too Many Requests."""
    pass


class RetryExhaustedError(Exception):
    """Every allowed attempt for a chunk failed."""

    def __init__(self, index: int, attempts: int, last_error: Optional[Exception] = None):
        self.index = index
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Chunk {index} failed after {attempts} attempt(s): {last_error}")


class NoApiKeysError(Exception):
    """The key pool is empty."""
    pass


def mask_key(key: str) -> str:
    """Mask an API key for display, keeping the first and last 4 chars."""
    if len(key) <= 8:
        return "*" * len(key)
    return f"{key[:4]}...{key[-4:]}"


class ApiKeyPool:
    """Ordered API keys with a circular cursor shared by all workers."""

    def __init__(self, keys: Iterable[str] = ()):
        # Deduplicate, preserving order
        self._keys = list(dict.fromkeys(k.strip() for k in keys if k and k.strip()))
        self._cursor = 0
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._keys)

    @property
    def keys(self) -> tuple:
        return tuple(self._keys)

    @property
    def cursor(self) -> int:
        return self._cursor

    def take_next(self, avoid: Optional[str] = None) -> str:
        """
        Return the key at the cursor and advance it.

        When the cursor lands on ``avoid`` and another key exists, that key
        is skipped so a retry never reuses the key that just failed.

        Raises:
            NoApiKeysError: If the pool is empty.
        """
        with self._lock:
            if not self._keys:
                raise NoApiKeysError("No API keys configured")
            if avoid is not None and len(self._keys) > 1 and self._keys[self._cursor] == avoid:
                self._cursor = (self._cursor + 1) % len(self._keys)
            key = self._keys[self._cursor]
            self._cursor = (self._cursor + 1) % len(self._keys)
            return key


class RemoteTranscriber:
    """Transcribe one chunk with one HTTP request."""

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        model: str = DEFAULT_MODEL,
        timeout: float = DEFAULT_TIMEOUT
    ):
        self.base_url = base_url
        self.model = model
        self.timeout = timeout

    def transcribe(self, chunk_path: str, api_key: str) -> ChunkTranscript:
        """
        Send a chunk to the transcription endpoint.

        Args:
            chunk_path: Path to the chunk audio.
            api_key: Key for this attempt.

        Returns:
            ChunkTranscript in chunk-local time.

        Raises:
            RateLimitedError: On HTTP 429.
            RemoteTranscriptionError: On any other failed attempt, including
                a missing chunk file and a malformed 2xx body.
        """
        if not os.path.exists(chunk_path) or os.path.getsize(chunk_path) == 0:
            raise RemoteTranscriptionError(f"Chunk file missing or empty: {chunk_path}")

        with open(chunk_path, "rb") as f:
            try:
                response = requests.post(
                    self.base_url,
                    headers={"Authorization": f"Bearer {api_key}"},
                    files={"file": (os.path.basename(chunk_path), f, "audio/wav")},
                    data={
                        "model": self.model,
                        "response_format": "verbose_json",
                        "timestamp_granularities[]": "segment",
                    },
                    timeout=self.timeout,
                )
            except requests.RequestException as e:
                raise RemoteTranscriptionError(f"Request failed: {e}")

        if response.status_code == 429:
            raise RateLimitedError("Rate limited (HTTP 429)")
        if not 200 <= response.status_code < 300:
            raise RemoteTranscriptionError(
                f"HTTP {response.status_code}: {response.text[:200]}"
            )

        try:
            data = response.json()
        except ValueError:
            raise RemoteTranscriptionError("Malformed response body")
        if not isinstance(data, dict):
            raise RemoteTranscriptionError("Malformed response body")

        return ChunkTranscript.from_dict(data)


@dataclass
class ChunkOutcome:
    """Result of dispatching one chunk to the pool."""
    chunk: Chunk
    transcript: Optional[ChunkTranscript] = None
    error: Optional[str] = None
    attempts: int = 0    # Set on failure

    @property
    def ok(self) -> bool:
        return self.transcript is not None


class RemoteWorkerPool:
    """Bounded-concurrency dispatch of chunks to the remote API."""

    def __init__(
        self,
        keys: ApiKeyPool,
        transcriber: Optional[RemoteTranscriber] = None,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT,
        max_retries: int = DEFAULT_MAX_RETRIES,
        batch_delay: float = DEFAULT_BATCH_DELAY,
        sleep: Callable[[float], None] = time.sleep
    ):
        """
        Initialize the pool.

        Args:
            keys: Shared key pool.
            transcriber: Single-request client.
            max_concurrent: Chunks per batch.
            max_retries: Extra attempts per chunk (multi-key pools only).
            batch_delay: Seconds to wait between batches.
            sleep: Sleep function, replaceable for tests.
        """
        self.keys = keys
        self.transcriber = transcriber or RemoteTranscriber()
        self.max_concurrent = max(1, max_concurrent)
        self.max_retries = max(0, max_retries)
        self.batch_delay = batch_delay
        self._sleep = sleep

    @property
    def attempts_per_chunk(self) -> int:
        return 1 + self.max_retries if len(self.keys) > 1 else 1

    def transcribe_chunk(self, chunk: Chunk) -> ChunkTranscript:
        """
        Transcribe one chunk, rotating keys across attempts.

        Raises:
            RetryExhaustedError: If every attempt failed.
            NoApiKeysError: If the pool is empty.
        """
        attempts = self.attempts_per_chunk
        last_error = None
        key = None
        for attempt in range(1, attempts + 1):
            key = self.keys.take_next(avoid=key)
            try:
                return self.transcriber.transcribe(chunk.path, key)
            except RemoteTranscriptionError as e:
                last_error = e
                logger.warning(
                    "Chunk %d attempt %d/%d failed (key %s): %s",
                    chunk.index, attempt, attempts, mask_key(key), e,
                )
        raise RetryExhaustedError(chunk.index, attempts, last_error)

    def iter_outcomes(
        self,
        chunks: Sequence[Chunk],
        on_start: Optional[Callable[[Chunk], None]] = None
    ) -> Iterator[ChunkOutcome]:
        """
        Dispatch chunks batch by batch and yield each outcome as it completes.

        Batches are issued in index order; within a batch completion order is
        arbitrary. Chunk-level failures are yielded as failed outcomes; any
        other exception propagates to the caller.

        Args:
            chunks: Chunks in index order.
            on_start: Called for each chunk just before it is submitted.

        Raises:
            NoApiKeysError: If the pool is empty.
        """
        if not len(self.keys):
            raise NoApiKeysError("No API keys configured")

        logger.info(
            "Dispatching %d chunk(s) to %d key(s), %d at a time",
            len(chunks), len(self.keys), self.max_concurrent,
        )
        with ThreadPoolExecutor(max_workers=self.max_concurrent) as executor:
            for batch_start in range(0, len(chunks), self.max_concurrent):
                if batch_start > 0 and self.batch_delay > 0:
                    self._sleep(self.batch_delay)

                futures = {}
                for chunk in chunks[batch_start:batch_start + self.max_concurrent]:
                    if on_start:
                        on_start(chunk)
                    futures[executor.submit(self._run, chunk)] = chunk

                for future in as_completed(futures):
                    yield future.result()

    def transcribe_all(self, chunks: Sequence[Chunk]) -> List[ChunkOutcome]:
        """Dispatch every chunk and return outcomes in index order."""
        outcomes = list(self.iter_outcomes(chunks))
        return sorted(outcomes, key=lambda o: o.chunk.index)

    def _run(self, chunk: Chunk) -> ChunkOutcome:
        try:
            transcript = self.transcribe_chunk(chunk)
        except RetryExhaustedError as e:
            return ChunkOutcome(chunk=chunk, error=str(e), attempts=e.attempts)
        return ChunkOutcome(chunk=chunk, transcript=transcript)
