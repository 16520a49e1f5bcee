"""
Local speech-to-text worker.

Runs the local engine as a separate process once per chunk and parses the
single JSON result it prints. Any failure is a ChunkProcessingError, which
the orchestrator records against that chunk before moving on.
"""

import json
import logging
import os
import shlex
import subprocess
import sys
from typing import List, Optional

from .transcript import ChunkTranscript

logger = logging.getLogger(__name__)

ENGINE_MODULE = "meettr.src.whisper_runner"


class ChunkProcessingError(Exception):
    """Exception raised when a chunk cannot be transcribed."""
    pass


def parse_engine_output(stdout: str, stderr: str = "") -> ChunkTranscript:
    """
    Parse the engine's JSON result.

    Some engine builds print the result on stderr, so stderr is tried when
    stdout is empty.

    Raises:
        ChunkProcessingError: If no JSON object can be decoded.
    """
    raw = (stdout or "").strip()
    if not raw and stderr and "{" in stderr:
        raw = stderr
    if not raw:
        raise ChunkProcessingError("Engine produced no output")

    start, end = raw.find("{"), raw.rfind("}")
    if start < 0 or end < start:
        raise ChunkProcessingError(f"Unparseable engine output: {raw[:200]}")

    try:
        data = json.loads(raw[start:end + 1])
    except ValueError as e:
        raise ChunkProcessingError(f"Unparseable engine output: {e}")

    if not isinstance(data, dict):
        raise ChunkProcessingError("Engine output is not a JSON object")
    return ChunkTranscript.from_dict(data)


class LocalTranscriber:
    """Transcribe chunks with the local engine, one process per chunk."""

    def __init__(
        self,
        model: str = "medium",
        language: str = "auto",
        command: Optional[str] = None,
        device: Optional[str] = None,
        timeout: Optional[float] = None
    ):
        """
        Initialize the local worker.

        Args:
            model: Engine model size.
            language: Language code, or "auto" to detect.
            command: Engine command line; defaults to the bundled Whisper
                runner under the current interpreter.
            device: "cuda" / "cpu", or None / "auto" to let the engine pick.
            timeout: Seconds before a chunk's process is abandoned.
        """
        self.model = model
        self.language = language
        self.command = command
        self.device = device
        self.timeout = timeout

    def build_command(self, chunk_path: str) -> List[str]:
        if self.command:
            cmd = shlex.split(self.command)
        else:
            cmd = [sys.executable, "-m", ENGINE_MODULE]
        cmd.extend([chunk_path, "--model", self.model, "--language", self.language])
        if self.device and self.device != "auto":
            cmd.extend(["--device", self.device])
        return cmd

    def transcribe(self, chunk_path: str) -> ChunkTranscript:
        """
        Transcribe one chunk and wait for the engine to exit.

        Args:
            chunk_path: Path to the chunk audio.

        Returns:
            ChunkTranscript in chunk-local time.

        Raises:
            ChunkProcessingError: If the engine is missing, exits non-zero,
                times out or prints something other than a JSON result.
        """
        if not os.path.exists(chunk_path):
            raise ChunkProcessingError(f"Chunk file not found: {chunk_path}")

        cmd = self.build_command(chunk_path)
        logger.debug("Running local engine: %s", " ".join(cmd))

        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout)
        except FileNotFoundError:
            raise ChunkProcessingError(f"Local engine not found: {cmd[0]}")
        except subprocess.TimeoutExpired:
            raise ChunkProcessingError(f"Local engine timed out after {self.timeout}s")
        except OSError as e:
            raise ChunkProcessingError(f"Local engine could not start: {e}")

        if result.returncode != 0:
            stderr = (result.stderr or "").strip()
            raise ChunkProcessingError(
                f"Local engine exited with code {result.returncode}: {stderr[-300:]}"
            )

        return parse_engine_output(result.stdout, result.stderr)
