"""
Audio processing module for recorded meetings.

Probes audio files and splits long recordings into fixed-duration chunks
for transcription. Splitting uses FFmpeg's segment muxer with stream copy,
so chunks are never re-encoded.
"""

import json
import logging
import os
import subprocess
import tempfile
from pathlib import Path
from typing import List, Optional

from .transcript import Chunk

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_DURATION = 60
CHUNK_PREFIX = "chunk_"


class AudioProcessingError(Exception):
    """Exception raised when audio processing fails."""
    pass


class AudioProcessor:
    """Probe and split audio files with FFmpeg."""

    def __init__(
        self,
        temp_dir: Optional[str] = None,
        ffmpeg: str = "ffmpeg",
        ffprobe: str = "ffprobe",
        verify: bool = True
    ):
        """
        Initialize the audio processor.

        Args:
            temp_dir: Optional directory for temporary files.
                     If None, uses system temp directory.
            ffmpeg: FFmpeg executable name or path.
            ffprobe: FFprobe executable name or path.
            verify: Check that FFmpeg runs before first use.
        """
        self.temp_dir = temp_dir or tempfile.gettempdir()
        self.ffmpeg = ffmpeg
        self.ffprobe = ffprobe
        if verify:
            self._verify_ffmpeg()

    def _verify_ffmpeg(self) -> None:
        """Verify that FFmpeg is installed and accessible."""
        try:
            subprocess.run(
                [self.ffmpeg, "-version"],
                capture_output=True,
                text=True,
                check=True
            )
        except FileNotFoundError:
            raise AudioProcessingError(
                "FFmpeg not found. Please install FFmpeg:\n"
                "  - macOS: brew install ffmpeg\n"
                "  - Ubuntu/Debian: sudo apt install ffmpeg\n"
                "  - Windows: Download from https://ffmpeg.org/download.html"
            )
        except subprocess.CalledProcessError as e:
            raise AudioProcessingError(f"FFmpeg error: {e.stderr}")

    def get_audio_info(self, audio_path: str) -> dict:
        """
        Get information about an audio file.

        Args:
            audio_path: Path to the audio file.

        Returns:
            Dictionary with audio information (duration, codec, sample rate, etc.)
        """
        if not os.path.exists(audio_path):
            raise AudioProcessingError(f"Audio file not found: {audio_path}")

        cmd = [
            self.ffprobe,
            "-v", "quiet",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            audio_path
        ]

        try:
            result = subprocess.run(cmd, capture_output=True, text=True, check=True)
            info = json.loads(result.stdout)
        except subprocess.CalledProcessError as e:
            raise AudioProcessingError(f"Failed to get audio info: {e.stderr}")
        except (OSError, ValueError) as e:
            raise AudioProcessingError(f"Failed to parse audio info: {str(e)}")

        duration = float(info.get("format", {}).get("duration", 0) or 0)

        audio_stream = None
        for stream in info.get("streams", []):
            if stream.get("codec_type") == "audio":
                audio_stream = stream
                break

        return {
            "duration": duration,
            "duration_formatted": format_duration(duration),
            "audio_codec": audio_stream.get("codec_name") if audio_stream else None,
            "sample_rate": audio_stream.get("sample_rate") if audio_stream else None,
            "channels": audio_stream.get("channels") if audio_stream else None,
            "bitrate": audio_stream.get("bit_rate") if audio_stream else None,
            "format": info.get("format", {}).get("format_name"),
        }

    def split_into_chunks(
        self,
        audio_path: str,
        chunk_duration: float = DEFAULT_CHUNK_DURATION,
        output_dir: Optional[str] = None
    ) -> List[Chunk]:
        """
        Split an audio file into fixed-duration WAV chunks.

        Each chunk's timestamps are reset to zero, so engines report
        chunk-local times. Chunk indices follow FFmpeg's numbering.

        Args:
            audio_path: Path to the recording.
            chunk_duration: Nominal chunk length in seconds.
            output_dir: Directory for the chunk files. Defaults to temp_dir.

        Returns:
            Chunks ordered by index.

        Raises:
            AudioProcessingError: If FFmpeg fails or produces no chunks.
        """
        audio_path = os.path.abspath(audio_path)
        if not os.path.exists(audio_path):
            raise AudioProcessingError(f"Audio file not found: {audio_path}")
        if chunk_duration <= 0:
            raise AudioProcessingError(f"Invalid chunk duration: {chunk_duration}")

        output_dir = output_dir or self.temp_dir
        os.makedirs(output_dir, exist_ok=True)
        pattern = os.path.join(output_dir, f"{CHUNK_PREFIX}%03d.wav")

        cmd = [
            self.ffmpeg,
            "-i", audio_path,
            "-f", "segment",
            "-segment_time", _format_seconds(chunk_duration),
            "-segment_format", "wav",
            "-reset_timestamps", "1",
            "-c", "copy",
            "-y",
            pattern
        ]
        logger.debug("Splitting audio: %s", " ".join(cmd))

        try:
            result = subprocess.run(cmd, capture_output=True, text=True)
        except FileNotFoundError:
            raise AudioProcessingError(f"FFmpeg not found: {self.ffmpeg}")

        # FFmpeg sometimes returns 1 after writing every segment
        if result.returncode not in (0, 1):
            raise AudioProcessingError(
                f"FFmpeg split failed (exit code {result.returncode}): {result.stderr[-500:]}"
            )

        chunks = [
            Chunk(path=str(path), index=_chunk_index(path), duration=float(chunk_duration))
            for path in find_chunk_files(output_dir)
        ]
        if not chunks:
            raise AudioProcessingError(
                f"FFmpeg split produced no chunks: {result.stderr[-500:]}"
            )

        logger.info("Split %s into %d chunk(s) of %ss", audio_path, len(chunks), chunk_duration)
        return chunks

    def cleanup(self, audio_path: str) -> None:
        """
        Remove a temporary audio file.

        Args:
            audio_path: Path to the audio file to remove.
        """
        try:
            os.remove(audio_path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Could not remove %s: %s", audio_path, e)


def find_chunk_files(directory: str) -> List[Path]:
    """Find split chunk files in a directory, ordered by chunk number."""
    files = [
        p for p in Path(directory).iterdir()
        if p.name.startswith(CHUNK_PREFIX) and p.suffix == ".wav" and _chunk_index(p) >= 0
    ]
    return sorted(files, key=_chunk_index)


def format_duration(seconds: float) -> str:
    """Format duration in seconds to HH:MM:SS format."""
    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)

    if hours > 0:
        return f"{hours:02d}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


def _chunk_index(path: Path) -> int:
    stem = Path(path).stem[len(CHUNK_PREFIX):]
    try:
        return int(stem)
    except ValueError:
        return -1


def _format_seconds(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)
