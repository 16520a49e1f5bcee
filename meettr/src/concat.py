"""
Segment concatenation using FFmpeg's concat demuxer.

Joins the per-pause segment files of a recording into the first segment's
path with stream copy, so nothing is re-encoded.
"""

import logging
import os
import subprocess
import tempfile
from typing import List

logger = logging.getLogger(__name__)


class ConcatenationError(Exception):
    """Exception raised when segments cannot be joined."""
    pass


def write_manifest(segment_paths: List[str], manifest_path: str) -> None:
    """
    Write an FFmpeg concat manifest listing the segments in order.

    Args:
        segment_paths: Segment files, first to last.
        manifest_path: Where to write the manifest.
    """
    with open(manifest_path, "w", encoding="utf-8") as f:
        for path in segment_paths:
            escaped = os.path.abspath(path).replace("'", "'\\''")
            f.write(f"file '{escaped}'\n")


def concatenate_segments(segment_paths: List[str], ffmpeg: str = "ffmpeg") -> str:
    """
    Concatenate segment files into the first segment's path.

    On success every segment except the first is deleted. On failure no
    segment is touched, so each remains usable on its own.

    Args:
        segment_paths: Ordered segment files.
        ffmpeg: FFmpeg executable.

    Returns:
        Path of the joined recording (the first segment's path).

    Raises:
        ConcatenationError: If a segment is missing or FFmpeg fails.
    """
    if not segment_paths:
        raise ConcatenationError("No segments to concatenate")

    target = os.path.abspath(segment_paths[0])
    if len(segment_paths) == 1:
        return target

    missing = [p for p in segment_paths if not os.path.exists(p)]
    if missing:
        raise ConcatenationError(f"Segment file(s) not found: {', '.join(missing)}")

    directory = os.path.dirname(target)
    stem, ext = os.path.splitext(os.path.basename(target))
    # FFmpeg cannot read and write the same file
    joined_path = os.path.join(directory, f"{stem}.joined{ext}")

    manifest_path = None
    joined = False
    try:
        fd, manifest_path = tempfile.mkstemp(prefix=f"{stem}_", suffix=".concat.txt", dir=directory)
        os.close(fd)

        cmd = [
            ffmpeg,
            "-hide_banner",
            "-f", "concat",
            "-safe", "0",
            "-i", manifest_path,
            "-c", "copy",
            "-y",
            joined_path
        ]

        write_manifest(segment_paths, manifest_path)
        logger.debug("Concatenating segments: %s", " ".join(cmd))
        try:
            result = subprocess.run(cmd, capture_output=True, text=True)
        except FileNotFoundError:
            raise ConcatenationError(f"FFmpeg not found: {ffmpeg}")

        if result.returncode != 0:
            raise ConcatenationError(
                f"FFmpeg concat failed (exit code {result.returncode}): {result.stderr[-500:]}"
            )
        if not os.path.exists(joined_path):
            raise ConcatenationError("FFmpeg concat produced no output")

        os.replace(joined_path, target)
        joined = True
    except OSError as e:
        raise ConcatenationError(f"Could not join segments: {e}")
    finally:
        if manifest_path is not None:
            _remove_quietly(manifest_path)
        if not joined:
            _remove_quietly(joined_path)

    for path in segment_paths[1:]:
        _remove_quietly(path)

    logger.info("Joined %d segments into %s", len(segment_paths), target)
    return target


def _remove_quietly(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("Could not remove %s: %s", path, e)
