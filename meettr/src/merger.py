"""
Merge per-chunk transcripts into one session transcript.

Input transcripts are expected in session-global time (already shifted by
their chunk offset). The merge normalizes untimed segments, sorts, folds
overlapping segments together and joins the text.
"""

import logging
import re
from typing import List, Optional, Sequence

from .transcript import ChunkTranscript, MergedTranscript, TranscriptSegment

logger = logging.getLogger(__name__)

# Seconds assumed per segment when the engine reports no timing
UNTIMED_SEGMENT_SECONDS = 5.0

_WHITESPACE_RE = re.compile(r"\s+")


def normalize(transcript: ChunkTranscript) -> List[TranscriptSegment]:
    """
    Give every segment of a transcript well-formed times.

    Missing starts are spaced evenly from the transcript's offset; missing
    ends default to start plus the same spacing. Negative starts are
    clamped to zero and ends never precede starts. Text without segments
    becomes a single untimed segment.
    """
    raw = transcript.segments
    if not raw and transcript.text:
        raw = [TranscriptSegment(start=None, end=None, text=transcript.text, id=0)]

    segments = []
    for i, seg in enumerate(raw):
        start = seg.start
        if start is None:
            start = transcript.offset + i * UNTIMED_SEGMENT_SECONDS
        start = max(0.0, start)

        end = seg.end
        if end is None:
            end = start + UNTIMED_SEGMENT_SECONDS
        end = max(start, end)

        segments.append(TranscriptSegment(start=start, end=end, text=seg.text, id=seg.id))
    return segments


def _overlaps(kept: TranscriptSegment, nxt: TranscriptSegment) -> bool:
    return nxt.start < kept.end


def deduplicate(segments: Sequence[TranscriptSegment]) -> List[TranscriptSegment]:
    """
    Fold overlapping segments of a start-sorted list together.

    An overlapping segment extends the kept segment's end, and its text is
    appended only when the kept text does not already contain it.
    """
    kept: List[TranscriptSegment] = []
    for seg in segments:
        if kept and _overlaps(kept[-1], seg):
            current = kept[-1]
            current.end = max(current.end, seg.end)
            if seg.text and seg.text not in current.text:
                current.text = f"{current.text} {seg.text}".strip()
            continue
        kept.append(TranscriptSegment(start=seg.start, end=seg.end, text=seg.text, id=seg.id))
    return kept


def merge(transcripts: Sequence[ChunkTranscript], chunk_count: Optional[int] = None) -> MergedTranscript:
    """
    Merge chunk transcripts into one ordered, deduplicated transcript.

    Args:
        transcripts: Successful chunk transcripts in session-global time.
        chunk_count: Number of chunks attempted. Defaults to the number of
            transcripts; pass the split count so failed chunks are counted.

    Returns:
        MergedTranscript. Empty input yields an empty transcript.
    """
    if chunk_count is None:
        chunk_count = len(transcripts)

    flattened: List[TranscriptSegment] = []
    for transcript in transcripts:
        flattened.extend(normalize(transcript))
    # Stable: equal starts keep chunk order
    flattened.sort(key=lambda s: s.start)

    segments = deduplicate(flattened)
    for i, seg in enumerate(segments):
        seg.id = i

    text = _WHITESPACE_RE.sub(" ", " ".join(seg.text for seg in segments)).strip()
    language = next((t.language for t in transcripts if t.language), "unknown")
    duration = segments[-1].end if segments else 0.0

    merged = MergedTranscript(
        text=text,
        segments=segments,
        language=language,
        duration=duration,
        chunk_count=chunk_count,
        segment_count=len(segments),
    )
    logger.info(
        "Merged %d/%d chunk transcript(s) into %d segment(s), %.1fs",
        len(transcripts), chunk_count, len(segments), duration,
    )
    return merged
