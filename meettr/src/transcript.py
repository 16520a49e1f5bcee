"""
Transcript data model shared by the workers, the merger and the formatter.

All times are in seconds. Worker output is in chunk-local time; the
orchestrator shifts it into session-global time before merging.
"""

from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional


@dataclass
class Chunk:
    """A fixed-duration slice of the final recording."""
    path: str
    index: int    # Zero-based, assigned at split time
    duration: float

    @property
    def offset(self) -> float:
        """Session-global start time of this chunk."""
        return self.index * self.duration


@dataclass
class TranscriptSegment:
    """A segment of transcribed text with timing information.

    ``start``/``end`` may be None when the engine did not report timing;
    the merger fills them with an estimate.
    """
    start: Optional[float]
    end: Optional[float]
    text: str
    id: Optional[int] = None

    @property
    def duration(self) -> float:
        """Get the duration of this segment in seconds."""
        if self.start is None or self.end is None:
            return 0.0
        return self.end - self.start

    @property
    def start_formatted(self) -> str:
        """Get formatted start time (HH:MM:SS)."""
        return format_timestamp(self.start or 0.0)

    def shifted(self, offset: float) -> "TranscriptSegment":
        return replace(
            self,
            start=None if self.start is None else self.start + offset,
            end=None if self.end is None else self.end + offset,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "start": self.start, "end": self.end, "text": self.text}


@dataclass
class ChunkTranscript:
    """Result of transcribing one chunk."""
    text: str = ""
    language: str = ""
    segments: List[TranscriptSegment] = field(default_factory=list)
    # Amount already added to segment times (0 while chunk-local)
    offset: float = 0.0

    @classmethod
    def from_dict(cls, data: Any) -> "ChunkTranscript":
        """
        Build a transcript from an engine/API result object.

        Unexpected or missing fields default to empty values rather than
        raising, so a partially odd result still yields a usable transcript.

        Args:
            data: Decoded JSON of shape ``{text, language, segments: [...]}``.

        Returns:
            ChunkTranscript in chunk-local time.
        """
        if not isinstance(data, dict):
            return cls()

        segments = []
        raw_segments = data.get("segments")
        if isinstance(raw_segments, list):
            for i, seg in enumerate(raw_segments):
                if not isinstance(seg, dict):
                    continue
                seg_id = seg.get("id")
                segments.append(TranscriptSegment(
                    id=seg_id if type(seg_id) is int else i,
                    start=_as_float(seg.get("start")),
                    end=_as_float(seg.get("end")),
                    text=str(seg.get("text") or "").strip(),
                ))

        text = data.get("text")
        language = data.get("language")
        return cls(
            text=text.strip() if isinstance(text, str) else "",
            language=language if isinstance(language, str) else "",
            segments=segments,
        )

    def shifted(self, offset: float) -> "ChunkTranscript":
        """Return a copy with every segment moved ``offset`` seconds later."""
        return replace(
            self,
            segments=[seg.shifted(offset) for seg in self.segments],
            offset=self.offset + offset,
        )


@dataclass
class MergedTranscript:
    """Complete transcript of a recording in session-global time."""
    text: str
    segments: List[TranscriptSegment]
    language: str
    duration: float
    chunk_count: int     # Chunks attempted
    segment_count: int   # Segments retained after deduplication

    @property
    def word_count(self) -> int:
        """Get total word count."""
        return len(self.text.split())

    @classmethod
    def empty(cls, chunk_count: int = 0) -> "MergedTranscript":
        return cls(
            text="",
            segments=[],
            language="unknown",
            duration=0.0,
            chunk_count=chunk_count,
            segment_count=0,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "segments": [seg.to_dict() for seg in self.segments],
            "language": self.language,
            "duration": self.duration,
            "chunkCount": self.chunk_count,
            "segmentCount": self.segment_count,
        }

    def validate(self) -> List[str]:
        """
        Check the ordering invariants of the merged segments.

        Returns:
            List of problems found; empty when the transcript is well-formed.
        """
        problems = []
        previous_start = None
        for i, seg in enumerate(self.segments):
            if seg.start is None or seg.end is None:
                problems.append(f"Segment {i} missing start/end times")
                continue
            if seg.start < 0 or seg.end < seg.start:
                problems.append(f"Segment {i} has invalid timestamps")
            if previous_start is not None and seg.start < previous_start:
                problems.append(f"Segment {i} starts before segment {i - 1}")
            previous_start = seg.start
        return problems


def format_timestamp(seconds: float) -> str:
    """Format seconds as HH:MM:SS."""
    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


def _as_float(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    return None
