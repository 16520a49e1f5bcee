"""
Transcript output formatting.

Writes the persisted artifacts of a transcription job: ``transcript.json``,
``transcript.txt`` and, optionally, a markdown rendering.
"""

import json
import os
from datetime import datetime
from enum import Enum
from typing import List, Optional

from .transcript import MergedTranscript, format_timestamp

JSON_FILENAME = "transcript.json"
TEXT_FILENAME = "transcript.txt"
MARKDOWN_FILENAME = "transcript.md"


class MarkdownStyle(Enum):
    """Available markdown formatting styles."""
    SIMPLE = "simple"            # Just the text
    TIMESTAMPED = "timestamped"  # Text with timestamps
    DETAILED = "detailed"        # Segment table plus statistics


def format_text(transcript: MergedTranscript) -> str:
    """
    Format a transcript as plain text, one ``[HH:MM:SS] text`` line per segment.

    A transcript without segments is written as its full text.
    """
    if not transcript.segments:
        return transcript.text + "\n" if transcript.text else ""
    lines = [f"[{format_timestamp(seg.start or 0.0)}] {seg.text}" for seg in transcript.segments]
    return "\n".join(lines) + "\n"


def format_json(transcript: MergedTranscript) -> str:
    return json.dumps(transcript.to_dict(), indent=2, ensure_ascii=False)


class MarkdownFormatter:
    """Format merged transcripts as markdown."""

    def __init__(self, style: str = "timestamped", include_metadata: bool = True):
        """
        Initialize the markdown formatter.

        Args:
            style: Formatting style (simple, timestamped, detailed).
            include_metadata: Include recording/transcription metadata.
        """
        self.style = MarkdownStyle(style)
        self.include_metadata = include_metadata

    def format(
        self,
        transcript: MergedTranscript,
        source_path: Optional[str] = None
    ) -> str:
        """
        Format a transcript as markdown.

        Args:
            transcript: The merged transcript.
            source_path: Recording the transcript was made from.

        Returns:
            Formatted markdown string.
        """
        lines = []
        if self.include_metadata or self.style == MarkdownStyle.DETAILED:
            lines.append(self._format_header(transcript, source_path))

        lines.append("## Transcript")
        lines.append("")

        if self.style == MarkdownStyle.SIMPLE:
            lines.append(transcript.text)
            lines.append("")
        elif self.style == MarkdownStyle.DETAILED:
            lines.append("| Start | End | Text |")
            lines.append("|-------|-----|------|")
            for seg in transcript.segments:
                text = seg.text.replace("|", "\\|")
                lines.append(
                    f"| {format_timestamp(seg.start)} | {format_timestamp(seg.end)} | {text} |"
                )
            lines.append("")
            lines.append(self._format_statistics(transcript))
        else:
            for seg in transcript.segments:
                lines.append(f"**[{seg.start_formatted}]** {seg.text}")
                lines.append("")

        return "\n".join(lines)

    def _format_header(
        self,
        transcript: MergedTranscript,
        source_path: Optional[str]
    ) -> str:
        """Generate markdown header with metadata."""
        lines = []
        if source_path:
            lines.append(f"# Transcript: {os.path.splitext(os.path.basename(source_path))[0]}")
        else:
            lines.append("# Meeting Transcript")
        lines.append("")
        lines.append("## Metadata")
        lines.append("")
        if source_path:
            lines.append(f"- **Recording:** `{source_path}`")
        lines.append(f"- **Duration:** {_format_duration(transcript.duration)}")
        lines.append(f"- **Language:** {transcript.language}")
        lines.append(f"- **Chunks:** {transcript.chunk_count}")
        lines.append(f"- **Segments:** {transcript.segment_count}")
        lines.append(f"- **Word Count:** {transcript.word_count:,}")
        lines.append(f"- **Transcribed:** {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
        lines.append("")
        return "\n".join(lines)

    def _format_statistics(self, transcript: MergedTranscript) -> str:
        lines = ["## Statistics", "", "| Metric | Value |", "|--------|-------|"]
        lines.append(f"| Total Duration | {_format_duration(transcript.duration)} |")
        lines.append(f"| Total Words | {transcript.word_count:,} |")
        lines.append(f"| Total Segments | {transcript.segment_count} |")
        wpm = (transcript.word_count / transcript.duration * 60) if transcript.duration > 0 else 0
        lines.append(f"| Words per Minute | {wpm:.0f} |")
        lines.append("")
        return "\n".join(lines)


def save(content: str, output_path: str) -> str:
    """
    Save content to a file, creating parent directories.

    Returns:
        Absolute path to the saved file.
    """
    output_path = os.path.abspath(output_path)
    os.makedirs(os.path.dirname(output_path), exist_ok=True)
    with open(output_path, "w", encoding="utf-8") as f:
        f.write(content)
    return output_path


def write_outputs(
    transcript: MergedTranscript,
    output_dir: str,
    markdown: bool = False,
    markdown_style: str = "timestamped",
    source_path: Optional[str] = None
) -> List[str]:
    """
    Write transcript.json, transcript.txt and optionally transcript.md.

    Args:
        transcript: The merged transcript.
        output_dir: Directory to write into.
        markdown: Also write a markdown rendering.
        markdown_style: Markdown style name.
        source_path: Recording the transcript was made from.

    Returns:
        Absolute paths of the files written.
    """
    paths = [
        save(format_json(transcript), os.path.join(output_dir, JSON_FILENAME)),
        save(format_text(transcript), os.path.join(output_dir, TEXT_FILENAME)),
    ]
    if markdown:
        content = MarkdownFormatter(style=markdown_style).format(transcript, source_path=source_path)
        paths.append(save(content, os.path.join(output_dir, MARKDOWN_FILENAME)))
    return paths


def _format_duration(seconds: float) -> str:
    """Format duration in human-readable format."""
    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)

    if hours > 0:
        return f"{hours}h {minutes}m {secs}s"
    elif minutes > 0:
        return f"{minutes}m {secs}s"
    return f"{secs}s"
