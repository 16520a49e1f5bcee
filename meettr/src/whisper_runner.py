"""
Local speech-to-text engine process using OpenAI Whisper.

Run once per chunk by the local worker:

    python -m meettr.src.whisper_runner CHUNK --model medium --language auto

Prints exactly one JSON object ``{text, language, segments}`` on stdout;
diagnostics go to stderr. Exits non-zero on failure.
"""

import json
import logging
import os
import sys
from enum import Enum
from typing import Any, Dict, List, Optional

import click

logger = logging.getLogger(__name__)


class WhisperModel(Enum):
    """Available Whisper model sizes."""
    TINY = "tiny"
    BASE = "base"
    SMALL = "small"
    MEDIUM = "medium"
    LARGE = "large"
    LARGE_V2 = "large-v2"
    LARGE_V3 = "large-v3"


class EngineError(Exception):
    """Exception raised when the Whisper engine fails."""
    pass


def get_available_models() -> List[str]:
    """Get list of available Whisper models."""
    return [m.value for m in WhisperModel]


class WhisperEngine:
    """Load a Whisper model and transcribe audio files with it."""

    def __init__(self, model_name: str = "medium", device: Optional[str] = None):
        """
        Initialize the engine.

        Args:
            model_name: Whisper model to use (tiny, base, small, medium, large).
            device: Device to run on ("cuda", "cpu", or None for auto-detect).
        """
        self.model_name = model_name
        self.device = device
        self.model = None

    def load_model(self) -> None:
        """Load the Whisper model into memory."""
        if self.model is not None:
            return

        try:
            import torch
            import whisper
        except ImportError:
            raise EngineError(
                "OpenAI Whisper not installed. Install with: pip install 'meettr[whisper]'"
            )

        if self.device is None:
            self.device = "cuda" if torch.cuda.is_available() else "cpu"

        logger.info("Loading Whisper model '%s' on %s", self.model_name, self.device)
        try:
            self.model = whisper.load_model(self.model_name, device=self.device)
        except Exception as e:
            raise EngineError(f"Failed to load Whisper model: {e}")

    def transcribe(self, audio_path: str, language: Optional[str] = None) -> Dict[str, Any]:
        """
        Transcribe an audio file.

        Args:
            audio_path: Path to the audio file.
            language: Language code, or None / "auto" for detection.

        Returns:
            Dictionary with text, language and chunk-local segments.

        Raises:
            EngineError: If the file is missing or transcription fails.
        """
        if not os.path.exists(audio_path):
            raise EngineError(f"Audio file not found: {audio_path}")

        self.load_model()
        if language == "auto":
            language = None

        try:
            result = self.model.transcribe(audio_path, language=language, verbose=False)
        except Exception as e:
            raise EngineError(f"Transcription failed: {e}")

        segments = [
            {
                "id": i,
                "start": float(seg["start"]),
                "end": float(seg["end"]),
                "text": seg["text"].strip(),
            }
            for i, seg in enumerate(result.get("segments", []))
        ]
        return {
            "text": result.get("text", "").strip(),
            "language": result.get("language") or "",
            "segments": segments,
        }


@click.command()
@click.argument("audio_file", type=click.Path())
@click.option("-m", "--model", default="medium", type=click.Choice(get_available_models()),
              help="Whisper model size.")
@click.option("-l", "--language", default="auto", help="Language code, or 'auto' to detect.")
@click.option("--device", default=None, type=click.Choice(["cuda", "cpu"]),
              help="Device to run on (default: auto-detect).")
def main(audio_file: str, model: str, language: str, device: Optional[str]):
    """Transcribe AUDIO_FILE and print the result as JSON."""
    logging.basicConfig(stream=sys.stderr, level=logging.INFO, format="%(levelname)s %(message)s")
    engine = WhisperEngine(model_name=model, device=device)
    try:
        result = engine.transcribe(audio_file, language=language)
    except EngineError as e:
        logger.error("%s", e)
        sys.exit(1)
    click.echo(json.dumps(result, ensure_ascii=False))


if __name__ == "__main__":
    main()
