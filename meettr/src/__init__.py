"""
Meeting Transcriber - Record meetings and transcribe them.

Captures a microphone and/or system audio with pause/resume and crash
recovery, then transcribes the recording in fixed-duration chunks with a
local Whisper engine or a pool of remote API workers.
"""

__version__ = "1.0.0"
__author__ = "Meeting Transcriber Team"

from .session import RecordingController
from .orchestrator import TranscriptionOrchestrator
from .merger import merge
from .events import EventChannel

__all__ = [
    "RecordingController",
    "TranscriptionOrchestrator",
    "merge",
    "EventChannel",
]
