"""Shared types and dataclasses for cross-module use."""

from dataclasses import dataclass, field
from enum import Enum


class EngineKind(Enum):
    """Speech-recognition backend selected for a session."""

    CONNECTED = "connected"
    LOCAL = "local"


class RecognitionError(RuntimeError):
    """Local recognizer failed on one audio window."""

    pass


@dataclass
class TranscriptSegment:
    """One attributed piece of recognized text."""

    text: str
    speaker_id: int | None
    channel: int
    is_you: bool
    is_final: bool
    speech_final: bool
    timestamp_ms: int
    formatted_time: str | None = None


@dataclass
class RecognizedSegment:
    """Sub-segment returned by the local recognizer, relative to its window."""

    text: str
    start_time: float
    end_time: float = 0.0


@dataclass
class RecognitionResult:
    """Result of one synchronous local recognition call."""

    segments: list[RecognizedSegment] = field(default_factory=list)
    full_text: str = ""
