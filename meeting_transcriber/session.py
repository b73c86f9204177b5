"""Per-recording session state shared by the router and its active adapter."""

from dataclasses import dataclass, field

from meeting_transcriber._types import EngineKind
from meeting_transcriber.speaker import SpeakerAttributor
from meeting_transcriber.timeline import SegmentTimeline


@dataclass
class SessionState:
    """State for exactly one recording; discarded when the session stops."""

    engine_kind: EngineKind
    timeline: SegmentTimeline = field(default_factory=SegmentTimeline)
    attributor: SpeakerAttributor = field(default_factory=SpeakerAttributor)
    is_paused: bool = False
    last_full_text: str = ""

    @property
    def recording_start_ms(self) -> int:
        """Epoch milliseconds at which the engine began capturing."""
        return self.timeline.recording_start_ms

    @property
    def cumulative_audio_seconds(self) -> float:
        """Seconds of audio already handed to the local recognizer."""
        return self.timeline.cumulative_audio_seconds

    @property
    def seen_speaker_ids(self) -> frozenset[int]:
        """Voice-cluster ids confirmed by final segments."""
        return self.attributor.seen_speaker_ids
