"""Speaker attribution: decides whether a segment was spoken by "you"."""

import logging
import threading

logger = logging.getLogger(__name__)

MIC_CHANNEL = 1


class SpeakerAttributor:
    """Per-session "you" vs "them" heuristic.

    Until two distinct voice-cluster ids have been confirmed by final
    segments, attribution follows the channel convention (microphone on
    channel 1, system audio on channel 0). Afterwards any segment carrying a
    cluster id is attributed by that id, with cluster 0 taken to be the local
    speaker.

    Known limitation: cluster 0 is simply the first voice the recognizer
    heard. If the remote party speaks first, attribution is inverted.
    """

    def __init__(self):
        self._seen_speaker_ids: set[int] = set()
        self._lock = threading.Lock()

    @property
    def seen_speaker_ids(self) -> frozenset[int]:
        with self._lock:
            return frozenset(self._seen_speaker_ids)

    def reset(self) -> None:
        with self._lock:
            self._seen_speaker_ids.clear()

    def attribute(self, speaker_id: int | None, channel: int, is_final: bool) -> bool:
        """Record the segment's evidence and return its ``is_you`` decision."""
        with self._lock:
            if is_final and speaker_id is not None and speaker_id not in self._seen_speaker_ids:
                self._seen_speaker_ids.add(speaker_id)
                logger.info(
                    "New speaker detected: S%d (total: %d speakers)",
                    speaker_id,
                    len(self._seen_speaker_ids),
                )

            if speaker_id is not None and len(self._seen_speaker_ids) >= 2:
                return speaker_id == 0
            return channel == MIC_CHANNEL
