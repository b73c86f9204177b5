"""Absolute session timeline for transcript segments."""

import logging
import threading
import time
from typing import Callable

logger = logging.getLogger(__name__)


def format_time(seconds: float) -> str:
    """Format elapsed seconds as ``M:SS``."""
    seconds = max(0.0, seconds)
    minutes = int(seconds // 60)
    secs = int(seconds % 60)
    return f"{minutes}:{secs:02d}"


class SegmentTimeline:
    """Tracks elapsed audio and places segments on the session timeline.

    The local engine reports offsets relative to the window it was given;
    ``reserve()`` hands out the absolute start of each window and
    ``absolute_ms()`` maps an in-window offset onto epoch milliseconds.
    Returned timestamps never go backwards within a session.
    """

    def __init__(
        self,
        recording_start_ms: int | None = None,
        *,
        clock: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self._clock = clock
        self._monotonic = monotonic
        self._fixed_start_ms = recording_start_ms
        self._lock = threading.Lock()
        self._reset()

    def mark_recording_start(self) -> None:
        """Re-base the timeline on "now", once the engine is ready to capture."""
        with self._lock:
            self._reset()
        logger.debug("Recording start set to %d", self.recording_start_ms)

    def _reset(self) -> None:
        self.recording_start_ms = (
            self._fixed_start_ms
            if self._fixed_start_ms is not None
            else int(self._clock() * 1000)
        )
        self._monotonic_start = self._monotonic()
        self._cumulative_audio_seconds = 0.0
        self._last_timestamp_ms = self.recording_start_ms

    @property
    def cumulative_audio_seconds(self) -> float:
        """Total seconds of audio handed to the local engine so far."""
        with self._lock:
            return self._cumulative_audio_seconds

    def reserve(self, duration_seconds: float) -> float:
        """Claim the next ``duration_seconds`` of the timeline.

        Returns:
            Window start in seconds since recording start
        """
        if duration_seconds < 0:
            raise ValueError("duration_seconds must be non-negative")
        with self._lock:
            start = self._cumulative_audio_seconds
            self._cumulative_audio_seconds += duration_seconds
            return start

    def absolute_ms(self, window_start: float, relative_start: float = 0.0) -> int:
        """Epoch milliseconds for an offset inside a window."""
        offset = window_start + max(0.0, relative_start)
        return self._clamp(self.recording_start_ms + int(round(offset * 1000)))

    def now_ms(self) -> int:
        """Epoch milliseconds for "now", derived from a monotonic clock."""
        elapsed = self._monotonic() - self._monotonic_start
        return self._clamp(self.recording_start_ms + int(round(elapsed * 1000)))

    def elapsed_seconds(self, timestamp_ms: int) -> float:
        """Seconds between recording start and ``timestamp_ms``."""
        return (timestamp_ms - self.recording_start_ms) / 1000.0

    def _clamp(self, timestamp_ms: int) -> int:
        with self._lock:
            if timestamp_ms < self._last_timestamp_ms:
                logger.debug(
                    "Clamping timestamp %d to %d", timestamp_ms, self._last_timestamp_ms
                )
                timestamp_ms = self._last_timestamp_ms
            self._last_timestamp_ms = timestamp_ms
            return timestamp_ms
