"""Polled audio source producing interleaved int16 stereo PCM chunks."""

import logging
import threading
from collections import deque
from typing import Protocol

import sounddevice

logger = logging.getLogger(__name__)


class AudioSource(Protocol):
    """Anything that hands out PCM captured since the previous call."""

    def get_audio_chunks(self) -> list[bytes]:
        """Return zero or more raw chunks without blocking."""
        ...


class SoundDeviceAudioSource:
    """Captures a stereo input device via sounddevice.

    The PortAudio callback appends raw little-endian int16 frames to a queue;
    ``get_audio_chunks()`` drains it. Channel 0 is expected to carry system
    audio and channel 1 the local microphone.
    """

    def __init__(
        self,
        sample_rate: int = 16000,
        channels: int = 2,
        chunk_size: int = 1600,
        device: int | str | None = None,
        max_pending_chunks: int = 3000,
    ):
        """Initialize audio source.

        Args:
            sample_rate: Sample rate in Hz
            channels: Number of channels (must be 2)
            chunk_size: Frames per PortAudio block
            device: Audio device index or name (None for default)
            max_pending_chunks: Oldest chunks are dropped beyond this many
        """
        if sample_rate <= 0:
            raise ValueError("sample_rate must be positive")
        if channels != 2:
            raise ValueError("channels must be 2")
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")

        self.sample_rate = sample_rate
        self.channels = channels
        self.chunk_size = chunk_size
        self.device = device

        self._stream = None
        self._pending: deque[bytes] = deque(maxlen=max_pending_chunks)
        self._lock = threading.Lock()

        logger.info(
            "SoundDeviceAudioSource initialized: %d Hz, %d channels, device=%s",
            sample_rate,
            channels,
            device if device is not None else "default",
        )

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    @property
    def is_active(self) -> bool:
        return self._stream is not None

    def start(self) -> None:
        """Open the input stream and begin queueing chunks.

        Raises:
            RuntimeError: If the stream cannot be opened
        """
        if self._stream is not None:
            return

        resolved_device = self._resolve_device_selection()
        try:
            with self._lock:
                self._pending.clear()
            self._stream = sounddevice.RawInputStream(
                device=resolved_device,
                samplerate=self.sample_rate,
                channels=self.channels,
                blocksize=self.chunk_size,
                dtype="int16",
                callback=self._callback,
            )
            self._stream.start()
            logger.info(
                "Audio capture started (sample_rate=%d, channels=%d, device=%s)",
                self.sample_rate,
                self.channels,
                resolved_device if resolved_device is not None else "default",
            )
        except Exception as e:
            self._stream = None
            logger.error("Failed to start audio capture: %s", e)
            raise RuntimeError(f"Failed to start audio capture: {e}") from e

    def close(self) -> None:
        """Stop the stream and drop anything not yet polled."""
        if self._stream:
            try:
                self._stream.stop()
                self._stream.close()
            except Exception as e:
                logger.warning("Error closing stream: %s", e)
            finally:
                self._stream = None

        with self._lock:
            self._pending.clear()

    def get_audio_chunks(self) -> list[bytes]:
        with self._lock:
            chunks = list(self._pending)
            self._pending.clear()
        return chunks

    def _callback(self, indata, frames, time_info, status):
        """PortAudio callback; runs on the audio thread."""
        if status:
            logger.warning("Audio stream status: %s", status)

        with self._lock:
            self._pending.append(bytes(indata))

    def _resolve_device_selection(self) -> int | None:
        """Resolve a configured device name to a sounddevice index."""
        if self.device is None or isinstance(self.device, int):
            return self.device

        try:
            device_list = sounddevice.query_devices()
            if isinstance(device_list, dict):
                device_list = [device_list]
        except Exception as e:
            logger.warning(
                "Unable to enumerate audio devices for '%s': %s; using default",
                self.device,
                e,
            )
            return None

        target = self.device.strip().lower()
        partial_match = None
        for idx, dev_info in enumerate(device_list):
            if dev_info.get("max_input_channels", 0) < self.channels:
                continue
            name = dev_info.get("name", f"Device {idx}").strip().lower()
            if name == target:
                return idx
            if partial_match is None and target in name:
                partial_match = idx

        if partial_match is not None:
            logger.debug("Resolved audio device '%s' to index %d", self.device, partial_match)
            return partial_match

        logger.warning("Audio device '%s' not found, using default input", self.device)
        return None
