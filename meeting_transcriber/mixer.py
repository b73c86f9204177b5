"""PCM channel mixing helpers for the local-engine path."""

import numpy as np

BYTES_PER_SAMPLE = 2


def stereo_to_mono(stereo: bytes) -> bytes:
    """Downmix interleaved little-endian int16 stereo PCM to mono.

    Each output sample is the average of the left and right samples of its
    frame, rounded half up. A trailing partial frame is dropped.

    Args:
        stereo: Raw interleaved PCM (L0 R0 L1 R1 ...)

    Returns:
        Raw little-endian int16 mono PCM
    """
    frame_bytes = BYTES_PER_SAMPLE * 2
    usable = len(stereo) - (len(stereo) % frame_bytes)
    if usable == 0:
        return b""

    frames = np.frombuffer(stereo[:usable], dtype="<i2").reshape(-1, 2).astype(np.int32)
    mixed = np.floor((frames[:, 0] + frames[:, 1]) / 2 + 0.5)
    return mixed.astype("<i2").tobytes()


def pcm16_to_float32(pcm: bytes) -> np.ndarray:
    """Convert little-endian int16 mono PCM to float32 in [-1, 1]."""
    usable = len(pcm) - (len(pcm) % BYTES_PER_SAMPLE)
    samples = np.frombuffer(pcm[:usable], dtype="<i2")
    return (samples.astype(np.float32) / 32768.0).clip(-1.0, 1.0)


def sample_count(pcm: bytes, channels: int = 1) -> int:
    """Number of frames in a raw int16 PCM buffer."""
    return len(pcm) // (BYTES_PER_SAMPLE * channels)


def bytes_for_duration(seconds: float, sample_rate: int, channels: int) -> int:
    """Byte length of ``seconds`` of int16 PCM at the given layout."""
    return int(round(seconds * sample_rate)) * BYTES_PER_SAMPLE * channels
