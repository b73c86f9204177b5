"""Synchronous local speech recognition via Faster Whisper."""

import logging
import re
import threading
import time
from pathlib import Path

from meeting_transcriber._types import RecognitionError, RecognitionResult, RecognizedSegment
from meeting_transcriber.mixer import pcm16_to_float32

logger = logging.getLogger(__name__)

MODEL_SAMPLE_RATE = 16000


class LocalRecognizer:
    """Encapsulates a Faster Whisper model behind a window-at-a-time API.

    ``recognize()`` is blocking; callers run it in an executor. The model is
    never fetched implicitly: ``load()`` only uses files already on disk and
    ``download()`` is the explicit way to get them.
    """

    def __init__(
        self,
        model_name: str = "base",
        device: str = "cpu",
        compute_type: str = "int8",
        model_directory: str | None = None,
        beam_size: int = 5,
        language: str = "auto",
    ):
        """Initialize recognizer.

        Args:
            model_name: Faster Whisper model name (tiny, base, small, ...) or a local path
            device: Device to run on (cpu, cuda, auto)
            compute_type: Compute precision (int8, float16, float32)
            model_directory: Custom cache directory for model weights
            beam_size: Beam search width for decoding
            language: Language code, or "auto" for detection
        """
        self.model_name = model_name
        self.device = device
        self.compute_type = compute_type
        self.model_directory = model_directory
        self.beam_size = beam_size
        self.language = language
        self._model = None
        self._model_lock = threading.Lock()
        logger.info(
            "LocalRecognizer initialized: model=%s, device=%s, compute_type=%s, beam_size=%d",
            model_name,
            device,
            compute_type,
            beam_size,
        )

    @property
    def is_loaded(self) -> bool:
        return self._model is not None

    def is_downloaded(self) -> bool:
        """Check whether model weights are available without touching the network."""
        if Path(self.model_name).is_dir():
            return True

        try:
            from faster_whisper import download_model

            download_model(
                self.model_name,
                local_files_only=True,
                cache_dir=self.model_directory,
            )
            return True
        except Exception as e:
            logger.debug("Model %s not found locally: %s", self.model_name, e)
            return False

    def download(self) -> str:
        """Fetch model weights into the cache.

        Returns:
            Path of the downloaded model directory

        Raises:
            RecognitionError: If the download fails
        """
        logger.info("Downloading Faster Whisper model: %s", self.model_name)
        try:
            from faster_whisper import download_model

            start_time = time.perf_counter()
            path = download_model(self.model_name, cache_dir=self.model_directory)
            logger.info(
                "Model downloaded to %s in %.1f seconds", path, time.perf_counter() - start_time
            )
            return path
        except Exception as e:
            logger.error("Failed to download model %s: %s", self.model_name, e)
            raise RecognitionError(f"Failed to download model '{self.model_name}': {e}") from e

    def load(self) -> None:
        """Load the model from local files if not already loaded.

        Raises:
            RecognitionError: If the model is missing or fails to load
        """
        with self._model_lock:
            if self._model is not None:
                return

            logger.info(
                "Loading Faster Whisper model: %s (device=%s, compute_type=%s)",
                self.model_name,
                self.device,
                self.compute_type,
            )

            try:
                from faster_whisper import WhisperModel

                start_time = time.perf_counter()
                self._model = WhisperModel(
                    self.model_name,
                    device=self.device,
                    compute_type=self.compute_type,
                    download_root=self.model_directory,
                    local_files_only=True,
                )
                logger.info(
                    "Model loaded successfully in %.2f seconds", time.perf_counter() - start_time
                )
            except Exception as e:
                logger.error(
                    "Failed to load model %s on device %s: %s",
                    self.model_name,
                    self.device,
                    e,
                )
                raise RecognitionError(
                    f"Failed to load Whisper model '{self.model_name}' on device "
                    f"'{self.device}' with compute_type '{self.compute_type}': {e}"
                ) from e

    def recognize(self, pcm: bytes, sample_rate: int, channels: int = 1) -> RecognitionResult:
        """Recognize one complete mono window.

        Args:
            pcm: Raw little-endian int16 mono PCM
            sample_rate: Sample rate of ``pcm``; must be 16 kHz
            channels: Channel count of ``pcm``; must be 1

        Returns:
            RecognitionResult with window-relative segments and the full text

        Raises:
            RecognitionError: If the model is unavailable, the input format
                is invalid, or inference fails
        """
        if self._model is None:
            raise RecognitionError("Model not loaded")
        if channels != 1:
            raise RecognitionError(f"Expected mono input, got {channels} channels")
        if sample_rate != MODEL_SAMPLE_RATE:
            raise RecognitionError(
                f"Expected {MODEL_SAMPLE_RATE} Hz input, got {sample_rate} Hz"
            )

        audio = pcm16_to_float32(pcm)
        if audio.size == 0:
            return RecognitionResult()

        try:
            raw_segments, _info = self._model.transcribe(
                audio,
                language=self.language if self.language != "auto" else None,
                beam_size=self.beam_size,
            )
            segments = []
            for seg in raw_segments:
                text = normalize_text(seg.text)
                if text:
                    segments.append(
                        RecognizedSegment(text=text, start_time=seg.start, end_time=seg.end)
                    )
        except Exception as e:
            logger.error("Local recognition failed: %s", e, exc_info=True)
            raise RecognitionError(f"Recognition failed: {e}") from e

        full_text = " ".join(seg.text for seg in segments)
        logger.debug(
            "Recognized %.2fs of audio: %d segments", audio.size / sample_rate, len(segments)
        )
        return RecognitionResult(segments=segments, full_text=full_text)

    def unload(self) -> None:
        """Release the model reference."""
        with self._model_lock:
            if self._model is not None:
                logger.info("Unloading Faster Whisper model")
            self._model = None


def normalize_text(text: str) -> str:
    """Collapse whitespace and stray spacing before punctuation."""
    text = text.strip()
    text = re.sub(r"\s+", " ", text)
    text = re.sub(r"\s+([.,!?;:])", r"\1", text)
    return text
