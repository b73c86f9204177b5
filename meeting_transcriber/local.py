"""Local engine adapter: windowed recognition with timeline reconstruction."""

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Callable

from meeting_transcriber._types import RecognitionError, RecognitionResult, TranscriptSegment
from meeting_transcriber.audio_source import AudioSource
from meeting_transcriber.mixer import bytes_for_duration, sample_count, stereo_to_mono
from meeting_transcriber.recognizer import LocalRecognizer
from meeting_transcriber.session import SessionState
from meeting_transcriber.timeline import format_time

logger = logging.getLogger(__name__)

SegmentCallback = Callable[[TranscriptSegment], None]


class LocalEngineAdapter:
    """Feeds a synchronous local recognizer from a polled audio source.

    Two periodic tasks run per session: a fast poll task that moves chunks
    from the source into an in-memory buffer, and a slower trigger task that
    drains the buffer into one window, downmixes it and recognizes it in an
    executor. Windows are recognized strictly in the order they were taken
    from the buffer.
    """

    def __init__(
        self,
        recognizer: LocalRecognizer,
        sample_rate: int = 16000,
        channels: int = 2,
        poll_interval: float = 0.1,
        transcribe_interval: float = 5.0,
        min_window_seconds: float = 1.5,
        executor: ThreadPoolExecutor | None = None,
    ):
        """Initialize local adapter.

        Args:
            recognizer: Local recognizer used for every window
            sample_rate: Sample rate of the source audio in Hz
            channels: Channel count of the source audio (stereo)
            poll_interval: Seconds between audio source polls
            transcribe_interval: Seconds between recognition triggers
            min_window_seconds: Windows shorter than this are dropped unrecognized
            executor: Optional ThreadPoolExecutor for model loading and inference
        """
        self.recognizer = recognizer
        self.sample_rate = sample_rate
        self.channels = channels
        self.poll_interval = poll_interval
        self.transcribe_interval = transcribe_interval
        self.min_window_seconds = min_window_seconds
        self.executor = executor or ThreadPoolExecutor(max_workers=1)
        self._executor_owned = executor is None
        self._min_window_bytes = bytes_for_duration(min_window_seconds, sample_rate, channels)

        self._buffer: list[bytes] = []
        self._buffer_lock = asyncio.Lock()
        self._recognize_lock = asyncio.Lock()
        self._poll_task: asyncio.Task | None = None
        self._trigger_task: asyncio.Task | None = None
        self._pending: set[asyncio.Task] = set()
        self._streaming = False

        self._source: AudioSource | None = None
        self._session: SessionState | None = None
        self._emit: SegmentCallback | None = None

    def is_ready(self) -> bool:
        """True when the model files are available locally."""
        return self.recognizer.is_downloaded()

    def is_streaming(self) -> bool:
        return self._streaming

    async def start(self, source: AudioSource, session: SessionState, emit: SegmentCallback) -> bool:
        """Load the model and start the poll and trigger tasks.

        Returns:
            False if the model is not downloaded or fails to load
        """
        if self._streaming:
            return True

        if not self.recognizer.is_downloaded():
            logger.error("Local model '%s' not downloaded", self.recognizer.model_name)
            return False

        if not self.recognizer.is_loaded:
            try:
                await asyncio.get_running_loop().run_in_executor(self.executor, self.recognizer.load)
            except RecognitionError as e:
                logger.error("Failed to initialize local model: %s", e)
                return False

        self._source = source
        self._session = session
        self._emit = emit
        async with self._buffer_lock:
            self._buffer.clear()

        session.timeline.mark_recording_start()
        self._streaming = True
        self._poll_task = asyncio.create_task(self._poll_loop(), name="local-audio-poll")
        self._trigger_task = asyncio.create_task(self._trigger_loop(), name="local-recognition-trigger")
        logger.info(
            "Local live transcription started (poll every %.1fs, recognize every %.1fs)",
            self.poll_interval,
            self.transcribe_interval,
        )
        return True

    async def stop(self) -> None:
        """Halt both periodic tasks and flush residual audio in the background.

        The flush is fire-and-forget: it still emits through the session's
        callback, but this method does not wait for it.
        """
        if not self._streaming:
            return

        logger.info("Stopping local live transcription")
        self._streaming = False
        await self._cancel_periodic_tasks()

        session, emit = self._session, self._emit
        if session is not None and session.is_paused:
            async with self._buffer_lock:
                discarded = len(self._buffer)
                self._buffer.clear()
            logger.debug("Stopped while paused, discarding %d chunks", discarded)
        else:
            await self._poll_once()
            block = await self._take_buffer()
            if block and session is not None and emit is not None:
                logger.debug("Flushing %.1fKB of residual audio", len(block) / 1024)
                self._spawn_window(block, session, emit)

        self._source = None
        self._session = None
        self._emit = None
        logger.info("Local live transcription stopped")

    async def pause(self) -> None:
        """Suspend recognition; polling and buffering continue."""
        if self._session is not None:
            self._session.is_paused = True
            logger.info("Local transcription paused")

    async def resume(self) -> None:
        """Discard audio buffered during the pause and restart the trigger timer."""
        session = self._session
        if session is None or not session.is_paused:
            return

        async with self._buffer_lock:
            discarded = len(self._buffer)
            self._buffer.clear()
        logger.info("Discarding %d audio chunks buffered during pause", discarded)
        session.is_paused = False

        if self._streaming:
            if self._trigger_task is not None:
                self._trigger_task.cancel()
                await asyncio.gather(self._trigger_task, return_exceptions=True)
            self._trigger_task = asyncio.create_task(
                self._trigger_loop(), name="local-recognition-trigger"
            )

    async def wait_idle(self) -> None:
        """Wait for in-flight windows, including a stop-time flush."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def shutdown(self) -> None:
        """Stop, wait for outstanding windows and release the model."""
        await self.stop()
        await self.wait_idle()
        self.recognizer.unload()
        if self._executor_owned and self.executor:
            self.executor.shutdown(wait=True)
            logger.debug("Executor shut down")

    async def transcribe_buffer(self) -> None:
        """Drain the buffer into one window and recognize it.

        Windows under the minimum length are dropped without a model call.
        """
        session, emit = self._session, self._emit
        if session is None or emit is None or session.is_paused:
            return

        block = await self._take_buffer()
        if not block:
            return
        if len(block) < self._min_window_bytes:
            logger.debug(
                "Skipping - only %.1fKB buffered (need at least %.1fKB / %.1fs)",
                len(block) / 1024,
                self._min_window_bytes / 1024,
                self.min_window_seconds,
            )
            return

        # Shielded so a stop() during inference still lets this window emit.
        await asyncio.shield(self._spawn_window(block, session, emit))

    async def _poll_loop(self) -> None:
        while True:
            await self._poll_once()
            await asyncio.sleep(self.poll_interval)

    async def _trigger_loop(self) -> None:
        # Fixed cadence: inference time does not push back the next firing.
        loop = asyncio.get_running_loop()
        next_fire = loop.time() + self.transcribe_interval
        while True:
            await asyncio.sleep(max(0.0, next_fire - loop.time()))
            next_fire += self.transcribe_interval
            await self.transcribe_buffer()

    async def _poll_once(self) -> None:
        source = self._source
        if source is None:
            return
        try:
            chunks = source.get_audio_chunks()
        except Exception as e:
            logger.warning("Error polling audio source: %s", e)
            return
        if chunks:
            async with self._buffer_lock:
                self._buffer.extend(chunks)

    async def _take_buffer(self) -> bytes:
        async with self._buffer_lock:
            block = b"".join(self._buffer)
            self._buffer.clear()
        return block

    async def _cancel_periodic_tasks(self) -> None:
        tasks = [t for t in (self._poll_task, self._trigger_task) if t is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._poll_task = None
        self._trigger_task = None

    def _spawn_window(self, block: bytes, session: SessionState, emit: SegmentCallback) -> asyncio.Task:
        task = asyncio.create_task(self._recognize_window(block, session, emit))
        self._pending.add(task)
        task.add_done_callback(self._on_window_done)
        return task

    def _on_window_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Window recognition task failed", exc_info=task.exception())

    async def _recognize_window(self, block: bytes, session: SessionState, emit: SegmentCallback) -> None:
        async with self._recognize_lock:
            mono = stereo_to_mono(block)
            duration = sample_count(mono) / self.sample_rate
            window_start = session.timeline.reserve(duration)

            logger.info(
                "Transcribing %.1fKB of audio (%.2fs at %s)",
                len(block) / 1024,
                duration,
                format_time(window_start),
            )
            try:
                result = await asyncio.get_running_loop().run_in_executor(
                    self.executor,
                    self.recognizer.recognize,
                    mono,
                    self.sample_rate,
                    1,
                )
            except RecognitionError as e:
                logger.warning("Recognition failed for window at %s: %s", format_time(window_start), e)
                return
            except Exception as e:
                logger.error(
                    "Unexpected recognition failure for window at %s: %s",
                    format_time(window_start),
                    e,
                    exc_info=True,
                )
                return

            self._emit_result(result, window_start, session, emit)

    def _emit_result(
        self,
        result: RecognitionResult,
        window_start: float,
        session: SessionState,
        emit: SegmentCallback,
    ) -> None:
        if result.segments:
            for seg in result.segments:
                text = seg.text.strip()
                if not text:
                    continue
                self._deliver(text, window_start, max(0.0, seg.start_time), session, emit)
            return

        text = result.full_text.strip()
        if not text:
            return
        if text == session.last_full_text:
            logger.debug("Skipping repeated full-text result")
            return
        session.last_full_text = text
        self._deliver(text, window_start, 0.0, session, emit)

    def _deliver(
        self,
        text: str,
        window_start: float,
        relative_start: float,
        session: SessionState,
        emit: SegmentCallback,
    ) -> None:
        segment = TranscriptSegment(
            text=text,
            speaker_id=None,
            channel=0,
            is_you=session.attributor.attribute(None, 0, is_final=True),
            is_final=True,
            speech_final=False,
            timestamp_ms=session.timeline.absolute_ms(window_start, relative_start),
            formatted_time=format_time(window_start + relative_start),
        )
        logger.debug("[%s] %s", segment.formatted_time, text[:40])
        emit(segment)
