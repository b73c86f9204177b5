"""Connected engine adapter: live streaming to Deepgram over a websocket."""

import asyncio
import json
import logging
import time
from contextlib import AsyncExitStack
from typing import Any, Callable

from meeting_transcriber._types import TranscriptSegment
from meeting_transcriber.audio_source import AudioSource
from meeting_transcriber.session import SessionState
from meeting_transcriber.timeline import format_time

logger = logging.getLogger(__name__)

SegmentCallback = Callable[[TranscriptSegment], None]


class ConnectedEngineAdapter:
    """Streams stereo PCM to Deepgram and normalizes its result events.

    One websocket session is opened per recording. Audio is pushed as it is
    polled; results arrive asynchronously through SDK event callbacks and
    are attributed before they reach the session callback. A closed or
    failed socket ends the session: ``is_streaming()`` turns false and the
    poll task exits.
    """

    def __init__(
        self,
        api_key: str | None,
        model: str = "nova-2",
        multilingual_model: str = "nova-3",
        language: str = "en",
        auto_detect: bool = False,
        sample_rate: int = 16000,
        channels: int = 2,
        diarize: bool = True,
        interim_results: bool = True,
        punctuate: bool = True,
        smart_format: bool = True,
        utterance_end_ms: int = 1000,
        endpointing: int = 300,
        poll_interval: float = 0.1,
        keepalive_interval: float = 5.0,
    ):
        """Initialize connected adapter.

        Args:
            api_key: Deepgram API key
            model: Model used with a fixed language
            multilingual_model: Model used when auto-detecting the language
            language: Language code for fixed-language sessions
            auto_detect: Open sessions with ``language=multi``
            sample_rate: Sample rate of the streamed PCM in Hz
            channels: Channel count of the streamed PCM
            diarize: Request voice-cluster ids per word
            interim_results: Request partial results
            punctuate: Auto-add punctuation
            smart_format: Enable smart formatting
            utterance_end_ms: Silence that ends an utterance
            endpointing: Endpoint detection window in milliseconds
            poll_interval: Seconds between audio source polls
            keepalive_interval: Seconds between keep-alives while paused
        """
        self.api_key = api_key
        self.model = model
        self.multilingual_model = multilingual_model
        self.language = language
        self.auto_detect = auto_detect
        self.sample_rate = sample_rate
        self.channels = channels
        self.diarize = diarize
        self.interim_results = interim_results
        self.punctuate = punctuate
        self.smart_format = smart_format
        self.utterance_end_ms = utterance_end_ms
        self.endpointing = endpointing
        self.poll_interval = poll_interval
        self.keepalive_interval = keepalive_interval

        self._client = None
        self._connection = None
        self._exit_stack: AsyncExitStack | None = None
        self._listen_task: asyncio.Task | None = None
        self._poll_task: asyncio.Task | None = None
        self._streaming = False
        self._chunks_sent = 0

        self._source: AudioSource | None = None
        self._session: SessionState | None = None
        self._emit: SegmentCallback | None = None

        logger.info(
            "ConnectedEngineAdapter initialized: model=%s, language=%s, auto_detect=%s",
            model,
            language,
            auto_detect,
        )

    def has_api_key(self) -> bool:
        return bool(self.api_key)

    def is_streaming(self) -> bool:
        return self._streaming

    def set_language(self, language: str, auto_detect: bool = False) -> None:
        """Set the language for the next session; open sessions keep theirs."""
        self.language = language
        self.auto_detect = auto_detect
        logger.info("Language set to: %s, auto-detect: %s", language, auto_detect)

    def connection_options(self) -> dict[str, str]:
        """Query parameters negotiated when the session opens."""
        options = {
            "encoding": "linear16",
            "sample_rate": str(self.sample_rate),
            "channels": str(self.channels),
            "multichannel": _flag(self.channels > 1),
            "model": self.multilingual_model if self.auto_detect else self.model,
            "punctuate": _flag(self.punctuate),
            "interim_results": _flag(self.interim_results),
            "smart_format": _flag(self.smart_format),
            "utterance_end_ms": str(self.utterance_end_ms),
            "endpointing": str(self.endpointing),
            "diarize": _flag(self.diarize),
        }
        if self.auto_detect:
            options["language"] = "multi"
        elif self.language:
            options["language"] = self.language
        return options

    async def start(self, source: AudioSource, session: SessionState, emit: SegmentCallback) -> bool:
        """Open the websocket session and start forwarding audio.

        Returns:
            False if no API key is configured or the connection is rejected
        """
        if self._streaming:
            return True

        if not self.api_key:
            logger.error("No Deepgram API key configured")
            return False

        # Leftovers from a session that closed remotely.
        await self.stop()

        try:
            self._ensure_client_initialized()
        except RuntimeError as e:
            logger.error("%s", e)
            return False

        options = self.connection_options()
        logger.info("Connecting to Deepgram: %s", options)

        exit_stack = AsyncExitStack()
        try:
            from deepgram.core.events import EventType

            connection = await exit_stack.enter_async_context(
                self._client.listen.v1.connect(**options)
            )
            connection.on(EventType.MESSAGE, self.handle_message)
            connection.on(EventType.CLOSE, self._on_close)
            connection.on(EventType.ERROR, self._on_error)
        except Exception as e:
            logger.error("Failed to connect to Deepgram: %s", e)
            await exit_stack.aclose()
            return False

        self._exit_stack = exit_stack
        self._connection = connection
        self._source = source
        self._session = session
        self._emit = emit
        self._chunks_sent = 0
        session.timeline.mark_recording_start()
        self._streaming = True

        self._listen_task = asyncio.create_task(connection.start_listening(), name="deepgram-listen")
        self._listen_task.add_done_callback(self._on_listener_done)
        self._poll_task = asyncio.create_task(self._poll_loop(), name="deepgram-audio-poll")

        logger.info(
            "Connected to Deepgram (channel 0 = system audio, channel 1 = microphone)"
        )
        return True

    async def stop(self) -> None:
        """Stop forwarding audio and close the websocket session."""
        self._streaming = False

        tasks = [t for t in (self._poll_task, self._listen_task) if t is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._poll_task = None
        self._listen_task = None

        if self._exit_stack is not None:
            logger.info("Closing Deepgram connection after %d chunks", self._chunks_sent)
            try:
                await self._exit_stack.aclose()
            except Exception as e:
                logger.warning("Error closing Deepgram connection: %s", e)
            self._exit_stack = None

        self._connection = None
        self._source = None
        self._session = None
        self._emit = None

    async def pause(self) -> None:
        """Stop forwarding audio while keeping the socket open."""
        if self._session is not None:
            self._session.is_paused = True
            logger.info("Deepgram forwarding paused")

    async def resume(self) -> None:
        if self._session is not None and self._session.is_paused:
            self._session.is_paused = False
            logger.info("Deepgram forwarding resumed")

    async def shutdown(self) -> None:
        await self.stop()
        self._client = None

    def handle_message(self, message: Any) -> TranscriptSegment | None:
        """Normalize one result event, attribute it and emit it.

        Returns:
            The emitted segment, or None if the event was discarded
        """
        session, emit = self._session, self._emit
        if session is None or emit is None:
            return None

        try:
            payload = _as_dict(message)
        except (ValueError, TypeError, UnicodeDecodeError) as e:
            logger.debug("Discarding unparseable Deepgram event: %s", e)
            return None

        if not payload or payload.get("type") != "Results" or not payload.get("channel"):
            return None

        try:
            parsed = _parse_results(payload)
        except (KeyError, IndexError, TypeError, AttributeError, ValueError) as e:
            logger.debug("Discarding malformed Deepgram result: %s", e)
            return None
        if parsed is None:
            return None

        text, speaker_id, channel, is_final, speech_final = parsed
        timestamp_ms = session.timeline.now_ms()
        segment = TranscriptSegment(
            text=text,
            speaker_id=speaker_id,
            channel=channel,
            is_you=session.attributor.attribute(speaker_id, channel, is_final),
            is_final=is_final,
            speech_final=speech_final,
            timestamp_ms=timestamp_ms,
            formatted_time=format_time(session.timeline.elapsed_seconds(timestamp_ms)),
        )

        logger.debug(
            "%s CH%d %s [%s]: %s",
            "YOU" if segment.is_you else "THEM",
            channel,
            f"[S{speaker_id}]" if speaker_id is not None else "[no-diarize]",
            "final" if is_final else "...",
            text[:50],
        )
        emit(segment)
        return segment

    def _ensure_client_initialized(self) -> None:
        """Lazy-initialize the async Deepgram client.

        Raises:
            RuntimeError: If client initialization fails
        """
        if self._client is not None:
            return

        try:
            from deepgram import AsyncDeepgramClient

            start_time = time.perf_counter()
            self._client = AsyncDeepgramClient(api_key=self.api_key)
            logger.debug(
                "Deepgram client initialized in %.3f seconds", time.perf_counter() - start_time
            )
        except Exception as e:
            raise RuntimeError(f"Failed to initialize Deepgram client: {e}") from e

    async def _poll_loop(self) -> None:
        loop = asyncio.get_running_loop()
        last_activity = loop.time()

        while self._streaming:
            source, session, connection = self._source, self._session, self._connection
            if source is None or session is None or connection is None:
                return

            try:
                chunks = source.get_audio_chunks()
            except Exception as e:
                logger.warning("Error getting audio chunks: %s", e)
                chunks = []

            try:
                if session.is_paused:
                    if chunks:
                        logger.debug("Paused, discarding %d audio chunks", len(chunks))
                    if loop.time() - last_activity >= self.keepalive_interval:
                        await self._send_keepalive()
                        last_activity = loop.time()
                else:
                    for chunk in chunks:
                        await connection.send_media(chunk)
                        self._chunks_sent += 1
                        if self._chunks_sent % 50 == 0:
                            logger.debug("Sent %d stereo audio chunks to Deepgram", self._chunks_sent)
                    if chunks:
                        last_activity = loop.time()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._mark_closed(f"send failed: {e}")
                return

            await asyncio.sleep(self.poll_interval)

    async def _send_keepalive(self) -> None:
        from deepgram.extensions.types.sockets import ListenV1ControlMessage

        await self._connection.send_control(ListenV1ControlMessage(type="KeepAlive"))
        logger.debug("Sent KeepAlive to Deepgram")

    def _on_close(self, _event: Any) -> None:
        self._mark_closed("connection closed")

    def _on_error(self, error: Any) -> None:
        self._mark_closed(f"connection error: {error}")

    def _on_listener_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        if task.exception() is not None:
            self._mark_closed(f"listener failed: {task.exception()}")
        else:
            self._mark_closed("listener finished")

    def _mark_closed(self, reason: str) -> None:
        if self._streaming:
            logger.error("Deepgram session ended: %s", reason)
        self._streaming = False


def _flag(value: bool) -> str:
    return "true" if value else "false"


def _as_dict(message: Any) -> dict | None:
    """Coerce an SDK event, dict or raw JSON payload to a dict."""
    if isinstance(message, (bytes, bytearray)):
        message = message.decode("utf-8")
    if isinstance(message, str):
        message = json.loads(message)
    if isinstance(message, dict):
        return message
    if hasattr(message, "model_dump"):
        return message.model_dump()
    if hasattr(message, "dict"):
        return message.dict()
    return None


def _parse_results(payload: dict) -> tuple[str, int | None, int, bool, bool] | None:
    """Extract (text, speaker_id, channel, is_final, speech_final) from a Results event."""
    alternatives = payload["channel"].get("alternatives") or []
    if not alternatives:
        return None

    text = (alternatives[0].get("transcript") or "").strip()
    if not text:
        return None

    channel_index = payload.get("channel_index")
    if isinstance(channel_index, (list, tuple)) and channel_index:
        channel = int(channel_index[0])
    elif isinstance(channel_index, int):
        channel = channel_index
    else:
        channel = 0

    speaker_id = None
    words = alternatives[0].get("words") or []
    if words and words[0].get("speaker") is not None:
        speaker_id = int(words[0]["speaker"])

    return (
        text,
        speaker_id,
        channel,
        bool(payload.get("is_final")),
        bool(payload.get("speech_final")),
    )
