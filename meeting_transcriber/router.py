"""Transcription router: one control surface over both engines."""

import logging
from typing import Callable, Protocol

from meeting_transcriber._types import EngineKind, TranscriptSegment
from meeting_transcriber.audio_source import AudioSource
from meeting_transcriber.connected import ConnectedEngineAdapter
from meeting_transcriber.local import LocalEngineAdapter
from meeting_transcriber.preferences import EnginePreference
from meeting_transcriber.session import SessionState

logger = logging.getLogger(__name__)

SegmentCallback = Callable[[TranscriptSegment], None]


class EngineAdapter(Protocol):
    """Capability set shared by the connected and local adapters."""

    async def start(self, source: AudioSource, session: SessionState, emit: SegmentCallback) -> bool: ...

    async def stop(self) -> None: ...

    async def pause(self) -> None: ...

    async def resume(self) -> None: ...

    async def shutdown(self) -> None: ...

    def is_streaming(self) -> bool: ...


class TranscriptionRouter:
    """Selects an engine per session and owns the session lifecycle.

    The engine is chosen from the persisted preference at every ``start()``
    and stays fixed until ``stop()``. Failures to start are reported as
    ``False``; the router never retries or falls back to the other engine.
    """

    def __init__(
        self,
        connected: ConnectedEngineAdapter,
        local: LocalEngineAdapter,
        preference: EnginePreference,
        audio_source: AudioSource | None = None,
        on_segment: SegmentCallback | None = None,
    ):
        """Initialize router.

        Args:
            connected: Adapter for the streaming engine
            local: Adapter for the windowed local engine
            preference: Persisted engine choice, re-read at each start
            audio_source: Source polled by the active adapter
            on_segment: Sink invoked once per emitted segment
        """
        self.connected = connected
        self.local = local
        self.preference = preference
        self.audio_source = audio_source
        self.on_segment = on_segment

        self._adapters: dict[EngineKind, EngineAdapter] = {
            EngineKind.CONNECTED: connected,
            EngineKind.LOCAL: local,
        }
        self._active: EngineKind | None = None
        self._session: SessionState | None = None

        logger.info("TranscriptionRouter initialized with engine: %s", preference.get().value)

    @property
    def session(self) -> SessionState | None:
        """State of the running session, if any."""
        return self._session

    @property
    def active_engine(self) -> EngineKind | None:
        return self._active

    @property
    def is_paused(self) -> bool:
        return self._session is not None and self._session.is_paused

    def bind_audio_source(self, source: AudioSource | None) -> None:
        self.audio_source = source

    def set_on_segment(self, callback: SegmentCallback | None) -> None:
        self.on_segment = callback

    def set_engine(self, kind: EngineKind) -> None:
        """Persist the engine for subsequent sessions; a running one is unaffected."""
        logger.info("Engine preference set to: %s", kind.value)
        self.preference.set(kind)

    def get_engine(self) -> EngineKind:
        return self.preference.get()

    def set_language(self, language: str, auto_detect: bool = False) -> None:
        """Language for the connected engine; the local engine auto-detects."""
        self.connected.set_language(language, auto_detect)

    def is_local_ready(self) -> bool:
        return self.local.is_ready()

    def is_streaming(self) -> bool:
        """Liveness of the active adapter, which may end on its own."""
        if self._active is None:
            return False
        return self._adapters[self._active].is_streaming()

    async def start(self) -> bool:
        """Start a session with the preferred engine.

        Returns:
            True if streaming (including when already streaming), False on a
            configuration or connection failure
        """
        if self.is_streaming():
            logger.debug("Already streaming, ignoring start")
            return True

        if self._active is not None:
            logger.info("Previous %s session ended on its own, cleaning up", self._active.value)
            await self.stop()

        if self.audio_source is None:
            logger.error("Cannot start: no audio source bound")
            return False

        kind = self.preference.get()
        session = SessionState(engine_kind=kind)
        adapter = self._adapters[kind]
        logger.info("Starting transcription with engine: %s", kind.value.upper())

        try:
            started = await adapter.start(self.audio_source, session, self._emit)
        except Exception as e:
            logger.error("Failed to start %s engine: %s", kind.value, e, exc_info=True)
            started = False

        if not started:
            logger.error("Engine %s failed to start", kind.value)
            return False

        self._active = kind
        self._session = session
        return True

    async def stop(self) -> None:
        """Stop the active session; safe to call repeatedly."""
        if self._active is None:
            return

        kind = self._active
        logger.info("Stopping %s session", kind.value)
        try:
            await self._adapters[kind].stop()
        finally:
            self._active = None
            self._session = None
        logger.info("Transcription stopped")

    async def pause(self) -> None:
        if self._active is None or self.is_paused:
            return
        await self._adapters[self._active].pause()
        logger.info("Streaming paused")

    async def resume(self) -> None:
        if self._active is None or not self.is_paused:
            return
        await self._adapters[self._active].resume()
        logger.info("Streaming resumed")

    async def shutdown(self) -> None:
        """Stop any session and release both engines."""
        logger.info("TranscriptionRouter shutdown starting")
        await self.stop()
        for kind, adapter in self._adapters.items():
            try:
                await adapter.shutdown()
            except Exception as e:
                logger.warning("Error shutting down %s engine: %s", kind.value, e)
        logger.info("TranscriptionRouter shutdown complete")

    def _emit(self, segment: TranscriptSegment) -> None:
        if not segment.text or not segment.text.strip():
            return
        if self.on_segment is None:
            return
        try:
            self.on_segment(segment)
        except Exception as e:
            logger.error("Segment callback failed: %s", e, exc_info=True)
