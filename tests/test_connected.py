"""Tests for the connected engine adapter."""

import asyncio
import json
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock, Mock

import pytest

from meeting_transcriber._types import EngineKind
from meeting_transcriber.connected import ConnectedEngineAdapter
from meeting_transcriber.session import SessionState
from meeting_transcriber.timeline import SegmentTimeline


class FakeAudioSource:
    def __init__(self):
        self.pending = []

    def feed(self, *chunks):
        self.pending.extend(chunks)

    def get_audio_chunks(self):
        chunks, self.pending = self.pending, []
        return chunks


class FakeMonotonic:
    def __init__(self):
        self.value = 0.0

    def __call__(self):
        return self.value


def results_event(
    transcript, channel=0, speaker=None, is_final=True, speech_final=False, words=True
):
    word_list = []
    if words and transcript:
        word = {"word": transcript.split()[0], "start": 0.0, "end": 0.5}
        if speaker is not None:
            word["speaker"] = speaker
        word_list.append(word)
    return {
        "type": "Results",
        "channel_index": [channel, 2],
        "is_final": is_final,
        "speech_final": speech_final,
        "channel": {"alternatives": [{"transcript": transcript, "words": word_list}]},
    }


class FakeDeepgramClient:
    """Stands in for AsyncDeepgramClient's listen.v1.connect surface."""

    def __init__(self, fail_connect=False):
        self.fail_connect = fail_connect
        self.options = None
        self.closed = False
        self.listen_done = asyncio.Event()
        self.handlers = {}

        self.connection = MagicMock()
        self.connection.send_media = AsyncMock()
        self.connection.send_control = AsyncMock()
        self.connection.on = Mock(side_effect=self._register)
        self.connection.start_listening = self._start_listening

        self.listen = MagicMock()
        self.listen.v1.connect = self._connect

    def _register(self, event, handler):
        self.handlers[event] = handler

    async def _start_listening(self):
        await self.listen_done.wait()

    @asynccontextmanager
    async def _connect(self, **options):
        if self.fail_connect:
            raise ConnectionError("401 Unauthorized")
        self.options = options
        try:
            yield self.connection
        finally:
            self.closed = True


async def wait_until(predicate, timeout=1.0):
    for _ in range(int(timeout / 0.01)):
        if predicate():
            return True
        await asyncio.sleep(0.01)
    return predicate()


@pytest.fixture
def adapter():
    return ConnectedEngineAdapter(api_key="test-key", poll_interval=0.01)


@pytest.fixture
def client(adapter):
    """Fake SDK client injected into the adapter."""
    fake = FakeDeepgramClient()
    adapter._client = fake
    return fake


@pytest.fixture
def source():
    return FakeAudioSource()


@pytest.fixture
def clock():
    return FakeMonotonic()


@pytest.fixture
def session(clock):
    return SessionState(
        engine_kind=EngineKind.CONNECTED,
        timeline=SegmentTimeline(recording_start_ms=1_000_000, monotonic=clock),
    )


@pytest.fixture
def emitted(adapter, session):
    """Bind a session to the adapter and collect emitted segments."""
    segments = []
    adapter._session = session
    adapter._emit = segments.append
    return segments


class TestConnectionOptions:
    """Tests for session query parameters."""

    def test_defaults(self, adapter):
        """Test stereo multichannel linear16 with diarization."""
        options = adapter.connection_options()
        assert options["encoding"] == "linear16"
        assert options["sample_rate"] == "16000"
        assert options["channels"] == "2"
        assert options["multichannel"] == "true"
        assert options["diarize"] == "true"
        assert options["interim_results"] == "true"
        assert options["utterance_end_ms"] == "1000"
        assert options["endpointing"] == "300"
        assert options["model"] == "nova-2"
        assert options["language"] == "en"

    def test_auto_detect_uses_multilingual_model(self, adapter):
        """Test auto-detect selects the multilingual model and language=multi."""
        adapter.set_language("en", auto_detect=True)
        options = adapter.connection_options()
        assert options["model"] == "nova-3"
        assert options["language"] == "multi"

    def test_fixed_language(self, adapter):
        """Test a fixed language is passed through."""
        adapter.set_language("de")
        assert adapter.connection_options()["language"] == "de"

    def test_values_are_strings(self, adapter):
        """Test every option is a string query value."""
        assert all(isinstance(v, str) for v in adapter.connection_options().values())


class TestConnectedStart:
    """Tests for opening the streaming session."""

    @pytest.mark.asyncio
    async def test_start_without_api_key(self, source, session):
        """Test start fails fast without credentials."""
        adapter = ConnectedEngineAdapter(api_key=None)
        assert adapter.has_api_key() is False
        assert await adapter.start(source, session, Mock()) is False
        assert adapter.is_streaming() is False

    @pytest.mark.asyncio
    async def test_start_connect_failure(self, adapter, source, session):
        """Test a rejected connection reports False."""
        adapter._client = FakeDeepgramClient(fail_connect=True)
        assert await adapter.start(source, session, Mock()) is False
        assert adapter.is_streaming() is False

    @pytest.mark.asyncio
    async def test_start_client_init_failure(self, adapter, source, session, monkeypatch):
        """Test client construction errors report False."""
        import deepgram

        monkeypatch.setattr(deepgram, "AsyncDeepgramClient", Mock(side_effect=ValueError("bad key")))
        assert await adapter.start(source, session, Mock()) is False

    @pytest.mark.asyncio
    async def test_start_opens_session(self, adapter, client, source, session):
        """Test start connects with the negotiated options and streams."""
        assert await adapter.start(source, session, Mock()) is True
        assert adapter.is_streaming() is True
        assert client.options == adapter.connection_options()
        assert len(client.handlers) == 3
        await adapter.stop()

    @pytest.mark.asyncio
    async def test_recording_start_after_handshake(self, adapter, client, source, session, clock):
        """Test the timeline baseline is taken once the socket is open."""
        open_connection = client.listen.v1.connect

        @asynccontextmanager
        async def slow_connect(**options):
            clock.value += 2.0
            async with open_connection(**options) as connection:
                yield connection

        client.listen.v1.connect = slow_connect
        await adapter.start(source, session, Mock())

        segment = adapter.handle_message(results_event("first words"))
        assert segment.timestamp_ms == session.recording_start_ms
        assert segment.formatted_time == "0:00"
        await adapter.stop()

    @pytest.mark.asyncio
    async def test_audio_forwarded(self, adapter, client, source, session):
        """Test polled chunks are sent as binary media in order."""
        await adapter.start(source, session, Mock())
        source.feed(b"\x01\x00" * 4, b"\x02\x00" * 4)

        assert await wait_until(lambda: client.connection.send_media.await_count == 2)
        sent = [c.args[0] for c in client.connection.send_media.await_args_list]
        assert sent == [b"\x01\x00" * 4, b"\x02\x00" * 4]
        await adapter.stop()


class TestConnectedLiveness:
    """Tests for remote session termination."""

    @pytest.mark.asyncio
    async def test_listener_end_marks_closed(self, adapter, client, source, session):
        """Test a finished listener ends the session."""
        await adapter.start(source, session, Mock())
        client.listen_done.set()

        assert await wait_until(lambda: not adapter.is_streaming())
        await adapter.stop()

    @pytest.mark.asyncio
    async def test_close_event_marks_closed(self, adapter, client, source, session):
        """Test a close event ends the session."""
        from deepgram.core.events import EventType

        await adapter.start(source, session, Mock())
        client.handlers[EventType.CLOSE](None)
        assert adapter.is_streaming() is False
        await adapter.stop()

    @pytest.mark.asyncio
    async def test_send_failure_marks_closed(self, adapter, client, source, session):
        """Test a failed send ends the session and the poll task."""
        client.connection.send_media.side_effect = ConnectionError("socket closed")
        await adapter.start(source, session, Mock())
        source.feed(b"\x00\x00")

        assert await wait_until(lambda: not adapter.is_streaming())
        assert await wait_until(lambda: adapter._poll_task.done())
        await adapter.stop()

    @pytest.mark.asyncio
    async def test_stop_closes_connection(self, adapter, client, source, session):
        """Test stop closes the socket and is idempotent."""
        await adapter.start(source, session, Mock())
        await adapter.stop()
        await adapter.stop()

        assert client.closed is True
        assert adapter.is_streaming() is False

    @pytest.mark.asyncio
    async def test_restart_after_remote_close(self, adapter, client, source, session):
        """Test a new session can open after the previous one closed remotely."""
        await adapter.start(source, session, Mock())
        client.listen_done.set()
        await wait_until(lambda: not adapter.is_streaming())

        client.listen_done = asyncio.Event()
        assert await adapter.start(source, session, Mock()) is True
        assert adapter.is_streaming() is True
        await adapter.stop()


class TestConnectedPause:
    """Tests for pausing the streaming session."""

    @pytest.mark.asyncio
    async def test_paused_audio_not_sent(self, adapter, client, source, session):
        """Test chunks captured while paused are discarded."""
        await adapter.start(source, session, Mock())
        await adapter.pause()
        source.feed(b"\x01\x00")

        assert await wait_until(lambda: source.pending == [])
        await asyncio.sleep(0.03)
        client.connection.send_media.assert_not_awaited()

        await adapter.resume()
        source.feed(b"\x02\x00")
        assert await wait_until(lambda: client.connection.send_media.await_count == 1)
        assert client.connection.send_media.await_args.args[0] == b"\x02\x00"
        await adapter.stop()

    @pytest.mark.asyncio
    async def test_keepalive_while_paused(self, client, source, session):
        """Test keep-alives are sent while the socket is idle."""
        adapter = ConnectedEngineAdapter(api_key="k", poll_interval=0.01, keepalive_interval=0.02)
        adapter._client = client
        adapter._send_keepalive = AsyncMock()
        await adapter.start(source, session, Mock())
        await adapter.pause()

        assert await wait_until(lambda: adapter._send_keepalive.await_count >= 1)
        assert adapter.is_streaming() is True
        await adapter.stop()


class TestHandleMessage:
    """Tests for result event normalization and attribution."""

    def test_no_diarization_uses_channel(self, adapter, emitted):
        """Test events without speaker ids are attributed by channel."""
        segment = adapter.handle_message(results_event("hello", channel=0, is_final=False))

        assert segment.text == "hello"
        assert segment.speaker_id is None
        assert segment.channel == 0
        assert segment.is_you is False
        assert segment.is_final is False
        assert emitted == [segment]

    def test_mic_channel_is_you(self, adapter, emitted):
        """Test channel 1 is you before two speakers are known."""
        segment = adapter.handle_message(results_event("hi there", channel=1, speaker=0))
        assert segment.is_you is True
        assert segment.speaker_id == 0

    def test_cluster_rule_after_two_speakers(self, adapter, emitted, session):
        """Test the second confirmed speaker switches to cluster attribution."""
        adapter.handle_message(results_event("one", channel=1, speaker=0))
        second = adapter.handle_message(results_event("two", channel=1, speaker=1))
        third = adapter.handle_message(results_event("three", channel=0, speaker=0))

        assert emitted[0].is_you is True
        assert second.is_you is False
        assert third.is_you is True
        assert session.seen_speaker_ids == {0, 1}

    def test_partials_do_not_confirm_speakers(self, adapter, emitted, session):
        """Test partial events never add speaker ids."""
        adapter.handle_message(results_event("one", channel=1, speaker=0))
        adapter.handle_message(results_event("two", channel=1, speaker=1, is_final=False))
        assert session.seen_speaker_ids == {0}

    def test_speech_final_passed_through(self, adapter, emitted):
        """Test utterance-end flags are preserved."""
        segment = adapter.handle_message(results_event("done", speech_final=True))
        assert segment.speech_final is True

    @pytest.mark.parametrize(
        "message",
        [
            results_event(""),
            results_event("   "),
            {"type": "Metadata", "request_id": "abc"},
            {"type": "UtteranceEnd", "channel": [0]},
            {"type": "Results"},
            {"type": "Results", "channel": {"alternatives": []}},
            "{not json",
            b"\xff\xfe",
            42,
        ],
    )
    def test_discarded_events(self, adapter, emitted, message):
        """Test empty, non-result and malformed events are dropped."""
        assert adapter.handle_message(message) is None
        assert emitted == []

    def test_json_string_and_bytes(self, adapter, emitted):
        """Test raw JSON payloads are accepted."""
        event = results_event("from json", channel=1)
        adapter.handle_message(json.dumps(event))
        adapter.handle_message(json.dumps(event).encode("utf-8"))
        assert [s.text for s in emitted] == ["from json", "from json"]

    def test_model_objects(self, adapter, emitted):
        """Test SDK model objects are converted via model_dump."""
        message = Mock(spec=["model_dump"])
        message.model_dump.return_value = results_event("typed", channel=1)
        assert adapter.handle_message(message).text == "typed"

    def test_timestamps_monotonic(self, adapter, emitted, clock):
        """Test event timestamps follow the monotonic clock and never decrease."""
        clock.value = 1.5
        first = adapter.handle_message(results_event("first"))
        clock.value = 1.0
        second = adapter.handle_message(results_event("second"))

        assert first.timestamp_ms == 1_001_500
        assert second.timestamp_ms >= first.timestamp_ms
        assert first.formatted_time == "0:01"

    def test_ignored_without_session(self, adapter):
        """Test events after stop are dropped."""
        assert adapter.handle_message(results_event("late")) is None
