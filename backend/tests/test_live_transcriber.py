"""
Tests for live browser transcription.
"""
import asyncio
import json
from urllib.parse import parse_qs, urlparse

import pytest
from sqlmodel import Session

from meeting_relay.errors import ChannelError, ConfigurationError
from meeting_relay.repositories.meetings import MeetingsRepository
from meeting_relay.repositories.transcripts import TranscriptsRepository
from meeting_relay.services.live_transcriber import LiveTranscriber
from conftest import FakeConnection, FakeStream, build_relay


def _result(text, is_final):
    return json.dumps({
        "type": "Results",
        "is_final": is_final,
        "channel": {"alternatives": [{"transcript": text, "confidence": 0.95}]},
    })


@pytest.fixture
async def live(relay, connector):
    return LiveTranscriber(relay.settings, relay.normalizer, relay.store, connect=connector)


@pytest.mark.unit
class TestLiveTranscriber:
    """Test the speech-provider stream for browser audio."""

    async def test_stream_url_parameters(self, live):
        query = parse_qs(urlparse(live.stream_url()).query)
        assert query["model"] == ["nova-2"]
        assert query["interim_results"] == ["true"]
        assert query["endpointing"] == ["300"]
        assert query["utterance_end_ms"] == ["1000"]

    async def test_results_flow_and_stop(self, live, relay, connector, engine):
        subscriber = FakeConnection()
        relay.hub.subscribe("u1", subscriber)
        stream = FakeStream([_result("hel", False), _result("hello there", True)])
        connector.script = [stream]
        errors = []

        async def on_error(message):
            errors.append(message)

        session = await live.start("u1", "Design review", on_error)
        assert session.session_id.startswith("live-")
        assert connector.calls[0][1] == {"Authorization": "Token test-speech-key"}

        await live.send_audio(session, b"\x00\x01")
        assert stream.sent == [b"\x00\x01"]

        for _ in range(100):
            if session.view.committed():
                break
            await asyncio.sleep(0.01)
        lines = await live.stop(session)
        await relay.hub.flush()

        assert lines == 1
        assert json.loads(stream.sent[-1]) == {"type": "CloseStream"}
        assert [m["data"]["text"] for m in subscriber.of_type("transcription")] == ["hel", "hello there"]
        assert errors == []
        with Session(engine) as db:
            meeting = [m for m in MeetingsRepository(db).list(owner_user_id="u1") if m.source_id == session.session_id][0]
            assert meeting.recording_type == "live"
            assert meeting.status == "ended"
            assert [s.text for s in TranscriptsRepository(db).list_by_meeting(meeting.id)] == ["hello there"]

    async def test_requires_speech_key(self, relay, connector, settings_factory):
        live = LiveTranscriber(settings_factory(speech_api_key=None), relay.normalizer, relay.store, connect=connector)
        with pytest.raises(ConfigurationError):
            await live.start("u1", None, None)

    async def test_connect_failure(self, live, connector):
        connector.script = [OSError("refused")]

        async def on_error(message):
            pass

        with pytest.raises(ChannelError):
            await live.start("u1", None, on_error)

    async def test_send_after_close_fails(self, live, connector):
        connector.script = [FakeStream()]

        async def on_error(message):
            pass

        session = await live.start("u1", None, on_error)
        await live.stop(session)
        with pytest.raises(ChannelError):
            await live.send_audio(session, b"\x00")


@pytest.mark.unit
class TestLiveShutdown:
    """Test that shutdown closes live sessions before storage goes away."""

    async def test_shutdown_ends_live_records(self, settings, gateway, engine, connector):
        relay = build_relay(settings, gateway, engine, connector)
        live = LiveTranscriber(settings, relay.normalizer, relay.store, connect=connector)
        stream = FakeStream()
        connector.script = [stream]

        async def on_error(message):
            pass

        session = await live.start("u1", "Standup", on_error)
        assert len(live) == 1

        # Same order as the application's shutdown hook
        await live.shutdown()
        await relay.controller.shutdown()

        assert len(live) == 0
        assert session.stopped is True
        assert json.loads(stream.sent[-1]) == {"type": "CloseStream"}
        with Session(engine) as db:
            meeting = [m for m in MeetingsRepository(db).list(owner_user_id="u1") if m.source_id == session.session_id][0]
            assert meeting.status == "ended"
            assert meeting.ended_at is not None

        # The socket handler's own cleanup after shutdown does nothing
        assert await live.stop(session) == 0

    async def test_shutdown_without_sessions(self, live):
        await live.shutdown()
        assert len(live) == 0
