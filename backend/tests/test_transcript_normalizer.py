"""
Tests for transcript normalization and the transcript view.
"""
import json
from datetime import datetime, timezone

import pytest

from meeting_relay.domain import BotSession, TranscriptEvent
from meeting_relay.services.bot_registry import BotRegistry
from meeting_relay.services.transcript_normalizer import TranscriptNormalizer, TranscriptView


class RecordingSink:
    def __init__(self, fail=False):
        self.events = []
        self.fail = fail

    def emit(self, event):
        if self.fail:
            raise RuntimeError("sink down")
        self.events.append(event)


@pytest.fixture
def registry():
    registry = BotRegistry()
    registry.register(BotSession(id="bot-1", owner_user_id="u1", target_url=None, display_name="A"))
    return registry


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def normalizer(registry, sink):
    return TranscriptNormalizer(registry, sink)


def _webhook(segment, bot_id="bot-1"):
    return {"event": "transcript.segment", "data": {"bot_id": bot_id, "segment": segment}}


@pytest.mark.unit
class TestWebhookPayloads:
    """Test normalization of webhook deliveries."""

    def test_happy_path(self, normalizer, sink):
        event = normalizer.from_webhook_payload(_webhook({"speaker": "Alice", "text": "hello", "is_final": True}))
        assert sink.events == [event]
        assert event.source_id == "bot-1"
        assert event.owner_user_id == "u1"
        assert event.speaker == "Alice"
        assert event.text == "hello"
        assert event.is_final is True

    def test_missing_speaker_is_unknown(self, normalizer):
        event = normalizer.from_webhook_payload(_webhook({"text": "hi"}))
        assert event.speaker == "Unknown"

    def test_participant_name_used_as_speaker(self, normalizer):
        event = normalizer.from_webhook_payload(_webhook({"participant": {"name": "Bob"}, "text": "hi"}))
        assert event.speaker == "Bob"

    def test_missing_finality_defaults_to_final(self, normalizer):
        assert normalizer.from_webhook_payload(_webhook({"text": "hi"})).is_final is True

    def test_interim_flag_is_kept(self, normalizer):
        assert normalizer.from_webhook_payload(_webhook({"text": "hi", "is_final": False})).is_final is False

    def test_text_from_words(self, normalizer):
        segment = {"words": [{"text": "good"}, {"text": "morning"}], "speaker": "Alice"}
        assert normalizer.from_webhook_payload(_webhook(segment)).text == "good morning"

    def test_timestamp_from_segment(self, normalizer):
        event = normalizer.from_webhook_payload(_webhook({"text": "hi", "timestamp": "2024-05-01T10:00:00Z"}))
        assert event.timestamp == datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)

    def test_missing_timestamp_uses_arrival_time(self, normalizer):
        before = datetime.now(timezone.utc)
        event = normalizer.from_webhook_payload(_webhook({"text": "hi", "start_time": 3.5}))
        assert event.timestamp >= before

    def test_confidence_is_clamped(self, normalizer):
        assert normalizer.from_webhook_payload(_webhook({"text": "a", "confidence": 7})).confidence == 1.0
        assert normalizer.from_webhook_payload(_webhook({"text": "b", "confidence": -1})).confidence == 0.0
        assert normalizer.from_webhook_payload(_webhook({"text": "c", "confidence": "x"})).confidence == 1.0

    @pytest.mark.parametrize("segment", [{"text": ""}, {"text": "   "}, {"speaker": "Alice"}])
    def test_empty_text_is_dropped(self, normalizer, sink, segment):
        assert normalizer.from_webhook_payload(_webhook(segment)) is None
        assert sink.events == []

    def test_unknown_bot_is_dropped(self, normalizer, sink):
        assert normalizer.from_webhook_payload(_webhook({"text": "hi"}, bot_id="bot-9")) is None
        assert sink.events == []

    @pytest.mark.parametrize("body", [None, [], "text", {"data": "nope"}, {"data": {"bot_id": "bot-1"}}])
    def test_malformed_body_is_dropped(self, normalizer, sink, body):
        assert normalizer.from_webhook_payload(body) is None
        assert sink.events == []

    def test_sink_failure_is_contained(self, registry):
        normalizer = TranscriptNormalizer(registry, RecordingSink(fail=True))
        event = normalizer.from_webhook_payload(_webhook({"text": "hi"}))
        assert event is not None


@pytest.mark.unit
class TestStreamFrames:
    """Test normalization of provider stream frames."""

    def test_transcript_frame(self, normalizer, sink):
        frame = json.dumps({"type": "transcript", "data": {"speaker": "Alice", "text": "hi", "is_final": False}})
        event = normalizer.from_stream_frame("bot-1", frame)
        assert event.is_final is False
        assert sink.events == [event]

    def test_malformed_json_is_dropped(self, normalizer, sink):
        assert normalizer.from_stream_frame("bot-1", "{not json") is None
        assert sink.events == []

    def test_non_transcript_frame_is_ignored(self, normalizer, sink):
        assert normalizer.from_stream_frame("bot-1", json.dumps({"type": "status", "data": {}})) is None
        assert sink.events == []

    def test_frame_for_removed_session_is_dropped(self, normalizer, sink):
        frame = json.dumps({"type": "transcript", "data": {"text": "hi"}})
        assert normalizer.from_stream_frame("bot-9", frame) is None


@pytest.mark.unit
class TestUploadAndSpeechResults:
    """Test upload transcript lists and live speech results."""

    def test_upload_entries_are_final(self, registry, normalizer, sink):
        registry.register(BotSession(id="upload-1", owner_user_id="u2", target_url=None, display_name="Desktop"))
        events = normalizer.from_upload_transcripts(
            "upload-1",
            [{"speaker": "A", "text": "one", "is_final": False}, {"text": ""}, "junk", {"speaker": "B", "text": "two"}],
        )
        assert [e.text for e in events] == ["one", "two"]
        assert all(e.is_final for e in events)
        assert all(e.owner_user_id == "u2" for e in events)
        assert sink.events == events

    def test_upload_for_unknown_id(self, normalizer):
        assert normalizer.from_upload_transcripts("upload-9", [{"text": "x"}]) == []

    def test_speech_result(self, normalizer, sink):
        result = {
            "type": "Results",
            "is_final": True,
            "channel": {"alternatives": [{"transcript": "hello there", "confidence": 0.9}]},
        }
        event = normalizer.from_speech_result("live-abc", "u3", result)
        assert event.speaker == "You"
        assert event.owner_user_id == "u3"
        assert event.confidence == pytest.approx(0.9)
        assert event.is_final is True

    def test_speech_metadata_is_ignored(self, normalizer, sink):
        assert normalizer.from_speech_result("live-abc", "u3", {"type": "Metadata"}) is None
        assert normalizer.from_speech_result(
            "live-abc", "u3", {"type": "Results", "channel": {"alternatives": [{"transcript": ""}]}}
        ) is None
        assert sink.events == []


def _event(text, is_final, source="bot-1"):
    return TranscriptEvent(source_id=source, owner_user_id="u1", speaker="Alice", text=text,
                           is_final=is_final, timestamp=datetime.now(timezone.utc))


@pytest.mark.unit
class TestTranscriptView:
    """Test the interim/final merge rule."""

    def test_interim_supersession(self):
        view = TranscriptView()
        view.apply(_event("hel", False))
        view.apply(_event("hello wor", False))
        assert view.current_line("bot-1").text == "hello wor"
        assert view.lines("bot-1") == ["hello wor"]

        view.apply(_event("hello world", True))
        assert view.current_line("bot-1") is None
        assert view.lines("bot-1") == ["hello world"]
        assert "hel" not in view.lines("bot-1")

    def test_sources_are_independent(self):
        view = TranscriptView()
        view.apply(_event("a", False, "bot-1"))
        view.apply(_event("b", True, "bot-2"))
        assert view.lines("bot-1") == ["a"]
        assert view.lines("bot-2") == ["b"]
        assert [e.text for e in view.committed()] == ["b"]
