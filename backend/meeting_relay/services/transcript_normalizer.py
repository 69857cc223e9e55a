from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Protocol, Union
import json
import logging

from meeting_relay.domain import TranscriptEvent, utcnow
from meeting_relay.services.bot_registry import BotRegistry


logger = logging.getLogger("meeting_relay.normalizer")

UNKNOWN_SPEAKER = "Unknown"
LIVE_SPEAKER = "You"

# Epoch seconds below this are treated as offsets into the recording, not wall-clock times
_MIN_EPOCH_SECONDS = 1_000_000_000


class TranscriptSink(Protocol):
    """Single consumer of normalized transcript events."""

    def emit(self, event: TranscriptEvent) -> None: ...


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, dict):
        # {"absolute": "...", "relative": 12.3}
        return _parse_timestamp(value.get("absolute"))
    if isinstance(value, (int, float)):
        seconds = float(value)
        if seconds > 1e11:
            seconds /= 1000.0
        if seconds < _MIN_EPOCH_SECONDS:
            return None
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    if isinstance(value, str) and value.strip():
        raw = value.strip()
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(raw)
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    return None


def _confidence(value: Any) -> float:
    try:
        conf = float(value)
    except (TypeError, ValueError):
        return 1.0
    if conf != conf:  # NaN
        return 1.0
    return max(0.0, min(1.0, conf))


def _words_text(words: Any) -> str:
    if not isinstance(words, list):
        return ""
    parts = [str(w.get("text", "")).strip() for w in words if isinstance(w, dict)]
    return " ".join(p for p in parts if p)


def _speaker(segment: Dict[str, Any]) -> str:
    speaker = segment.get("speaker")
    if isinstance(speaker, str) and speaker.strip():
        return speaker.strip()
    participant = segment.get("participant")
    if isinstance(participant, dict) and participant.get("name"):
        return str(participant["name"])
    return UNKNOWN_SPEAKER


def _segment_timestamp(segment: Dict[str, Any]) -> datetime:
    ts = _parse_timestamp(segment.get("start_time")) or _parse_timestamp(segment.get("timestamp"))
    if ts is None:
        words = segment.get("words")
        if isinstance(words, list) and words and isinstance(words[0], dict):
            first = words[0]
            ts = _parse_timestamp(first.get("start_timestamp")) or _parse_timestamp(first.get("start_time"))
    return ts or utcnow()


class TranscriptNormalizer:
    """Turns provider payloads into :class:`TranscriptEvent` and hands them to the sink.

    Nothing here raises to the caller: a payload that cannot be understood is
    logged and dropped.
    """

    def __init__(self, registry: BotRegistry, sink: TranscriptSink) -> None:
        self.registry = registry
        self.sink = sink

    def _build(
        self,
        source_id: str,
        owner_user_id: str,
        segment: Dict[str, Any],
        default_final: bool,
    ) -> Optional[TranscriptEvent]:
        text = segment.get("text")
        if not isinstance(text, str) or not text.strip():
            text = _words_text(segment.get("words"))
        text = text.strip()
        if not text:
            logger.debug("Dropping empty transcript fragment for %s", source_id)
            return None
        is_final = segment.get("is_final")
        return TranscriptEvent(
            source_id=source_id,
            owner_user_id=owner_user_id,
            speaker=_speaker(segment),
            text=text,
            is_final=default_final if is_final is None else is_final is not False,
            timestamp=_segment_timestamp(segment),
            confidence=_confidence(segment.get("confidence", 1.0)),
        )

    def _emit(self, event: Optional[TranscriptEvent]) -> Optional[TranscriptEvent]:
        if event is None:
            return None
        try:
            self.sink.emit(event)
        except Exception:
            logger.exception("Transcript sink failed for %s", event.source_id)
        return event

    def from_webhook_payload(self, body: Any) -> Optional[TranscriptEvent]:
        try:
            if not isinstance(body, dict):
                logger.warning("Webhook body is not an object, dropping")
                return None
            data = body.get("data")
            if not isinstance(data, dict):
                logger.warning("Transcript webhook missing data")
                return None
            bot = data.get("bot")
            bot_id = data.get("bot_id") or (bot.get("id") if isinstance(bot, dict) else None)
            segment = data.get("segment")
            if not isinstance(segment, dict):
                segment = data.get("transcript") if isinstance(data.get("transcript"), dict) else None
            if not bot_id or segment is None:
                logger.warning("Transcript webhook missing bot id or segment")
                return None
            session = self.registry.find_by_id(str(bot_id))
            if session is None:
                logger.warning("Transcript for unknown bot %s dropped", bot_id)
                return None
            event = self._build(session.id, session.owner_user_id, segment, default_final=True)
        except Exception:
            logger.exception("Malformed transcript webhook dropped")
            return None
        return self._emit(event)

    def from_stream_frame(self, source_id: str, frame: Union[str, bytes, Dict[str, Any]]) -> Optional[TranscriptEvent]:
        try:
            message = json.loads(frame) if isinstance(frame, (str, bytes, bytearray)) else frame
        except ValueError:
            logger.warning("Malformed stream frame for %s dropped", source_id)
            return None
        try:
            if not isinstance(message, dict) or message.get("type") != "transcript":
                return None
            data = message.get("data")
            if not isinstance(data, dict):
                return None
            session = self.registry.find_by_id(source_id)
            if session is None:
                logger.info("Stream frame for removed session %s dropped", source_id)
                return None
            event = self._build(session.id, session.owner_user_id, data, default_final=True)
        except Exception:
            logger.exception("Stream frame for %s could not be normalized", source_id)
            return None
        return self._emit(event)

    def from_upload_transcripts(self, upload_id: str, transcripts: Any) -> List[TranscriptEvent]:
        """Normalize the transcript list delivered with an SDK upload completion.

        Every entry is final; the session must still be registered.
        """
        session = self.registry.find_by_id(upload_id)
        if session is None:
            logger.warning("Upload transcripts for unknown upload %s dropped", upload_id)
            return []
        if not isinstance(transcripts, Iterable) or isinstance(transcripts, (str, bytes, dict)):
            return []
        emitted: List[TranscriptEvent] = []
        for entry in transcripts:
            if not isinstance(entry, dict):
                continue
            try:
                segment = dict(entry)
                segment["is_final"] = True
                event = self._build(session.id, session.owner_user_id, segment, default_final=True)
            except Exception:
                logger.exception("Upload transcript entry for %s dropped", upload_id)
                continue
            delivered = self._emit(event)
            if delivered is not None:
                emitted.append(delivered)
        return emitted

    def from_speech_result(self, source_id: str, owner_user_id: str, result: Any) -> Optional[TranscriptEvent]:
        """Normalize one streaming speech-to-text result for a live browser session."""
        try:
            if not isinstance(result, dict) or result.get("type", "Results") != "Results":
                return None
            alternatives = (result.get("channel") or {}).get("alternatives") or []
            if not alternatives or not isinstance(alternatives[0], dict):
                return None
            best = alternatives[0]
            text = str(best.get("transcript") or "").strip()
            if not text:
                return None
            event = TranscriptEvent(
                source_id=source_id,
                owner_user_id=owner_user_id,
                speaker=LIVE_SPEAKER,
                text=text,
                is_final=bool(result.get("is_final")),
                timestamp=utcnow(),
                confidence=_confidence(best.get("confidence", 1.0)),
            )
        except Exception:
            logger.exception("Speech result for %s dropped", source_id)
            return None
        return self._emit(event)


class TranscriptView:
    """Latest-line view of a transcript stream.

    An interim event replaces the pending interim of its source; a final
    event is appended and clears that source's pending slot.
    """

    def __init__(self) -> None:
        self._committed: List[TranscriptEvent] = []
        self._pending: Dict[str, TranscriptEvent] = {}

    def apply(self, event: TranscriptEvent) -> None:
        if event.is_final:
            self._committed.append(event)
            self._pending.pop(event.source_id, None)
        else:
            self._pending[event.source_id] = event

    def committed(self, source_id: Optional[str] = None) -> List[TranscriptEvent]:
        if source_id is None:
            return list(self._committed)
        return [e for e in self._committed if e.source_id == source_id]

    def current_line(self, source_id: str) -> Optional[TranscriptEvent]:
        return self._pending.get(source_id)

    def lines(self, source_id: str) -> List[str]:
        out = [e.text for e in self.committed(source_id)]
        pending = self._pending.get(source_id)
        if pending is not None:
            out.append(pending.text)
        return out
