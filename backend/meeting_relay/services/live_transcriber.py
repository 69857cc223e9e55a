from __future__ import annotations

import asyncio
import json
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional
from urllib.parse import urlencode
import logging

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from meeting_relay.config import Settings
from meeting_relay.errors import ChannelError, ConfigurationError
from meeting_relay.services.transcript_normalizer import TranscriptNormalizer, TranscriptView
from meeting_relay.services.transcript_store import TranscriptStore


logger = logging.getLogger("meeting_relay.speech")

ErrorCallback = Callable[[str], Awaitable[None]]


@dataclass
class LiveSession:
    session_id: str
    owner_user_id: str
    title: str
    ws: Any = None
    reader: Optional[asyncio.Task] = None
    view: TranscriptView = field(default_factory=TranscriptView)
    stopped: bool = False


class LiveTranscriber:
    """Streams browser microphone audio to the speech provider.

    Results run through the normalizer like any other transcript source, so
    they fan out under the user's id and finals are stored.
    """

    def __init__(
        self,
        settings: Settings,
        normalizer: TranscriptNormalizer,
        store: TranscriptStore,
        connect: Callable[..., Any] = websockets.connect,
    ) -> None:
        self.settings = settings
        self.normalizer = normalizer
        self.store = store
        self._connect = connect
        self._sessions: Dict[str, LiveSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def stream_url(self) -> str:
        params = {
            "model": self.settings.speech_model,
            "language": self.settings.speech_language,
            "smart_format": "true",
            "punctuate": "true",
            "interim_results": "true",
            "endpointing": 300,
            "utterance_end_ms": 1000,
        }
        return f"{self.settings.speech_stream_url}?{urlencode(params)}"

    async def start(self, owner_user_id: str, title: Optional[str], on_error: ErrorCallback) -> LiveSession:
        if not self.settings.speech_api_key:
            raise ConfigurationError("Speech provider not configured. Set MR_SPEECH_API_KEY.")
        session = LiveSession(
            session_id=f"live-{uuid.uuid4().hex[:12]}",
            owner_user_id=owner_user_id,
            title=title or "Untitled Meeting",
        )
        self.store.schedule_open_record(
            owner_user_id, session.session_id, title=session.title, recording_type="live"
        )
        try:
            session.ws = await self._connect(
                self.stream_url(),
                additional_headers={"Authorization": f"Token {self.settings.speech_api_key}"},
            )
        except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
            await self.store.mark_ended(session.session_id)
            raise ChannelError(f"Speech stream connection failed: {exc}") from exc
        session.reader = asyncio.ensure_future(self._read(session, on_error))
        self._sessions[session.session_id] = session
        logger.info("Live transcription %s started for user=%s", session.session_id, owner_user_id)
        return session

    async def _read(self, session: LiveSession, on_error: ErrorCallback) -> None:
        try:
            async for raw in session.ws:
                try:
                    result = json.loads(raw)
                except ValueError:
                    logger.warning("Malformed speech result for %s dropped", session.session_id)
                    continue
                event = self.normalizer.from_speech_result(session.session_id, session.owner_user_id, result)
                if event is not None:
                    session.view.apply(event)
        except ConnectionClosed as exc:
            if exc.rcvd is not None and exc.rcvd.code != 1000:
                await on_error(f"Transcription error: speech stream closed ({exc.rcvd.code})")
        except (OSError, WebSocketException) as exc:
            logger.warning("Speech stream for %s failed: %s", session.session_id, exc)
            await on_error(f"Transcription error: {exc}")

    async def send_audio(self, session: LiveSession, chunk: bytes) -> None:
        if session.ws is None:
            raise ChannelError(f"No active speech stream for {session.session_id}")
        try:
            await session.ws.send(chunk)
        except ConnectionClosed as exc:
            raise ChannelError(f"Speech stream for {session.session_id} is closed") from exc

    async def stop(self, session: LiveSession) -> int:
        """Finish the speech stream and close the meeting record.

        Returns the number of committed transcript lines. Stopping a session
        twice is a no-op.
        """
        if session.stopped:
            return len(session.view.committed(session.session_id))
        session.stopped = True
        self._sessions.pop(session.session_id, None)
        if session.ws is not None:
            try:
                await session.ws.send(json.dumps({"type": "CloseStream"}))
                await session.ws.close()
            except (OSError, WebSocketException) as exc:
                logger.debug("Speech stream for %s already closed: %s", session.session_id, exc)
        if session.reader is not None and not session.reader.done():
            session.reader.cancel()
            try:
                await session.reader
            except asyncio.CancelledError:
                pass
        session.ws = None
        await self.store.mark_ended(session.session_id)
        logger.info("Live transcription %s stopped", session.session_id)
        return len(session.view.committed(session.session_id))

    async def shutdown(self) -> None:
        sessions = list(self._sessions.values())
        if not sessions:
            return
        logger.info("Stopping %d live transcription sessions", len(sessions))
        results = await asyncio.gather(*(self.stop(s) for s in sessions), return_exceptions=True)
        for session, result in zip(sessions, results):
            if isinstance(result, BaseException):
                logger.error("Stopping %s failed: %s", session.session_id, result)
