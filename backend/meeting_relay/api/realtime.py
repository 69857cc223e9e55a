from __future__ import annotations

import json
from typing import Any, Dict, Optional
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from meeting_relay.errors import RelayError
from meeting_relay.services.live_transcriber import LiveSession


logger = logging.getLogger("meeting_relay.realtime")

router = APIRouter(tags=["realtime"])


class _ClientSession:
    """Per-connection state for one browser socket."""

    def __init__(self, websocket: WebSocket) -> None:
        self.websocket = websocket
        state = websocket.app.state
        self.hub = state.hub
        self.controller = state.controller
        self.live = state.live
        self.user_id: Optional[str] = None
        self.transcription: Optional[LiveSession] = None

    def reply(self, message: Dict[str, Any]) -> None:
        # All writes go through the hub so they never interleave with fan-out
        self.hub.send_to(self.websocket, message)

    def error(self, message: str) -> None:
        self.reply({"type": "error", "message": message})

    def register(self, user_id: Optional[str]) -> bool:
        if not user_id:
            self.error("userId is required")
            return False
        self.user_id = str(user_id)
        self.hub.subscribe(self.user_id, self.websocket)
        return True

    async def on_speech_error(self, message: str) -> None:
        self.error(message)

    async def handle_text(self, raw: str) -> None:
        try:
            data = json.loads(raw)
        except ValueError:
            self.error("Invalid message format")
            return
        if not isinstance(data, dict):
            self.error("Invalid message format")
            return

        kind = data.get("type")
        if kind == "start_transcription":
            await self.start_transcription(data)
        elif kind == "stop_transcription":
            await self.stop_transcription()
        elif kind == "register_user":
            if self.register(data.get("userId")):
                logger.info("Socket registered for user=%s", self.user_id)
        elif kind == "bot_status_request":
            self.bot_status(data)
        elif kind == "ping":
            self.reply({"type": "pong"})
        else:
            logger.info("Unknown socket message type: %s", kind)

    async def start_transcription(self, data: Dict[str, Any]) -> None:
        if self.transcription is not None:
            self.error("Transcription already running")
            return
        if not self.register(data.get("userId") or self.user_id):
            return
        try:
            self.transcription = await self.live.start(self.user_id, data.get("title"), self.on_speech_error)
        except RelayError as exc:
            self.error(f"Failed to start transcription: {exc}")
            return
        self.reply({"type": "transcription_started", "sessionId": self.transcription.session_id})

    async def stop_transcription(self) -> None:
        session, self.transcription = self.transcription, None
        if session is None:
            return
        lines = await self.live.stop(session)
        self.reply({"type": "transcription_stopped", "sessionId": session.session_id, "lines": lines})

    async def handle_audio(self, chunk: bytes) -> None:
        if self.transcription is None:
            return
        try:
            await self.live.send_audio(self.transcription, chunk)
        except RelayError as exc:
            self.error(f"Transcription error: {exc}")

    def bot_status(self, data: Dict[str, Any]) -> None:
        try:
            session = self.controller.resolve(data.get("botId"), data.get("userId") or self.user_id)
        except RelayError as exc:
            self.error(str(exc))
            return
        self.reply({"type": "bot_status", "data": session.to_dict()})

    async def close(self) -> None:
        if self.transcription is not None:
            session, self.transcription = self.transcription, None
            await self.live.stop(session)
        self.hub.unsubscribe(self.websocket)


@router.websocket("/ws")
async def realtime_socket(websocket: WebSocket) -> None:
    await websocket.accept()
    client = _ClientSession(websocket)
    client.hub.attach(websocket)
    logger.info("Client connected")
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            if message.get("bytes") is not None:
                await client.handle_audio(message["bytes"])
            elif message.get("text") is not None:
                await client.handle_text(message["text"])
    except WebSocketDisconnect:
        pass
    finally:
        logger.info("Client disconnected (user=%s)", client.user_id)
        await client.close()
