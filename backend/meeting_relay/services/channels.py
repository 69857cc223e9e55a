from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional
import logging

import websockets
from websockets.exceptions import WebSocketException

from meeting_relay.config import Settings
from meeting_relay.domain import ChannelKind
from meeting_relay.errors import ChannelError
from meeting_relay.services.bot_registry import BotRegistry
from meeting_relay.services.transcript_normalizer import TranscriptNormalizer


logger = logging.getLogger("meeting_relay.channels")

# (session_id, channel, reason)
LostCallback = Callable[[str, "TranscriptChannel", str], None]


class TranscriptChannel(ABC):
    """How transcripts for one session reach the normalizer."""

    kind: ChannelKind = ChannelKind.NONE

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id

    @abstractmethod
    async def open(self) -> None: ...

    @abstractmethod
    async def close(self) -> None: ...


class WebhookChannel(TranscriptChannel):
    """Provider pushes to our webhook endpoint; nothing to hold open here."""

    kind = ChannelKind.WEBHOOK

    def __init__(self, session_id: str, callback_url: str) -> None:
        super().__init__(session_id)
        self.callback_url = callback_url

    async def open(self) -> None:
        logger.info("Session %s receives transcripts via webhook %s", self.session_id, self.callback_url)

    async def close(self) -> None:
        return None


class StreamChannel(TranscriptChannel):
    """Persistent websocket to the provider's transcript stream.

    The connection is made in a background task after ``connect_delay`` so
    the bot has time to join. A dropped connection is retried up to
    ``max_reconnects`` times with linear backoff while the session is still
    registered; after that ``on_lost`` is called once.
    """

    kind = ChannelKind.SOCKET

    def __init__(
        self,
        session_id: str,
        url: str,
        headers: Dict[str, str],
        normalizer: TranscriptNormalizer,
        registry: BotRegistry,
        *,
        connect_delay: float = 5.0,
        max_reconnects: int = 3,
        backoff: float = 2.0,
        on_lost: Optional[LostCallback] = None,
        connect: Callable[..., Any] = websockets.connect,
    ) -> None:
        super().__init__(session_id)
        self.url = url
        self.headers = headers
        self.normalizer = normalizer
        self.registry = registry
        self.connect_delay = connect_delay
        self.max_reconnects = max_reconnects
        self.backoff = backoff
        self.on_lost = on_lost
        self._connect = connect
        self._task: Optional[asyncio.Task] = None
        self._closing = False
        self.connected = asyncio.Event()
        self.frames_received = 0

    async def open(self) -> None:
        if not self.url.startswith(("ws://", "wss://")):
            raise ChannelError(f"Invalid transcript stream url: {self.url}")
        if self._task is None:
            self._task = asyncio.ensure_future(self._run())

    def _session_active(self) -> bool:
        session = self.registry.find_by_id(self.session_id)
        return session is not None and not session.status.is_terminal

    async def _run(self) -> None:
        if self.connect_delay > 0:
            await asyncio.sleep(self.connect_delay)
        failures = 0
        reason = "stream closed"
        while not self._closing and self._session_active():
            try:
                async with self._connect(self.url, additional_headers=self.headers) as ws:
                    logger.info("Transcript stream connected for %s", self.session_id)
                    self.connected.set()
                    failures = 0
                    async for frame in ws:
                        self.frames_received += 1
                        self.normalizer.from_stream_frame(self.session_id, frame)
                reason = "stream closed by provider"
            except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
                reason = f"{type(exc).__name__}: {exc}"
                logger.warning("Transcript stream error for %s: %s", self.session_id, reason)
            except Exception as exc:
                logger.exception("Transcript stream for %s failed unexpectedly", self.session_id)
                if self.on_lost is not None:
                    self.on_lost(self.session_id, self, f"{type(exc).__name__}: {exc}")
                return
            finally:
                self.connected.clear()
            if self._closing or not self._session_active():
                break
            failures += 1
            if failures > self.max_reconnects:
                logger.warning(
                    "Giving up on transcript stream for %s after %d attempts", self.session_id, failures
                )
                if self.on_lost is not None:
                    self.on_lost(self.session_id, self, reason)
                return
            await asyncio.sleep(self.backoff * failures)
        logger.info("Transcript stream for %s finished", self.session_id)

    async def close(self) -> None:
        self._closing = True
        task, self._task = self._task, None
        if task is None or task.done():
            return
        if task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Transcript stream closed for %s", self.session_id)


class ChannelFactory:
    """Chooses and builds the transcript channel for a new session."""

    def __init__(
        self,
        settings: Settings,
        normalizer: TranscriptNormalizer,
        registry: BotRegistry,
        connect: Callable[..., Any] = websockets.connect,
    ) -> None:
        self.settings = settings
        self.normalizer = normalizer
        self.registry = registry
        self.connect = connect

    def mode(self) -> ChannelKind:
        choice = self.settings.transcript_channel
        if choice == "socket":
            return ChannelKind.SOCKET
        if choice == "webhook":
            if self.settings.public_base_url:
                return ChannelKind.WEBHOOK
            logger.warning("transcript_channel=webhook but no public_base_url; using socket stream")
            return ChannelKind.SOCKET
        return ChannelKind.WEBHOOK if self.settings.webhook_enabled() else ChannelKind.SOCKET

    def bot_webhook_url(self) -> Optional[str]:
        if self.mode() != ChannelKind.WEBHOOK:
            return None
        base = (self.settings.public_base_url or "").rstrip("/")
        return f"{base}/api/webhooks/recall"

    def upload_webhook_url(self) -> Optional[str]:
        return self.settings.webhook_url("/api/webhooks/recall-desktop")

    def build(self, session_id: str, on_lost: Optional[LostCallback] = None) -> TranscriptChannel:
        if self.mode() == ChannelKind.WEBHOOK:
            return WebhookChannel(session_id, self.bot_webhook_url() or "")
        url = f"{self.settings.resolved_provider_stream_url}/bot/{session_id}/transcript"
        return StreamChannel(
            session_id,
            url,
            {"Authorization": f"Token {self.settings.provider_api_key}"},
            self.normalizer,
            self.registry,
            connect_delay=self.settings.stream_connect_delay,
            max_reconnects=self.settings.stream_max_reconnects,
            backoff=self.settings.stream_reconnect_backoff,
            on_lost=on_lost,
            connect=self.connect,
        )
