from __future__ import annotations

import asyncio
from dataclasses import replace
from typing import Any, Dict, Optional, Set
import logging

from meeting_relay.config import Settings
from meeting_relay.domain import BotSession, BotStatus, SessionKind
from meeting_relay.errors import ChannelError, ConflictError, NotFoundError
from meeting_relay.services.bot_registry import BotRegistry
from meeting_relay.services.channels import ChannelFactory, TranscriptChannel, WebhookChannel
from meeting_relay.services.fanout_hub import FanOutHub
from meeting_relay.services.provider_gateway import (
    LaunchOptions,
    ProviderGateway,
    extract_status_code,
    normalize_status,
)
from meeting_relay.services.transcript_normalizer import TranscriptNormalizer
from meeting_relay.services.transcript_store import TranscriptStore


logger = logging.getLogger("meeting_relay.sessions")


class SessionController:
    """Owns the bot/upload lifecycle: create, attach a transcript channel, tear down."""

    def __init__(
        self,
        settings: Settings,
        registry: BotRegistry,
        gateway: ProviderGateway,
        hub: FanOutHub,
        store: TranscriptStore,
        normalizer: TranscriptNormalizer,
        channels: ChannelFactory,
    ) -> None:
        self.settings = settings
        self.registry = registry
        self.gateway = gateway
        self.hub = hub
        self.store = store
        self.normalizer = normalizer
        self.channels = channels
        # Owners with a create call in flight
        self._launching: Set[str] = set()

    def _reserve(self, owner_user_id: str) -> None:
        existing = self.registry.find_by_user(owner_user_id)
        if existing is not None and not existing.status.is_terminal:
            raise ConflictError("You already have an active bot in a meeting", session=existing)
        if owner_user_id in self._launching:
            raise ConflictError("A session is already being created for this user")
        self._launching.add(owner_user_id)

    async def _register_or_discard(self, session: BotSession) -> None:
        try:
            self.registry.register(session)
        except ConflictError:
            # Lost the race; do not leave an orphan running at the provider
            try:
                await self.gateway.terminate(session.id, session.kind)
            except Exception as exc:
                logger.warning("Could not discard duplicate %s %s: %s", session.kind.value, session.id, exc)
            raise

    def _on_channel_lost(self, session_id: str, channel: TranscriptChannel, reason: str) -> None:
        if self.registry.detach_channel(session_id, channel) is None:
            return
        session = self.registry.find_by_id(session_id)
        if session is None:
            return
        logger.warning("Transcript channel for %s lost (%s); session continues without one", session_id, reason)
        self.hub.publish_control(
            session.owner_user_id,
            {
                "type": "error",
                "message": f"Live transcript for bot {session_id} was interrupted: {reason}",
                "botId": session_id,
            },
        )

    async def _attach_channel(self, session: BotSession) -> None:
        channel = self.channels.build(session.id, on_lost=self._on_channel_lost)
        self.registry.attach_channel(session.id, channel)
        try:
            await channel.open()
        except ChannelError as exc:
            logger.warning("Transcript channel for %s not established: %s", session.id, exc)
            self.registry.detach_channel(session.id, channel)

    def _announce_created(self, session: BotSession) -> None:
        message: Dict[str, Any] = {
            "type": "bot_created",
            "botId": session.id,
            "userId": session.owner_user_id,
            "status": session.status.value,
        }
        if session.kind == SessionKind.UPLOAD:
            message["kind"] = session.kind.value
        self.hub.publish_control(session.owner_user_id, message)

    async def launch(
        self,
        owner_user_id: str,
        target_url: str,
        display_name: Optional[str] = None,
        options: Optional[LaunchOptions] = None,
    ) -> BotSession:
        self._reserve(owner_user_id)
        try:
            options = options or LaunchOptions()
            if options.webhook_url is None:
                options = replace(options, webhook_url=self.channels.bot_webhook_url())
            session = await self.gateway.create_session(
                target_url,
                display_name or self.settings.default_bot_name,
                owner_user_id,
                options,
            )
            await self._register_or_discard(session)
        finally:
            self._launching.discard(owner_user_id)

        self.store.schedule_open_record(
            owner_user_id,
            session.id,
            title=options.title,
            target_url=target_url,
            bot_name=session.display_name,
            recording_type="bot",
        )
        await self._attach_channel(session)
        self._announce_created(session)
        logger.info("Launched bot %s for owner=%s via %s", session.id, owner_user_id, session.transcript_channel.value)
        return session

    async def create_upload(
        self,
        owner_user_id: str,
        title: str,
        options: Optional[LaunchOptions] = None,
    ) -> BotSession:
        self._reserve(owner_user_id)
        try:
            options = options or LaunchOptions()
            if options.webhook_url is None:
                options = replace(options, webhook_url=self.channels.upload_webhook_url())
            session = await self.gateway.create_upload(owner_user_id, title, options)
            await self._register_or_discard(session)
        finally:
            self._launching.discard(owner_user_id)

        self.store.schedule_open_record(
            owner_user_id,
            session.id,
            title=title,
            target_url="desktop-recording",
            bot_name=session.display_name,
            recording_type="desktop",
        )
        if options.webhook_url:
            # Uploads only report through the completion webhook
            channel = WebhookChannel(session.id, options.webhook_url)
            self.registry.attach_channel(session.id, channel)
            await channel.open()
        else:
            logger.warning("Upload %s created without a webhook; completion will not be observed", session.id)
        self._announce_created(session)
        return session

    def resolve(self, session_id: Optional[str] = None, owner_user_id: Optional[str] = None) -> BotSession:
        session = None
        if session_id:
            session = self.registry.find_by_id(session_id)
        elif owner_user_id:
            session = self.registry.find_by_user(owner_user_id)
        if session is None:
            raise NotFoundError("Bot not found")
        return session

    async def finalize(self, session_id: str, record_status: str = "ended") -> Optional[BotSession]:
        """Local cleanup only: close the channel, forget the session, close the record."""
        session = await self.registry.remove(session_id)
        if session is None:
            return None
        await self.store.mark_ended(session_id, status=record_status)
        self.hub.publish_control(
            session.owner_user_id,
            {"type": "bot_left", "botId": session.id, "userId": session.owner_user_id},
        )
        return session

    async def terminate(
        self,
        session_id: Optional[str] = None,
        owner_user_id: Optional[str] = None,
        record_status: str = "ended",
    ) -> BotSession:
        session = self.resolve(session_id, owner_user_id)
        try:
            await self.gateway.terminate(session.id, session.kind)
        except Exception as exc:
            logger.warning("Remote teardown of %s failed, cleaning up locally: %s", session.id, exc)
        await self.finalize(session.id, record_status=record_status)
        logger.info("Session %s terminated", session.id)
        return session

    async def cancel_upload(self, upload_id: Optional[str] = None, owner_user_id: Optional[str] = None) -> BotSession:
        return await self.terminate(upload_id, owner_user_id, record_status="canceled")

    async def handle_status_change(self, session_id: str, payload: Any) -> Optional[BotSession]:
        session = self.registry.find_by_id(session_id)
        if session is None:
            logger.info("Status change for unknown session %s ignored", session_id)
            return None
        status = normalize_status(payload, default=None)
        self.registry.update_status(session_id, status, extract_status_code(payload))
        self.hub.publish_control(session.owner_user_id, {"type": "bot_status", "data": session.to_dict()})
        if session.status.is_terminal:
            record_status = "canceled" if session.status == BotStatus.FATAL else "ended"
            await self.finalize(session_id, record_status=record_status)
        return session

    async def refresh_status(self, session_id: str) -> Optional[Dict[str, Any]]:
        local = self.registry.find_by_id(session_id)
        kind = local.kind if local is not None else SessionKind.BOT
        remote = await self.gateway.get_status(session_id, kind)
        if remote is None:
            return None
        if local is None:
            return remote.to_dict()
        await self.handle_status_change(session_id, remote.provider_status)
        return local.to_dict()

    async def complete_upload(self, upload_id: str, transcripts: Any) -> Optional[BotSession]:
        if self.registry.find_by_id(upload_id) is None:
            logger.warning("Completion for unknown upload %s ignored", upload_id)
            return None
        events = self.normalizer.from_upload_transcripts(upload_id, transcripts or [])
        logger.info("Upload %s completed with %d transcript segments", upload_id, len(events))
        self.registry.update_status(upload_id, BotStatus.DONE, "completed")
        return await self.finalize(upload_id, record_status="ended")

    async def fail_upload(self, upload_id: str, error: Optional[str]) -> Optional[BotSession]:
        session = self.registry.find_by_id(upload_id)
        if session is None:
            logger.warning("Failure for unknown upload %s ignored", upload_id)
            return None
        self.registry.update_status(upload_id, BotStatus.FATAL, "failed")
        self.hub.publish_control(
            session.owner_user_id,
            {"type": "error", "message": error or "Upload failed", "botId": upload_id},
        )
        return await self.finalize(upload_id, record_status="canceled")

    async def shutdown_sweep(self) -> None:
        sessions = self.registry.list_all()
        if not sessions:
            return
        logger.info("Cleaning up %d active sessions", len(sessions))
        results = await asyncio.gather(
            *(self.terminate(session_id=s.id) for s in sessions),
            return_exceptions=True,
        )
        for session, result in zip(sessions, results):
            if isinstance(result, BaseException):
                logger.error("Cleanup of %s failed: %s", session.id, result)
            # Whatever happened remotely, nothing may stay registered
            if self.registry.find_by_id(session.id) is not None:
                await self.registry.remove(session.id)

    async def shutdown(self) -> None:
        await self.shutdown_sweep()
        await self.store.close()
        await self.hub.shutdown()
        await self.gateway.aclose()
