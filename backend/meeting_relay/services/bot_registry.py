from __future__ import annotations

from typing import Dict, List, Optional, TYPE_CHECKING
import logging

from meeting_relay.domain import BotSession, BotStatus, ChannelKind, can_transition
from meeting_relay.errors import ConflictError

if TYPE_CHECKING:  # pragma: no cover
    from meeting_relay.services.channels import TranscriptChannel


logger = logging.getLogger("meeting_relay.registry")


class BotRegistry:
    """In-process table of active bot and upload sessions.

    Every method that mutates the table is synchronous except :meth:`remove`,
    which first drops the session and only then awaits the channel teardown.
    Under a single event loop that makes each mutation atomic.
    """

    def __init__(self) -> None:
        self._sessions: Dict[str, BotSession] = {}
        self._by_user: Dict[str, str] = {}
        self._channels: Dict[str, "TranscriptChannel"] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def register(self, session: BotSession) -> BotSession:
        # Check and insert with no await in between
        existing = self.find_by_user(session.owner_user_id)
        if existing is not None and not existing.status.is_terminal:
            raise ConflictError(
                f"User {session.owner_user_id} already has an active session ({existing.id}). "
                "Leave the current meeting first.",
                session=existing,
            )
        if session.id in self._sessions:
            raise ConflictError(f"Session {session.id} is already registered", session=self._sessions[session.id])
        self._sessions[session.id] = session
        self._by_user[session.owner_user_id] = session.id
        logger.info("Registered %s %s for owner=%s", session.kind.value, session.id, session.owner_user_id)
        return session

    def find_by_user(self, owner_user_id: str) -> Optional[BotSession]:
        session_id = self._by_user.get(owner_user_id)
        if session_id is None:
            return None
        return self._sessions.get(session_id)

    def find_by_id(self, session_id: str) -> Optional[BotSession]:
        return self._sessions.get(session_id)

    def list_all(self) -> List[BotSession]:
        return list(self._sessions.values())

    def update_status(
        self,
        session_id: str,
        status: Optional[BotStatus],
        provider_status: Optional[str] = None,
    ) -> bool:
        """Apply a status update. Returns True when the status changed.

        Unknown sessions, repeated statuses and illegal moves are no-ops.
        """
        session = self._sessions.get(session_id)
        if session is None:
            logger.debug("Status %s for unknown session %s ignored", status, session_id)
            return False
        if provider_status:
            session.provider_status = provider_status
        if status is None or status == session.status:
            return False
        if not can_transition(session.status, status):
            logger.info(
                "Ignoring transition %s -> %s for %s", session.status.value, status.value, session_id
            )
            return False
        logger.info("Session %s: %s -> %s", session_id, session.status.value, status.value)
        session.status = status
        return True

    def attach_channel(self, session_id: str, channel: "TranscriptChannel") -> bool:
        session = self._sessions.get(session_id)
        if session is None:
            return False
        self._channels[session_id] = channel
        session.transcript_channel = channel.kind
        return True

    def channel_for(self, session_id: str) -> Optional["TranscriptChannel"]:
        return self._channels.get(session_id)

    def detach_channel(self, session_id: str, channel: Optional["TranscriptChannel"] = None) -> Optional["TranscriptChannel"]:
        current = self._channels.get(session_id)
        if current is None or (channel is not None and current is not channel):
            return None
        del self._channels[session_id]
        session = self._sessions.get(session_id)
        if session is not None:
            session.transcript_channel = ChannelKind.NONE
        return current

    async def remove(self, session_id: str) -> Optional[BotSession]:
        session = self._sessions.pop(session_id, None)
        channel = self._channels.pop(session_id, None)
        if session is not None:
            if self._by_user.get(session.owner_user_id) == session_id:
                del self._by_user[session.owner_user_id]
            session.transcript_channel = ChannelKind.NONE
            logger.info("Removed session %s (owner=%s)", session_id, session.owner_user_id)
        if channel is not None:
            try:
                await channel.close()
            except Exception:
                logger.exception("Closing transcript channel for %s failed", session_id)
        return session
