from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BotStatus(str, Enum):
    CREATED = "created"
    JOINING = "joining"
    WAITING_ROOM = "waiting_room"
    IN_CALL = "in_call"
    IN_CALL_RECORDING = "in_call_recording"
    IN_CALL_NOT_RECORDING = "in_call_not_recording"
    DONE = "done"
    FATAL = "fatal"

    @property
    def is_terminal(self) -> bool:
        return self in (BotStatus.DONE, BotStatus.FATAL)


# Position along the main path; equal ranks are siblings
_RANK: Dict[BotStatus, int] = {
    BotStatus.CREATED: 0,
    BotStatus.JOINING: 1,
    BotStatus.WAITING_ROOM: 2,
    BotStatus.IN_CALL: 3,
    BotStatus.IN_CALL_RECORDING: 4,
    BotStatus.IN_CALL_NOT_RECORDING: 4,
    BotStatus.DONE: 5,
    BotStatus.FATAL: 5,
}


def can_transition(current: BotStatus, target: BotStatus) -> bool:
    """Return True when ``current -> target`` is a legal status move.

    Forward jumps along the main path are accepted because the provider does
    not promise to report every intermediate state. Nothing leaves a terminal
    state, and the waiting room is only entered from ``joining``.
    """
    if current.is_terminal:
        return False
    if current == target:
        return True
    if target == BotStatus.FATAL:
        return True
    if target == BotStatus.WAITING_ROOM:
        return current == BotStatus.JOINING
    if {current, target} == {BotStatus.IN_CALL_RECORDING, BotStatus.IN_CALL_NOT_RECORDING}:
        return True
    return _RANK[target] > _RANK[current]


class ChannelKind(str, Enum):
    WEBHOOK = "webhook"
    SOCKET = "socket"
    NONE = "none"


class SessionKind(str, Enum):
    BOT = "bot"
    UPLOAD = "upload"


@dataclass
class BotSession:
    id: str
    owner_user_id: str
    target_url: Optional[str]
    display_name: str
    status: BotStatus = BotStatus.CREATED
    created_at: datetime = field(default_factory=utcnow)
    transcript_channel: ChannelKind = ChannelKind.NONE
    kind: SessionKind = SessionKind.BOT
    title: Optional[str] = None
    upload_token: Optional[str] = None
    # Raw provider code as last reported, for display only
    provider_status: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "botId": self.id,
            "userId": self.owner_user_id,
            "meetingUrl": self.target_url,
            "botName": self.display_name,
            "status": self.status.value,
            "providerStatus": self.provider_status,
            "createdAt": self.created_at.isoformat(),
            "transcriptChannel": self.transcript_channel.value,
            "kind": self.kind.value,
            "title": self.title,
        }


@dataclass(frozen=True)
class TranscriptEvent:
    source_id: str
    owner_user_id: str
    speaker: str
    text: str
    is_final: bool
    timestamp: datetime
    confidence: float = 1.0

    def to_message(self) -> Dict[str, Any]:
        return {
            "sourceId": self.source_id,
            "speaker": self.speaker,
            "text": self.text,
            "isFinal": self.is_final,
            "timestamp": self.timestamp.isoformat(),
            "confidence": self.confidence,
        }
