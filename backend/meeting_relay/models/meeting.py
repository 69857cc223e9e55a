from __future__ import annotations

from datetime import datetime
from typing import Optional
from sqlmodel import SQLModel, Field

from meeting_relay.domain import utcnow


class Meeting(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    owner_user_id: str = Field(index=True)
    # Bot, upload or live session id; None for meetings without one
    source_id: Optional[str] = Field(default=None, index=True)
    title: str = Field(default="Untitled Meeting")
    target_url: Optional[str] = None
    bot_name: Optional[str] = None
    recording_type: str = Field(default="bot")  # bot|desktop|live
    status: str = Field(default="active")  # active|ended|canceled
    started_at: datetime = Field(default_factory=utcnow, index=True)
    ended_at: Optional[datetime] = None
