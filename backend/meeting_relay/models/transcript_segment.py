from __future__ import annotations

from datetime import datetime
from typing import Optional
from sqlmodel import SQLModel, Field

from meeting_relay.domain import utcnow


class TranscriptSegment(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    meeting_id: int = Field(index=True, foreign_key="meeting.id")
    speaker: str = Field(default="Unknown")
    text: str
    spoken_at: datetime = Field(default_factory=utcnow)
    confidence: Optional[float] = None
