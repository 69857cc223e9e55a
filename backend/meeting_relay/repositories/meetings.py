from __future__ import annotations

from typing import Optional
from sqlmodel import Session, select

from meeting_relay.models.meeting import Meeting


class MeetingsRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def create(self, meeting: Meeting) -> Meeting:
        self.session.add(meeting)
        self.session.commit()
        self.session.refresh(meeting)
        return meeting

    def get(self, meeting_id: int) -> Optional[Meeting]:
        return self.session.get(Meeting, meeting_id)

    def find_open(self, source_id: str, owner_user_id: Optional[str] = None) -> Optional[Meeting]:
        statement = select(Meeting).where(Meeting.source_id == source_id, Meeting.status == "active")
        if owner_user_id is not None:
            statement = statement.where(Meeting.owner_user_id == owner_user_id)
        return self.session.exec(statement.order_by(Meeting.started_at.desc())).first()

    def list(self, owner_user_id: Optional[str] = None, limit: int = 50, offset: int = 0) -> list[Meeting]:
        statement = select(Meeting)
        if owner_user_id is not None:
            statement = statement.where(Meeting.owner_user_id == owner_user_id)
        statement = statement.order_by(Meeting.started_at.desc()).limit(limit).offset(offset)
        return list(self.session.exec(statement))

    def update(self, meeting: Meeting) -> Meeting:
        self.session.add(meeting)
        self.session.commit()
        self.session.refresh(meeting)
        return meeting
