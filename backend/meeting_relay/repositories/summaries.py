from __future__ import annotations

from typing import Optional
from sqlmodel import Session, select

from meeting_relay.models.summary import Summary


class SummariesRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def upsert_for_meeting(self, meeting_id: int, key_points_md: str, action_items_md: str) -> Summary:
        summary = self.get_by_meeting(meeting_id)
        if summary is None:
            summary = Summary(meeting_id=meeting_id)
        summary.key_points_md = key_points_md
        summary.action_items_md = action_items_md
        self.session.add(summary)
        self.session.commit()
        self.session.refresh(summary)
        return summary

    def get_by_meeting(self, meeting_id: int) -> Optional[Summary]:
        statement = select(Summary).where(Summary.meeting_id == meeting_id)
        return self.session.exec(statement).first()
