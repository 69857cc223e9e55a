from __future__ import annotations

from sqlmodel import Session, select, func

from meeting_relay.models.transcript_segment import TranscriptSegment


class TranscriptsRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def add_segment(self, segment: TranscriptSegment) -> TranscriptSegment:
        self.session.add(segment)
        self.session.commit()
        self.session.refresh(segment)
        return segment

    def list_by_meeting(self, meeting_id: int) -> list[TranscriptSegment]:
        # Insertion order is arrival order
        statement = select(TranscriptSegment).where(TranscriptSegment.meeting_id == meeting_id).order_by(
            TranscriptSegment.id.asc()
        )
        return list(self.session.exec(statement))

    def count_for_meeting(self, meeting_id: int) -> int:
        statement = select(func.count()).select_from(TranscriptSegment).where(
            TranscriptSegment.meeting_id == meeting_id
        )
        return int(self.session.exec(statement).one())
