from __future__ import annotations

from typing import Optional, Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field
from sqlmodel import Session

from meeting_relay.deps import get_session
from meeting_relay.models.meeting import Meeting
from meeting_relay.models.summary import Summary
from meeting_relay.repositories.meetings import MeetingsRepository
from meeting_relay.repositories.summaries import SummariesRepository
from meeting_relay.repositories.transcripts import TranscriptsRepository
import logging
logger = logging.getLogger("meeting_relay.api")


router = APIRouter(prefix="/api/meetings", tags=["meetings"])


class UpdateMeetingRequest(BaseModel):
    title: Optional[str] = None


class UpdateSummaryRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    key_points_md: str = Field(default="", alias="keyPoints")
    action_items_md: str = Field(default="", alias="actionItems")


def _get_or_404(repo: MeetingsRepository, meeting_id: int) -> Meeting:
    meeting = repo.get(meeting_id)
    if meeting is None:
        raise HTTPException(status_code=404, detail="Meeting not found")
    return meeting


@router.get("")
def list_meetings(
    userId: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    session: Session = Depends(get_session),
) -> List[Meeting]:
    return MeetingsRepository(session).list(owner_user_id=userId, limit=limit, offset=offset)


@router.get("/{meeting_id}")
def get_meeting_detail(meeting_id: int, session: Session = Depends(get_session)) -> Dict[str, Any]:
    meeting = _get_or_404(MeetingsRepository(session), meeting_id)
    segments = TranscriptsRepository(session).list_by_meeting(meeting_id)
    summary = SummariesRepository(session).get_by_meeting(meeting_id)
    return {
        "meeting": meeting,
        "transcript_segments": segments,
        "summary": summary,
    }


@router.put("/{meeting_id}")
def update_meeting(meeting_id: int, body: UpdateMeetingRequest, session: Session = Depends(get_session)) -> Meeting:
    repo_m = MeetingsRepository(session)
    meeting = _get_or_404(repo_m, meeting_id)
    if body.title is not None:
        meeting.title = body.title
        meeting = repo_m.update(meeting)
    return meeting


@router.put("/{meeting_id}/summary")
def update_summary(meeting_id: int, body: UpdateSummaryRequest, session: Session = Depends(get_session)) -> Summary:
    _get_or_404(MeetingsRepository(session), meeting_id)
    summary = SummariesRepository(session).upsert_for_meeting(meeting_id, body.key_points_md, body.action_items_md)
    logger.info("Stored summary for meeting %s", meeting_id)
    return summary
