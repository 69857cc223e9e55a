from __future__ import annotations

from datetime import date
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field

from meeting_relay.deps import get_controller, get_registry
from meeting_relay.domain import BotSession, SessionKind
from meeting_relay.services.bot_registry import BotRegistry
from meeting_relay.services.session_controller import SessionController


router = APIRouter(prefix="/api/recall-desktop", tags=["recall-desktop"])


class CreateUploadRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: Optional[str] = Field(default=None, alias="userId")
    meeting_title: Optional[str] = Field(default=None, alias="meetingTitle")


class CancelUploadRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    upload_id: Optional[str] = Field(default=None, alias="uploadId")
    user_id: Optional[str] = Field(default=None, alias="userId")


def _upload_view(session: BotSession) -> Dict[str, Any]:
    return {
        "uploadId": session.id,
        "uploadToken": session.upload_token,
        "userId": session.owner_user_id,
        "meetingTitle": session.title,
        "status": session.status.value,
        "createdAt": session.created_at.isoformat(),
    }


@router.post("/create-upload")
async def create_upload(body: CreateUploadRequest, controller: SessionController = Depends(get_controller)) -> Dict[str, Any]:
    if not body.user_id:
        raise HTTPException(status_code=400, detail="User ID is required")
    title = body.meeting_title or f"Meeting - {date.today().isoformat()}"
    session = await controller.create_upload(body.user_id, title)
    upload = _upload_view(session)
    upload["region"] = controller.settings.provider_region
    return {
        "success": True,
        "message": "SDK upload token created. Enter this token in the desktop recorder.",
        "upload": upload,
    }


@router.get("/upload-status/{upload_id}")
async def upload_status(upload_id: str, controller: SessionController = Depends(get_controller)) -> Dict[str, Any]:
    status = await controller.refresh_status(upload_id)
    if status is None:
        raise HTTPException(status_code=404, detail="Upload not found")
    return {"success": True, "upload": status}


@router.post("/cancel-upload")
async def cancel_upload(body: CancelUploadRequest, controller: SessionController = Depends(get_controller)) -> Dict[str, Any]:
    if not body.upload_id and not body.user_id:
        raise HTTPException(status_code=400, detail="Upload ID or User ID is required")
    session = await controller.cancel_upload(body.upload_id, body.user_id)
    return {"success": True, "message": "SDK upload canceled", "upload": _upload_view(session)}


@router.get("/uploads")
def list_uploads(registry: BotRegistry = Depends(get_registry)) -> Dict[str, Any]:
    uploads = [_upload_view(s) for s in registry.list_all() if s.kind == SessionKind.UPLOAD]
    return {"success": True, "count": len(uploads), "uploads": uploads}


@router.get("/my-upload/{user_id}")
async def my_upload(user_id: str, controller: SessionController = Depends(get_controller)) -> Dict[str, Any]:
    session = controller.registry.find_by_user(user_id)
    if session is None or session.kind != SessionKind.UPLOAD:
        raise HTTPException(status_code=404, detail="No active upload found for this user")
    await controller.refresh_status(session.id)
    return {"success": True, "upload": _upload_view(session)}
