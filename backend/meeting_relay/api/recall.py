from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field

from meeting_relay.deps import get_controller, get_registry
from meeting_relay.services.bot_registry import BotRegistry
from meeting_relay.services.provider_gateway import LaunchOptions
from meeting_relay.services.session_controller import SessionController
import logging
logger = logging.getLogger("meeting_relay.api")


router = APIRouter(prefix="/api/recall", tags=["recall"])


class LaunchRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    meeting_url: Optional[str] = Field(default=None, alias="meetingUrl")
    bot_name: Optional[str] = Field(default=None, alias="botName")
    user_id: Optional[str] = Field(default=None, alias="userId")
    title: Optional[str] = None
    output_audio: Optional[Dict[str, Any]] = Field(default=None, alias="outputAudio")


class LeaveRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    bot_id: Optional[str] = Field(default=None, alias="botId")
    user_id: Optional[str] = Field(default=None, alias="userId")


@router.post("/launch")
async def launch_bot(body: LaunchRequest, controller: SessionController = Depends(get_controller)) -> Dict[str, Any]:
    if not body.meeting_url:
        raise HTTPException(status_code=400, detail="Meeting URL is required")
    if not body.user_id:
        raise HTTPException(status_code=400, detail="User ID is required")

    options = LaunchOptions(title=body.title, output_audio=body.output_audio)
    session = await controller.launch(body.user_id, body.meeting_url, body.bot_name, options)
    return {
        "success": True,
        "message": "Bot is joining the meeting",
        "bot": session.to_dict(),
    }


@router.get("/status/{bot_id}")
async def bot_status(bot_id: str, controller: SessionController = Depends(get_controller)) -> Dict[str, Any]:
    status = await controller.refresh_status(bot_id)
    if status is None:
        raise HTTPException(status_code=404, detail="Bot not found")
    return {"success": True, "bot": status}


@router.post("/leave")
async def leave_meeting(body: LeaveRequest, controller: SessionController = Depends(get_controller)) -> Dict[str, Any]:
    if not body.bot_id and not body.user_id:
        raise HTTPException(status_code=400, detail="Bot ID or User ID is required")
    logger.info("Leave requested (bot=%s user=%s)", body.bot_id, body.user_id)
    session = await controller.terminate(session_id=body.bot_id, owner_user_id=body.user_id)
    return {
        "success": True,
        "message": "Bot has left the meeting",
        "bot": session.to_dict(),
    }


@router.get("/bots")
def list_bots(registry: BotRegistry = Depends(get_registry)) -> Dict[str, Any]:
    bots = [s.to_dict() for s in registry.list_all()]
    return {"success": True, "count": len(bots), "bots": bots}


@router.get("/my-bot/{user_id}")
def my_bot(user_id: str, registry: BotRegistry = Depends(get_registry)) -> Dict[str, Any]:
    session = registry.find_by_user(user_id)
    if session is None:
        raise HTTPException(status_code=404, detail="No active bot found for this user")
    return {"success": True, "bot": session.to_dict()}
