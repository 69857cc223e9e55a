from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Depends, Request, Response

from meeting_relay.deps import get_dispatcher
from meeting_relay.services.webhook_dispatcher import WebhookDispatcher


router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


# Deliveries are acknowledged with an empty 200 before any processing.


@router.post("/recall")
async def recall_webhook(
    request: Request,
    background: BackgroundTasks,
    dispatcher: WebhookDispatcher = Depends(get_dispatcher),
) -> Response:
    raw = await request.body()
    background.add_task(dispatcher.handle_bot_event, raw)
    return Response(status_code=200)


@router.post("/recall-desktop")
async def recall_desktop_webhook(
    request: Request,
    background: BackgroundTasks,
    dispatcher: WebhookDispatcher = Depends(get_dispatcher),
) -> Response:
    raw = await request.body()
    background.add_task(dispatcher.handle_upload_event, raw)
    return Response(status_code=200)
