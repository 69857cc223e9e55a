from __future__ import annotations

from typing import Iterator

from fastapi import HTTPException, Request
from sqlmodel import Session

from meeting_relay.services.bot_registry import BotRegistry
from meeting_relay.services.fanout_hub import FanOutHub
from meeting_relay.services.session_controller import SessionController
from meeting_relay.services.webhook_dispatcher import WebhookDispatcher


def get_session(request: Request) -> Iterator[Session]:
    engine = request.app.state.store.engine
    if engine is None:
        raise HTTPException(status_code=503, detail="Storage unavailable")
    with Session(engine) as session:
        yield session


def get_controller(request: Request) -> SessionController:
    return request.app.state.controller


def get_registry(request: Request) -> BotRegistry:
    return request.app.state.registry


def get_hub(request: Request) -> FanOutHub:
    return request.app.state.hub


def get_dispatcher(request: Request) -> WebhookDispatcher:
    return request.app.state.dispatcher
