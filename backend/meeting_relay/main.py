from __future__ import annotations

from typing import Any, Callable, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
import logging
from logging.handlers import RotatingFileHandler
import websockets

from meeting_relay.config import Settings
from meeting_relay.errors import ConfigurationError, ConflictError, NotFoundError, ProviderError
from meeting_relay.models.base import create_db_engine, dispose, init_db
from meeting_relay.api.meetings import router as meetings_router
from meeting_relay.api.realtime import router as realtime_router
from meeting_relay.api.recall import router as recall_router
from meeting_relay.api.recall_desktop import router as recall_desktop_router
from meeting_relay.api.webhooks import router as webhooks_router
from meeting_relay.services.bot_registry import BotRegistry
from meeting_relay.services.channels import ChannelFactory
from meeting_relay.services.fanout_hub import FanOutHub
from meeting_relay.services.live_transcriber import LiveTranscriber
from meeting_relay.services.provider_gateway import ProviderGateway
from meeting_relay.services.session_controller import SessionController
from meeting_relay.services.transcript_normalizer import TranscriptNormalizer
from meeting_relay.services.transcript_pipeline import TranscriptPipeline
from meeting_relay.services.transcript_store import TranscriptStore
from meeting_relay.services.webhook_dispatcher import WebhookDispatcher


logger = logging.getLogger("meeting_relay")


def _configure_logging(settings: Settings) -> None:
    root = logging.getLogger()
    formatter = logging.Formatter(fmt='%(asctime)s %(levelname)s %(name)s %(message)s')
    if not any(type(h) is logging.StreamHandler for h in root.handlers):
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        root.addHandler(console)
    if not any(isinstance(h, RotatingFileHandler) for h in root.handlers):
        try:
            log_file = settings.logs_dir / "backend.log"
            handler = RotatingFileHandler(str(log_file), maxBytes=5_000_000, backupCount=2)
            handler.setFormatter(formatter)
            root.addHandler(handler)
        except OSError as exc:
            logger.warning("File logging disabled: %s", exc)
    root.setLevel(logging.INFO)


def create_app(
    settings: Optional[Settings] = None,
    *,
    gateway: Optional[ProviderGateway] = None,
    engine: Optional[Engine] = None,
    connect: Optional[Callable[..., Any]] = None,
) -> FastAPI:
    settings = settings or Settings()
    connect = connect or websockets.connect

    registry = BotRegistry()
    hub = FanOutHub(queue_size=settings.subscriber_queue_size)
    store = TranscriptStore(engine if engine is not None else create_db_engine(settings.resolved_database_url))
    pipeline = TranscriptPipeline(hub, store)
    normalizer = TranscriptNormalizer(registry, pipeline)
    channels = ChannelFactory(settings, normalizer, registry, connect=connect)
    gateway = gateway or ProviderGateway(settings)
    controller = SessionController(settings, registry, gateway, hub, store, normalizer, channels)
    live = LiveTranscriber(settings, normalizer, store, connect=connect)

    app = FastAPI(title="Meeting Relay Backend", version="0.1.0")
    app.state.settings = settings
    app.state.registry = registry
    app.state.hub = hub
    app.state.store = store
    app.state.controller = controller
    app.state.dispatcher = WebhookDispatcher(controller, normalizer)
    app.state.live = live

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    def _startup() -> None:
        settings.ensure_dirs()
        _configure_logging(settings)
        if not gateway.is_configured():
            logger.warning("Meeting-bot provider API key not set; bot launches will fail")
        logger.info("Transcript channel mode: %s", channels.mode().value)
        try:
            init_db(store.engine)
        except SQLAlchemyError as exc:
            # Live transcripts still flow without storage
            store.disable(str(exc))

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        engine_in_use = store.engine
        # Live sessions close their records before the store stops
        await live.shutdown()
        await controller.shutdown()
        dispose(engine_in_use)

    @app.get("/healthz")
    def healthz() -> dict[str, Any]:
        return {
            "status": "ok",
            "activeBots": len(registry),
            "liveSessions": len(live),
            "subscribers": hub.subscriber_count(),
            "storage": store.available,
        }

    app.include_router(recall_router)
    app.include_router(recall_desktop_router)
    app.include_router(webhooks_router)
    app.include_router(meetings_router)
    app.include_router(realtime_router)

    @app.exception_handler(ConflictError)
    async def _conflict_handler(request: Request, exc: ConflictError):  # type: ignore[override]
        content: dict[str, Any] = {"error": str(exc)}
        if exc.session is not None:
            content["bot"] = exc.session.to_dict()  # type: ignore[attr-defined]
        return JSONResponse(status_code=409, content=content)

    @app.exception_handler(NotFoundError)
    async def _not_found_handler(request: Request, exc: NotFoundError):  # type: ignore[override]
        return JSONResponse(status_code=404, content={"error": str(exc)})

    @app.exception_handler(ProviderError)
    async def _provider_handler(request: Request, exc: ProviderError):  # type: ignore[override]
        logger.warning("Provider call failed: %s", exc)
        return JSONResponse(
            status_code=502,
            content={"error": exc.message, "providerStatus": exc.status},
        )

    @app.exception_handler(ConfigurationError)
    async def _configuration_handler(request: Request, exc: ConfigurationError):  # type: ignore[override]
        return JSONResponse(status_code=503, content={"error": str(exc)})

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):  # type: ignore[override]
        logging.getLogger("meeting_relay").exception("Unhandled exception")
        return JSONResponse(status_code=500, content={"error": str(exc)})

    return app


app = create_app()


if __name__ == "__main__":
    import argparse
    import uvicorn

    parser = argparse.ArgumentParser(description="Meeting Relay Backend Server")
    parser.add_argument("--host", default="127.0.0.1", help="Host to bind to")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind to")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload (dev only)")

    args = parser.parse_args()

    uvicorn.run(
        "meeting_relay.main:app" if args.reload else app,
        host=args.host,
        port=args.port,
        reload=args.reload
    )
