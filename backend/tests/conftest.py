"""
Pytest configuration and fixtures.
"""
import asyncio
import json
from types import SimpleNamespace

import httpx
import pytest
from fastapi.testclient import TestClient

from meeting_relay.config import Settings
from meeting_relay.models.base import create_db_engine, dispose, init_db
from meeting_relay.services.bot_registry import BotRegistry
from meeting_relay.services.channels import ChannelFactory
from meeting_relay.services.fanout_hub import FanOutHub
from meeting_relay.services.provider_gateway import ProviderGateway
from meeting_relay.services.session_controller import SessionController
from meeting_relay.services.transcript_normalizer import TranscriptNormalizer
from meeting_relay.services.transcript_pipeline import TranscriptPipeline
from meeting_relay.services.transcript_store import TranscriptStore


# ============================================
# FAKES
# ============================================

class FakeProvider:
    """In-memory stand-in for the meeting-bot provider REST API."""

    def __init__(self):
        self.requests = []
        self.created = 0
        self.create_status = 201
        self.delete_status = 204
        self.remote_status = "in_call_recording"
        # Set to an asyncio.Event to hold create calls until released
        self.gate = None

    async def handle(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        self.requests.append((request.method, request.url.path, body))
        path = request.url.path

        if request.method == "POST" and path.endswith("/bot/"):
            if self.gate is not None:
                await self.gate.wait()
            if self.create_status >= 400:
                return httpx.Response(self.create_status, json={"detail": "Meeting URL is invalid"})
            self.created += 1
            return httpx.Response(
                201,
                json={
                    "id": f"bot-{self.created}",
                    "meeting_url": body["meeting_url"],
                    "bot_name": body["bot_name"],
                    "status_changes": [{"code": "ready"}],
                },
            )
        if request.method == "POST" and path.endswith("/sdk-upload/"):
            if self.create_status >= 400:
                return httpx.Response(self.create_status, json={"detail": "Upload rejected"})
            self.created += 1
            return httpx.Response(
                201,
                json={"id": f"upload-{self.created}", "upload_token": f"tok-{self.created}", "status": {"code": "pending"}},
            )
        if request.method == "GET":
            resource_id = path.rstrip("/").rsplit("/", 1)[-1]
            return httpx.Response(
                200,
                json={"id": resource_id, "bot_name": "EchoTwin AI", "status_changes": [{"code": self.remote_status}]},
            )
        if request.method == "DELETE":
            if self.delete_status >= 400:
                return httpx.Response(self.delete_status, json={"detail": "Bot cannot be removed"})
            return httpx.Response(self.delete_status)
        return httpx.Response(404, json={"detail": "Not found"})

    def calls(self, method, suffix=""):
        return [r for r in self.requests if r[0] == method and r[1].endswith(suffix)]


class FakeConnection:
    """Client connection that records what it was sent."""

    def __init__(self, fail=False):
        self.sent = []
        self.closed = False
        self.close_code = None
        self.fail = fail
        self.gate = None

    async def send_json(self, data):
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise RuntimeError("connection reset")
        self.sent.append(data)

    async def close(self, code=1000):
        self.closed = True
        self.close_code = code

    def of_type(self, kind):
        return [m for m in self.sent if m.get("type") == kind]


class FakeStream:
    """Provider websocket: awaitable, usable as a context manager and async-iterable."""

    def __init__(self, frames=()):
        self.queue = asyncio.Queue()
        self.sent = []
        self.closed = False
        for frame in frames:
            self.queue.put_nowait(frame)

    def push(self, frame):
        self.queue.put_nowait(frame)

    def end(self):
        self.queue.put_nowait(None)

    def __await__(self):
        async def _self():
            return self
        return _self().__await__()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self.queue.get()
        if item is None:
            raise StopAsyncIteration
        if isinstance(item, Exception):
            raise item
        return item

    async def send(self, data):
        self.sent.append(data)

    async def close(self):
        self.closed = True
        self.end()


class FakeConnector:
    """Replacement for ``websockets.connect`` that hands out scripted streams.

    Each script entry is either a :class:`FakeStream` or an exception to raise.
    """

    def __init__(self, script=()):
        self.script = list(script)
        self.calls = []

    def __call__(self, url, additional_headers=None, **kwargs):
        self.calls.append((url, additional_headers))
        if not self.script:
            raise OSError("connection refused")
        item = self.script.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


# ============================================
# TEST CONFIGURATION
# ============================================

def make_settings(tmp_path, **overrides):
    values = dict(
        data_dir=tmp_path / "data",
        logs_dir=tmp_path / "logs",
        database_url="sqlite://",
        provider_api_key="test-provider-key-1234567890",
        provider_region="us-west-2",
        public_base_url="https://relay.example.com",
        stream_connect_delay=0,
        stream_reconnect_backoff=0,
        speech_api_key="test-speech-key",
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings_factory(tmp_path):
    """Build settings under tmp_path with overrides."""
    def _make(**overrides):
        return make_settings(tmp_path, **overrides)
    return _make


@pytest.fixture
def settings(tmp_path):
    """Webhook-mode settings with a configured provider."""
    return make_settings(tmp_path)


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def gateway(settings, provider):
    client = httpx.AsyncClient(transport=httpx.MockTransport(provider.handle))
    return ProviderGateway(settings, client=client)


@pytest.fixture
def connector():
    return FakeConnector()


# ============================================
# DATABASE FIXTURES
# ============================================

@pytest.fixture
def engine():
    """In-memory SQLite engine with tables created."""
    engine = create_db_engine("sqlite://")
    init_db(engine)
    yield engine
    dispose(engine)


# ============================================
# COMPONENT FIXTURES
# ============================================

def build_relay(settings, gateway, engine, connect):
    registry = BotRegistry()
    hub = FanOutHub(queue_size=settings.subscriber_queue_size)
    store = TranscriptStore(engine)
    pipeline = TranscriptPipeline(hub, store)
    normalizer = TranscriptNormalizer(registry, pipeline)
    channels = ChannelFactory(settings, normalizer, registry, connect=connect)
    controller = SessionController(settings, registry, gateway, hub, store, normalizer, channels)
    return SimpleNamespace(
        settings=settings,
        registry=registry,
        hub=hub,
        store=store,
        pipeline=pipeline,
        normalizer=normalizer,
        channels=channels,
        controller=controller,
        gateway=gateway,
    )


@pytest.fixture
async def relay(settings, gateway, engine, connector):
    """Fully wired components sharing one registry, hub and store."""
    components = build_relay(settings, gateway, engine, connector)
    yield components
    await components.controller.shutdown()


# ============================================
# TEST CLIENT FIXTURES
# ============================================

@pytest.fixture
def app(settings, gateway, engine, connector):
    from meeting_relay.main import create_app

    return create_app(settings, gateway=gateway, engine=engine, connect=connector)


@pytest.fixture
def test_client(app):
    """Test client with startup and shutdown hooks run."""
    with TestClient(app) as client:
        yield client
