from __future__ import annotations

import ipaddress
import logging
import os
from pathlib import Path
from typing import List, Optional
from urllib.parse import urlparse

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


logger = logging.getLogger("meeting_relay.config")

_LOOPBACK_HOSTS = {"localhost", "0.0.0.0", ""}


def _default_root() -> Path:
    return Path(os.getenv("MR_HOME", Path.cwd() / ".meeting_relay"))


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="MR_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = "Meeting Relay"

    data_dir: Path = Field(default_factory=lambda: _default_root() / "data")
    logs_dir: Path = Field(default_factory=lambda: _default_root() / "logs")
    database_url: Optional[str] = None

    cors_origins: List[str] = Field(
        default_factory=lambda: ["http://localhost:8080", "http://127.0.0.1:8080"]
    )

    # Meeting-bot provider
    provider_api_key: Optional[str] = None
    provider_region: str = "us-west-2"
    provider_base_url: Optional[str] = None
    provider_stream_url: Optional[str] = None
    http_timeout: float = 30.0

    # Public callback base; webhooks are only used when this is reachable from outside
    public_base_url: Optional[str] = None
    transcript_channel: str = "auto"  # auto|webhook|socket

    default_bot_name: str = "EchoTwin AI"
    waiting_room_timeout: int = 600
    noone_joined_timeout: int = 1200
    upload_noone_joined_timeout: int = 3600

    stream_connect_delay: float = 5.0
    stream_max_reconnects: int = 3
    stream_reconnect_backoff: float = 2.0

    subscriber_queue_size: int = 256

    # Speech-to-text streaming for live browser transcription
    speech_api_key: Optional[str] = None
    speech_stream_url: str = "wss://api.deepgram.com/v1/listen"
    speech_model: str = "nova-2"
    speech_language: str = "en-US"

    @field_validator("provider_api_key")
    @classmethod
    def _strip_token_prefix(cls, value: Optional[str]) -> Optional[str]:
        if value and value.startswith("Token "):
            logger.warning("Removing 'Token ' prefix from provider API key")
            return value[len("Token "):].strip()
        return value

    @field_validator("transcript_channel")
    @classmethod
    def _check_channel(cls, value: str) -> str:
        value = value.lower()
        if value not in {"auto", "webhook", "socket"}:
            raise ValueError("transcript_channel must be auto, webhook or socket")
        return value

    @property
    def resolved_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"sqlite:///{self.data_dir / 'meeting_relay.db'}"

    @property
    def resolved_provider_base_url(self) -> str:
        if self.provider_base_url:
            return self.provider_base_url.rstrip("/")
        return f"https://{self.provider_region}.recall.ai/api/v1"

    @property
    def resolved_provider_stream_url(self) -> str:
        if self.provider_stream_url:
            return self.provider_stream_url.rstrip("/")
        return f"wss://{self.provider_region}.recall.ai/api/v2"

    def webhook_enabled(self) -> bool:
        if not self.public_base_url:
            return False
        host = (urlparse(self.public_base_url).hostname or "").lower()
        if host in _LOOPBACK_HOSTS:
            return False
        try:
            return not ipaddress.ip_address(host).is_loopback
        except ValueError:
            # Not an IP literal
            return True

    def webhook_url(self, path: str) -> Optional[str]:
        if not self.webhook_enabled():
            return None
        return f"{self.public_base_url.rstrip('/')}{path}"  # type: ignore[union-attr]

    def masked_api_key(self) -> str:
        key = self.provider_api_key or ""
        if len(key) <= 12:
            return "***" if key else "<unset>"
        return f"{key[:8]}...{key[-4:]}"

    def ensure_dirs(self) -> None:
        for d in [self.data_dir, self.logs_dir]:
            d.mkdir(parents=True, exist_ok=True)
