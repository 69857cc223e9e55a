from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional
import logging

import httpx

from meeting_relay.config import Settings
from meeting_relay.domain import BotSession, BotStatus, SessionKind
from meeting_relay.errors import ConfigurationError, ProviderError


logger = logging.getLogger("meeting_relay.gateway")


# Provider status codes -> canonical lifecycle status
_STATUS_CODES: Dict[str, BotStatus] = {
    "created": BotStatus.CREATED,
    "ready": BotStatus.CREATED,
    "joining": BotStatus.JOINING,
    "joining_call": BotStatus.JOINING,
    "waiting_room": BotStatus.WAITING_ROOM,
    "in_waiting_room": BotStatus.WAITING_ROOM,
    "in_call": BotStatus.IN_CALL,
    "in_call_recording": BotStatus.IN_CALL_RECORDING,
    "recording": BotStatus.IN_CALL_RECORDING,
    "in_call_not_recording": BotStatus.IN_CALL_NOT_RECORDING,
    "recording_permission_denied": BotStatus.IN_CALL_NOT_RECORDING,
    "call_ended": BotStatus.DONE,
    "recording_done": BotStatus.DONE,
    "done": BotStatus.DONE,
    "complete": BotStatus.DONE,
    "completed": BotStatus.DONE,
    "analysis_done": BotStatus.DONE,
    "media_expired": BotStatus.DONE,
    "fatal": BotStatus.FATAL,
    "failed": BotStatus.FATAL,
    "error": BotStatus.FATAL,
}


def extract_status_code(payload: Any) -> Optional[str]:
    """Pull the raw status code out of the shapes the provider uses.

    Handles ``{"status": {"code": ...}}``, ``{"status": "..."}``,
    ``{"code": ...}``, a bare string, and the ``status_changes`` history list
    (latest entry wins).
    """
    if payload is None:
        return None
    if isinstance(payload, str):
        return payload or None
    if not isinstance(payload, dict):
        return None
    status = payload.get("status")
    if isinstance(status, dict) and status.get("code"):
        return str(status["code"])
    if isinstance(status, str) and status:
        return status
    if payload.get("code"):
        return str(payload["code"])
    changes = payload.get("status_changes")
    if isinstance(changes, list) and changes:
        last = changes[-1]
        if isinstance(last, dict) and last.get("code"):
            return str(last["code"])
    return None


def normalize_status(payload: Any, default: Optional[BotStatus] = BotStatus.CREATED) -> Optional[BotStatus]:
    """Map any provider status shape onto :class:`BotStatus`.

    Unknown codes map to ``None`` when no default is given so callers can keep
    the raw code for display without moving the state machine.
    """
    code = extract_status_code(payload)
    if code is None:
        return default
    return _STATUS_CODES.get(code.lower(), None)


@dataclass
class LaunchOptions:
    webhook_url: Optional[str] = None
    transcription_provider: Optional[str] = None
    # e.g. {"kind": "mp3", "b64_data": "..."}; forwarded untouched
    output_audio: Optional[Dict[str, Any]] = None
    join_message: Optional[str] = None
    waiting_room_timeout: Optional[int] = None
    noone_joined_timeout: Optional[int] = None
    title: Optional[str] = None


def _error_message(response: httpx.Response, fallback: str) -> str:
    try:
        data = response.json()
    except ValueError:
        data = None
    if isinstance(data, str) and data:
        return data
    if isinstance(data, dict):
        for key in ("message", "detail", "error"):
            if data.get(key):
                return str(data[key])
    text = (response.text or "").strip()
    return text[:300] if text else fallback


class ProviderGateway:
    """Thin async client for the meeting-bot provider REST API.

    No retries happen here; callers decide what to do on failure.
    """

    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None) -> None:
        self.settings = settings
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=settings.http_timeout)

    @property
    def base_url(self) -> str:
        return self.settings.resolved_provider_base_url

    def is_configured(self) -> bool:
        return bool(self.settings.provider_api_key and self.settings.provider_region)

    def headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Token {self.settings.provider_api_key}",
            "Content-Type": "application/json",
        }

    def _require_config(self) -> None:
        if not self.is_configured():
            raise ConfigurationError(
                "Meeting-bot provider not configured. Set MR_PROVIDER_API_KEY and MR_PROVIDER_REGION."
            )

    async def _request(self, method: str, path: str, json_body: Optional[dict] = None) -> httpx.Response:
        url = f"{self.base_url}{path}"
        try:
            response = await self._client.request(method, url, json=json_body, headers=self.headers())
        except httpx.HTTPError as exc:
            raise ProviderError(0, f"Provider unreachable: {exc}") from exc
        if response.is_error:
            raise ProviderError(response.status_code, _error_message(response, f"{method} {path} failed"))
        return response

    def build_bot_payload(self, target_url: str, display_name: str, options: LaunchOptions) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "meeting_url": target_url,
            "bot_name": display_name,
            "chat": {
                "on_bot_join": {
                    "send_to": "everyone",
                    "message": options.join_message or f"{display_name} has joined to assist you",
                },
            },
            "automatic_leave": {
                "waiting_room_timeout": options.waiting_room_timeout or self.settings.waiting_room_timeout,
                "noone_joined_timeout": options.noone_joined_timeout or self.settings.noone_joined_timeout,
            },
        }
        if options.transcription_provider:
            payload["transcription_options"] = {"provider": options.transcription_provider}
        if options.webhook_url:
            payload["webhook_url"] = options.webhook_url
        if options.output_audio:
            payload["automatic_audio_output"] = {"in_call_recording": {"data": options.output_audio}}
        return payload

    async def create_session(
        self,
        target_url: str,
        display_name: str,
        owner_user_id: str,
        options: Optional[LaunchOptions] = None,
    ) -> BotSession:
        self._require_config()
        options = options or LaunchOptions()
        payload = self.build_bot_payload(target_url, display_name, options)
        logger.info("Creating bot for owner=%s meeting=%s", owner_user_id, target_url)
        response = await self._request("POST", "/bot/", payload)
        data = response.json()
        if not isinstance(data, dict) or not data.get("id"):
            raise ProviderError(response.status_code, "Provider response did not include a bot id")
        code = extract_status_code(data)
        session = BotSession(
            id=str(data["id"]),
            owner_user_id=owner_user_id,
            target_url=data.get("meeting_url") if isinstance(data.get("meeting_url"), str) else target_url,
            display_name=data.get("bot_name") or display_name,
            status=normalize_status(data) or BotStatus.CREATED,
            kind=SessionKind.BOT,
            title=options.title,
            provider_status=code,
        )
        logger.info("Bot created id=%s status=%s", session.id, session.status.value)
        return session

    async def create_upload(
        self,
        owner_user_id: str,
        title: str,
        options: Optional[LaunchOptions] = None,
    ) -> BotSession:
        self._require_config()
        options = options or LaunchOptions()
        payload: Dict[str, Any] = {
            "automatic_leave": {
                "noone_joined_timeout": options.noone_joined_timeout
                or self.settings.upload_noone_joined_timeout,
            },
            "transcription_options": {
                "provider": options.transcription_provider
                or ("deepgram" if self.settings.speech_api_key else "assembly_ai"),
            },
        }
        if options.webhook_url:
            payload["webhook_url"] = options.webhook_url
        logger.info("Creating SDK upload for owner=%s key=%s", owner_user_id, self.settings.masked_api_key())
        response = await self._request("POST", "/sdk-upload/", payload)
        data = response.json()
        if not isinstance(data, dict) or not data.get("id"):
            raise ProviderError(response.status_code, "Provider response did not include an upload id")
        return BotSession(
            id=str(data["id"]),
            owner_user_id=owner_user_id,
            target_url=None,
            display_name="Desktop Recording",
            status=normalize_status(data) or BotStatus.CREATED,
            kind=SessionKind.UPLOAD,
            title=title,
            upload_token=data.get("upload_token"),
            provider_status=extract_status_code(data),
        )

    def _resource(self, kind: SessionKind) -> str:
        return "sdk-upload" if kind == SessionKind.UPLOAD else "bot"

    async def get_status(self, session_id: str, kind: SessionKind = SessionKind.BOT) -> Optional[BotSession]:
        try:
            response = await self._request("GET", f"/{self._resource(kind)}/{session_id}/")
            data = response.json()
        except (ProviderError, ValueError) as exc:
            logger.warning("Status lookup failed for %s: %s", session_id, exc)
            return None
        if not isinstance(data, dict):
            return None
        metadata = data.get("metadata") if isinstance(data.get("metadata"), dict) else {}
        return BotSession(
            id=str(data.get("id") or session_id),
            owner_user_id=str(metadata.get("user_id") or ""),
            target_url=data.get("meeting_url") if isinstance(data.get("meeting_url"), str) else None,
            display_name=data.get("bot_name") or "",
            status=normalize_status(data) or BotStatus.CREATED,
            kind=kind,
            provider_status=extract_status_code(data),
        )

    async def terminate(self, session_id: str, kind: SessionKind = SessionKind.BOT) -> None:
        self._require_config()
        logger.info("Removing %s %s at provider", self._resource(kind), session_id)
        await self._request("DELETE", f"/{self._resource(kind)}/{session_id}/")

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
