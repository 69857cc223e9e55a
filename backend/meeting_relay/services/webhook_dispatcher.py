from __future__ import annotations

import json
from typing import Any, Optional, Union
import logging

from meeting_relay.services.session_controller import SessionController
from meeting_relay.services.transcript_normalizer import TranscriptNormalizer


logger = logging.getLogger("meeting_relay.webhooks")

_TRANSCRIPT_EVENTS = {"transcript.segment", "transcript.data"}
_PARTIAL_EVENTS = {"transcript.partial_data"}


def _decode(raw: Union[bytes, str, dict, None]) -> Optional[dict]:
    if isinstance(raw, dict):
        return raw
    if not raw:
        return None
    try:
        body = json.loads(raw)
    except ValueError:
        logger.warning("Webhook body is not valid JSON, ignoring")
        return None
    return body if isinstance(body, dict) else None


class WebhookDispatcher:
    """Routes provider webhook deliveries after the 200 has been sent.

    Every handler swallows its own errors: there is nobody left to report
    them to once the response is out.
    """

    def __init__(self, controller: SessionController, normalizer: TranscriptNormalizer) -> None:
        self.controller = controller
        self.normalizer = normalizer

    async def handle_bot_event(self, raw: Union[bytes, str, dict, None]) -> None:
        body = _decode(raw)
        if body is None:
            return
        event = body.get("event")
        data = body.get("data") if isinstance(body.get("data"), dict) else {}
        logger.info("Provider webhook: %s", event)
        try:
            if event in _TRANSCRIPT_EVENTS:
                self.normalizer.from_webhook_payload(body)
            elif event in _PARTIAL_EVENTS:
                segment = data.get("segment") if isinstance(data.get("segment"), dict) else None
                if segment is not None:
                    segment.setdefault("is_final", False)
                self.normalizer.from_webhook_payload(body)
            elif event == "bot.status_change":
                bot = data.get("bot")
                bot_id = data.get("bot_id") or (bot.get("id") if isinstance(bot, dict) else None)
                if not bot_id or not data.get("status"):
                    logger.warning("Status change webhook without bot id or status")
                    return
                await self.controller.handle_status_change(str(bot_id), data)
            else:
                logger.info("Unhandled webhook event: %s", event)
        except Exception:
            logger.exception("Error processing provider webhook %s", event)

    async def handle_upload_event(self, raw: Union[bytes, str, dict, None]) -> None:
        body = _decode(raw)
        if body is None:
            return
        event = body.get("event")
        data = body.get("data") if isinstance(body.get("data"), dict) else body
        upload_id = data.get("id") or data.get("sdk_upload_id")
        if not upload_id:
            logger.warning("Upload webhook %s without id", event)
            return
        logger.info("Upload webhook: %s for %s", event, upload_id)
        try:
            if event in ("sdk_upload.complete", "sdk_upload.completed"):
                await self.controller.complete_upload(str(upload_id), data.get("transcripts"))
            elif event == "sdk_upload.failed":
                await self.controller.fail_upload(str(upload_id), data.get("error"))
            elif event == "sdk_upload.status_change" or "status" in data:
                await self.controller.handle_status_change(str(upload_id), data)
            else:
                logger.info("Unhandled upload webhook event: %s", event)
        except Exception:
            logger.exception("Error processing upload webhook %s", event)
