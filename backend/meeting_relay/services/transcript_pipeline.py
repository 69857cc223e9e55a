from __future__ import annotations

import logging

from meeting_relay.domain import TranscriptEvent
from meeting_relay.services.fanout_hub import FanOutHub
from meeting_relay.services.transcript_store import TranscriptStore


logger = logging.getLogger("meeting_relay.pipeline")


class TranscriptPipeline:
    """The one place normalized events go: live fan-out first, then storage.

    Fan-out is synchronous; persisting a final event is scheduled in the
    background so storage latency or failure never holds up subscribers.
    """

    def __init__(self, hub: FanOutHub, store: TranscriptStore) -> None:
        self.hub = hub
        self.store = store

    def emit(self, event: TranscriptEvent) -> None:
        delivered = self.hub.publish(event)
        logger.debug(
            "Transcript %s final=%s speaker=%s delivered=%d",
            event.source_id,
            event.is_final,
            event.speaker,
            delivered,
        )
        if event.is_final:
            self.store.schedule_append(event)
