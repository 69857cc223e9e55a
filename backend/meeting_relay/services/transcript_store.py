from __future__ import annotations

import asyncio
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar
import logging

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from meeting_relay.domain import TranscriptEvent, utcnow
from meeting_relay.errors import PersistenceError
from meeting_relay.models.meeting import Meeting
from meeting_relay.models.transcript_segment import TranscriptSegment
from meeting_relay.repositories.meetings import MeetingsRepository
from meeting_relay.repositories.transcripts import TranscriptsRepository


logger = logging.getLogger("meeting_relay.persistence")

T = TypeVar("T")


class TranscriptStore:
    """Best-effort projection of sessions into meeting records.

    Writes run on a single worker thread, chained per source id so a
    session's records are written in the order they were requested. No
    method raises: storage failures are logged and reported as ``False`` /
    ``None``.
    """

    def __init__(self, engine: Optional[Engine]) -> None:
        self.engine = engine
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="transcript-store")
        self._tails: Dict[str, asyncio.Future] = {}

    @property
    def available(self) -> bool:
        return self.engine is not None

    def disable(self, reason: str) -> None:
        logger.warning("Transcript persistence disabled: %s", reason)
        self.engine = None

    def _session(self) -> Session:
        if self.engine is None:
            raise PersistenceError("storage unavailable")
        return Session(self.engine)

    def _open_record_sync(self, fields: Dict[str, Any]) -> int:
        try:
            with self._session() as session:
                meeting = MeetingsRepository(session).create(Meeting(**fields))
                return int(meeting.id)  # type: ignore[arg-type]
        except SQLAlchemyError as exc:
            raise PersistenceError(str(exc)) from exc

    def _append_sync(self, event: TranscriptEvent) -> int:
        try:
            with self._session() as session:
                meeting = MeetingsRepository(session).find_open(event.source_id, event.owner_user_id)
                if meeting is None:
                    raise PersistenceError(f"no open meeting record for {event.source_id}")
                segment = TranscriptsRepository(session).add_segment(
                    TranscriptSegment(
                        meeting_id=meeting.id,  # type: ignore[arg-type]
                        speaker=event.speaker,
                        text=event.text,
                        spoken_at=event.timestamp,
                        confidence=event.confidence,
                    )
                )
                return int(segment.id)  # type: ignore[arg-type]
        except SQLAlchemyError as exc:
            raise PersistenceError(str(exc)) from exc

    def _mark_ended_sync(self, source_id: str, status: str) -> bool:
        try:
            with self._session() as session:
                repo = MeetingsRepository(session)
                meeting = repo.find_open(source_id)
                if meeting is None:
                    raise PersistenceError(f"no open meeting record for {source_id}")
                meeting.status = status
                meeting.ended_at = utcnow()
                repo.update(meeting)
                return True
        except SQLAlchemyError as exc:
            raise PersistenceError(str(exc)) from exc

    async def _run(self, label: str, fn: Callable[..., T], *args: Any) -> Optional[T]:
        if self.engine is None:
            logger.debug("Skipping %s: storage unavailable", label)
            return None
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(self._executor, fn, *args)
        except PersistenceError as exc:
            logger.warning("%s failed: %s", label, exc)
        except Exception as exc:
            logger.warning("%s failed unexpectedly: %s", label, exc, exc_info=True)
        return None

    def _chain(self, source_id: str, make: Callable[[], Awaitable[T]]) -> "asyncio.Future[T]":
        previous = self._tails.get(source_id)

        async def _after_previous() -> T:
            if previous is not None:
                await asyncio.gather(previous, return_exceptions=True)
            return await make()

        task = asyncio.ensure_future(_after_previous())
        self._tails[source_id] = task

        def _forget(done: asyncio.Future) -> None:
            if self._tails.get(source_id) is done:
                del self._tails[source_id]

        task.add_done_callback(_forget)
        return task

    def schedule_open_record(
        self,
        owner_user_id: str,
        source_id: str,
        title: Optional[str] = None,
        target_url: Optional[str] = None,
        bot_name: Optional[str] = None,
        recording_type: str = "bot",
    ) -> "asyncio.Future[Optional[int]]":
        fields = {
            "owner_user_id": owner_user_id,
            "source_id": source_id,
            "title": title or "Untitled Meeting",
            "target_url": target_url,
            "bot_name": bot_name,
            "recording_type": recording_type,
            "status": "active",
        }
        return self._chain(source_id, lambda: self._run("open_record", self._open_record_sync, fields))

    async def open_record(self, owner_user_id: str, source_id: str, **kwargs: Any) -> Optional[int]:
        return await self.schedule_open_record(owner_user_id, source_id, **kwargs)

    def schedule_append(self, event: TranscriptEvent) -> "asyncio.Future[bool]":
        async def _append() -> bool:
            if not event.is_final:
                return False
            return await self._run("append_final", self._append_sync, event) is not None

        return self._chain(event.source_id, _append)

    async def append_final(self, event: TranscriptEvent) -> bool:
        return await self.schedule_append(event)

    async def mark_ended(self, source_id: str, status: str = "ended") -> bool:
        async def _mark() -> bool:
            return bool(await self._run("mark_ended", self._mark_ended_sync, source_id, status))

        return await self._chain(source_id, _mark)

    async def drain(self) -> None:
        pending = list(self._tails.values())
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def close(self) -> None:
        await self.drain()
        self._executor.shutdown(wait=False)
