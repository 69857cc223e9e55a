from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional, Protocol, Set
import logging

from meeting_relay.domain import TranscriptEvent


logger = logging.getLogger("meeting_relay.hub")

# "Try again later"; sent to connections dropped for falling behind
PRUNED_CLOSE_CODE = 1013


class Connection(Protocol):
    async def send_json(self, data: Any) -> None: ...

    async def close(self, code: int = 1000) -> None: ...


class _Subscriber:
    """One live connection with its own outbound queue and writer task."""

    def __init__(self, hub: "FanOutHub", connection: Connection, queue_size: int) -> None:
        self.hub = hub
        self.connection = connection
        self.user_ids: Set[str] = set()
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self.closed = False
        self.task: Optional[asyncio.Task] = None

    def start(self) -> None:
        if self.task is None:
            self.task = asyncio.ensure_future(self._pump())

    def offer(self, message: Dict[str, Any]) -> bool:
        if self.closed:
            return False
        try:
            self.queue.put_nowait(message)
        except asyncio.QueueFull:
            # Consumer is not keeping up
            return False
        return True

    async def _pump(self) -> None:
        while True:
            message = await self.queue.get()
            failure: Optional[Exception] = None
            try:
                await self.connection.send_json(message)
            except Exception as exc:
                failure = exc
            finally:
                self.queue.task_done()
            if failure is not None:
                logger.info("Dropping subscriber after send failure: %s", failure)
                self.hub.prune(self.connection)
                return

    def stop(self) -> None:
        self.closed = True
        # Release anyone waiting on flush()
        while not self.queue.empty():
            self.queue.get_nowait()
            self.queue.task_done()
        if self.task is not None and not self.task.done() and self.task is not asyncio.current_task():
            self.task.cancel()


class FanOutHub:
    """Publish/subscribe broadcaster keyed by owning user id.

    ``publish`` never suspends: it only enqueues onto each subscriber's
    queue, so the order of ``publish`` calls is the order every subscriber
    sees. A subscriber whose send fails or whose queue overflows is pruned and
    its connection closed with code 1013.
    """

    def __init__(self, queue_size: int = 256) -> None:
        self.queue_size = queue_size
        self._subscribers: Dict[int, _Subscriber] = {}
        self._by_user: Dict[str, Dict[int, _Subscriber]] = {}
        self._closing: Set[asyncio.Task] = set()

    def attach(self, connection: Connection) -> None:
        """Register a connection for direct replies without any user bucket."""
        self._ensure(connection)

    def _ensure(self, connection: Connection) -> _Subscriber:
        key = id(connection)
        sub = self._subscribers.get(key)
        if sub is None:
            sub = _Subscriber(self, connection, self.queue_size)
            self._subscribers[key] = sub
            sub.start()
        return sub

    def subscribe(self, owner_user_id: str, connection: Connection) -> None:
        sub = self._ensure(connection)
        sub.user_ids.add(owner_user_id)
        self._by_user.setdefault(owner_user_id, {})[id(connection)] = sub
        logger.info("Subscribed connection for user=%s (%d live)", owner_user_id, len(self._by_user[owner_user_id]))

    def unsubscribe(self, connection: Connection) -> None:
        sub = self._subscribers.pop(id(connection), None)
        if sub is None:
            return
        for user_id in sub.user_ids:
            bucket = self._by_user.get(user_id)
            if bucket is not None:
                bucket.pop(id(connection), None)
                if not bucket:
                    del self._by_user[user_id]
        sub.stop()

    def prune(self, connection: Connection) -> None:
        """Drop a connection and close it so the client knows to reconnect."""
        self.unsubscribe(connection)
        task = asyncio.ensure_future(self._close(connection, PRUNED_CLOSE_CODE))
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    async def _close(self, connection: Connection, code: int = 1000) -> None:
        try:
            await connection.close(code=code)
        except Exception:
            logger.debug("Subscriber already closed", exc_info=True)

    def is_subscribed(self, owner_user_id: str, connection: Connection) -> bool:
        return id(connection) in self._by_user.get(owner_user_id, {})

    def subscriber_count(self, owner_user_id: Optional[str] = None) -> int:
        if owner_user_id is None:
            return len(self._subscribers)
        return len(self._by_user.get(owner_user_id, {}))

    def _deliver(self, owner_user_id: str, message: Dict[str, Any]) -> int:
        delivered = 0
        dead: List[_Subscriber] = []
        for sub in list(self._by_user.get(owner_user_id, {}).values()):
            if sub.offer(message):
                delivered += 1
            else:
                dead.append(sub)
        for sub in dead:
            logger.warning("Pruning stalled subscriber for user=%s", owner_user_id)
            self.prune(sub.connection)
        return delivered

    def publish(self, event: TranscriptEvent) -> int:
        return self._deliver(event.owner_user_id, {"type": "transcription", "data": event.to_message()})

    def publish_control(self, owner_user_id: str, message: Dict[str, Any]) -> int:
        return self._deliver(owner_user_id, message)

    def send_to(self, connection: Connection, message: Dict[str, Any]) -> bool:
        sub = self._subscribers.get(id(connection))
        if sub is None:
            return False
        if not sub.offer(message):
            logger.warning("Pruning stalled connection on direct send")
            self.prune(connection)
            return False
        return True

    async def flush(self) -> None:
        """Wait until every queued message has been handed to its connection."""
        await asyncio.gather(*(sub.queue.join() for sub in list(self._subscribers.values())))

    async def shutdown(self) -> None:
        subs = list(self._subscribers.values())
        for sub in subs:
            self.unsubscribe(sub.connection)
        for sub in subs:
            await self._close(sub.connection)
        if self._closing:
            await asyncio.gather(*list(self._closing), return_exceptions=True)
