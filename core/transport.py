"""
即時 transport 邊界

房間邏輯只需要即時通道提供兩件事：
- publish(topic, message)：把訊息廣播給 topic 的所有訂閱者
- subscribe(*topics)：這些 topic 的訊息串流，可以取消

InMemoryTransport 在單一行程內用 asyncio queue 完成。
NullTransport 用在關閉即時功能時：publish 是 no-op，遊戲仍可在單一
本機 session 透過一般 HTTP 進行。
"""
import asyncio
import logging
import threading
from functools import lru_cache
from typing import Any, Dict, List, Set

from core.exceptions import TransportUnavailable

logger = logging.getLogger(__name__)

_CLOSED = object()


def meta_topic(room_id: str) -> str:
    return f"room/{room_id}/meta"


def players_topic(room_id: str) -> str:
    return f"room/{room_id}/players"


def player_topic(room_id: str, player_id: str) -> str:
    return f"room/{room_id}/players/{player_id}"


class Subscription:
    """
    可取消的訊息串流

    使用方式：
        sub = transport.subscribe(meta_topic(room_id))
        async for message in sub:
            ...
        sub.cancel()

    cancel() 之後不再產出任何訊息，已經在 queue 裡的也一樣。
    """

    def __init__(self, transport: "InMemoryTransport", topics: List[str], loop: asyncio.AbstractEventLoop):
        self.topics = topics
        self._transport = transport
        self._loop = loop
        self._queue: asyncio.Queue = asyncio.Queue()
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self._transport._detach(self)
        self._schedule(_CLOSED)

    def pending(self) -> List[Dict[str, Any]]:
        """Messages already delivered but not consumed yet (non-blocking)"""
        items = []
        while not self._cancelled and not self._queue.empty():
            item = self._queue.get_nowait()
            if item is not _CLOSED:
                items.append(item)
        return items

    def __aiter__(self):
        return self

    async def __anext__(self) -> Dict[str, Any]:
        if self._cancelled:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED or self._cancelled:
            raise StopAsyncIteration
        return item

    def _deliver(self, message) -> None:
        if not self._cancelled or message is _CLOSED:
            self._queue.put_nowait(message)

    def _schedule(self, message) -> None:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is self._loop:
            self._deliver(message)
            return
        try:
            self._loop.call_soon_threadsafe(self._deliver, message)
        except RuntimeError:
            # 訂閱者的 loop 已經關閉
            logger.warning(f"Dropping subscription on closed loop for {self.topics}")
            self._cancelled = True
            self._transport._detach(self)


class SyncTransport:
    """房間邏輯所依賴的介面"""

    def publish(self, topic: str, message: Dict[str, Any]) -> None:
        raise NotImplementedError

    def subscribe(self, *topics: str) -> Subscription:
        raise NotImplementedError


class InMemoryTransport(SyncTransport):
    """
    行程內廣播

    - publish 是 thread-safe 的（sync endpoint 在 thread pool 執行）
    - 每個訂閱是一個 FIFO queue，依序發佈的訊息
      每個訂閱者都依序收到
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._subscribers: Dict[str, Set[Subscription]] = {}

    def publish(self, topic: str, message: Dict[str, Any]) -> None:
        with self._lock:
            for sub in list(self._subscribers.get(topic, ())):
                sub._schedule(message)

    def subscribe(self, *topics: str) -> Subscription:
        if not topics:
            raise ValueError("subscribe() needs at least one topic")
        sub = Subscription(self, list(topics), asyncio.get_running_loop())
        with self._lock:
            for topic in topics:
                self._subscribers.setdefault(topic, set()).add(sub)
        return sub

    def subscriber_count(self, topic: str) -> int:
        with self._lock:
            return len(self._subscribers.get(topic, ()))

    def _detach(self, sub: Subscription) -> None:
        with self._lock:
            for topic in sub.topics:
                subs = self._subscribers.get(topic)
                if subs is None:
                    continue
                subs.discard(sub)
                if not subs:
                    del self._subscribers[topic]


class NullTransport(SyncTransport):
    """關閉即時功能：只在本機模式"""

    def publish(self, topic: str, message: Dict[str, Any]) -> None:
        pass

    def subscribe(self, *topics: str) -> Subscription:
        raise TransportUnavailable("No realtime channel configured")


@lru_cache()
def get_transport() -> SyncTransport:
    from database import get_settings

    kind = get_settings().transport
    if kind == "memory":
        return InMemoryTransport()
    if kind != "none":
        logger.warning(f"Unknown transport {kind!r}, realtime sync disabled")
    else:
        logger.info("Realtime sync disabled, running local-only")
    return NullTransport()
