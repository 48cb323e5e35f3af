import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, List, Set

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from convosync.config import get_settings
from convosync.errors import NetworkError


logger = logging.getLogger(__name__)

OnMessage = Callable[[str], Awaitable[None]]

_CLOSED = object()
_DISCONNECTED = object()


class NoopBus:

    enabled = False

    async def publish(self, channel: str, message: str) -> None:
        return

    async def subscribe(self, channel: str, on_message: OnMessage):
        class _Sub:
            async def run(self):
                await asyncio.Future()
            async def cancel(self):
                return
        return _Sub()

    async def set_presence(self, user_id: str, ttl_seconds: int = 60) -> None:
        return

    async def clear_presence(self, user_id: str) -> None:
        return

    async def is_online(self, user_id: str) -> bool:
        return False


class LocalBroker:
    """In-process pub/sub hub shared by every LocalBus connection.

    Delivery is at-most-once: a message published while a connection is
    dropped is never replayed to it.
    """

    def __init__(self) -> None:
        self._channels: Dict[str, Set["_LocalSubscription"]] = {}
        self._presence: Dict[str, float] = {}
        self._inflight = 0

    def connect(self) -> "LocalBus":
        return LocalBus(self)

    def _attach(self, sub: "_LocalSubscription") -> None:
        self._channels.setdefault(sub.channel, set()).add(sub)

    def _detach(self, sub: "_LocalSubscription") -> None:
        subs = self._channels.get(sub.channel)
        if subs is not None:
            subs.discard(sub)
            if not subs:
                del self._channels[sub.channel]

    def _deliver(self, channel: str, message: str) -> None:
        for sub in list(self._channels.get(channel, ())):
            if sub.bus.connected:
                self._inflight += 1
                sub.queue.put_nowait(message)

    def subscriber_count(self, channel: str) -> int:
        return len(self._channels.get(channel, ()))

    def set_presence(self, user_id: str, ttl_seconds: int) -> None:
        self._presence[user_id] = time.monotonic() + ttl_seconds

    def clear_presence(self, user_id: str) -> None:
        self._presence.pop(user_id, None)

    def is_online(self, user_id: str) -> bool:
        expires = self._presence.get(user_id)
        return expires is not None and expires > time.monotonic()

    async def flush(self, timeout: float = 1.0) -> None:
        """Wait until every queued message has been handled."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while self._inflight:
            if loop.time() > deadline:
                raise TimeoutError("realtime deliveries still pending")
            await asyncio.sleep(0.001)


class _LocalSubscription:

    def __init__(self, bus: "LocalBus", channel: str, on_message: OnMessage) -> None:
        self.bus = bus
        self.channel = channel
        self.queue: asyncio.Queue = asyncio.Queue()
        self._on_message = on_message

    async def run(self) -> None:
        while True:
            item = await self.queue.get()
            if item is _CLOSED:
                return
            if item is _DISCONNECTED:
                raise NetworkError(f"realtime connection lost on {self.channel}")
            try:
                await self._on_message(item)
            finally:
                self.bus.broker._inflight -= 1

    async def cancel(self) -> None:
        self.bus._forget(self)
        while not self.queue.empty():
            item = self.queue.get_nowait()
            if item is not _CLOSED and item is not _DISCONNECTED:
                self.bus.broker._inflight -= 1
        self.queue.put_nowait(_CLOSED)


class LocalBus:

    enabled = True

    def __init__(self, broker: LocalBroker) -> None:
        self.broker = broker
        self.connected = True
        self._subs: List[_LocalSubscription] = []

    async def publish(self, channel: str, message: str) -> None:
        if not self.connected:
            raise NetworkError("realtime connection is down")
        self.broker._deliver(channel, message)

    async def subscribe(self, channel: str, on_message: OnMessage) -> _LocalSubscription:
        if not self.connected:
            raise NetworkError("realtime connection is down")
        sub = _LocalSubscription(self, channel, on_message)
        self._subs.append(sub)
        self.broker._attach(sub)
        return sub

    async def set_presence(self, user_id: str, ttl_seconds: int = 60) -> None:
        if not self.connected:
            raise NetworkError("realtime connection is down")
        self.broker.set_presence(user_id, ttl_seconds)

    async def clear_presence(self, user_id: str) -> None:
        self.broker.clear_presence(user_id)

    async def is_online(self, user_id: str) -> bool:
        return self.broker.is_online(user_id)

    def _forget(self, sub: _LocalSubscription) -> None:
        self.broker._detach(sub)
        try:
            self._subs.remove(sub)
        except ValueError:
            pass

    def drop_connection(self) -> None:
        """Simulate a transport drop: every live subscription fails."""
        self.connected = False
        for sub in list(self._subs):
            self._forget(sub)
            sub.queue.put_nowait(_DISCONNECTED)

    def restore_connection(self) -> None:
        self.connected = True


class RedisBus:

    enabled = True

    def __init__(self, url: str) -> None:
        self._redis = redis.from_url(url)

    async def publish(self, channel: str, message: str) -> None:
        try:
            await self._redis.publish(channel, message)
        except (RedisConnectionError, RedisTimeoutError) as exc:
            raise NetworkError(str(exc)) from exc

    async def subscribe(self, channel: str, on_message: OnMessage):
        pubsub = self._redis.pubsub()
        try:
            await pubsub.subscribe(channel)
        except (RedisConnectionError, RedisTimeoutError) as exc:
            raise NetworkError(str(exc)) from exc

        class _Sub:
            _running = True
            async def run(self_inner):
                while self_inner._running:
                    try:
                        msg = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                    except (RedisConnectionError, RedisTimeoutError) as exc:
                        raise NetworkError(f"realtime connection lost on {channel}") from exc
                    if msg and msg.get("type") == "message":
                        data = msg.get("data")
                        if isinstance(data, bytes):
                            data = data.decode("utf-8")
                        await on_message(data)

            async def cancel(self_inner):
                self_inner._running = False
                try:
                    await pubsub.unsubscribe(channel)
                    await pubsub.aclose()
                except (RedisConnectionError, RedisTimeoutError):
                    logger.debug("Ignoring error while closing subscription on %s", channel)

        return _Sub()

    async def set_presence(self, user_id: str, ttl_seconds: int = 60) -> None:
        try:
            await self._redis.set(f"presence:{user_id}", "online", ex=ttl_seconds)
        except (RedisConnectionError, RedisTimeoutError) as exc:
            raise NetworkError(str(exc)) from exc

    async def clear_presence(self, user_id: str) -> None:
        try:
            await self._redis.delete(f"presence:{user_id}")
        except (RedisConnectionError, RedisTimeoutError) as exc:
            raise NetworkError(str(exc)) from exc

    async def is_online(self, user_id: str) -> bool:
        try:
            ttl = await self._redis.ttl(f"presence:{user_id}")
        except (RedisConnectionError, RedisTimeoutError) as exc:
            raise NetworkError(str(exc)) from exc
        return bool(ttl and ttl > 0)


_bus = None


async def get_bus():
    global _bus
    if _bus is not None:
        return _bus
    url = get_settings().redis_url
    if not url:
        _bus = NoopBus()
        return _bus
    _bus = RedisBus(url)
    return _bus
