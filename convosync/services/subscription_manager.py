"""Realtime subscription lifecycle.

One set of channels per named scope. The bus delivers at-most-once, so
after every reconnect the scope's ``reconcile`` pull runs to recover
whatever was published during the gap. When the bus cannot be reached the
scope falls back to polling ``reconcile`` on a fixed interval.
"""

import asyncio
import contextlib
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from convosync.backend.base import Backend
from convosync.backend.query import Filter
from convosync.config import Settings, get_settings
from convosync.errors import NetworkError
from convosync.utils.retry import exponential_backoff_delay


logger = logging.getLogger(__name__)

OnEvent = Callable[[Any], Awaitable[None]]
Reconcile = Callable[[], Awaitable[Any]]

# Failed reconnects before a scope drops to polling
MAX_RECONNECT_ATTEMPTS = 5

LIVE = "live"
RECONNECTING = "reconnecting"
POLLING = "polling"
CLOSED = "closed"


@dataclass(frozen=True)
class Scope:

    name: str
    kind: str
    tables: Tuple[Tuple[str, Optional[Filter]], ...] = ()
    channels: Tuple[str, ...] = ()
    exclusive: bool = False

    @classmethod
    def conversation_list(cls, user_id: str) -> "Scope":
        return cls(
            name=f"conversations:{user_id}",
            kind="conversations",
            tables=(("messages", None), ("participants", None), ("conversations", None)),
        )

    @classmethod
    def conversation(cls, conversation_id: str) -> "Scope":
        # only one conversation is viewed at a time
        return cls(
            name=f"conversation:{conversation_id}",
            kind="conversation",
            tables=(
                ("messages", {"conversation_id": conversation_id}),
                ("participants", {"conversation_id": conversation_id}),
            ),
            exclusive=True,
        )

    @classmethod
    def presence(cls) -> "Scope":
        return cls(name="presence", kind="presence", channels=("presence",))

    @classmethod
    def typing(cls) -> "Scope":
        return cls(name="typing", kind="typing", channels=("typing",))


class _ActiveScope:

    def __init__(self, scope: Scope, on_event: OnEvent, reconcile: Optional[Reconcile]) -> None:
        self.scope = scope
        self.on_event = on_event
        self.reconcile = reconcile
        self.subscriptions: List[Any] = []
        self.task: Optional[asyncio.Task] = None
        self.state = RECONNECTING


class SubscriptionManager:

    def __init__(self, backend: Backend, settings: Optional[Settings] = None) -> None:
        self._backend = backend
        self._settings = settings or get_settings()
        self._active: Dict[str, _ActiveScope] = {}

    @property
    def bus_enabled(self) -> bool:
        return bool(getattr(self._backend.bus, "enabled", True))

    @property
    def degraded(self) -> bool:
        return any(a.state == POLLING for a in self._active.values())

    def state(self, name: str) -> Optional[str]:
        active = self._active.get(name)
        return active.state if active is not None else None

    def is_active(self, name: str) -> bool:
        return name in self._active

    async def subscribe(
        self,
        scope: Scope,
        on_event: OnEvent,
        reconcile: Optional[Reconcile] = None,
    ) -> Callable[[], Awaitable[None]]:
        previous = self._active.pop(scope.name, None)
        if previous is not None:
            await self._teardown(previous)
        if scope.exclusive:
            for other in [a for a in self._active.values() if a.scope.kind == scope.kind]:
                logger.debug("Closing %s in favour of %s", other.scope.name, scope.name)
                del self._active[other.scope.name]
                await self._teardown(other)

        active = _ActiveScope(scope, on_event, reconcile)
        self._active[scope.name] = active
        if not self.bus_enabled:
            logger.warning("Realtime disabled, polling %s every %ss", scope.name, self._settings.poll_interval_seconds)
            active.state = POLLING
        else:
            try:
                await self._connect(active)
                active.state = LIVE
            except NetworkError as exc:
                logger.warning("Could not subscribe %s, polling instead: %s", scope.name, exc)
                active.state = POLLING
        active.task = asyncio.create_task(self._supervise(active))

        async def unsubscribe() -> None:
            if self._active.get(scope.name) is active:
                del self._active[scope.name]
            await self._teardown(active)

        return unsubscribe

    async def close(self) -> None:
        actives = list(self._active.values())
        self._active.clear()
        for active in actives:
            await self._teardown(active)

    # -- internals ---------------------------------------------------------

    async def _connect(self, active: _ActiveScope) -> None:
        subs: List[Any] = []
        try:
            for table, filter in active.scope.tables:
                subs.append(await self._backend.subscribe(table, filter, self._handler(active)))
            for channel in active.scope.channels:
                subs.append(await self._backend.bus.subscribe(channel, self._channel_handler(active, channel)))
        except NetworkError:
            for sub in subs:
                await sub.cancel()
            raise
        active.subscriptions = subs

    async def _disconnect(self, active: _ActiveScope) -> None:
        subs, active.subscriptions = active.subscriptions, []
        for sub in subs:
            await sub.cancel()

    async def _teardown(self, active: _ActiveScope) -> None:
        active.state = CLOSED
        if active.task is not None and not active.task.done():
            active.task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await active.task
        await self._disconnect(active)

    def _handler(self, active: _ActiveScope) -> OnEvent:
        async def _dispatch(payload: Any) -> None:
            try:
                await active.on_event(payload)
            except Exception:
                logger.exception("Realtime handler for %s failed", active.scope.name)

        return _dispatch

    def _channel_handler(self, active: _ActiveScope, channel: str) -> Callable[[str], Awaitable[None]]:
        dispatch = self._handler(active)

        async def _on_message(raw: str) -> None:
            try:
                payload = json.loads(raw)
            except (TypeError, ValueError):
                logger.error("Dropping malformed payload on %s: %r", channel, raw)
                return
            await dispatch(payload)

        return _on_message

    async def _reconcile(self, active: _ActiveScope) -> None:
        if active.reconcile is None:
            return
        try:
            await active.reconcile()
        except Exception as exc:
            logger.warning("Reconcile of %s failed: %s", active.scope.name, exc)

    async def _pump(self, active: _ActiveScope) -> None:
        """Run the scope's subscriptions until one of them fails."""
        tasks = [asyncio.create_task(sub.run()) for sub in active.subscriptions]
        if not tasks:
            await asyncio.Future()
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
            for task in done:
                exc = task.exception()
                if exc is not None:
                    raise exc
            raise NetworkError(f"subscription of {active.scope.name} ended")
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _supervise(self, active: _ActiveScope) -> None:
        name = active.scope.name
        attempt = 0
        while active.state != CLOSED:
            if active.state == LIVE:
                try:
                    await self._pump(active)
                except NetworkError as exc:
                    logger.warning("Realtime connection of %s dropped: %s", name, exc)
                except Exception:
                    logger.exception("Subscription pump of %s crashed", name)
                await self._disconnect(active)
                active.state = RECONNECTING
                attempt = 0
            elif active.state == RECONNECTING:
                await asyncio.sleep(
                    exponential_backoff_delay(
                        attempt, self._settings.reconnect_base_delay, self._settings.reconnect_max_delay
                    )
                )
                try:
                    await self._connect(active)
                except NetworkError as exc:
                    attempt += 1
                    logger.info("Reconnect %d of %s failed: %s", attempt, name, exc)
                    if attempt >= MAX_RECONNECT_ATTEMPTS:
                        logger.warning("Giving up on realtime for %s, polling instead", name)
                        active.state = POLLING
                    continue
                logger.info("Resubscribed %s, reconciling", name)
                active.state = LIVE
                await self._reconcile(active)
            else:
                await asyncio.sleep(self._settings.poll_interval_seconds)
                if self.bus_enabled:
                    try:
                        await self._connect(active)
                    except NetworkError:
                        logger.debug("Realtime for %s still unavailable", name)
                    else:
                        logger.info("Realtime for %s is back", name)
                        active.state = LIVE
                await self._reconcile(active)
