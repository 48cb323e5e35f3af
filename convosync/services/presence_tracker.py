import asyncio
import contextlib
import logging
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from pydantic import ValidationError as SchemaError

from convosync.config import Settings, get_settings
from convosync.errors import NetworkError
from convosync.schemas.realtime import PresenceEntry, PresenceEvent, TypingEvent
from convosync.session import Session
from convosync.utils.time import utcnow


logger = logging.getLogger(__name__)

PRESENCE_CHANNEL = "presence"
TYPING_CHANNEL = "typing"

TypingListener = Callable[[str, List[str]], None]


class PresenceTracker:
    """Online users and per-conversation typing state.

    Nothing here is persisted. The presence map only reflects join/leave
    deltas seen since the last (re)connect; a ``sync`` request asks peers to
    announce themselves again.
    """

    def __init__(self, session: Session, bus, settings: Optional[Settings] = None) -> None:
        self._user_id = session.user_id
        self._bus = bus
        self._settings = settings or get_settings()
        self._entries: Dict[str, PresenceEntry] = {}
        self._heartbeat: Optional[asyncio.Task] = None
        self._typing: Dict[str, Set[str]] = {}
        self._typing_timers: Dict[Tuple[str, str], asyncio.TimerHandle] = {}
        self._typing_listeners: List[TypingListener] = []
        self.started = False

    # -- presence ----------------------------------------------------------

    def snapshot(self) -> Dict[str, PresenceEntry]:
        return {user_id: entry.model_copy() for user_id, entry in self._entries.items()}

    def is_online(self, user_id: str) -> bool:
        entry = self._entries.get(user_id)
        return entry is not None and entry.online

    def online_users(self) -> List[str]:
        return sorted(u for u, e in self._entries.items() if e.online)

    async def _publish(self, channel: str, payload: str) -> None:
        try:
            await self._bus.publish(channel, payload)
        except NetworkError as exc:
            logger.warning("Could not publish on %s: %s", channel, exc)

    async def _announce(self, kind: str) -> None:
        await self._publish(PRESENCE_CHANNEL, PresenceEvent(type=kind, user_id=self._user_id).model_dump_json())

    async def _touch(self) -> None:
        try:
            await self._bus.set_presence(self._user_id, self._settings.presence_ttl_seconds)
        except NetworkError as exc:
            logger.debug("Presence heartbeat for %s failed: %s", self._user_id, exc)

    async def _beat(self) -> None:
        while True:
            await asyncio.sleep(self._settings.presence_heartbeat_seconds)
            await self._touch()

    async def start(self) -> None:
        if self.started:
            return
        self.started = True
        self._entries[self._user_id] = PresenceEntry(user_id=self._user_id, last_seen_at=utcnow())
        await self._touch()
        await self._announce("sync")
        await self._announce("join")
        self._heartbeat = asyncio.create_task(self._beat())

    async def stop(self) -> None:
        if not self.started:
            return
        self.started = False
        if self._heartbeat is not None:
            self._heartbeat.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._heartbeat
            self._heartbeat = None
        await self._announce("leave")
        try:
            await self._bus.clear_presence(self._user_id)
        except NetworkError as exc:
            logger.debug("Could not clear presence of %s: %s", self._user_id, exc)
        self._entries.clear()
        for handle in self._typing_timers.values():
            handle.cancel()
        self._typing_timers.clear()
        self._typing.clear()

    async def resync(self) -> None:
        """Forget everything seen so far and ask peers to announce again."""
        self._entries = {}
        if not self.started:
            return
        self._entries[self._user_id] = PresenceEntry(user_id=self._user_id, last_seen_at=utcnow())
        await self._touch()
        await self._announce("sync")
        await self._announce("join")

    async def handle_presence(self, payload: Dict[str, Any]) -> None:
        try:
            event = PresenceEvent.model_validate(payload)
        except SchemaError:
            logger.error("Dropping malformed presence payload: %r", payload)
            return
        if event.type == "join":
            self._entries[event.user_id] = PresenceEntry(user_id=event.user_id, last_seen_at=event.at)
        elif event.type == "leave":
            self._entries[event.user_id] = PresenceEntry(user_id=event.user_id, online=False, last_seen_at=event.at)
        elif event.user_id != self._user_id and self.started:
            await self._announce("join")

    # -- typing ------------------------------------------------------------

    def typing_users(self, conversation_id: str) -> List[str]:
        return sorted(self._typing.get(conversation_id, ()))

    def add_typing_listener(self, callback: TypingListener) -> Callable[[], None]:
        self._typing_listeners.append(callback)

        def _remove() -> None:
            if callback in self._typing_listeners:
                self._typing_listeners.remove(callback)

        return _remove

    async def set_typing(self, conversation_id: str, is_typing: bool = True) -> None:
        event = TypingEvent(conversation_id=conversation_id, user_id=self._user_id, is_typing=is_typing)
        await self._publish(TYPING_CHANNEL, event.model_dump_json())

    async def handle_typing(self, payload: Dict[str, Any]) -> None:
        try:
            event = TypingEvent.model_validate(payload)
        except SchemaError:
            logger.error("Dropping malformed typing payload: %r", payload)
            return
        if event.user_id == self._user_id:
            return
        key = (event.conversation_id, event.user_id)
        timer = self._typing_timers.pop(key, None)
        if timer is not None:
            timer.cancel()
        users = self._typing.setdefault(event.conversation_id, set())
        if event.is_typing:
            users.add(event.user_id)
            loop = asyncio.get_running_loop()
            self._typing_timers[key] = loop.call_later(self._settings.typing_timeout_seconds, self._expire, key)
        else:
            users.discard(event.user_id)
        self._emit_typing(event.conversation_id)

    def _expire(self, key: Tuple[str, str]) -> None:
        conversation_id, user_id = key
        self._typing_timers.pop(key, None)
        users = self._typing.get(conversation_id)
        if users is not None and user_id in users:
            users.discard(user_id)
            self._emit_typing(conversation_id)

    def _emit_typing(self, conversation_id: str) -> None:
        users = self.typing_users(conversation_id)
        if not users:
            self._typing.pop(conversation_id, None)
        for callback in list(self._typing_listeners):
            try:
                callback(conversation_id, users)
            except Exception:
                logger.exception("Typing listener failed")
