import logging
import uuid
from typing import Awaitable, Callable, Dict, List, Optional

from convosync.backend.base import Backend
from convosync.config import Settings, get_settings
from convosync.errors import MessagingError, NotFoundError, PermissionDenied, ValidationError
from convosync.repositories.conversation_repository import ConversationRepository
from convosync.repositories.message_repository import CursorLike, MessageRepository
from convosync.repositories.participant_repository import ParticipantRepository
from convosync.schemas.message import MediaAttachment, Message, MessagePage
from convosync.schemas.realtime import ChangeEvent
from convosync.session import Session
from convosync.utils.time import utcnow


logger = logging.getLogger(__name__)

OnIncoming = Callable[[Message], Awaitable[None]]

# Older pages fetched by reconcile() before giving up on finding an overlap
MAX_RECONCILE_PAGES = 20


class MessageStream:
    """Ordered message log of one conversation, newest first.

    Pending sends sit in the log under ``local-<client id>`` until the
    backend row (or its realtime echo) replaces them.
    """

    def __init__(
        self,
        session: Session,
        backend: Backend,
        conversation_id: str,
        page_size: Optional[int] = None,
        on_incoming: Optional[OnIncoming] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._session = session
        self.conversation_id = conversation_id
        self.page_size = (settings or get_settings()).message_page_size if page_size is None else page_size
        self._messages_repo = MessageRepository(backend)
        self._participants = ParticipantRepository(backend)
        self._conversations = ConversationRepository(backend)
        self._on_incoming = on_incoming
        self._items: List[Message] = []
        self._by_id: Dict[str, Message] = {}
        self._by_client_id: Dict[str, Message] = {}
        self._next_cursor: Optional[str] = None
        self._loaded = False
        self._generation = 0
        self.closed = False
        self._listeners: List[Callable[[], None]] = []

    @property
    def messages(self) -> List[Message]:
        return list(self._items)

    @property
    def has_more(self) -> bool:
        return not self._loaded or self._next_cursor is not None

    def get(self, message_id: str) -> Optional[Message]:
        return self._by_id.get(message_id)

    def add_listener(self, callback: Callable[[], None]) -> Callable[[], None]:
        self._listeners.append(callback)

        def _remove() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return _remove

    def _notify(self) -> None:
        for callback in list(self._listeners):
            try:
                callback()
            except Exception:
                logger.exception("Message stream listener failed")

    # -- local log ---------------------------------------------------------

    def _index(self, message: Message) -> None:
        self._by_id[message.id] = message
        if message.client_message_id:
            self._by_client_id[message.client_message_id] = message

    def _unindex(self, message: Message) -> None:
        self._by_id.pop(message.id, None)
        if message.client_message_id and self._by_client_id.get(message.client_message_id) is message:
            del self._by_client_id[message.client_message_id]

    def _upsert(self, message: Message) -> bool:
        """Insert or replace by id or client id; returns True for a new entry."""
        existing = self._by_id.get(message.id)
        if existing is None and message.client_message_id:
            existing = self._by_client_id.get(message.client_message_id)
        if existing is not None:
            self._items.remove(existing)
            self._unindex(existing)
        self._items.append(message)
        self._items.sort(key=lambda m: m.sort_key, reverse=True)
        self._index(message)
        return existing is None

    def _discard(self, message: Message) -> None:
        if message in self._items:
            self._items.remove(message)
        self._unindex(message)

    def _merge(self, messages: List[Message]) -> int:
        added = 0
        for message in messages:
            current = self._by_id.get(message.id)
            if current is not None and current == message:
                continue
            if self._upsert(message):
                added += 1
        return added

    # -- pulls -------------------------------------------------------------

    async def fetch_page(
        self,
        conversation_id: Optional[str] = None,
        before: Optional[CursorLike] = None,
        page_size: Optional[int] = None,
    ) -> MessagePage:
        rows, next_cursor = await self._messages_repo.get_messages_by_conversation(
            conversation_id or self.conversation_id,
            limit=self.page_size if page_size is None else page_size,
            cursor=before,
        )
        return MessagePage(items=[Message.from_row(r) for r in rows], next_cursor=next_cursor)

    async def open(self) -> List[Message]:
        generation = self._generation
        page = await self.fetch_page()
        if generation != self._generation or self.closed:
            logger.debug("Dropping stale first page of %s", self.conversation_id)
            return self.messages
        self._merge(page.items)
        self._next_cursor = page.next_cursor
        self._loaded = True
        self._notify()
        return self.messages

    async def load_more(self) -> List[Message]:
        """Fetch the page before the oldest message held and return it."""
        if not self._loaded:
            await self.open()
            return self.messages
        if self._next_cursor is None:
            return []
        generation = self._generation
        page = await self.fetch_page(before=self._next_cursor)
        if generation != self._generation or self.closed:
            logger.debug("Dropping stale page of %s", self.conversation_id)
            return []
        self._merge(page.items)
        self._next_cursor = page.next_cursor
        self._notify()
        return page.items

    async def reconcile(self) -> int:
        """Pull everything newer than the log and merge it in.

        Realtime delivery has no replay, so after a gap the newest pages are
        fetched until they overlap with what is already held.
        """
        generation = self._generation
        known = set(self._by_id)
        fetched: List[Message] = []
        cursor = None
        tail_cursor = None
        for _ in range(MAX_RECONCILE_PAGES):
            page = await self.fetch_page(before=cursor)
            fetched.extend(page.items)
            tail_cursor = page.next_cursor
            if not known or page.next_cursor is None or any(m.id in known for m in page.items):
                break
            cursor = page.next_cursor
        else:
            logger.warning("Reconcile of %s stopped after %d pages", self.conversation_id, MAX_RECONCILE_PAGES)
        if generation != self._generation or self.closed:
            return 0
        added = self._merge(fetched)
        if not self._loaded:
            self._next_cursor = tail_cursor
            self._loaded = True
        if added:
            logger.info("Reconcile restored %d message(s) in %s", added, self.conversation_id)
        self._notify()
        return added

    def close(self) -> None:
        self.closed = True
        self._generation += 1
        self._listeners.clear()

    # -- writes ------------------------------------------------------------

    async def send(
        self,
        conversation_id: str,
        sender_id: str,
        content: Optional[str],
        media: Optional[MediaAttachment] = None,
        reply_to: Optional[str] = None,
        client_message_id: Optional[str] = None,
    ) -> Message:
        text = (content or "").strip()
        if not text and media is None:
            raise ValidationError("Message content cannot be empty")
        if not conversation_id or not sender_id:
            raise ValidationError("conversation and sender are required")

        if await self._participants.get(conversation_id, sender_id) is None:
            raise PermissionDenied(f"{sender_id} is not a participant of {conversation_id}")

        client_message_id = client_message_id or uuid.uuid4().hex
        pending = None
        if conversation_id == self.conversation_id and not self.closed:
            pending = Message(
                id=f"local-{client_message_id}",
                conversation_id=conversation_id,
                sender_id=sender_id,
                content=text or None,
                media_url=media.url if media else None,
                media_kind=media.kind if media else None,
                reply_to=reply_to,
                created_at=utcnow(),
                client_message_id=client_message_id,
                status="pending",
            )
            self._upsert(pending)
            self._notify()

        try:
            row = await self._messages_repo.save_message(
                conversation_id,
                sender_id,
                text or None,
                media_url=media.url if media else None,
                media_kind=media.kind if media else None,
                reply_to=reply_to,
                client_message_id=client_message_id,
            )
        except MessagingError:
            if pending is not None and self._by_client_id.get(client_message_id) is pending:
                self._discard(pending)
                self._notify()
            raise

        message = Message.from_row(row)
        if pending is not None and not self.closed:
            self._upsert(message)
            self._notify()

        try:
            await self._conversations.update_on_new_message(conversation_id, message)
        except MessagingError as exc:
            logger.warning("Message %s stored but preview of %s not updated: %s", message.id, conversation_id, exc)
        return message

    async def delete(self, message_id: str, requester_id: str) -> Message:
        row = await self._messages_repo.get(message_id)
        if row is None:
            raise NotFoundError(f"message {message_id} not found")
        message = Message.from_row(row)
        if message.sender_id != requester_id:
            raise PermissionDenied("only the sender can delete a message")
        if message.is_deleted:
            return message

        at = utcnow()
        await self._messages_repo.soft_delete(message_id, at)
        deleted = message.model_copy(update={"content": None, "media_url": None, "media_kind": None, "deleted_at": at})
        if message.conversation_id == self.conversation_id and message_id in self._by_id:
            self._upsert(deleted)
            self._notify()
        try:
            await self._conversations.clear_preview(message.conversation_id, message_id)
        except MessagingError as exc:
            logger.warning("Preview of %s still shows deleted message %s: %s", message.conversation_id, message_id, exc)
        return deleted

    # -- realtime reducer --------------------------------------------------

    async def apply_event(self, event: ChangeEvent) -> None:
        if self.closed or event.table != MessageRepository.table:
            return
        if event.row.get("conversation_id") != self.conversation_id:
            return
        if event.type == "DELETE":
            gone = self._by_id.get(event.row.get("id"))
            if gone is not None:
                self._discard(gone)
                self._notify()
            return

        message = Message.from_row(event.row)
        if event.type == "UPDATE":
            if message.id in self._by_id:
                self._upsert(message)
                self._notify()
            return

        if message.id in self._by_id:
            return
        is_new = message.client_message_id is None or message.client_message_id not in self._by_client_id
        self._upsert(message)
        self._notify()
        if is_new and message.sender_id != self._session.user_id and self._on_incoming is not None:
            await self._on_incoming(message)
