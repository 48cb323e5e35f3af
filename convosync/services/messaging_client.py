import logging
from typing import Awaitable, Callable, List, Mapping, Optional

from convosync.backend.base import Backend
from convosync.config import Settings, get_settings
from convosync.errors import MessagingError, ValidationError
from convosync.schemas.conversation import Conversation
from convosync.schemas.message import MediaAttachment, Message
from convosync.schemas.realtime import ChangeEvent
from convosync.services.conversation_store import ConversationStore
from convosync.services.message_stream import MessageStream
from convosync.services.presence_tracker import PresenceTracker
from convosync.services.read_receipts import ReadReceiptTracker
from convosync.services.subscription_manager import Scope, SubscriptionManager
from convosync.session import Session
from convosync.utils.retry import retry_async
from convosync.utils.time import to_ms, utcnow


logger = logging.getLogger(__name__)

MEDIA_BUCKET = "messages"


class MessagingClient:
    """Everything one signed-in user needs for messaging, wired together.

    Views read ``conversations``, ``stream`` and ``presence``; every
    realtime event reaches them through the subscription manager.
    """

    def __init__(
        self,
        session: Session,
        backend: Backend,
        settings: Optional[Settings] = None,
        display_names: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.session = session
        self.backend = backend
        self.settings = settings or get_settings()
        self.receipts = ReadReceiptTracker(backend)
        self.conversations = ConversationStore(session, backend, self.receipts, display_names)
        self.presence = PresenceTracker(session, backend.bus, self.settings)
        self.subscriptions = SubscriptionManager(backend, self.settings)
        self.stream: Optional[MessageStream] = None
        self._close_stream_scope: Optional[Callable[[], Awaitable[None]]] = None
        self._remove_typing_listener: Optional[Callable[[], None]] = None
        self.started = False

    @property
    def user_id(self) -> str:
        return self.session.user_id

    async def start(self) -> None:
        if self.started:
            return
        # same ordering as open_conversation: listen first, then pull
        await self.subscriptions.subscribe(
            Scope.conversation_list(self.user_id),
            self._on_list_event,
            reconcile=self.conversations.reconcile,
        )
        try:
            await retry_async(
                self.conversations.load,
                base_delay=self.settings.reconnect_base_delay,
                max_delay=self.settings.reconnect_max_delay,
            )
        except MessagingError:
            await self.subscriptions.close()
            raise
        await self.subscriptions.subscribe(Scope.presence(), self.presence.handle_presence, reconcile=self.presence.resync)
        await self.subscriptions.subscribe(Scope.typing(), self.presence.handle_typing)
        self._remove_typing_listener = self.presence.add_typing_listener(self.conversations.set_typing)
        await self.presence.start()
        self.started = True
        logger.info("Messaging started for %s", self.user_id)

    async def stop(self) -> None:
        await self.close_conversation()
        if self._remove_typing_listener is not None:
            self._remove_typing_listener()
            self._remove_typing_listener = None
        await self.presence.stop()
        await self.subscriptions.close()
        self.started = False

    async def _on_list_event(self, event: ChangeEvent) -> None:
        await self.conversations.apply_event(event)
        await self.receipts.apply_event(event)

    # -- open conversation -------------------------------------------------

    async def open_conversation(self, conversation_id: str) -> MessageStream:
        await self.close_conversation()
        stream = MessageStream(
            self.session,
            self.backend,
            conversation_id,
            page_size=self.settings.message_page_size,
            on_incoming=self._on_incoming,
            settings=self.settings,
        )
        self.stream = stream

        async def on_event(event: ChangeEvent) -> None:
            await stream.apply_event(event)
            await self.receipts.apply_event(event)

        async def reconcile() -> None:
            await stream.reconcile()
            await self.receipts.load(conversation_id)

        # subscribe before the first pull so nothing lands between the two
        self._close_stream_scope = await self.subscriptions.subscribe(
            Scope.conversation(conversation_id), on_event, reconcile=reconcile
        )
        await stream.open()
        if stream.closed:
            return stream
        await self.receipts.load(conversation_id)
        await self._mark_read(conversation_id)
        return stream

    async def close_conversation(self) -> None:
        stream, self.stream = self.stream, None
        if stream is not None:
            stream.close()
        close_scope, self._close_stream_scope = self._close_stream_scope, None
        if close_scope is not None:
            await close_scope()

    async def _mark_read(self, conversation_id: str) -> None:
        try:
            await self.conversations.mark_read(conversation_id, self.user_id)
        except MessagingError as exc:
            logger.warning("Could not mark %s read: %s", conversation_id, exc)

    async def _on_incoming(self, message: Message) -> None:
        if self.stream is not None and self.stream.conversation_id == message.conversation_id:
            await self._mark_read(message.conversation_id)

    async def load_more(self) -> List[Message]:
        if self.stream is None:
            return []
        return await self.stream.load_more()

    # -- writes ------------------------------------------------------------

    async def send_message(
        self,
        conversation_id: str,
        content: Optional[str],
        media: Optional[MediaAttachment] = None,
        reply_to: Optional[str] = None,
    ) -> Message:
        stream = self.stream
        if stream is None or stream.conversation_id != conversation_id:
            stream = MessageStream(self.session, self.backend, conversation_id, settings=self.settings)
        message = await stream.send(conversation_id, self.user_id, content, media=media, reply_to=reply_to)
        self.conversations.note_local_message(message)
        return message

    async def delete_message(self, message_id: str) -> Message:
        stream = self.stream or MessageStream(self.session, self.backend, "", settings=self.settings)
        return await stream.delete(message_id, self.user_id)

    async def start_direct(self, other_user_id: str) -> Conversation:
        return await self.conversations.get_or_create_direct(self.user_id, other_user_id)

    async def create_group(self, member_ids: List[str], title: Optional[str] = None) -> Conversation:
        return await self.conversations.create_group(self.user_id, member_ids, title)

    async def set_typing(self, is_typing: bool = True) -> None:
        if self.stream is not None:
            await self.presence.set_typing(self.stream.conversation_id, is_typing)

    async def upload_media(self, data: bytes, filename: str, content_type: Optional[str] = None) -> MediaAttachment:
        if not data:
            raise ValidationError("cannot upload an empty file")
        ext = filename.rsplit(".", 1)[-1].lower() if "." in filename else "jpg"
        content_type = content_type or f"image/{ext}"
        path = f"{self.user_id}/{to_ms(utcnow())}.{ext}"
        url = await self.backend.upload_blob(MEDIA_BUCKET, path, data, content_type)
        kind = content_type.split("/", 1)[0] if "/" in content_type else "image"
        return MediaAttachment(url=url, kind=kind)
