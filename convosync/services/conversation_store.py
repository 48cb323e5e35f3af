"""Conversation list of the signed-in user.

Entries are sorted by ``last_activity_at`` descending and annotated with the
viewer's unread count, pin/mute flags and typing state. Realtime changes are
folded in through :meth:`ConversationStore.apply_event` only; anything the
reducer cannot resolve locally falls back to a refetch.
"""

import asyncio
import logging
from collections import OrderedDict
from typing import Any, Callable, Dict, List, Mapping, Optional

from convosync.backend.base import Backend
from convosync.errors import (
    ConflictError,
    FetchError,
    MessagingError,
    NetworkError,
    NotFoundError,
    ValidationError,
)
from convosync.repositories.conversation_repository import ConversationRepository
from convosync.repositories.message_repository import MessageRepository
from convosync.repositories.participant_repository import ParticipantRepository
from convosync.schemas.conversation import Conversation, ConversationSummary, LastMessage, Participant
from convosync.schemas.message import Message
from convosync.schemas.realtime import ChangeEvent
from convosync.services.read_receipts import ReadReceiptTracker
from convosync.session import Session
from convosync.utils.time import utcnow


logger = logging.getLogger(__name__)

# Message ids already folded into unread counts
SEEN_MESSAGE_CACHE_SIZE = 2000


def _snapshot(message: Message) -> LastMessage:
    return LastMessage(
        id=message.id,
        sender_id=message.sender_id,
        content=message.content,
        media_kind=message.media_kind,
        created_at=message.created_at,
    )


class ConversationStore:

    def __init__(
        self,
        session: Session,
        backend: Backend,
        read_receipts: Optional[ReadReceiptTracker] = None,
        display_names: Optional[Mapping[str, str]] = None,
    ) -> None:
        self._session = session
        self._user_id = session.user_id
        self._conversation_repo = ConversationRepository(backend)
        self._participant_repo = ParticipantRepository(backend)
        self._message_repo = MessageRepository(backend)
        self._receipts = read_receipts or ReadReceiptTracker(backend)
        self._display_names: Dict[str, str] = dict(display_names or {})
        self._entries: Dict[str, ConversationSummary] = {}
        self._seen_messages: "OrderedDict[str, None]" = OrderedDict()
        self._listeners: List[Callable[[], None]] = []
        self._load_generation = 0

    # -- views -------------------------------------------------------------

    @property
    def conversations(self) -> List[ConversationSummary]:
        return sorted(self._entries.values(), key=lambda e: (e.last_activity_at, e.id), reverse=True)

    def get(self, conversation_id: str) -> Optional[ConversationSummary]:
        return self._entries.get(conversation_id)

    def total_unread(self) -> int:
        return sum(e.unread_count for e in self._entries.values() if not e.muted)

    def set_display_names(self, names: Mapping[str, str]) -> None:
        self._display_names.update(names)

    def search(self, query: str = "") -> List[ConversationSummary]:
        """Filter by group title or the other participants, pinned conversations first."""
        needle = query.strip().lower()
        items = self.conversations
        if needle:
            items = [e for e in items if self._matches(e, needle)]
        return [e for e in items if e.pinned] + [e for e in items if not e.pinned]

    def _matches(self, entry: ConversationSummary, needle: str) -> bool:
        convo = entry.conversation
        if convo.is_group:
            return needle in (convo.title or "").lower()
        for user_id in convo.other_participants(self._user_id):
            name = self._display_names.get(user_id, "")
            if needle in user_id.lower() or needle in name.lower():
                return True
        return False

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
                logger.exception("Conversation list listener failed")

    # -- loading -----------------------------------------------------------

    async def load(self, user_id: Optional[str] = None) -> List[ConversationSummary]:
        if user_id is not None and user_id != self._user_id:
            self._user_id = user_id
            self._entries = {}
        self._load_generation += 1
        generation = self._load_generation
        try:
            memberships = {
                m.conversation_id: m
                for m in map(Participant.from_row, await self._participant_repo.list_for_user(self._user_id))
            }
            rows = await self._conversation_repo.get_many(list(memberships))
            summaries = await asyncio.gather(
                *(self._summarize(Conversation.from_row(row), memberships[row["id"]]) for row in rows)
            )
        except NetworkError as exc:
            raise FetchError(f"could not load conversations for {self._user_id}: {exc}") from exc
        if generation != self._load_generation:
            logger.debug("Discarding stale conversation load for %s", self._user_id)
            return self.conversations
        typing = {cid: e.typing_user_ids for cid, e in self._entries.items()}
        self._entries = {}
        for summary in summaries:
            summary.typing_user_ids = typing.get(summary.id, [])
            self._entries[summary.id] = summary
        self._notify()
        return self.conversations

    async def reconcile(self) -> None:
        await self.load()

    async def _summarize(self, convo: Conversation, membership: Participant) -> ConversationSummary:
        latest_row = await self._message_repo.latest(convo.id)
        unread = await self._message_repo.count_unread(convo.id, membership.user_id, membership.last_read_at)
        if latest_row is not None:
            latest = Message.from_row(latest_row)
            self._remember(latest.id)
            # the stored preview is a cache; the newest row wins
            convo.last_message = _snapshot(latest)
            if latest.created_at > convo.last_activity_at:
                convo.last_activity_at = latest.created_at
        return ConversationSummary(conversation=convo, membership=membership, unread_count=unread)

    async def refresh_conversation(self, conversation_id: str) -> Optional[ConversationSummary]:
        row = await self._conversation_repo.get(conversation_id)
        membership_row = await self._participant_repo.get(conversation_id, self._user_id)
        if row is None or membership_row is None:
            if self._entries.pop(conversation_id, None) is not None:
                self._notify()
            return None
        summary = await self._summarize(Conversation.from_row(row), Participant.from_row(membership_row))
        previous = self._entries.get(conversation_id)
        if previous is not None:
            summary.typing_user_ids = previous.typing_user_ids
        self._entries[conversation_id] = summary
        self._notify()
        return summary

    # -- creation ----------------------------------------------------------

    async def get_or_create_direct(self, user_a: str, user_b: str) -> Conversation:
        if not user_a or not user_b:
            raise ValidationError("both participants are required")
        if user_a == user_b:
            raise ValidationError("a direct conversation needs two different users")
        row = await self._conversation_repo.find_direct(user_a, user_b)
        created = False
        if row is None:
            try:
                row = await self._conversation_repo.create_direct(user_a, user_b)
                created = True
            except ConflictError:
                logger.info("Direct conversation %s/%s created concurrently, re-fetching", user_a, user_b)
                row = await self._conversation_repo.find_direct(user_a, user_b)
                if row is None:
                    raise
        convo = Conversation.from_row(row)
        await self._ensure_direct_memberships(convo.id, [user_a, user_b], created)
        if self._user_id in (user_a, user_b) and convo.id not in self._entries:
            await self.refresh_conversation(convo.id)
        return convo

    async def _ensure_direct_memberships(self, conversation_id: str, users: List[str], created: bool) -> None:
        if created:
            try:
                await self._participant_repo.add_many(conversation_id, [(u, "member") for u in users])
                return
            except ConflictError:
                logger.debug("Memberships of %s partly present, filling gaps", conversation_id)
        present = {r["user_id"] for r in await self._participant_repo.list_for_conversation(conversation_id)}
        for user_id in users:
            if user_id not in present:
                await self._participant_repo.ensure(conversation_id, user_id)

    async def create_group(self, creator_id: str, member_ids: List[str], title: Optional[str] = None) -> Conversation:
        members = [creator_id]
        for user_id in member_ids:
            if user_id and user_id not in members:
                members.append(user_id)
        if len(members) < 2:
            raise ValidationError("a group needs at least one member besides its creator")
        title = (title or "").strip() or None
        row = await self._conversation_repo.create_group(creator_id, members, title)
        convo = Conversation.from_row(row)
        roles = [(creator_id, "admin")] + [(user_id, "member") for user_id in members[1:]]
        try:
            await self._participant_repo.add_many(convo.id, roles)
        except MessagingError:
            logger.warning("Group %s memberships failed, removing the conversation row", convo.id)
            try:
                await self._conversation_repo.delete(convo.id)
            except NetworkError:
                logger.error("Could not remove orphaned group conversation %s", convo.id, exc_info=True)
            raise
        if self._user_id in members:
            await self.refresh_conversation(convo.id)
        return convo

    # -- membership mutations ---------------------------------------------

    async def mark_read(self, conversation_id: str, user_id: str) -> None:
        entry = self._entries.get(conversation_id) if user_id == self._user_id else None
        at = utcnow()
        previous = None
        if entry is not None:
            previous = (entry.unread_count, entry.membership.last_read_at)
            entry.unread_count = 0
            entry.membership.last_read_at = max(at, previous[1])
            self._notify()
        try:
            stored = await self._receipts.mark_read(conversation_id, user_id, at)
        except MessagingError:
            if entry is not None and previous is not None:
                entry.unread_count, entry.membership.last_read_at = previous
                self._notify()
            raise
        if entry is not None and stored > entry.membership.last_read_at:
            entry.membership.last_read_at = stored

    async def pin(self, conversation_id: str, user_id: str, pinned: bool) -> None:
        await self._set_flag(conversation_id, user_id, "pinned", pinned)

    async def set_muted(self, conversation_id: str, user_id: str, muted: bool) -> None:
        await self._set_flag(conversation_id, user_id, "muted", muted)

    async def _set_flag(self, conversation_id: str, user_id: str, field: str, value: bool) -> None:
        entry = self._entries.get(conversation_id) if user_id == self._user_id else None
        previous = None
        if entry is not None:
            previous = getattr(entry.membership, field)
            setattr(entry.membership, field, value)
            self._notify()
        try:
            affected = await self._participant_repo.update(conversation_id, user_id, {field: value})
            if not affected:
                raise NotFoundError(f"{user_id} is not a participant of {conversation_id}")
        except MessagingError:
            if entry is not None:
                setattr(entry.membership, field, previous)
                self._notify()
            raise

    async def leave(self, conversation_id: str, user_id: str) -> None:
        membership_row = await self._participant_repo.get(conversation_id, user_id)
        if membership_row is None:
            raise NotFoundError(f"{user_id} is not a participant of {conversation_id}")
        membership = Participant.from_row(membership_row)
        row = await self._conversation_repo.get(conversation_id)
        await self._participant_repo.remove(conversation_id, user_id)
        if row is not None and row.get("kind") == "group":
            convo = Conversation.from_row(row)
            await self._conversation_repo.set_participant_ids(
                conversation_id, [p for p in convo.participant_ids if p != user_id]
            )
            if membership.role == "admin":
                await self._promote_successor(conversation_id)
        self._drop_local(conversation_id, user_id)

    async def _promote_successor(self, conversation_id: str) -> None:
        remaining = [Participant.from_row(r) for r in await self._participant_repo.list_for_conversation(conversation_id)]
        if not remaining or any(p.role == "admin" for p in remaining):
            return
        successor = remaining[0]
        await self._participant_repo.update(conversation_id, successor.user_id, {"role": "admin"})
        logger.info("Promoted %s to admin of %s", successor.user_id, conversation_id)

    async def delete(self, conversation_id: str, user_id: str) -> None:
        """Hide the conversation for ``user_id`` only; other participants keep it."""
        entry = self._entries.get(conversation_id)
        kind = entry.conversation.kind if entry is not None else None
        if kind is None:
            row = await self._conversation_repo.get(conversation_id)
            kind = row.get("kind") if row is not None else None
        if kind == "group":
            await self.leave(conversation_id, user_id)
            return
        removed = await self._participant_repo.remove(conversation_id, user_id)
        if not removed:
            raise NotFoundError(f"{user_id} is not a participant of {conversation_id}")
        self._drop_local(conversation_id, user_id)

    def _drop_local(self, conversation_id: str, user_id: str) -> None:
        if user_id == self._user_id and self._entries.pop(conversation_id, None) is not None:
            self._notify()

    # -- realtime reducer --------------------------------------------------

    def set_typing(self, conversation_id: str, user_ids: List[str]) -> None:
        entry = self._entries.get(conversation_id)
        if entry is not None and entry.typing_user_ids != user_ids:
            entry.typing_user_ids = list(user_ids)
            self._notify()

    def note_local_message(self, message: Message) -> None:
        """Fold a message this client just sent into its conversation preview."""
        entry = self._entries.get(message.conversation_id)
        if entry is not None and self._fold_message(entry, message):
            self._notify()

    def _remember(self, message_id: str) -> bool:
        if message_id in self._seen_messages:
            self._seen_messages.move_to_end(message_id)
            return False
        self._seen_messages[message_id] = None
        if len(self._seen_messages) > SEEN_MESSAGE_CACHE_SIZE:
            self._seen_messages.popitem(last=False)
        return True

    def _fold_message(self, entry: ConversationSummary, message: Message) -> bool:
        if not self._remember(message.id):
            return False
        convo = entry.conversation
        current = convo.last_message
        if current is None or message.sort_key > (current.created_at, current.id):
            convo.last_message = _snapshot(message)
        if message.created_at > convo.last_activity_at:
            convo.last_activity_at = message.created_at
        if message.sender_id != self._user_id and message.created_at > entry.membership.last_read_at:
            entry.unread_count += 1
        return True

    async def apply_event(self, event: ChangeEvent) -> None:
        if event.table == MessageRepository.table:
            changed = self._apply_message_event(event)
        elif event.table == ParticipantRepository.table:
            changed = await self._apply_participant_event(event)
        elif event.table == ConversationRepository.table:
            changed = self._apply_conversation_event(event)
        else:
            changed = False
        if changed:
            self._notify()

    def _apply_message_event(self, event: ChangeEvent) -> bool:
        if event.type == "DELETE":
            return False
        message = Message.from_row(event.row)
        entry = self._entries.get(message.conversation_id)
        if entry is None:
            return False
        if event.type == "INSERT":
            return self._fold_message(entry, message)
        current = entry.conversation.last_message
        if current is not None and current.id == message.id:
            entry.conversation.last_message = _snapshot(message)
            return True
        return False

    async def _apply_participant_event(self, event: ChangeEvent) -> bool:
        row: Dict[str, Any] = event.row
        conversation_id = row.get("conversation_id")
        if row.get("user_id") != self._user_id:
            entry = self._entries.get(conversation_id)
            if entry is None or not entry.conversation.is_group:
                return False
            ids = entry.conversation.participant_ids
            if event.type == "INSERT" and row["user_id"] not in ids:
                ids.append(row["user_id"])
                return True
            if event.type == "DELETE" and row["user_id"] in ids:
                ids.remove(row["user_id"])
                return True
            return False
        if event.type == "INSERT":
            await self.refresh_conversation(conversation_id)
            return False
        if event.type == "DELETE":
            return self._entries.pop(conversation_id, None) is not None
        entry = self._entries.get(conversation_id)
        if entry is None:
            return False
        membership = Participant.from_row(row)
        moved = membership.last_read_at != entry.membership.last_read_at
        entry.membership = membership
        if moved:
            entry.unread_count = await self._message_repo.count_unread(
                conversation_id, self._user_id, membership.last_read_at
            )
        return True

    def _apply_conversation_event(self, event: ChangeEvent) -> bool:
        if event.type != "UPDATE":
            return False
        entry = self._entries.get(event.row.get("id"))
        if entry is None:
            return False
        incoming = Conversation.from_row(event.row)
        local = entry.conversation
        if local.last_message is not None and (
            incoming.last_message is None
            or (incoming.last_message.created_at, incoming.last_message.id)
            < (local.last_message.created_at, local.last_message.id)
        ):
            incoming.last_message = local.last_message
        incoming.last_activity_at = max(incoming.last_activity_at, local.last_activity_at)
        entry.conversation = incoming
        return True
