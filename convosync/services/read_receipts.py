import logging
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from convosync.backend.base import Backend
from convosync.errors import NotFoundError, PermissionDenied
from convosync.repositories.message_repository import MessageRepository
from convosync.repositories.participant_repository import ParticipantRepository
from convosync.schemas.conversation import Participant
from convosync.schemas.message import Message
from convosync.schemas.realtime import ChangeEvent
from convosync.utils.time import utcnow


logger = logging.getLogger(__name__)


class ReadReceiptTracker:
    """Per-membership read watermarks.

    Marking a conversation read is a single write to the reader's membership
    row, however many messages it covers. Unread counts are always derived
    with a count query, so there is no counter to drift.
    """

    def __init__(self, backend: Backend) -> None:
        self._participants = ParticipantRepository(backend)
        self._messages = MessageRepository(backend)
        self._watermarks: Dict[Tuple[str, str], datetime] = {}

    async def mark_read(self, conversation_id: str, user_id: str, at: Optional[datetime] = None) -> datetime:
        at = at or utcnow()
        affected = await self._participants.advance_watermark(conversation_id, user_id, at)
        if affected:
            self._watermarks[(conversation_id, user_id)] = at
            return at
        row = await self._participants.get(conversation_id, user_id)
        if row is None:
            raise PermissionDenied(f"{user_id} is not a participant of {conversation_id}")
        # already at or past ``at``
        current = Participant.from_row(row).last_read_at
        self._watermarks[(conversation_id, user_id)] = current
        return current

    async def unread_count(self, conversation_id: str, user_id: str) -> int:
        row = await self._participants.get(conversation_id, user_id)
        if row is None:
            raise NotFoundError(f"{user_id} is not a participant of {conversation_id}")
        membership = Participant.from_row(row)
        self._watermarks[(conversation_id, user_id)] = membership.last_read_at
        return await self._messages.count_unread(conversation_id, user_id, membership.last_read_at)

    async def load(self, conversation_id: str) -> Dict[str, datetime]:
        rows = await self._participants.list_for_conversation(conversation_id)
        for key in [k for k in self._watermarks if k[0] == conversation_id]:
            del self._watermarks[key]
        result = {}
        for row in rows:
            part = Participant.from_row(row)
            self._watermarks[(conversation_id, part.user_id)] = part.last_read_at
            result[part.user_id] = part.last_read_at
        return result

    def watermark(self, conversation_id: str, user_id: str) -> Optional[datetime]:
        return self._watermarks.get((conversation_id, user_id))

    def read_by(self, message: Message) -> List[str]:
        """Participants other than the sender whose watermark covers ``message``."""
        return sorted(
            user_id
            for (conversation_id, user_id), at in self._watermarks.items()
            if conversation_id == message.conversation_id
            and user_id != message.sender_id
            and at >= message.created_at
        )

    async def apply_event(self, event: ChangeEvent) -> None:
        if event.table != ParticipantRepository.table:
            return
        if event.type == "DELETE":
            old = event.old or {}
            self._watermarks.pop((old.get("conversation_id"), old.get("user_id")), None)
            return
        part = Participant.from_row(event.row)
        key = (part.conversation_id, part.user_id)
        current = self._watermarks.get(key)
        if current is None or part.last_read_at > current:
            self._watermarks[key] = part.last_read_at
