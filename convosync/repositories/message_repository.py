import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple, Union

from convosync.backend.base import Backend
from convosync.backend.query import DESCENDING
from convosync.errors import ConflictError, ValidationError
from convosync.models.message import MessageDocument
from convosync.schemas.message import MessageCursor
from convosync.utils.time import utcnow


logger = logging.getLogger(__name__)

CursorLike = Union[MessageCursor, str, datetime]


class MessageRepository:

    table = "messages"
    order = [("created_at", DESCENDING), ("id", DESCENDING)]

    def __init__(self, backend: Backend) -> None:
        self._backend = backend

    async def save_message(
        self,
        conversation_id: str,
        sender_id: str,
        content: Optional[str],
        media_url: Optional[str] = None,
        media_kind: Optional[str] = None,
        reply_to: Optional[str] = None,
        client_message_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        doc: MessageDocument = {
            "conversation_id": conversation_id,
            "sender_id": sender_id,
            "content": content,
            "media_url": media_url,
            "media_kind": media_kind,
            "reply_to": reply_to,
            "created_at": utcnow(),
            "deleted_at": None,
            "client_message_id": client_message_id,
        }
        try:
            return await self._backend.insert(self.table, doc)
        except ConflictError:
            if client_message_id is None:
                raise
            existing = await self._backend.select_one(
                self.table,
                {"conversation_id": conversation_id, "client_message_id": client_message_id},
            )
            if existing is None:
                raise
            logger.info("Message %s already stored, returning existing row", client_message_id)
            return existing

    async def get(self, message_id: str) -> Optional[Dict[str, Any]]:
        return await self._backend.select_one(self.table, {"id": message_id})

    async def get_messages_by_conversation(
        self,
        conversation_id: str,
        limit: int = 50,
        cursor: Optional[CursorLike] = None,
    ) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        """Newest-first page of messages strictly older than ``cursor``."""
        if limit < 1:
            raise ValidationError("page size must be positive")
        query: Dict[str, Any] = {"conversation_id": conversation_id}
        if cursor is not None:
            try:
                position = MessageCursor.parse(cursor)
            except ValueError as exc:
                raise ValidationError(f"invalid cursor: {cursor!r}") from exc
            if position.id:
                query["$or"] = [
                    {"created_at": {"$lt": position.created_at}},
                    {"created_at": position.created_at, "id": {"$lt": position.id}},
                ]
            else:
                query["created_at"] = {"$lt": position.created_at}
        items = await self._backend.select(self.table, query, order=self.order, limit=limit)
        next_cursor = None
        if len(items) == limit:
            last = items[-1]
            next_cursor = MessageCursor(created_at=last["created_at"], id=last["id"]).encode()
        return items, next_cursor

    async def latest(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        return await self._backend.select_one(self.table, {"conversation_id": conversation_id}, order=self.order)

    async def count_unread(self, conversation_id: str, user_id: str, since: datetime) -> int:
        return await self._backend.count(
            self.table,
            {
                "conversation_id": conversation_id,
                "sender_id": {"$ne": user_id},
                "created_at": {"$gt": since},
            },
        )

    async def soft_delete(self, message_id: str, at: datetime) -> int:
        return await self._backend.update(
            self.table,
            {"id": message_id},
            {"content": None, "media_url": None, "media_kind": None, "deleted_at": at},
        )
