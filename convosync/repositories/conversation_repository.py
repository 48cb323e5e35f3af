from typing import Any, Dict, List, Optional

from convosync.backend.base import Backend
from convosync.backend.query import DESCENDING
from convosync.models.conversation import ConversationDocument, LastMessageSnapshot
from convosync.schemas.message import Message
from convosync.utils.time import utcnow


class ConversationRepository:

    table = "conversations"

    def __init__(self, backend: Backend) -> None:
        self._backend = backend

    @staticmethod
    def direct_key(user_a: str, user_b: str) -> str:
        return ":".join(sorted([user_a, user_b]))

    async def get(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        return await self._backend.select_one(self.table, {"id": conversation_id})

    async def get_many(self, conversation_ids: List[str]) -> List[Dict[str, Any]]:
        if not conversation_ids:
            return []
        return await self._backend.select(
            self.table,
            {"id": {"$in": conversation_ids}},
            order=[("last_activity_at", DESCENDING), ("id", DESCENDING)],
        )

    async def find_direct(self, user_a: str, user_b: str) -> Optional[Dict[str, Any]]:
        return await self._backend.select_one(self.table, {"direct_key": self.direct_key(user_a, user_b)})

    async def create_direct(self, user_a: str, user_b: str) -> Dict[str, Any]:
        now = utcnow()
        doc: ConversationDocument = {
            "kind": "direct",
            "participant_ids": sorted([user_a, user_b]),
            "created_by": user_a,
            "title": None,
            "avatar_url": None,
            "direct_key": self.direct_key(user_a, user_b),
            "created_at": now,
            "last_activity_at": now,
            "last_message": None,
        }
        return await self._backend.insert(self.table, doc)

    async def create_group(
        self,
        creator_id: str,
        participant_ids: List[str],
        title: Optional[str],
        avatar_url: Optional[str] = None,
    ) -> Dict[str, Any]:
        now = utcnow()
        doc: ConversationDocument = {
            "kind": "group",
            "participant_ids": list(participant_ids),
            "created_by": creator_id,
            "title": title,
            "avatar_url": avatar_url,
            "direct_key": None,
            "created_at": now,
            "last_activity_at": now,
            "last_message": None,
        }
        return await self._backend.insert(self.table, doc)

    async def update_on_new_message(self, conversation_id: str, message: Message) -> None:
        await self._backend.update(
            self.table,
            {"id": conversation_id},
            {
                "last_activity_at": message.created_at,
                "last_message": LastMessageSnapshot(
                    id=message.id,
                    sender_id=message.sender_id,
                    content=message.content,
                    media_kind=message.media_kind,
                    created_at=message.created_at,
                ),
            },
        )

    async def clear_preview(self, conversation_id: str, message_id: str) -> int:
        row = await self.get(conversation_id)
        preview = (row or {}).get("last_message") or {}
        if preview.get("id") != message_id:
            return 0
        snapshot = dict(preview, content=None, media_kind=None)
        return await self._backend.update(self.table, {"id": conversation_id}, {"last_message": snapshot})

    async def set_participant_ids(self, conversation_id: str, participant_ids: List[str]) -> int:
        return await self._backend.update(self.table, {"id": conversation_id}, {"participant_ids": list(participant_ids)})

    async def delete(self, conversation_id: str) -> int:
        return await self._backend.delete(self.table, {"id": conversation_id})
