import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from convosync.backend.base import Backend
from convosync.backend.query import ASCENDING
from convosync.errors import ConflictError
from convosync.models.participant import ParticipantDocument
from convosync.utils.time import utcnow


logger = logging.getLogger(__name__)


class ParticipantRepository:

    table = "participants"

    def __init__(self, backend: Backend) -> None:
        self._backend = backend

    @staticmethod
    def _doc(conversation_id: str, user_id: str, role: str, joined_at: datetime) -> ParticipantDocument:
        return {
            "conversation_id": conversation_id,
            "user_id": user_id,
            "role": role,
            "joined_at": joined_at,
            "last_read_at": joined_at,
            "muted": False,
            "pinned": False,
        }

    async def add(self, conversation_id: str, user_id: str, role: str = "member") -> Dict[str, Any]:
        return await self._backend.insert(self.table, self._doc(conversation_id, user_id, role, utcnow()))

    async def add_many(self, conversation_id: str, members: Sequence[Tuple[str, str]]) -> List[Dict[str, Any]]:
        now = utcnow()
        docs = [self._doc(conversation_id, user_id, role, now) for user_id, role in members]
        return await self._backend.insert_many(self.table, docs)

    async def ensure(self, conversation_id: str, user_id: str, role: str = "member") -> None:
        try:
            await self.add(conversation_id, user_id, role)
        except ConflictError:
            logger.debug("Membership %s/%s already present", conversation_id, user_id)

    async def get(self, conversation_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        return await self._backend.select_one(self.table, {"conversation_id": conversation_id, "user_id": user_id})

    async def list_for_user(self, user_id: str) -> List[Dict[str, Any]]:
        return await self._backend.select(self.table, {"user_id": user_id})

    async def list_for_conversation(self, conversation_id: str) -> List[Dict[str, Any]]:
        return await self._backend.select(
            self.table,
            {"conversation_id": conversation_id},
            order=[("joined_at", ASCENDING), ("id", ASCENDING)],
        )

    async def update(self, conversation_id: str, user_id: str, patch: Dict[str, Any]) -> int:
        return await self._backend.update(self.table, {"conversation_id": conversation_id, "user_id": user_id}, patch)

    async def advance_watermark(self, conversation_id: str, user_id: str, at: datetime) -> int:
        # only moves forward; a stale call matches nothing
        return await self._backend.update(
            self.table,
            {"conversation_id": conversation_id, "user_id": user_id, "last_read_at": {"$lt": at}},
            {"last_read_at": at},
        )

    async def remove(self, conversation_id: str, user_id: str) -> int:
        return await self._backend.delete(self.table, {"conversation_id": conversation_id, "user_id": user_id})
