"""Contract between the synchronization core and the hosted backend.

Rows are plain dicts keyed by ``id``. Every write is observable on the
realtime bus as a :class:`ChangeEvent` on channel ``db:<table>``; delivery is
at-most-once with no backlog replay, so consumers pair it with a pull.
"""

import abc
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from bson import ObjectId
from pydantic import ValidationError as SchemaError

from convosync.backend.query import Filter, Order, matches
from convosync.schemas.realtime import ChangeEvent


logger = logging.getLogger(__name__)

OnChange = Callable[[ChangeEvent], Awaitable[None]]


def new_id() -> str:
    return str(ObjectId())


def table_channel(table: str) -> str:
    return f"db:{table}"


class Backend(abc.ABC):

    bus: Any

    @abc.abstractmethod
    async def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        """Insert one row; raises ConflictError on a uniqueness violation."""

    @abc.abstractmethod
    async def insert_many(self, table: str, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Insert all rows or none of them."""

    @abc.abstractmethod
    async def select(
        self,
        table: str,
        filter: Optional[Filter] = None,
        order: Optional[Order] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        ...

    @abc.abstractmethod
    async def count(self, table: str, filter: Optional[Filter] = None) -> int:
        ...

    @abc.abstractmethod
    async def update(self, table: str, filter: Filter, patch: Dict[str, Any]) -> int:
        """Apply ``patch`` to every matching row and return the affected count."""

    @abc.abstractmethod
    async def delete(self, table: str, filter: Filter) -> int:
        ...

    @abc.abstractmethod
    async def upload_blob(self, bucket: str, path: str, data: bytes, content_type: Optional[str] = None) -> str:
        """Store ``data`` and return its public URL; raises UploadError."""

    async def select_one(self, table: str, filter: Filter, order: Optional[Order] = None) -> Optional[Dict[str, Any]]:
        rows = await self.select(table, filter, order=order, limit=1)
        return rows[0] if rows else None

    async def subscribe(self, table: str, filter: Optional[Filter], on_event: OnChange):
        async def _on_message(raw: str) -> None:
            try:
                event = ChangeEvent.model_validate_json(raw)
            except SchemaError:
                logger.error("Dropping malformed change event on %s", table, exc_info=True)
                return
            if filter and not matches(event.row, filter):
                return
            await on_event(event)

        return await self.bus.subscribe(table_channel(table), _on_message)
