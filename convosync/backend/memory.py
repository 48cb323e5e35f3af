"""In-process backend used by the test-suite and by local simulations.

``InMemoryDatabase`` plays the hosted service: it owns the rows, enforces the
uniqueness constraints and publishes change events server-side.
``InMemoryBackend`` is one client's connection to it and can be taken
offline to simulate a network drop.
"""

import copy
import logging
from collections import defaultdict
from typing import Any, Dict, List, Optional, Sequence, Tuple

from convosync.backend.base import Backend, new_id, table_channel
from convosync.backend.query import Filter, Order, matches, sort_rows
from convosync.config import get_settings
from convosync.errors import ConflictError, NetworkError, UploadError
from convosync.schemas.realtime import ChangeEvent
from convosync.utils.realtime_bus import LocalBroker, LocalBus


logger = logging.getLogger(__name__)

# Partial unique indexes: a row is only constrained when none of the fields is None.
DEFAULT_UNIQUE: Dict[str, List[Tuple[str, ...]]] = {
    "conversations": [("direct_key",)],
    "participants": [("conversation_id", "user_id")],
    "messages": [("conversation_id", "client_message_id")],
}


class InMemoryDatabase:

    def __init__(
        self,
        broker: Optional[LocalBroker] = None,
        unique: Optional[Dict[str, List[Tuple[str, ...]]]] = None,
        public_url: Optional[str] = None,
    ) -> None:
        self.broker = broker or LocalBroker()
        self.unique = DEFAULT_UNIQUE if unique is None else unique
        self.public_url = public_url or get_settings().storage_public_url
        self.tables: Dict[str, Dict[str, Dict[str, Any]]] = defaultdict(dict)
        self.blobs: Dict[Tuple[str, str], Tuple[bytes, Optional[str]]] = {}

    def connect(self) -> "InMemoryBackend":
        return InMemoryBackend(self, self.broker.connect())

    def rows(self, table: str) -> List[Dict[str, Any]]:
        return [copy.deepcopy(r) for r in self.tables[table].values()]

    def _key(self, row: Dict[str, Any], fields: Sequence[str]) -> Optional[Tuple[Any, ...]]:
        values = tuple(row.get(f) for f in fields)
        if any(v is None for v in values):
            return None
        return values

    def check_unique(self, table: str, rows: List[Dict[str, Any]]) -> None:
        ids = [r["id"] for r in rows]
        if len(set(ids)) != len(ids) or any(i in self.tables[table] for i in ids):
            raise ConflictError(f"duplicate id on {table}")
        for fields in self.unique.get(table, []):
            seen = {self._key(r, fields) for r in self.tables[table].values()}
            seen.discard(None)
            for row in rows:
                key = self._key(row, fields)
                if key is None:
                    continue
                if key in seen:
                    raise ConflictError(f"duplicate key on {table}{fields}: {key}")
                seen.add(key)

    def publish(self, event: ChangeEvent) -> None:
        self.broker._deliver(table_channel(event.table), event.model_dump_json())


class InMemoryBackend(Backend):

    def __init__(self, database: InMemoryDatabase, bus: LocalBus) -> None:
        self.database = database
        self.bus = bus
        self.online = True

    def go_offline(self) -> None:
        self.online = False
        self.bus.drop_connection()

    def go_online(self) -> None:
        self.online = True
        self.bus.restore_connection()

    def _check_online(self) -> None:
        if not self.online:
            raise NetworkError("backend unreachable")

    def _table(self, table: str) -> Dict[str, Dict[str, Any]]:
        return self.database.tables[table]

    async def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        return (await self.insert_many(table, [row]))[0]

    async def insert_many(self, table: str, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        self._check_online()
        prepared = []
        for row in rows:
            doc = copy.deepcopy(row)
            doc["id"] = doc.get("id") or new_id()
            prepared.append(doc)
        self.database.check_unique(table, prepared)
        for doc in prepared:
            self._table(table)[doc["id"]] = doc
        for doc in prepared:
            self.database.publish(ChangeEvent(table=table, type="INSERT", new=doc))
        return [copy.deepcopy(doc) for doc in prepared]

    async def select(
        self,
        table: str,
        filter: Optional[Filter] = None,
        order: Optional[Order] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        self._check_online()
        rows = [r for r in self._table(table).values() if matches(r, filter)]
        rows = sort_rows(rows, order)
        if limit is not None:
            rows = rows[:limit]
        return [copy.deepcopy(r) for r in rows]

    async def count(self, table: str, filter: Optional[Filter] = None) -> int:
        self._check_online()
        return sum(1 for r in self._table(table).values() if matches(r, filter))

    async def update(self, table: str, filter: Filter, patch: Dict[str, Any]) -> int:
        self._check_online()
        changed = []
        for row in self._table(table).values():
            if matches(row, filter):
                old = copy.deepcopy(row)
                row.update(copy.deepcopy(patch))
                changed.append((old, copy.deepcopy(row)))
        for old, new in changed:
            self.database.publish(ChangeEvent(table=table, type="UPDATE", new=new, old=old))
        return len(changed)

    async def delete(self, table: str, filter: Filter) -> int:
        self._check_online()
        doomed = [r for r in self._table(table).values() if matches(r, filter)]
        for row in doomed:
            del self._table(table)[row["id"]]
        for row in doomed:
            self.database.publish(ChangeEvent(table=table, type="DELETE", old=row))
        return len(doomed)

    async def upload_blob(self, bucket: str, path: str, data: bytes, content_type: Optional[str] = None) -> str:
        if not self.online:
            raise UploadError("storage unreachable")
        if (bucket, path) in self.database.blobs:
            raise UploadError(f"{bucket}/{path} already exists")
        self.database.blobs[(bucket, path)] = (bytes(data), content_type)
        logger.debug("Stored %d bytes at %s/%s", len(data), bucket, path)
        return f"{self.database.public_url}/{bucket}/{path}"
