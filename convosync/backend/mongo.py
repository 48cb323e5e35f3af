import logging
from typing import Any, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase, AsyncIOMotorGridFSBucket
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import BulkWriteError, DuplicateKeyError, PyMongoError

from convosync.backend.base import Backend, new_id, table_channel
from convosync.backend.query import Filter, Order
from convosync.config import get_settings
from convosync.database.connection import get_database
from convosync.errors import ConflictError, NetworkError, UploadError
from convosync.schemas.realtime import ChangeEvent
from convosync.utils.realtime_bus import get_bus


logger = logging.getLogger(__name__)


def _to_query(query: Optional[Filter]) -> Dict[str, Any]:
    if not query:
        return {}
    out: Dict[str, Any] = {}
    for key, cond in query.items():
        if key in ("$or", "$and"):
            out[key] = [_to_query(sub) for sub in cond]
        elif key == "id":
            out["_id"] = cond
        else:
            out[key] = cond
    return out


def _to_sort(order: Optional[Order]) -> List[tuple]:
    return [("_id" if field == "id" else field, direction) for field, direction in (order or ())]


def _to_doc(row: Dict[str, Any]) -> Dict[str, Any]:
    doc = dict(row)
    doc["_id"] = doc.pop("id", None) or new_id()
    return doc


def _from_doc(doc: Dict[str, Any]) -> Dict[str, Any]:
    row = dict(doc)
    row["id"] = str(row.pop("_id"))
    return row


class MongoBackend(Backend):
    """Rows in MongoDB via motor, blobs in GridFS, change events on the realtime bus.

    Ids are stored as ObjectId hex strings so that ``(created_at, id)``
    cursors compare the same way in every backend.
    """

    def __init__(self, db: AsyncIOMotorDatabase, bus, public_url: Optional[str] = None) -> None:
        self._db = db
        self.bus = bus
        self._public_url = public_url or get_settings().storage_public_url

    def collection(self, table: str):
        return self._db[table]

    async def ensure_indexes(self) -> None:
        conversations = self.collection("conversations")
        await conversations.create_index([("participant_ids", ASCENDING)])
        await conversations.create_index([("last_activity_at", DESCENDING)])
        await conversations.create_index(
            [("direct_key", ASCENDING)],
            unique=True,
            partialFilterExpression={"direct_key": {"$type": "string"}},
        )
        participants = self.collection("participants")
        await participants.create_index([("conversation_id", ASCENDING), ("user_id", ASCENDING)], unique=True)
        await participants.create_index([("user_id", ASCENDING)])
        messages = self.collection("messages")
        await messages.create_index([("conversation_id", ASCENDING), ("created_at", DESCENDING), ("_id", DESCENDING)])
        await messages.create_index(
            [("conversation_id", ASCENDING), ("client_message_id", ASCENDING)],
            unique=True,
            partialFilterExpression={"client_message_id": {"$type": "string"}},
        )

    async def _publish(self, event: ChangeEvent) -> None:
        try:
            await self.bus.publish(table_channel(event.table), event.model_dump_json())
        except NetworkError as exc:
            # the write itself succeeded; subscribers recover on their next pull
            logger.warning("Could not publish %s on %s: %s", event.type, event.table, exc)

    async def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        doc = _to_doc(row)
        try:
            await self.collection(table).insert_one(doc)
        except DuplicateKeyError as exc:
            raise ConflictError(str(exc)) from exc
        except PyMongoError as exc:
            raise NetworkError(str(exc)) from exc
        inserted = _from_doc(doc)
        await self._publish(ChangeEvent(table=table, type="INSERT", new=inserted))
        return inserted

    async def insert_many(self, table: str, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        docs = [_to_doc(r) for r in rows]
        try:
            await self.collection(table).insert_many(docs, ordered=True)
        except BulkWriteError as exc:
            inserted = exc.details.get("nInserted", 0)
            if inserted:
                await self.collection(table).delete_many({"_id": {"$in": [d["_id"] for d in docs[:inserted]]}})
            if any(err.get("code") == 11000 for err in exc.details.get("writeErrors", [])):
                raise ConflictError(str(exc)) from exc
            raise NetworkError(str(exc)) from exc
        except PyMongoError as exc:
            raise NetworkError(str(exc)) from exc
        result = [_from_doc(d) for d in docs]
        for row in result:
            await self._publish(ChangeEvent(table=table, type="INSERT", new=row))
        return result

    async def select(
        self,
        table: str,
        filter: Optional[Filter] = None,
        order: Optional[Order] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        try:
            cursor = self.collection(table).find(_to_query(filter))
            sort = _to_sort(order)
            if sort:
                cursor = cursor.sort(sort)
            if limit is not None:
                cursor = cursor.limit(limit)
            items = await cursor.to_list(length=limit)
        except PyMongoError as exc:
            raise NetworkError(str(exc)) from exc
        return [_from_doc(it) for it in items]

    async def count(self, table: str, filter: Optional[Filter] = None) -> int:
        try:
            return await self.collection(table).count_documents(_to_query(filter))
        except PyMongoError as exc:
            raise NetworkError(str(exc)) from exc

    async def update(self, table: str, filter: Filter, patch: Dict[str, Any]) -> int:
        coll = self.collection(table)
        try:
            before = await coll.find(_to_query(filter)).to_list(length=None)
            if not before:
                return 0
            ids = [d["_id"] for d in before]
            result = await coll.update_many({"_id": {"$in": ids}}, {"$set": patch})
            after = await coll.find({"_id": {"$in": ids}}).to_list(length=None)
        except DuplicateKeyError as exc:
            raise ConflictError(str(exc)) from exc
        except PyMongoError as exc:
            raise NetworkError(str(exc)) from exc
        old_by_id = {d["_id"]: _from_doc(d) for d in before}
        for doc in after:
            await self._publish(ChangeEvent(table=table, type="UPDATE", new=_from_doc(doc), old=old_by_id.get(doc["_id"])))
        return result.matched_count or 0

    async def delete(self, table: str, filter: Filter) -> int:
        coll = self.collection(table)
        try:
            doomed = await coll.find(_to_query(filter)).to_list(length=None)
            if not doomed:
                return 0
            result = await coll.delete_many({"_id": {"$in": [d["_id"] for d in doomed]}})
        except PyMongoError as exc:
            raise NetworkError(str(exc)) from exc
        for doc in doomed:
            await self._publish(ChangeEvent(table=table, type="DELETE", old=_from_doc(doc)))
        return result.deleted_count or 0

    async def upload_blob(self, bucket: str, path: str, data: bytes, content_type: Optional[str] = None) -> str:
        fs = AsyncIOMotorGridFSBucket(self._db, bucket_name=bucket)
        try:
            existing = await fs.find({"filename": path}).to_list(length=1)
            if existing:
                raise UploadError(f"{bucket}/{path} already exists")
            await fs.upload_from_stream(path, data, metadata={"contentType": content_type})
        except PyMongoError as exc:
            raise UploadError(str(exc)) from exc
        return f"{self._public_url}/{bucket}/{path}"


async def create_mongo_backend() -> MongoBackend:
    backend = MongoBackend(get_database(), await get_bus())
    await backend.ensure_indexes()
    return backend
