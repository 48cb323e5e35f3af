from datetime import datetime, timedelta, timezone

import pytest

from convosync.errors import NotFoundError, PermissionDenied
from convosync.repositories.participant_repository import ParticipantRepository
from convosync.schemas.message import Message
from convosync.schemas.realtime import ChangeEvent
from convosync.services.read_receipts import ReadReceiptTracker


T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


async def _seed(backend):
    await backend.insert_many("participants", [
        {"conversation_id": "c1", "user_id": "alice", "role": "member", "joined_at": T0, "last_read_at": T0},
        {"conversation_id": "c1", "user_id": "bob", "role": "member", "joined_at": T0, "last_read_at": T0},
    ])
    rows = []
    for i, sender in enumerate(["alice", "bob", "bob", "alice", "bob"]):
        rows.append(await backend.insert("messages", {
            "conversation_id": "c1",
            "sender_id": sender,
            "content": f"m{i}",
            "created_at": T0 + timedelta(seconds=i + 1),
            "deleted_at": None,
        }))
    return rows


@pytest.mark.asyncio
async def test_unread_count_excludes_own_messages(backend):
    await _seed(backend)
    tracker = ReadReceiptTracker(backend)

    assert await tracker.unread_count("c1", "alice") == 3
    assert await tracker.unread_count("c1", "bob") == 2


@pytest.mark.asyncio
async def test_mark_read_zeroes_unread_and_never_moves_backward(backend):
    await _seed(backend)
    tracker = ReadReceiptTracker(backend)
    later = T0 + timedelta(minutes=5)

    assert await tracker.mark_read("c1", "alice", later) == later
    assert await tracker.unread_count("c1", "alice") == 0

    # an older watermark leaves the stored one in place
    assert await tracker.mark_read("c1", "alice", T0 + timedelta(seconds=2)) == later
    row = await ParticipantRepository(backend).get("c1", "alice")
    assert row["last_read_at"] == later


@pytest.mark.asyncio
async def test_mark_read_for_non_member_is_denied(backend):
    await _seed(backend)
    tracker = ReadReceiptTracker(backend)

    with pytest.raises(PermissionDenied):
        await tracker.mark_read("c1", "mallory")
    with pytest.raises(NotFoundError):
        await tracker.unread_count("c1", "mallory")


@pytest.mark.asyncio
async def test_read_by_uses_watermarks(backend):
    rows = await _seed(backend)
    tracker = ReadReceiptTracker(backend)
    await tracker.mark_read("c1", "bob", T0 + timedelta(seconds=4))
    await tracker.load("c1")

    first, last = Message.from_row(rows[0]), Message.from_row(rows[3])
    assert tracker.read_by(first) == ["bob"]
    assert tracker.read_by(last) == ["bob"]
    assert tracker.read_by(Message.from_row(rows[4])) == []


@pytest.mark.asyncio
async def test_apply_event_only_moves_forward(backend):
    tracker = ReadReceiptTracker(backend)
    newer = T0 + timedelta(minutes=1)
    row = {"conversation_id": "c1", "user_id": "bob", "joined_at": T0, "last_read_at": newer}

    await tracker.apply_event(ChangeEvent(table="participants", type="UPDATE", new=row))
    await tracker.apply_event(ChangeEvent(table="participants", type="UPDATE", new=dict(row, last_read_at=T0)))
    assert tracker.watermark("c1", "bob") == newer

    await tracker.apply_event(ChangeEvent(table="participants", type="DELETE", old=row))
    assert tracker.watermark("c1", "bob") is None
