from datetime import datetime, timezone

import pytest

from convosync.schemas.conversation import Conversation
from convosync.schemas.message import Message, MessageCursor
from convosync.schemas.realtime import ChangeEvent


T0 = datetime(2024, 5, 1, 12, 0, 0, 123000, tzinfo=timezone.utc)


def test_cursor_string_form_roundtrips():
    cursor = MessageCursor(created_at=T0, id="65f0c0ffee")

    encoded = cursor.encode()

    assert encoded == "1714564800123:65f0c0ffee"
    assert MessageCursor.parse(encoded) == cursor
    assert MessageCursor.parse(T0).id is None


def test_cursor_rejects_garbage():
    with pytest.raises(ValueError):
        MessageCursor.parse("yesterday:abc")


def test_naive_timestamps_are_treated_as_utc():
    message = Message.from_row({
        "id": "m1",
        "conversation_id": "c1",
        "sender_id": "alice",
        "created_at": datetime(2024, 5, 1, 12, 0),
        "extra_column": "ignored",
    })

    assert message.created_at.tzinfo is not None
    assert not message.is_deleted
    assert message.cursor.id == "m1"


def test_change_event_row_survives_json():
    event = ChangeEvent(table="conversations", type="DELETE", old={"id": "c1", "last_activity_at": T0})

    parsed = ChangeEvent.model_validate_json(event.model_dump_json())

    assert parsed.row["id"] == "c1"
    assert parsed.new is None


def test_other_participants():
    convo = Conversation.from_row({
        "id": "c1",
        "kind": "group",
        "participant_ids": ["alice", "bob", "carol"],
        "last_activity_at": T0,
    })

    assert convo.is_group
    assert convo.other_participants("bob") == ["alice", "carol"]
