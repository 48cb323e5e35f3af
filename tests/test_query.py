from datetime import datetime, timedelta, timezone

import pytest

from convosync.backend.query import ASCENDING, DESCENDING, matches, sort_rows


T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def test_equality_and_list_membership():
    row = {"id": "c1", "participant_ids": ["alice", "bob"], "kind": "direct"}

    assert matches(row, {"kind": "direct"})
    assert matches(row, {"participant_ids": "bob"})
    assert not matches(row, {"participant_ids": "carol"})
    assert matches(row, None)


def test_comparison_operators():
    row = {"created_at": T0, "sender_id": "alice"}

    assert matches(row, {"created_at": {"$gt": T0 - timedelta(seconds=1)}})
    assert not matches(row, {"created_at": {"$lt": T0}})
    assert matches(row, {"created_at": {"$lte": T0, "$gte": T0}})
    assert matches(row, {"sender_id": {"$ne": "bob"}})
    assert matches(row, {"sender_id": {"$in": ["alice", "carol"]}})
    assert not matches(row, {"sender_id": {"$nin": ["alice"]}})


def test_missing_and_null_fields():
    row = {"direct_key": None}

    assert matches(row, {"direct_key": None})
    assert matches(row, {"title": None})
    assert not matches(row, {"title": {"$exists": True}})
    assert not matches(row, {"direct_key": {"$gt": "a"}})


def test_or_expresses_composite_cursor():
    rows = [
        {"id": "a", "created_at": T0},
        {"id": "b", "created_at": T0},
        {"id": "c", "created_at": T0 - timedelta(milliseconds=1)},
        {"id": "d", "created_at": T0 + timedelta(milliseconds=1)},
    ]
    query = {"$or": [{"created_at": {"$lt": T0}}, {"created_at": T0, "id": {"$lt": "b"}}]}

    assert [r["id"] for r in rows if matches(r, query)] == ["a", "c"]


def test_unknown_operator_is_rejected():
    with pytest.raises(ValueError):
        matches({"n": 1}, {"n": {"$regex": "x"}})


def test_sort_rows_multi_key():
    rows = [
        {"id": "a", "created_at": T0},
        {"id": "c", "created_at": T0},
        {"id": "b", "created_at": T0 + timedelta(seconds=1)},
    ]

    newest_first = sort_rows(rows, [("created_at", DESCENDING), ("id", DESCENDING)])
    assert [r["id"] for r in newest_first] == ["b", "c", "a"]

    oldest_first = sort_rows(rows, [("created_at", ASCENDING), ("id", ASCENDING)])
    assert [r["id"] for r in oldest_first] == ["a", "c", "b"]
