"""Evaluation of the Mongo-style filter subset understood by every backend.

Supported operators: ``$eq $ne $lt $lte $gt $gte $in $nin $exists`` on
fields, ``$or``/``$and`` at the top level. A scalar condition against a list
field matches when the list contains it, as in MongoDB.
"""

from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from pymongo import ASCENDING, DESCENDING


Filter = Dict[str, Any]
Order = Sequence[Tuple[str, int]]

_MISSING = object()


def _compare(value: Any, op: str, arg: Any) -> bool:
    if op == "$exists":
        return (value is not _MISSING and value is not None) == bool(arg)
    if op == "$eq":
        return _equals(value, arg)
    if op == "$ne":
        return not _equals(value, arg)
    if op == "$in":
        return any(_equals(value, candidate) for candidate in arg)
    if op == "$nin":
        return not any(_equals(value, candidate) for candidate in arg)
    if value is _MISSING or value is None or arg is None:
        return False
    try:
        if op == "$lt":
            return value < arg
        if op == "$lte":
            return value <= arg
        if op == "$gt":
            return value > arg
        if op == "$gte":
            return value >= arg
    except TypeError:
        return False
    raise ValueError(f"Unsupported filter operator: {op}")


def _equals(value: Any, arg: Any) -> bool:
    if value is _MISSING:
        return arg is None
    if isinstance(value, list) and not isinstance(arg, list):
        return arg in value
    return value == arg


def _is_operator_dict(cond: Any) -> bool:
    return isinstance(cond, dict) and bool(cond) and all(str(k).startswith("$") for k in cond)


def matches(row: Dict[str, Any], query: Optional[Filter]) -> bool:
    if not query:
        return True
    for key, cond in query.items():
        if key == "$or":
            if not any(matches(row, sub) for sub in cond):
                return False
            continue
        if key == "$and":
            if not all(matches(row, sub) for sub in cond):
                return False
            continue
        value = row.get(key, _MISSING)
        if _is_operator_dict(cond):
            if not all(_compare(value, op, arg) for op, arg in cond.items()):
                return False
        elif not _equals(value, cond):
            return False
    return True


def _sort_value(value: Any) -> Tuple[bool, Any]:
    # None sorts first ascending, as MongoDB does with null
    return (value is not None, value)


def sort_rows(rows: Iterable[Dict[str, Any]], order: Optional[Order]) -> List[Dict[str, Any]]:
    result = list(rows)
    for field, direction in reversed(list(order or ())):
        result.sort(key=lambda r: _sort_value(r.get(field)), reverse=direction == DESCENDING)
    return result


__all__ = ["ASCENDING", "DESCENDING", "Filter", "Order", "matches", "sort_rows"]
