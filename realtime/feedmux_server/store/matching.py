"""
Query evaluation for the in-memory document store.

Pure functions with no I/O - fully testable. They implement the subset of
MongoDB query and aggregation semantics the in-memory backend supports:

- Filters: equality, dotted paths, $eq $ne $gt $gte $lt $lte $in $nin $exists,
  logical $and $or $nor, array fields matching any element
- Pipelines: $match, $sort, $skip, $limit, $project
"""

from __future__ import annotations

import copy
from typing import Any, Iterable, Mapping, Sequence

from .base import StoreOperationError

_MISSING = object()

SUPPORTED_STAGES = ("$match", "$sort", "$skip", "$limit", "$project")


def get_path(document: Mapping[str, Any], path: str) -> Any:
    """Resolve a dotted path, returning _MISSING when any segment is absent."""
    current: Any = document
    for segment in path.split("."):
        if isinstance(current, Mapping):
            if segment not in current:
                return _MISSING
            current = current[segment]
        elif isinstance(current, list) and segment.isdigit():
            index = int(segment)
            if index >= len(current):
                return _MISSING
            current = current[index]
        else:
            return _MISSING
    return current


def _compare(actual: Any, expected: Any, op: str) -> bool:
    if actual is _MISSING or actual is None or expected is None:
        return False
    try:
        if op == "$gt":
            return actual > expected
        if op == "$gte":
            return actual >= expected
        if op == "$lt":
            return actual < expected
        return actual <= expected
    except TypeError:
        return False


def _equals(actual: Any, expected: Any) -> bool:
    if actual is _MISSING:
        return expected is None
    if actual == expected:
        return True
    if isinstance(actual, list) and not isinstance(expected, list):
        return expected in actual
    return False


def _match_operators(actual: Any, condition: Mapping[str, Any]) -> bool:
    for op, operand in condition.items():
        if op == "$eq":
            ok = _equals(actual, operand)
        elif op == "$ne":
            ok = not _equals(actual, operand)
        elif op in ("$gt", "$gte", "$lt", "$lte"):
            if isinstance(actual, list):
                ok = any(_compare(item, operand, op) for item in actual)
            else:
                ok = _compare(actual, operand, op)
        elif op == "$in":
            ok = any(_equals(actual, candidate) for candidate in operand)
        elif op == "$nin":
            ok = not any(_equals(actual, candidate) for candidate in operand)
        elif op == "$exists":
            ok = (actual is not _MISSING) == bool(operand)
        else:
            raise StoreOperationError(f"Unsupported query operator: {op}")
        if not ok:
            return False
    return True


def matches(document: Mapping[str, Any], query: Mapping[str, Any]) -> bool:
    """Check whether a document satisfies a filter.

    Args:
        document: Document to test
        query: MongoDB-style filter

    Returns:
        True if every clause matches

    Raises:
        StoreOperationError: On unsupported operators
    """
    for key, condition in query.items():
        if key == "$and":
            if not all(matches(document, sub) for sub in condition):
                return False
        elif key == "$or":
            if not any(matches(document, sub) for sub in condition):
                return False
        elif key == "$nor":
            if any(matches(document, sub) for sub in condition):
                return False
        elif key.startswith("$"):
            raise StoreOperationError(f"Unsupported top-level operator: {key}")
        else:
            actual = get_path(document, key)
            if (
                isinstance(condition, Mapping)
                and condition
                and all(k.startswith("$") for k in condition)
            ):
                if not _match_operators(actual, condition):
                    return False
            elif not _equals(actual, condition):
                return False
    return True


def sort_documents(
    documents: Iterable[Mapping[str, Any]],
    sort: Sequence[tuple[str, int]],
) -> list[dict[str, Any]]:
    """Stable multi-key sort; missing and null values sort first ascending."""
    result = [dict(d) for d in documents]
    for field_name, direction in reversed(list(sort)):
        def key(doc: Mapping[str, Any], _field: str = field_name) -> tuple:
            value = get_path(doc, _field)
            if value is _MISSING or value is None:
                return (0, 0)
            return (1, value)

        try:
            result.sort(key=key, reverse=direction < 0)
        except TypeError:
            raise StoreOperationError(f"Cannot sort mixed value types in field {field_name}")
    return result


def project(document: Mapping[str, Any], projection: Mapping[str, Any]) -> dict[str, Any]:
    """Apply a top-level inclusion or exclusion projection."""
    fields = {k: v for k, v in projection.items() if k != "_id"}
    include_id = bool(projection.get("_id", 1))

    if not fields:
        if include_id and "_id" in projection:
            return {"_id": document["_id"]} if "_id" in document else {}
        result = dict(document)
        if not include_id:
            result.pop("_id", None)
        return result

    modes = {bool(v) for v in fields.values()}
    if len(modes) > 1:
        raise StoreOperationError("Projection cannot mix inclusion and exclusion")

    if modes == {True}:
        result = {k: document[k] for k in fields if k in document}
        if include_id and "_id" in document:
            result = {"_id": document["_id"], **result}
        return result

    result = {k: v for k, v in document.items() if k not in fields}
    if not include_id:
        result.pop("_id", None)
    return result


def apply_pipeline(
    documents: Iterable[Mapping[str, Any]],
    pipeline: Sequence[Mapping[str, Any]],
) -> list[dict[str, Any]]:
    """Run an aggregation pipeline over documents.

    Returns deep copies; the input documents are never modified.

    Raises:
        StoreOperationError: On unsupported or malformed stages
    """
    result = [copy.deepcopy(dict(d)) for d in documents]

    for stage in pipeline:
        if not isinstance(stage, Mapping) or len(stage) != 1:
            raise StoreOperationError(f"Pipeline stage must have exactly one operator: {stage}")
        (name, arg), = stage.items()

        if name == "$match":
            result = [d for d in result if matches(d, arg)]
        elif name == "$sort":
            if not isinstance(arg, Mapping):
                raise StoreOperationError("$sort requires an object")
            result = sort_documents(result, list(arg.items()))
        elif name == "$skip":
            result = result[int(arg):]
        elif name == "$limit":
            result = result[: int(arg)]
        elif name == "$project":
            result = [project(d, arg) for d in result]
        else:
            raise StoreOperationError(
                f"Unsupported pipeline stage {name}; supported: {', '.join(SUPPORTED_STAGES)}"
            )

    return result


def change_matches(change: Mapping[str, Any], pipeline: Sequence[Mapping[str, Any]]) -> bool:
    """Check a change event dict against a watch pipeline.

    Only $match stages filter events; a change stream pipeline with other
    stages is rejected.
    """
    for stage in pipeline:
        if not isinstance(stage, Mapping) or len(stage) != 1:
            raise StoreOperationError(f"Pipeline stage must have exactly one operator: {stage}")
        (name, arg), = stage.items()
        if name != "$match":
            raise StoreOperationError(f"Unsupported change stream stage: {name}")
        if not matches(change, arg):
            return False
    return True
