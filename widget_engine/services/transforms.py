from __future__ import annotations

import math
from functools import cmp_to_key
from statistics import median
from typing import Any

from widget_engine.errors import MalformedResponseError
from widget_engine.schemas import ResultTransform, TransformFilter, TransformMetric, TransformSort


def get_path(record: Any, path: str) -> Any:
    current = record
    for part in path.split("."):
        if isinstance(current, dict):
            current = current.get(part)
        elif isinstance(current, list) and part.isdigit():
            index = int(part)
            current = current[index] if index < len(current) else None
        else:
            return None
        if current is None:
            return None
    return current


def _as_number(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return None if math.isnan(number) else number


def _loose_equal(left: Any, right: Any) -> bool:
    if left == right:
        return True
    if left is None or right is None:
        return False
    left_number, right_number = _as_number(left), _as_number(right)
    if left_number is not None and right_number is not None:
        return left_number == right_number
    return str(left) == str(right)


def _compare_numbers(value: Any, expected: Any, op: str) -> bool:
    left, right = _as_number(value), _as_number(expected)
    if left is None or right is None:
        return False
    if op == "gt":
        return left > right
    if op == "lt":
        return left < right
    if op == "gte":
        return left >= right
    return left <= right


def _matches(record: Any, condition: TransformFilter) -> bool:
    value = get_path(record, condition.field)
    expected = condition.value
    op = condition.op
    if op == "eq":
        return _loose_equal(value, expected)
    if op == "neq":
        return not _loose_equal(value, expected)
    if op in {"gt", "lt", "gte", "lte"}:
        return _compare_numbers(value, expected, op)
    if op in {"contains", "not_contains", "starts_with", "ends_with"}:
        if value is None:
            return op == "not_contains"
        haystack, needle = str(value).lower(), str(expected).lower()
        if op == "contains":
            return needle in haystack
        if op == "not_contains":
            return needle not in haystack
        if op == "starts_with":
            return haystack.startswith(needle)
        return haystack.endswith(needle)
    if op == "in":
        return isinstance(expected, list) and any(_loose_equal(value, item) for item in expected)
    if op == "not_in":
        return not isinstance(expected, list) or not any(_loose_equal(value, item) for item in expected)
    if op == "is_null":
        return value is None
    return value is not None


def _numbers(records: list[Any], field: str | None) -> list[float]:
    if field is None:
        return []
    values = (_as_number(get_path(record, field)) for record in records)
    return [value for value in values if value is not None]


def _hashable(value: Any) -> Any:
    if isinstance(value, (dict, list)):
        return repr(value)
    return value


def _compute_metric(records: list[Any], metric: TransformMetric) -> Any:
    fn = metric.fn
    if fn == "count":
        if metric.field is None:
            return len(records)
        return sum(1 for record in records if get_path(record, metric.field) is not None)
    if fn == "count_distinct":
        return len({_hashable(get_path(record, metric.field)) for record in records}) if metric.field else 0
    if fn == "concat":
        if metric.field is None:
            return ""
        values = (get_path(record, metric.field) for record in records)
        return metric.separator.join(str(value) for value in values if value is not None)

    numbers = _numbers(records, metric.field)
    if fn == "sum":
        return sum(numbers)
    if not numbers:
        return None
    if fn == "avg":
        return sum(numbers) / len(numbers)
    if fn == "min":
        return min(numbers)
    if fn == "max":
        return max(numbers)
    return median(numbers)


def _aggregate(records: list[Any], group_by: list[str], metrics: list[TransformMetric]) -> list[dict[str, Any]]:
    if not group_by:
        return [{metric.output_name: _compute_metric(records, metric) for metric in metrics}]

    groups: dict[tuple[Any, ...], list[Any]] = {}
    keys: dict[tuple[Any, ...], list[Any]] = {}
    for record in records:
        values = [get_path(record, field) for field in group_by]
        group_key = tuple(_hashable(value) for value in values)
        groups.setdefault(group_key, []).append(record)
        keys.setdefault(group_key, values)

    output: list[dict[str, Any]] = []
    for group_key, members in groups.items():
        row: dict[str, Any] = dict(zip(group_by, keys[group_key]))
        for metric in metrics:
            row[metric.output_name] = _compute_metric(members, metric)
        output.append(row)
    return output


def _compare_values(left: Any, right: Any) -> int:
    left_number, right_number = _as_number(left), _as_number(right)
    if left_number is not None and right_number is not None:
        return (left_number > right_number) - (left_number < right_number)
    left_text, right_text = str(left), str(right)
    return (left_text > right_text) - (left_text < right_text)


def _sort(records: list[Any], sort: list[TransformSort]) -> list[Any]:
    def compare(left: Any, right: Any) -> int:
        for key in sort:
            left_value, right_value = get_path(left, key.field), get_path(right, key.field)
            if left_value is None and right_value is None:
                continue
            # Nulls sort last in both directions.
            if left_value is None:
                return 1
            if right_value is None:
                return -1
            result = _compare_values(left_value, right_value)
            if result:
                return -result if key.direction == "desc" else result
        return 0

    return sorted(records, key=cmp_to_key(compare))


def apply_transform(data: Any, transform: ResultTransform) -> Any:
    """Reshape a normalized result. Steps run in the order the transform fields are declared."""
    records: Any = data
    if transform.root:
        records = get_path(data, transform.root)
        if records is None:
            raise MalformedResponseError(message=f"Result has no value at '{transform.root}'")
    if records is None:
        return None
    if not isinstance(records, list):
        records = [records]

    if transform.select:
        records = [
            {name: get_path(record, path) for name, path in transform.select.items()}
            for record in records
        ]
    if transform.filters:
        records = [record for record in records if all(_matches(record, item) for item in transform.filters)]
    if transform.group_by or transform.metrics:
        records = _aggregate(records, transform.group_by, transform.metrics)
    if transform.sort:
        records = _sort(records, transform.sort)
    if transform.limit is not None:
        records = records[: transform.limit]
    return records
