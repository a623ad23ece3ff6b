"""Predicate trees for listing endpoints.

A filter is a tree of groups and leaves, passed as JSON in `?filters=`:

    {
      "op": "AND",
      "conditions": [
        {"op": "OR", "conditions": [
          {"field": "service_tag", "op": "ILIKE", "values": ["TEST", "DEMO"]},
          {"field": "issue", "op": "ILIKE", "values": ["Fan"]}
        ]},
        {"field": "location_id", "op": "IN", "values": [1, 2]}
      ]
    }

Leaf operators:
    =  <>  >  <  >=  <=     compare; several values are OR-ed
    IN  NOT IN              membership in `values`
    ILIKE  LIKE             substring match; several values are OR-ed
    IS NULL  IS NOT NULL    `values` not required

Fields are looked up in a per-listing whitelist of column expressions, so
client input never reaches the SQL text.  Values are coerced to the
column's Python type before binding.
"""

from __future__ import annotations

import json
import operator
from datetime import date, datetime
from typing import Any

from sqlalchemy import String, and_, cast, or_, true
from sqlalchemy.sql.elements import ColumnElement

from app.middleware.exceptions import InvalidInputError

_COMPARE_OPS = {
    "=": operator.eq,
    "<>": operator.ne,
    "!=": operator.ne,
    ">": operator.gt,
    "<": operator.lt,
    ">=": operator.ge,
    "<=": operator.le,
}
_GROUP_OPS = {"AND": and_, "OR": or_}


def parse_filters(raw: str | dict | None) -> dict | None:
    """Decode the `filters` query parameter."""
    if raw is None or raw == "":
        return None
    if isinstance(raw, dict):
        return raw
    try:
        parsed = json.loads(raw)
    except ValueError:
        raise InvalidInputError("filters must be valid JSON")
    if not isinstance(parsed, dict):
        raise InvalidInputError("filters must be a JSON object")
    return parsed


def _python_type(column: ColumnElement) -> type | None:
    try:
        return column.type.python_type
    except NotImplementedError:
        return None


def _coerce(column: ColumnElement, value: Any) -> Any:
    if value is None:
        return None
    py_type = _python_type(column)
    try:
        if py_type is bool:
            if isinstance(value, str):
                return value.strip().lower() in ("1", "true", "yes")
            return bool(value)
        if py_type is int:
            return int(value)
        if py_type is float:
            return float(value)
        if py_type is datetime:
            return value if isinstance(value, datetime) else datetime.fromisoformat(str(value))
        if py_type is date:
            return value if isinstance(value, date) else date.fromisoformat(str(value))
        if py_type is str:
            return str(value)
    except (TypeError, ValueError):
        raise InvalidInputError(f"Invalid filter value: {value!r}")
    return value


def _build_leaf(cond: dict, columns: dict[str, ColumnElement]):
    field = cond.get("field")
    if field not in columns:
        raise InvalidInputError(
            f"Unknown filter field: {field}",
            details={"allowed_fields": sorted(columns)},
        )
    column = columns[field]
    op = str(cond.get("op") or "=").upper()
    values = cond.get("values", [])
    if not isinstance(values, list):
        values = [values]

    if op == "IS NULL":
        return column.is_(None)
    if op == "IS NOT NULL":
        return column.isnot(None)
    if op == "IN":
        return column.in_([_coerce(column, v) for v in values])
    if op == "NOT IN":
        return column.not_in([_coerce(column, v) for v in values])

    if not values:
        raise InvalidInputError(f"Filter on {field} needs at least one value")

    if op in ("ILIKE", "LIKE"):
        target = column if _python_type(column) is str else cast(column, String)
        match = target.ilike if op == "ILIKE" else target.like
        return or_(*[match(f"%{v}%") for v in values])

    compare = _COMPARE_OPS.get(op)
    if compare is None:
        raise InvalidInputError(f"Unsupported filter operator: {op}")
    return or_(*[compare(column, _coerce(column, v)) for v in values])


def build_where(group: dict, columns: dict[str, ColumnElement]):
    """Turn a filter tree into one SQLAlchemy boolean expression."""
    if "field" in group and "conditions" not in group:
        return _build_leaf(group, columns)

    op = str(group.get("op") or "AND").upper()
    combine = _GROUP_OPS.get(op)
    if combine is None:
        raise InvalidInputError(f"Unsupported group operator: {op}")

    conditions = group.get("conditions") or []
    clauses = []
    for cond in conditions:
        if not isinstance(cond, dict):
            raise InvalidInputError("Each filter condition must be an object")
        if "conditions" in cond:
            clauses.append(build_where(cond, columns))
        else:
            clauses.append(_build_leaf(cond, columns))

    if not clauses:
        return true()
    return combine(*clauses)


def resolve_sort(
    sort_by: str | None,
    sort_order: str | None,
    columns: dict[str, ColumnElement],
    default: str,
):
    """Whitelisted ORDER BY clause; unknown keys fall back to `default`."""
    column = columns.get(sort_by or "", columns[default])
    if (sort_order or "").lower() == "asc":
        return column.asc()
    return column.desc()
