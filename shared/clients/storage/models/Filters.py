"""Metadata filter predicates.

A filter mapping such as ``{"source": "remote", "year": {"$gte": 2020}}`` is
parsed into a flat list of tagged operators. A literal value means equality.
Unknown operator keys are ignored, so an operator object without any known
key adds no condition.
"""

import re
from typing import Any, Literal, Union

from pydantic import BaseModel

from shared.exceptions import ValidationError

FIELD_PATH_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)*$")

Scalar = Union[str, int, float, bool, None]


class Eq(BaseModel):
    op: Literal["$eq"] = "$eq"
    field: str
    value: Scalar


class Ne(BaseModel):
    op: Literal["$ne"] = "$ne"
    field: str
    value: Scalar


class Gt(BaseModel):
    op: Literal["$gt"] = "$gt"
    field: str
    value: float


class Gte(BaseModel):
    op: Literal["$gte"] = "$gte"
    field: str
    value: float


class Lt(BaseModel):
    op: Literal["$lt"] = "$lt"
    field: str
    value: float


class Lte(BaseModel):
    op: Literal["$lte"] = "$lte"
    field: str
    value: float


class In(BaseModel):
    op: Literal["$in"] = "$in"
    field: str
    values: list[Scalar]


class Contains(BaseModel):
    op: Literal["$contains"] = "$contains"
    field: str
    values: list[Scalar]


FilterOp = Union[Eq, Ne, Gt, Gte, Lt, Lte, In, Contains]

_COMPARISONS = {"$gt": Gt, "$gte": Gte, "$lt": Lt, "$lte": Lte}


def _is_scalar(value: Any) -> bool:
    return value is None or isinstance(value, (str, int, float, bool))


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _parse_operator(field: str, op: str, value: Any) -> FilterOp | None:
    if op in ("$eq", "$ne"):
        if not _is_scalar(value):
            raise ValidationError(f"Filter '{field}': {op} expects a scalar value.")
        return Eq(field=field, value=value) if op == "$eq" else Ne(field=field, value=value)
    if op in _COMPARISONS:
        if not _is_number(value):
            raise ValidationError(f"Filter '{field}': {op} expects a number, got {value!r}.")
        return _COMPARISONS[op](field=field, value=float(value))
    if op == "$in":
        if not isinstance(value, list) or not all(_is_scalar(v) for v in value):
            raise ValidationError(f"Filter '{field}': $in expects a list of scalars.")
        return In(field=field, values=value)
    if op == "$contains":
        values = value if isinstance(value, list) else [value]
        if not all(_is_scalar(v) for v in values):
            raise ValidationError(f"Filter '{field}': $contains expects scalars.")
        return Contains(field=field, values=values)
    # unknown operator
    return None


def parse_filters(filters: dict[str, Any] | None) -> list[FilterOp]:
    """Parse a filter mapping into tagged operators.

    Args:
        filters (dict[str, Any] | None): Mapping of dotted metadata path to a literal or an operator object.

    Returns:
        list[FilterOp]: One operator per recognised condition, in input order.

    Raises:
        ValidationError: On an invalid field path or a malformed operator value.
    """
    if not filters:
        return []
    if not isinstance(filters, dict):
        raise ValidationError("Filters must be an object mapping field paths to conditions.")

    ops: list[FilterOp] = []
    for field, condition in filters.items():
        if not isinstance(field, str) or not FIELD_PATH_PATTERN.match(field):
            raise ValidationError(f"Invalid filter field path: {field!r}.")
        if isinstance(condition, dict):
            for op, value in condition.items():
                parsed = _parse_operator(field, op, value)
                if parsed is not None:
                    ops.append(parsed)
        elif _is_scalar(condition):
            ops.append(Eq(field=field, value=condition))
        else:
            raise ValidationError(f"Filter '{field}': use $in or $contains for list values.")
    return ops
