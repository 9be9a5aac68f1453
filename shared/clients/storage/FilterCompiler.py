from typing import Any

from shared.clients.storage.SqlDialect import QueryParams, SqlDialect
from shared.clients.storage.models.Filters import (
    Contains,
    Eq,
    FilterOp,
    Gt,
    Gte,
    In,
    Lt,
    Lte,
    Ne,
    parse_filters,
)

_COMPARATORS = {Gt: ">", Gte: ">=", Lt: "<", Lte: "<="}

# condition that never matches, used for empty sets
_NEVER = "1 = 0"


class FilterCompiler:
    """Compiles metadata filters into SQL conditions over a JSON column."""

    def __init__(self, dialect: SqlDialect):
        self._dialect = dialect

    def compile(self, filters: dict[str, Any] | list[FilterOp] | None, params: QueryParams, column: str = "metadata") -> list[str]:
        """Translate filters into SQL conditions, binding values into params.

        Args:
            filters (dict[str, Any] | list[FilterOp] | None): Raw filter mapping or already parsed operators.
            params (QueryParams): Parameter list the placeholders are appended to.
            column (str): The JSON metadata column expression.

        Returns:
            list[str]: Conditions to be joined with AND.

        Raises:
            ValidationError: If the raw filter mapping is malformed.
        """
        ops = filters if isinstance(filters, list) else parse_filters(filters)
        return [self._compile_op(op, params, column) for op in ops]

    def _compile_op(self, op: FilterOp, params: QueryParams, column: str) -> str:
        d = self._dialect
        if isinstance(op, Eq):
            if op.value is None:
                return f"{d.json_text(column, op.field)} IS NULL"
            return f"{d.json_text(column, op.field)} = {params.add(d.text_literal(op.value))}"
        if isinstance(op, Ne):
            field = d.json_text(column, op.field)
            if op.value is None:
                return f"{field} IS NOT NULL"
            # a missing field is "not equal" too
            return f"({field} IS NULL OR {field} <> {params.add(d.text_literal(op.value))})"
        if isinstance(op, (Gt, Gte, Lt, Lte)):
            return f"{d.json_number(column, op.field)} {_COMPARATORS[type(op)]} {params.add(op.value)}"
        if isinstance(op, In):
            values = [v for v in op.values if v is not None]
            conditions = []
            if values:
                placeholders = [params.add(d.text_literal(v)) for v in values]
                conditions.append(f"{d.json_text(column, op.field)} IN ({', '.join(placeholders)})")
            if len(values) != len(op.values):
                conditions.append(f"{d.json_text(column, op.field)} IS NULL")
            if not conditions:
                return _NEVER
            return conditions[0] if len(conditions) == 1 else f"({' OR '.join(conditions)})"
        if isinstance(op, Contains):
            values = [v for v in op.values if v is not None]
            if not values:
                return _NEVER
            placeholders = [params.add(d.text_literal(v)) for v in values]
            return d.json_any_of(column, op.field, placeholders)
        raise TypeError(f"Unsupported filter operator: {op!r}")
