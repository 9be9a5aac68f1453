"""SQL rendering differences between the storage engines.

Field paths handed to the JSON helpers are validated dotted identifiers, so
they are inlined into the SQL text. Values always go through QueryParams.
"""

import json
from abc import ABC, abstractmethod
from typing import Any


class QueryParams:
    """Ordered bind parameters that render engine-specific placeholders."""

    def __init__(self, style: str):
        self._style = style
        self.values: list[Any] = []

    def add(self, value: Any) -> str:
        """Append a value and return its placeholder ("$3" or "?")."""
        self.values.append(value)
        if self._style == "numeric":
            return f"${len(self.values)}"
        return "?"


class SqlDialect(ABC):
    name: str = ""
    placeholder_style: str = "qmark"

    def new_params(self) -> QueryParams:
        return QueryParams(self.placeholder_style)

    @abstractmethod
    def json_text(self, column: str, path: str) -> str:
        """Expression reading a JSON path as text (NULL when missing)."""
        pass

    @abstractmethod
    def json_number(self, column: str, path: str) -> str:
        """Expression reading a JSON path as a number, NULL unless the JSON value is numeric."""
        pass

    @abstractmethod
    def json_any_of(self, column: str, path: str, placeholders: list[str]) -> str:
        """Condition true when the JSON array (or scalar) at path shares an element with the placeholders."""
        pass

    @abstractmethod
    def distance_expr(self, column: str, placeholder: str) -> str:
        """Cosine distance between a stored vector column and a bound query vector."""
        pass

    @abstractmethod
    def valid_number(self, expr: str) -> str:
        """Condition rejecting undefined scores (zero-norm vectors)."""
        pass

    def text_literal(self, value: Any) -> str:
        """Render a scalar the way json_text() reads the same JSON value back."""
        if isinstance(value, str):
            return value
        return json.dumps(value)


class PostgresDialect(SqlDialect):
    name = "postgres"
    placeholder_style = "numeric"

    def _path(self, path: str) -> str:
        return "'{" + ",".join(path.split(".")) + "}'"

    def json_text(self, column: str, path: str) -> str:
        return f"({column} #>> {self._path(path)})"

    def json_number(self, column: str, path: str) -> str:
        p = self._path(path)
        return (
            f"(CASE WHEN jsonb_typeof({column} #> {p}) = 'number' "
            f"THEN ({column} #>> {p})::double precision END)"
        )

    def json_any_of(self, column: str, path: str, placeholders: list[str]) -> str:
        p = self._path(path)
        return (
            f"EXISTS (SELECT 1 FROM jsonb_array_elements_text("
            f"CASE WHEN jsonb_typeof({column} #> {p}) = 'array' THEN {column} #> {p} "
            f"ELSE jsonb_build_array({column} #> {p}) END) AS elem(val) "
            f"WHERE elem.val IN ({', '.join(placeholders)}))"
        )

    def distance_expr(self, column: str, placeholder: str) -> str:
        return f"({column} <=> {placeholder})"

    def valid_number(self, expr: str) -> str:
        # pgvector yields NaN for zero vectors, and NaN sorts above every number
        return f"{expr} <> 'NaN'::double precision"


class SqliteDialect(SqlDialect):
    name = "sqlite"
    placeholder_style = "qmark"

    def _path(self, path: str) -> str:
        return f"'$.{path}'"

    def json_text(self, column: str, path: str) -> str:
        return f"CAST(json_extract({column}, {self._path(path)}) AS TEXT)"

    def json_number(self, column: str, path: str) -> str:
        p = self._path(path)
        return (
            f"(CASE WHEN json_type({column}, {p}) IN ('integer', 'real') "
            f"THEN json_extract({column}, {p}) END)"
        )

    def json_any_of(self, column: str, path: str, placeholders: list[str]) -> str:
        return (
            f"EXISTS (SELECT 1 FROM json_each({column}, {self._path(path)}) AS elem "
            f"WHERE CAST(elem.value AS TEXT) IN ({', '.join(placeholders)}))"
        )

    def distance_expr(self, column: str, placeholder: str) -> str:
        return f"knowledge_cosine_distance({column}, {placeholder})"

    def valid_number(self, expr: str) -> str:
        return f"{expr} IS NOT NULL"

    def text_literal(self, value: Any) -> str:
        # json_extract yields 1/0 for JSON booleans
        if isinstance(value, bool):
            return "1" if value else "0"
        return super().text_literal(value)
