"""
Table-oriented persistence API used by the order and payment services.

The services talk to the database through ``TableStore``: per-table
``select``/``insert``/``update``/``upsert`` calls driven by a small ``Query``
builder (equality, ``in``, ranges, disjunctions and JSON-path filters such as
``meta->>idempotency_key``). Failures surface as ``StoreError`` subclasses
carrying a PostgreSQL/PostgREST style ``code`` so callers can tell unique
violations, foreign-key violations and unknown columns apart.

``SqlAlchemyTableStore`` implements the protocol on an SQLAlchemy async
engine. Table definitions are reflected lazily into a ``MetaData`` object
which acts as the schema cache: a write naming a column the cached table
does not have raises ``UnknownColumnError`` even if the column has since
been added. The failing table is then evicted from the cache and reflected
again on next use.
"""

import asyncio
import re
import uuid
from abc import ABC, abstractmethod
from copy import deepcopy
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Sequence

from sqlalchemy import MetaData, Numeric, Table, and_, func, insert, or_, select, text, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import DBAPIError, IntegrityError, InvalidRequestError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlalchemy.sql.elements import ColumnElement
from sqlalchemy.types import DateTime, Uuid

from storefront.core.logging import get_logger

logger = get_logger(__name__)

UNIQUE_VIOLATION = "23505"
FOREIGN_KEY_VIOLATION = "23503"
INVALID_TEXT_REPRESENTATION = "22P02"
INVALID_DATETIME_FORMAT = "22007"
UNDEFINED_COLUMN = "42703"
UNDEFINED_TABLE = "42P01"
UNKNOWN_COLUMN = "PGRST204"
MULTIPLE_ROWS = "PGRST116"

_MISSING_COLUMN_PATTERNS = (
    re.compile(r"could not find the '([^']+)' column", re.IGNORECASE),
    re.compile(r'column "([^"]+)"(?: of relation "[^"]+")? does not exist', re.IGNORECASE),
)


class StoreError(Exception):
    """Base exception for persistence failures."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        column: Optional[str] = None,
        **context: Any,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.column = column
        self.context = context

    def mentions(self, fragment: str) -> bool:
        """Check whether the error code or message mentions ``fragment``."""
        fragment = fragment.lower()
        return fragment in (self.message or "").lower() or fragment == (self.code or "").lower()


class UniqueViolationError(StoreError):
    """A write collided with a unique constraint."""


class ForeignKeyViolationError(StoreError):
    """A write referenced a row that does not exist."""


class UnknownColumnError(StoreError):
    """A statement named a column absent from the cached table definition."""


class AmbiguousResultError(StoreError):
    """A single-row read matched more than one row."""


class InvalidValueError(StoreError):
    """A value could not be converted to the column type."""


def missing_column_from_message(message: str) -> Optional[str]:
    """Extract the offending column name from an unknown-column message."""
    for pattern in _MISSING_COLUMN_PATTERNS:
        match = pattern.search(message or "")
        if match:
            return match.group(1)
    return None


def is_unknown_column_error(error: StoreError) -> bool:
    return (
        isinstance(error, UnknownColumnError)
        or error.code in (UNKNOWN_COLUMN, UNDEFINED_COLUMN)
        or error.mentions("could not find the")
    )


@dataclass(frozen=True)
class Condition:
    """A single predicate on a column or on a text field inside a JSON column."""

    column: str
    op: str
    value: Any
    json_key: Optional[str] = None

    OPERATORS = ("eq", "neq", "in", "gte", "lte", "gt", "lt")

    @classmethod
    def parse(cls, path: str, op: str, value: Any) -> "Condition":
        """
        Build a condition from a column path.

        ``"meta->>idempotency_key"`` addresses the text value of the
        ``idempotency_key`` field of the ``meta`` JSON column.
        """
        if op not in cls.OPERATORS:
            raise ValueError(f"Unsupported operator: {op}")
        if "->>" in path:
            column, json_key = path.split("->>", 1)
            return cls(column=column.strip(), op=op, value=value, json_key=json_key.strip())
        return cls(column=path, op=op, value=value)


@dataclass
class Query:
    """Fluent builder for row filters, ordering and pagination."""

    conditions: list[Condition] = field(default_factory=list)
    any_of: list[list[Condition]] = field(default_factory=list)
    ordering: list[tuple[str, bool]] = field(default_factory=list)
    limit_value: Optional[int] = None
    offset_value: int = 0

    def eq(self, path: str, value: Any) -> "Query":
        return self.filter(path, "eq", value)

    def neq(self, path: str, value: Any) -> "Query":
        return self.filter(path, "neq", value)

    def in_(self, path: str, values: Sequence[Any]) -> "Query":
        return self.filter(path, "in", list(values))

    def gte(self, path: str, value: Any) -> "Query":
        return self.filter(path, "gte", value)

    def lte(self, path: str, value: Any) -> "Query":
        return self.filter(path, "lte", value)

    def filter(self, path: str, op: str, value: Any) -> "Query":
        self.conditions.append(Condition.parse(path, op, value))
        return self

    def or_(self, *pairs: tuple[str, Any]) -> "Query":
        """Require at least one of the ``(path, value)`` equalities to hold."""
        self.any_of.append([Condition.parse(path, "eq", value) for path, value in pairs])
        return self

    def order(self, column: str, descending: bool = False) -> "Query":
        self.ordering.append((column, descending))
        return self

    def limit(self, count: int) -> "Query":
        self.limit_value = count
        return self

    def range(self, start: int, end: int) -> "Query":
        """Select rows ``start`` through ``end`` inclusive."""
        self.offset_value = start
        self.limit_value = end - start + 1
        return self

    def copy(self) -> "Query":
        return deepcopy(self)

    @property
    def has_filters(self) -> bool:
        return bool(self.conditions or self.any_of)


class TableStore(ABC):
    """Table read/write operations consumed by the services."""

    @abstractmethod
    async def select(
        self,
        table: str,
        query: Optional[Query] = None,
        columns: Optional[Sequence[str]] = None,
    ) -> list[dict[str, Any]]:
        """Return every row matching ``query``."""

    @abstractmethod
    async def count(self, table: str, query: Optional[Query] = None) -> int:
        """Count rows matching ``query`` (pagination is ignored)."""

    @abstractmethod
    async def insert(self, table: str, values: dict[str, Any]) -> dict[str, Any]:
        """Insert one row and return it as stored."""

    @abstractmethod
    async def update(
        self, table: str, values: dict[str, Any], query: Query
    ) -> list[dict[str, Any]]:
        """Update matching rows and return them as stored."""

    @abstractmethod
    async def upsert(
        self,
        table: str,
        values: dict[str, Any],
        on_conflict: Sequence[str] = ("id",),
    ) -> dict[str, Any]:
        """Insert a row or update the row it conflicts with."""

    @abstractmethod
    async def ping(self) -> None:
        """Raise if the backing store is unreachable."""

    async def select_one(
        self,
        table: str,
        query: Optional[Query] = None,
        columns: Optional[Sequence[str]] = None,
    ) -> Optional[dict[str, Any]]:
        """
        Return the single matching row, or None when nothing matches.

        Raises:
            AmbiguousResultError: If more than one row matches
        """
        limited = (query.copy() if query else Query()).limit(2)
        rows = await self.select(table, limited, columns)
        if len(rows) > 1:
            raise AmbiguousResultError(
                "JSON object requested, multiple rows returned",
                code=MULTIPLE_ROWS,
                table=table,
            )
        return rows[0] if rows else None


def translate_error(error: DBAPIError) -> StoreError:
    """Map a driver error onto the store error taxonomy."""
    orig = getattr(error, "orig", None)
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    message = str(orig) if orig is not None else str(error)
    lowered = message.lower()

    if code == UNIQUE_VIOLATION or (
        code is None
        and isinstance(error, IntegrityError)
        and ("unique" in lowered or "duplicate key" in lowered)
    ):
        return UniqueViolationError(message, code=UNIQUE_VIOLATION)
    if code == FOREIGN_KEY_VIOLATION or "foreign key" in lowered:
        return ForeignKeyViolationError(message, code=FOREIGN_KEY_VIOLATION)
    if code == UNDEFINED_COLUMN:
        return UnknownColumnError(
            message, code=UNDEFINED_COLUMN, column=missing_column_from_message(message)
        )
    if code == INVALID_TEXT_REPRESENTATION:
        return InvalidValueError(message, code=INVALID_TEXT_REPRESENTATION)
    return StoreError(message, code=code)


class SqlAlchemyTableStore(TableStore):
    """
    ``TableStore`` backed by an SQLAlchemy async engine.

    Attributes:
        engine: Async engine used for every statement
        metadata: Schema cache holding reflected (or preloaded) tables
    """

    def __init__(
        self,
        engine: AsyncEngine,
        metadata: Optional[MetaData] = None,
        schema: Optional[str] = None,
    ):
        self.engine = engine
        self.schema = schema
        self.metadata = metadata if metadata is not None else MetaData(schema=schema)
        self._reflect_lock = asyncio.Lock()

    def _table_key(self, name: str) -> str:
        return f"{self.schema}.{name}" if self.schema else name

    def refresh_schema(self, table: Optional[str] = None) -> None:
        """
        Drop cached table definitions so the next access reflects again.

        Args:
            table: Table to evict; every table when omitted
        """
        if table is None:
            self.metadata.clear()
            logger.info("Schema cache cleared")
            return
        cached = self.metadata.tables.get(self._table_key(table))
        if cached is not None:
            self.metadata.remove(cached)
            logger.info("Table evicted from schema cache", table=table)

    async def _table(self, name: str) -> Table:
        key = self._table_key(name)
        table = self.metadata.tables.get(key)
        if table is not None:
            return table

        async with self._reflect_lock:
            table = self.metadata.tables.get(key)
            if table is None:
                try:
                    async with self.engine.connect() as conn:
                        await conn.run_sync(
                            lambda sync_conn: self.metadata.reflect(
                                sync_conn, only=[name], views=True
                            )
                        )
                except InvalidRequestError as e:
                    raise StoreError(
                        f"relation \"{name}\" does not exist",
                        code=UNDEFINED_TABLE,
                        table=name,
                    ) from e
                except DBAPIError as e:
                    raise translate_error(e) from e
                table = self.metadata.tables[key]
                logger.debug("Table reflected into schema cache", table=name)
        return table

    @staticmethod
    def column(table: Table, name: str) -> ColumnElement:
        try:
            return table.c[name]
        except KeyError:
            raise UnknownColumnError(
                f"Could not find the '{name}' column of '{table.name}' in the schema cache",
                code=UNKNOWN_COLUMN,
                column=name,
                table=table.name,
            ) from None

    @staticmethod
    def coerce(column: ColumnElement, value: Any) -> Any:
        """Convert loosely-typed input into the Python type of ``column``."""
        if value is None:
            return None
        column_type = column.type
        if isinstance(column_type, Uuid) and isinstance(value, str):
            try:
                return uuid.UUID(value)
            except ValueError:
                raise InvalidValueError(
                    f'invalid input syntax for type uuid: "{value}"',
                    code=INVALID_TEXT_REPRESENTATION,
                    column=column.name,
                ) from None
        if isinstance(column_type, Numeric) and isinstance(value, (int, float, str)):
            try:
                return Decimal(str(value))
            except InvalidOperation:
                raise InvalidValueError(
                    f'invalid input syntax for type numeric: "{value}"',
                    code=INVALID_TEXT_REPRESENTATION,
                    column=column.name,
                ) from None
        if isinstance(column_type, DateTime) and isinstance(value, str):
            try:
                return datetime.fromisoformat(value.replace("Z", "+00:00"))
            except ValueError:
                raise InvalidValueError(
                    f'invalid input syntax for type timestamp: "{value}"',
                    code=INVALID_DATETIME_FORMAT,
                    column=column.name,
                ) from None
        return value

    def expression(self, table: Table, condition: Condition) -> ColumnElement:
        """Compile a condition into a SQL boolean expression."""
        column = self.column(table, condition.column)

        if condition.json_key is not None:
            target = column[condition.json_key].as_string()
            convert = lambda v: None if v is None else str(v)  # noqa: E731
        else:
            target = column
            convert = lambda v: self.coerce(column, v)  # noqa: E731

        op = condition.op
        if op == "in":
            return target.in_([convert(v) for v in condition.value])
        value = convert(condition.value)
        if op == "eq":
            return target.is_(None) if value is None else target == value
        if op == "neq":
            return target.is_not(None) if value is None else target != value
        if op == "gte":
            return target >= value
        if op == "lte":
            return target <= value
        if op == "gt":
            return target > value
        return target < value

    def where_clause(self, table: Table, query: Optional[Query]) -> list[ColumnElement]:
        if query is None:
            return []
        clauses = [self.expression(table, c) for c in query.conditions]
        for group in query.any_of:
            clauses.append(or_(*[self.expression(table, c) for c in group]))
        return clauses

    def values(self, table: Table, values: dict[str, Any]) -> dict[str, Any]:
        """
        Validate write values against the cached columns and coerce them.

        An unknown column evicts the table from the schema cache, so a column
        added since the table was reflected is visible to the next write.
        """
        try:
            return {
                name: self.coerce(self.column(table, name), value)
                for name, value in values.items()
            }
        except UnknownColumnError:
            self.refresh_schema(table.name)
            raise

    @staticmethod
    def _to_dict(row: Any) -> dict[str, Any]:
        return {
            key: str(value) if isinstance(value, uuid.UUID) else value
            for key, value in dict(row).items()
        }

    async def _fetch(self, statement: Any) -> list[dict[str, Any]]:
        try:
            async with self.engine.begin() as conn:
                result = await conn.execute(statement)
                return [self._to_dict(row) for row in result.mappings().all()]
        except DBAPIError as e:
            error = translate_error(e)
            logger.warning(
                "Statement failed",
                code=error.code,
                error=error.message,
            )
            if isinstance(error, UnknownColumnError):
                self.refresh_schema()
            raise error from e
        except SQLAlchemyError as e:
            raise StoreError(str(e)) from e

    async def select(
        self,
        table: str,
        query: Optional[Query] = None,
        columns: Optional[Sequence[str]] = None,
    ) -> list[dict[str, Any]]:
        target = await self._table(table)
        projection = [self.column(target, c) for c in columns] if columns else [target]
        statement = select(*projection)

        clauses = self.where_clause(target, query)
        if clauses:
            statement = statement.where(and_(*clauses))
        if query is not None:
            for name, descending in query.ordering:
                col = self.column(target, name)
                statement = statement.order_by(col.desc() if descending else col.asc())
            if query.offset_value:
                statement = statement.offset(query.offset_value)
            if query.limit_value is not None:
                statement = statement.limit(query.limit_value)

        return await self._fetch(statement)

    async def count(self, table: str, query: Optional[Query] = None) -> int:
        target = await self._table(table)
        statement = select(func.count()).select_from(target)
        clauses = self.where_clause(target, query)
        if clauses:
            statement = statement.where(and_(*clauses))
        try:
            async with self.engine.connect() as conn:
                return int((await conn.execute(statement)).scalar_one())
        except DBAPIError as e:
            raise translate_error(e) from e

    async def insert(self, table: str, values: dict[str, Any]) -> dict[str, Any]:
        target = await self._table(table)
        statement = insert(target).values(**self.values(target, values)).returning(*target.c)
        rows = await self._fetch(statement)
        return rows[0]

    async def update(
        self, table: str, values: dict[str, Any], query: Query
    ) -> list[dict[str, Any]]:
        if not query.has_filters:
            raise StoreError("UPDATE requires a WHERE clause", code="21000", table=table)
        target = await self._table(table)
        statement = (
            update(target)
            .where(and_(*self.where_clause(target, query)))
            .values(**self.values(target, values))
            .returning(*target.c)
        )
        return await self._fetch(statement)

    async def upsert(
        self,
        table: str,
        values: dict[str, Any],
        on_conflict: Sequence[str] = ("id",),
    ) -> dict[str, Any]:
        target = await self._table(table)
        params = self.values(target, values)
        statement = pg_insert(target).values(**params)
        statement = statement.on_conflict_do_update(
            index_elements=[self.column(target, c) for c in on_conflict],
            set_={name: statement.excluded[name] for name in params},
        ).returning(*target.c)
        rows = await self._fetch(statement)
        return rows[0]

    async def ping(self) -> None:
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except DBAPIError as e:
            raise translate_error(e) from e
