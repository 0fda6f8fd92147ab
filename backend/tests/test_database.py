"""
Tests for the table store query builder, the SQLAlchemy adapter and error
translation.
"""

import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from sqlalchemy import Column, DateTime, MetaData, Numeric, String, Table, Uuid, and_
from sqlalchemy.dialects import postgresql
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.exc import DBAPIError, IntegrityError

from storefront.database.connection import convert_database_url_to_async
from storefront.database.store import (
    FOREIGN_KEY_VIOLATION,
    UNIQUE_VIOLATION,
    UNKNOWN_COLUMN,
    AmbiguousResultError,
    Condition,
    ForeignKeyViolationError,
    InvalidValueError,
    Query,
    SqlAlchemyTableStore,
    StoreError,
    UniqueViolationError,
    UnknownColumnError,
    is_unknown_column_error,
    missing_column_from_message,
    translate_error,
)
from tests.fakes import FakeTableStore


class TestCondition:
    def test_plain_column(self):
        condition = Condition.parse("user_id", "eq", "u1")

        assert condition.column == "user_id"
        assert condition.json_key is None

    def test_json_path(self):
        condition = Condition.parse("meta->>idempotency_key", "eq", "k1")

        assert condition.column == "meta"
        assert condition.json_key == "idempotency_key"

    def test_unsupported_operator(self):
        with pytest.raises(ValueError):
            Condition.parse("status", "like", "deliv%")


class TestQuery:
    def test_builder_chains(self):
        query = (
            Query()
            .eq("user_id", "u1")
            .filter("meta->>client_ts", "eq", "123")
            .or_(("user_id", "u1"), ("vendor_id", "u1"))
            .order("created_at", descending=True)
            .range(20, 39)
        )

        assert len(query.conditions) == 2
        assert len(query.any_of) == 1
        assert query.ordering == [("created_at", True)]
        assert query.offset_value == 20
        assert query.limit_value == 20
        assert query.has_filters

    def test_copy_is_independent(self):
        query = Query().eq("status", "processing")
        copied = query.copy().eq("user_id", "u1")

        assert len(query.conditions) == 1
        assert len(copied.conditions) == 2

    def test_empty_query_has_no_filters(self):
        assert not Query().limit(5).has_filters


class TestSelectOne:
    @pytest.mark.asyncio
    async def test_returns_none_when_nothing_matches(self):
        store = FakeTableStore()

        assert await store.select_one("orders", Query().eq("id", "missing")) is None

    @pytest.mark.asyncio
    async def test_raises_on_several_rows(self):
        store = FakeTableStore()
        store.seed("orders", user_id="u1", total_amount=10)
        store.seed("orders", user_id="u1", total_amount=20)

        with pytest.raises(AmbiguousResultError):
            await store.select_one("orders", Query().eq("user_id", "u1"))


def _dbapi_error(cls, message, sqlstate=None):
    orig = MagicMock()
    orig.sqlstate = sqlstate
    orig.pgcode = None
    orig.__str__.return_value = message
    return cls("INSERT ...", {}, orig)


class TestTranslateError:
    def test_unique_violation_by_sqlstate(self):
        error = translate_error(
            _dbapi_error(IntegrityError, "duplicate key value", sqlstate=UNIQUE_VIOLATION)
        )

        assert isinstance(error, UniqueViolationError)
        assert error.code == UNIQUE_VIOLATION

    def test_unique_violation_by_message(self):
        error = translate_error(
            _dbapi_error(IntegrityError, 'duplicate key value violates unique constraint "x"')
        )

        assert isinstance(error, UniqueViolationError)

    def test_foreign_key_violation(self):
        error = translate_error(
            _dbapi_error(IntegrityError, "violates foreign key", sqlstate=FOREIGN_KEY_VIOLATION)
        )

        assert isinstance(error, ForeignKeyViolationError)

    def test_undefined_column(self):
        error = translate_error(
            _dbapi_error(
                DBAPIError,
                'column "delivered_at" of relation "orders" does not exist',
                sqlstate="42703",
            )
        )

        assert isinstance(error, UnknownColumnError)
        assert error.column == "delivered_at"

    def test_invalid_text_representation(self):
        error = translate_error(
            _dbapi_error(DBAPIError, 'invalid input syntax for type uuid: "abc"', sqlstate="22P02")
        )

        assert isinstance(error, InvalidValueError)

    def test_other_errors_keep_their_code(self):
        error = translate_error(_dbapi_error(DBAPIError, "deadlock detected", sqlstate="40P01"))

        assert type(error) is StoreError
        assert error.code == "40P01"


class TestUnknownColumnDetection:
    def test_missing_column_from_cache_message(self):
        message = "Could not find the 'shipping_coordinates' column of 'orders' in the schema cache"

        assert missing_column_from_message(message) == "shipping_coordinates"

    def test_missing_column_from_postgres_message(self):
        assert missing_column_from_message('column "foo" does not exist') == "foo"

    def test_no_column_in_message(self):
        assert missing_column_from_message("something else") is None

    def test_detection_by_code_or_message(self):
        assert is_unknown_column_error(StoreError("x", code=UNKNOWN_COLUMN))
        assert is_unknown_column_error(StoreError("Could not find the 'a' column of 'b'"))
        assert not is_unknown_column_error(StoreError("x", code=UNIQUE_VIOLATION))


def test_database_url_conversion():
    assert (
        convert_database_url_to_async("postgresql://u:p@h/db")
        == "postgresql+asyncpg://u:p@h/db"
    )
    assert (
        convert_database_url_to_async("postgresql+asyncpg://u:p@h/db")
        == "postgresql+asyncpg://u:p@h/db"
    )


def orders_metadata() -> MetaData:
    metadata = MetaData()
    Table(
        "orders",
        metadata,
        Column("id", Uuid, primary_key=True),
        Column("user_id", Uuid),
        Column("vendor_id", Uuid),
        Column("status", String(32)),
        Column("total_amount", Numeric(12, 2)),
        Column("meta", JSONB),
        Column("created_at", DateTime(timezone=True)),
    )
    return metadata


def compile_clause(clause):
    compiled = clause.compile(dialect=postgresql.dialect())
    return str(compiled), compiled.params


@pytest.fixture
def sql_store():
    return SqlAlchemyTableStore(MagicMock(), metadata=orders_metadata())


@pytest.fixture
def orders_table(sql_store):
    return sql_store.metadata.tables["orders"]


class TestSqlAlchemyExpressions:
    def test_json_path_equality(self, sql_store, orders_table):
        sql, params = compile_clause(
            sql_store.expression(orders_table, Condition.parse("meta->>idempotency_key", "eq", 42))
        )

        assert "orders.meta ->>" in sql
        assert "idempotency_key" in params.values()
        assert "42" in params.values()

    def test_json_path_null_is_null_check(self, sql_store, orders_table):
        sql, _ = compile_clause(
            sql_store.expression(orders_table, Condition.parse("meta->>client_ts", "eq", None))
        )

        assert sql.endswith("IS NULL")

    def test_uuid_equality_is_coerced(self, sql_store, orders_table):
        user_id = str(uuid.uuid4())

        sql, params = compile_clause(
            sql_store.expression(orders_table, Condition.parse("user_id", "eq", user_id))
        )

        assert sql.startswith("orders.user_id =")
        assert list(params.values()) == [uuid.UUID(user_id)]

    def test_in(self, sql_store, orders_table):
        sql, params = compile_clause(
            sql_store.expression(orders_table, Condition.parse("status", "in", ["processing", "paid"]))
        )

        assert "orders.status IN" in sql
        assert list(params.values()) == [["processing", "paid"]]

    def test_gte_parses_iso_timestamps(self, sql_store, orders_table):
        sql, params = compile_clause(
            sql_store.expression(
                orders_table, Condition.parse("created_at", "gte", "2024-02-01T10:00:00Z")
            )
        )

        assert "orders.created_at >=" in sql
        assert list(params.values()) == [datetime(2024, 2, 1, 10, 0, tzinfo=timezone.utc)]

    def test_or_group(self, sql_store, orders_table):
        user_id = str(uuid.uuid4())
        query = Query().eq("status", "processing").or_(("user_id", user_id), ("vendor_id", user_id))

        sql, _ = compile_clause(and_(*sql_store.where_clause(orders_table, query)))

        assert "orders.status =" in sql
        assert "orders.user_id =" in sql
        assert " OR orders.vendor_id =" in sql

    def test_unknown_column(self, sql_store, orders_table):
        with pytest.raises(UnknownColumnError) as exc_info:
            sql_store.expression(orders_table, Condition.parse("shipping_coordinates", "eq", "x"))

        assert exc_info.value.code == UNKNOWN_COLUMN
        assert exc_info.value.column == "shipping_coordinates"


class TestSqlAlchemyCoercion:
    def test_numeric(self, orders_table):
        assert SqlAlchemyTableStore.coerce(orders_table.c.total_amount, "19.99") == Decimal("19.99")
        assert SqlAlchemyTableStore.coerce(orders_table.c.total_amount, 50) == Decimal("50")

    def test_invalid_numeric(self, orders_table):
        with pytest.raises(InvalidValueError) as exc_info:
            SqlAlchemyTableStore.coerce(orders_table.c.total_amount, "abc")

        assert exc_info.value.code == "22P02"

    def test_invalid_uuid(self, orders_table):
        with pytest.raises(InvalidValueError, match="type uuid"):
            SqlAlchemyTableStore.coerce(orders_table.c.user_id, "not-a-uuid")

    def test_invalid_timestamp(self, orders_table):
        with pytest.raises(InvalidValueError, match="type timestamp") as exc_info:
            SqlAlchemyTableStore.coerce(orders_table.c.created_at, "yesterday")

        assert exc_info.value.code == "22007"
        assert exc_info.value.column == "created_at"

    def test_none_and_untyped_values_pass_through(self, orders_table):
        assert SqlAlchemyTableStore.coerce(orders_table.c.user_id, None) is None
        assert SqlAlchemyTableStore.coerce(orders_table.c.meta, {"a": 1}) == {"a": 1}


class TestSchemaCache:
    def test_unknown_write_column_evicts_table(self, sql_store, orders_table):
        with pytest.raises(UnknownColumnError):
            sql_store.values(orders_table, {"status": "processing", "delivered_at": "now"})

        assert "orders" not in sql_store.metadata.tables

    def test_known_columns_keep_table_cached(self, sql_store, orders_table):
        values = sql_store.values(orders_table, {"status": "processing", "total_amount": "5"})

        assert values == {"status": "processing", "total_amount": Decimal("5")}
        assert "orders" in sql_store.metadata.tables

    @pytest.mark.asyncio
    async def test_database_unknown_column_clears_cache(self, sql_store):
        error = _dbapi_error(DBAPIError, 'column "status" does not exist', sqlstate="42703")

        @asynccontextmanager
        async def failing_transaction():
            raise error
            yield

        sql_store.engine.begin = failing_transaction

        with pytest.raises(UnknownColumnError):
            await sql_store.select("orders", Query().eq("status", "processing"))

        assert len(sql_store.metadata.tables) == 0

    def test_refresh_single_table(self, sql_store):
        Table("products", sql_store.metadata, Column("id", Uuid, primary_key=True))

        sql_store.refresh_schema("orders")

        assert list(sql_store.metadata.tables) == ["products"]
