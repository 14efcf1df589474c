from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

import psycopg
from psycopg import errors, sql
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import AsyncConnectionPool, PoolTimeout

from stormcrm.logging import get_logger, sanitize_error_message
from stormcrm.storage.common import QueryResult
from stormcrm.storage.errors import (
    ConstraintViolation,
    StorageUnavailable,
    UnrecognizedQueryShape,
)
from stormcrm.storage.statements import (
    IMMUTABLE_FIELDS,
    DeleteById,
    FetchById,
    FetchByUniqueField,
    InsertInto,
    ListAll,
    ListByOwner,
    Partition,
    Ping,
    UpdateById,
)

T = TypeVar("T")

Compiled = Tuple[sql.Composable, List[Any]]


def _table(partition: Partition) -> sql.Identifier:
    return sql.Identifier(Partition(partition).value)


def _adapt(value: Any) -> Any:
    if isinstance(value, dict):
        return Jsonb(value)
    return value


def _compile_ping(statement: Ping) -> Compiled:
    return sql.SQL("SELECT now() AS now"), []


def _compile_fetch_by_id(statement: FetchById) -> Compiled:
    query = sql.SQL("SELECT * FROM {} WHERE id = %s").format(_table(statement.partition))
    return query, [statement.id]


def _compile_fetch_by_unique_field(statement: FetchByUniqueField) -> Compiled:
    query = sql.SQL("SELECT * FROM {} WHERE {} = %s LIMIT 1").format(
        _table(statement.partition), sql.Identifier(statement.field)
    )
    return query, [statement.value]


def _compile_insert(statement: InsertInto) -> Compiled:
    values = {k: v for k, v in statement.values.items() if k not in IMMUTABLE_FIELDS}
    table = _table(statement.partition)
    if not values:
        return sql.SQL("INSERT INTO {} DEFAULT VALUES RETURNING *").format(table), []
    query = sql.SQL("INSERT INTO {} ({}) VALUES ({}) RETURNING *").format(
        table,
        sql.SQL(", ").join(sql.Identifier(k) for k in values),
        sql.SQL(", ").join(sql.Placeholder() for _ in values),
    )
    return query, [_adapt(v) for v in values.values()]


def _compile_update(statement: UpdateById) -> Compiled:
    changes = {
        k: v
        for k, v in statement.changes.items()
        if k not in IMMUTABLE_FIELDS and k != "updated_at"
    }
    assignments = [
        sql.SQL("{} = %s").format(sql.Identifier(k)) for k in changes
    ]
    assignments.append(sql.SQL("updated_at = now()"))
    query = sql.SQL("UPDATE {} SET {} WHERE id = %s RETURNING *").format(
        _table(statement.partition), sql.SQL(", ").join(assignments)
    )
    return query, [_adapt(v) for v in changes.values()] + [statement.id]


def _compile_delete(statement: DeleteById) -> Compiled:
    query = sql.SQL("DELETE FROM {} WHERE id = %s").format(_table(statement.partition))
    return query, [statement.id]


def _compile_list_all(statement: ListAll) -> Compiled:
    query = sql.SQL("SELECT * FROM {}").format(_table(statement.partition))
    if statement.order_by_created_desc:
        query = query + sql.SQL(" ORDER BY created_at DESC")
    return query, []


def _compile_list_by_owner(statement: ListByOwner) -> Compiled:
    owner = sql.Identifier(statement.owner_field)
    if statement.include_unowned:
        condition = sql.SQL("({} = %s OR {} IS NULL)").format(owner, owner)
    else:
        condition = sql.SQL("{} = %s").format(owner)
    query = sql.SQL("SELECT * FROM {} WHERE {} ORDER BY created_at DESC").format(
        _table(statement.partition), condition
    )
    return query, [statement.owner_id]


_COMPILERS: Dict[type, Callable[[Any], Compiled]] = {
    Ping: _compile_ping,
    FetchById: _compile_fetch_by_id,
    FetchByUniqueField: _compile_fetch_by_unique_field,
    InsertInto: _compile_insert,
    UpdateById: _compile_update,
    DeleteById: _compile_delete,
    ListAll: _compile_list_all,
    ListByOwner: _compile_list_by_owner,
}


def compile_statement(statement: Any) -> Compiled:
    """Translate a statement shape into ``(sql, params)``.

    Raises :class:`UnrecognizedQueryShape` for anything outside the closed set.
    """

    compiler = _COMPILERS.get(type(statement))
    if compiler is None:
        raise UnrecognizedQueryShape(statement)
    return compiler(statement)


class _TransactionHandle:
    """Executes statements on the one connection that owns the open transaction."""

    def __init__(self, db: "PostgresDatabase", conn: psycopg.AsyncConnection) -> None:
        self._db = db
        self._conn = conn

    async def query(self, statement: Any) -> QueryResult:
        return await self._db._execute(self._conn, statement)


class PostgresDatabase:
    """Postgres backend over an async psycopg connection pool."""

    backend = "postgres"

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 1,
        max_size: int = 20,
        timeout: float = 2.0,
        max_idle: float = 30.0,
        ssl_require: bool = False,
    ) -> None:
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self.timeout = timeout
        self.max_idle = max_idle
        self.ssl_require = ssl_require
        self.logger = get_logger(__name__)
        self.pool: Optional[AsyncConnectionPool] = None

    async def open(self) -> None:
        """Create the pool and wait for its first connections.

        Failure here is fatal for startup and propagates to the caller.
        """

        conn_kwargs: Dict[str, Any] = {"row_factory": dict_row, "autocommit": False}
        if self.ssl_require:
            conn_kwargs["sslmode"] = "require"
        self.pool = AsyncConnectionPool(
            self.dsn,
            min_size=self.min_size,
            max_size=self.max_size,
            timeout=self.timeout,
            max_idle=self.max_idle,
            kwargs=conn_kwargs,
            open=False,
        )
        try:
            await self.pool.open(wait=True, timeout=max(self.timeout, 1.0) * 5)
        except Exception as exc:
            self.logger.error(
                "postgres_pool_open_failed",
                error_type=type(exc).__name__,
                error=sanitize_error_message(str(exc)),
            )
            raise
        self.logger.info(
            "postgres_pool_opened", min_size=self.min_size, max_size=self.max_size
        )

    async def close(self) -> None:
        if self.pool is not None:
            await self.pool.close()
            self.pool = None
            self.logger.info("postgres_pool_closed")

    def _connect(self):
        if self.pool is None:
            raise StorageUnavailable("Storage unavailable", cause="pool not open")
        return self.pool.connection()

    async def ping(self) -> bool:
        try:
            result = await self.query(Ping())
        except StorageUnavailable:
            return False
        return result.row_count == 1

    async def query(self, statement: Any) -> QueryResult:
        compile_statement(statement)
        try:
            async with self._connect() as conn:
                return await self._execute(conn, statement)
        except (PoolTimeout, psycopg.OperationalError) as exc:
            raise self._unavailable(exc, statement) from exc

    async def transaction(self, work: Callable[[Any], Awaitable[T]]) -> T:
        """Run ``work`` inside BEGIN/COMMIT on a single pooled connection.

        Any exception from ``work`` rolls the unit back and is re-raised. The
        connection goes back to the pool either way.
        """

        try:
            async with self._connect() as conn:
                async with conn.transaction():
                    return await work(_TransactionHandle(self, conn))
        except (PoolTimeout, psycopg.OperationalError) as exc:
            raise self._unavailable(exc, None) from exc

    async def _execute(self, conn: psycopg.AsyncConnection, statement: Any) -> QueryResult:
        query, params = compile_statement(statement)
        try:
            cur = await conn.execute(query, params)
        except errors.UniqueViolation as exc:
            partition = getattr(statement, "partition", None)
            raise ConstraintViolation(
                "unique constraint violated",
                {
                    "partition": Partition(partition).value if partition else None,
                    "constraint": getattr(exc.diag, "constraint_name", None),
                },
            ) from exc
        rows = await cur.fetchall() if cur.description else []
        row_count = len(rows) if cur.description else max(cur.rowcount, 0)
        return QueryResult(rows=list(rows), row_count=row_count)

    def _unavailable(self, exc: Exception, statement: Any) -> StorageUnavailable:
        self.logger.error(
            "postgres_unavailable",
            error_type=type(exc).__name__,
            error=sanitize_error_message(str(exc)),
            shape=type(statement).__name__ if statement is not None else "transaction",
        )
        return StorageUnavailable(cause=type(exc).__name__)


__all__ = ["PostgresDatabase", "compile_statement"]
