"""
Executor for berryorm: async engine wrapper, transactions and error translation.

Every statement the ORM issues goes through :meth:`Database.execute`, which
renders it for the ``query`` event, runs it on the caller's transaction (or an
autocommitting connection) and translates driver failures into the typed
errors of :mod:`berryorm.errors`.
"""
from __future__ import annotations

import asyncio
import itertools
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from sqlalchemy import event
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.sql.dml import Insert

from .adapters import BaseAdapter, get_adapter
from .config import Settings
from .errors import (
    ConstraintError,
    DatabaseError,
    ForeignKeyConstraintError,
    TransactionError,
    UniqueConstraintError,
)
from .events import EventChannel, log_event

logger = logging.getLogger(__name__)

_tx_ids = itertools.count(1)


@dataclass
class QueryResult:
    rows: List[Dict[str, Any]] = field(default_factory=list)
    rowcount: int = 0
    inserted_primary_key: Optional[tuple] = None


def translate_error(exc: DBAPIError, sql: Optional[str] = None) -> DatabaseError:
    """Map a SQLAlchemy/DB-API failure onto the berryorm error taxonomy.

    SQLite reports constraint failures by message, PostgreSQL by SQLSTATE
    (23503 foreign key, 23505 unique) and SQL Server by message number
    (547 reference, 2627/2601 unique), whose texts are matched here.
    """
    orig = getattr(exc, 'orig', None) or exc
    message = str(orig)
    low = message.lower()
    code = str(getattr(orig, 'sqlstate', None) or getattr(orig, 'pgcode', None) or '')
    if code == '23503' or 'foreign key constraint' in low or 'reference constraint' in low:
        return ForeignKeyConstraintError(message, original=exc, sql=sql)
    if code == '23505' or 'duplicate key' in low or ('unique' in low and 'constraint' in low):
        return UniqueConstraintError(message, original=exc, sql=sql)
    if isinstance(exc, IntegrityError) or code.startswith('23'):
        return ConstraintError(message, original=exc, sql=sql)
    return DatabaseError(message, original=exc, sql=sql)


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):  # noqa: ANN001
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class Transaction:
    """Caller scoped transaction bound to one connection.

    Statements issued on the same handle run one at a time in issue order.
    Usable as ``async with db.transaction() as tx`` or ``tx = await db.transaction()``.
    """

    def __init__(self, database: "Database"):
        self.database = database
        self.id = f"tx-{next(_tx_ids)}"
        self.connection = None
        self._tx = None
        self._lock = asyncio.Lock()
        self.finished = False

    @property
    def active(self) -> bool:
        return self.connection is not None and not self.finished

    async def start(self) -> "Transaction":
        if self.finished:
            raise TransactionError(f"Transaction {self.id} has already finished")
        if self.connection is None:
            self.connection = await self.database.engine.connect()
            self._tx = await self.connection.begin()
            self.database.events.emit('begin', transaction=self.id)
        return self

    def __await__(self):
        return self.start().__await__()

    def _ensure_active(self) -> None:
        if self.finished:
            raise TransactionError(f"Transaction {self.id} has already finished")
        if self.connection is None:
            raise TransactionError(f"Transaction {self.id} has not been started")

    async def run(self, stmt, params=None):
        self._ensure_active()
        async with self._lock:
            self._ensure_active()
            return await self.connection.execute(stmt, params)

    async def commit(self) -> None:
        self._ensure_active()
        async with self._lock:
            try:
                await self._tx.commit()
            finally:
                await self._close()
        self.database.events.emit('commit', transaction=self.id)

    async def rollback(self) -> None:
        self._ensure_active()
        async with self._lock:
            try:
                await self._tx.rollback()
            finally:
                await self._close()
        self.database.events.emit('rollback', transaction=self.id)

    async def _close(self) -> None:
        self.finished = True
        conn, self.connection = self.connection, None
        if conn is not None:
            await conn.close()

    async def __aenter__(self) -> "Transaction":
        return await self.start()

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        if self.finished:
            return False
        if exc_type is None:
            await self.commit()
        else:
            await self.rollback()
        return False


class Database:
    """Async executor over a SQLAlchemy ``AsyncEngine``.

    Args:
        url: Database URL; falls back to ``Settings.from_env()``.
        engine: Existing engine to wrap instead of creating one.
        echo: SQLAlchemy echo flag for a created engine.
        events: Shared :class:`EventChannel`; a fresh one is created otherwise.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        *,
        engine: Optional[AsyncEngine] = None,
        echo: Optional[bool] = None,
        events: Optional[EventChannel] = None,
        settings: Optional[Settings] = None,
        **engine_kwargs: Any,
    ):
        if engine is None:
            if url is None:
                settings = settings or Settings.from_env()
                url = settings.database_url
            if echo is None:
                echo = settings.echo if settings is not None else False
            engine = create_async_engine(url, echo=echo, future=True, **engine_kwargs)
        self.engine = engine
        self.dialect_name = engine.dialect.name
        logger.info("Detected database dialect: %s", self.dialect_name)
        self.adapter: BaseAdapter = get_adapter(self.dialect_name)
        self.events = events or EventChannel()
        for name in ('query', 'begin', 'commit', 'rollback'):
            self.events.subscribe(name, log_event)
        if self.dialect_name == 'sqlite':
            event.listen(engine.sync_engine, "connect", _enable_sqlite_foreign_keys)

    def render(self, stmt) -> str:
        return str(stmt.compile(dialect=self.engine.dialect))

    def transaction(self) -> Transaction:
        return Transaction(self)

    @asynccontextmanager
    async def ensure_transaction(self, transaction: Optional[Transaction] = None) -> AsyncIterator[Transaction]:
        """Yield the caller's transaction, or a fresh one committed on success."""
        if transaction is not None:
            yield transaction
            return
        async with self.transaction() as tx:
            yield tx

    async def execute(
        self,
        stmt,
        *,
        params: Optional[Dict[str, Any]] = None,
        transaction: Optional[Transaction] = None,
        logging: Optional[Callable[[str], Any]] = None,
    ) -> QueryResult:
        sql = self.render(stmt)
        self.events.emit('query', sql=sql, transaction=transaction.id if transaction is not None else None)
        if callable(logging):
            logging(sql)
        try:
            if transaction is not None:
                result = await transaction.run(stmt, params)
                return self._collect(result, stmt)
            async with self.engine.begin() as conn:
                result = await conn.execute(stmt, params)
                return self._collect(result, stmt)
        except DBAPIError as exc:
            raise translate_error(exc, sql) from exc

    @staticmethod
    def _collect(result, stmt) -> QueryResult:
        rows: List[Dict[str, Any]] = []
        if result.returns_rows:
            rows = [dict(m) for m in result.mappings().all()]
        inserted = None
        if isinstance(stmt, Insert):
            pk = result.inserted_primary_key
            inserted = tuple(pk) if pk is not None else None
        rowcount = result.rowcount if result.rowcount is not None else 0
        return QueryResult(rows=rows, rowcount=rowcount, inserted_primary_key=inserted)

    async def dispose(self) -> None:
        await self.engine.dispose()
