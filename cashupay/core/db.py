import asyncio
import os
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from loguru import logger
from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import AsyncAdaptedQueuePool, NullPool
from sqlalchemy.sql.expression import TextClause

from ..core.settings import settings

POSTGRES = "POSTGRES"
SQLITE = "SQLITE"

LOCK_ERRORS = ("database is locked", "could not obtain lock")


class DatabaseLockTimeout(Exception):
    pass


class Compat:
    type: Optional[str] = "<inherited>"
    schema: Optional[str] = None

    @property
    def serial_primary_key(self) -> str:
        if self.type == POSTGRES:
            return "SERIAL PRIMARY KEY"
        return "INTEGER PRIMARY KEY AUTOINCREMENT"

    @property
    def big_int(self) -> str:
        # timestamps and msat amounts overflow 32 bit on postgres
        return "BIGINT" if self.type == POSTGRES else "INT"

    def table_with_schema(self, table: str) -> str:
        return f"{self.schema}.{table}" if self.schema else table


class Connection(Compat):
    """One transaction, handed out by `Database.connect`."""

    def __init__(self, session: AsyncSession, typ: str, schema: Optional[str]):
        self.session = session
        self.type = typ
        self.schema = schema

    def rewrite_query(self, query: str) -> TextClause:
        if self.type == POSTGRES:
            query = query.replace("%", "%%")
        return text(query)

    async def fetchall(self, query: str, values: Optional[dict] = None) -> list:
        result = await self.session.execute(self.rewrite_query(query), values or {})
        return [row._mapping for row in result.all()]

    async def fetchone(self, query: str, values: Optional[dict] = None):
        result = await self.session.execute(self.rewrite_query(query), values or {})
        row = result.fetchone()
        return row._mapping if row is not None else None

    async def execute(self, query: str, values: Optional[dict] = None):
        return await self.session.execute(self.rewrite_query(query), values or {})


def _set_sqlite_pragmas(dbapi_connection, _) -> None:
    # readers keep going while a writer holds the lock
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute(f"PRAGMA busy_timeout={int(settings.db_lock_timeout * 1000)}")
    cursor.close()


def _is_lock_error(e: Exception) -> bool:
    return any(message in str(e) for message in LOCK_ERRORS)


class Database(Compat):
    """Gateway and wallet storage, sqlite in a directory or postgres by url."""

    def __init__(self, db_name: str, db_location: str, schema: Optional[str] = None):
        self.name = db_name
        self.db_location = db_location
        self.schema = schema
        kwargs: dict = {}

        if "://" in db_location:
            self.type = POSTGRES
            database_uri = db_location.replace(
                "postgres://", "postgresql+asyncpg://"
            ).replace("postgresql://", "postgresql+asyncpg://")
            if settings.db_connection_pool:
                kwargs.update(
                    poolclass=AsyncAdaptedQueuePool, pool_size=20, max_overflow=40
                )
        else:
            self.type = SQLITE
            if not os.path.exists(db_location):
                logger.info(f"Creating database directory: {db_location}")
                os.makedirs(db_location)
            self.path = os.path.join(db_location, f"{db_name}.sqlite3")
            database_uri = f"sqlite+aiosqlite:///{self.path}"
            kwargs["connect_args"] = {"timeout": settings.db_lock_timeout}

        if not settings.db_connection_pool:
            kwargs["poolclass"] = NullPool

        self.engine = create_async_engine(database_uri, **kwargs)
        if self.type == SQLITE:
            event.listen(self.engine.sync_engine, "connect", _set_sqlite_pragmas)
        self.async_session = async_sessionmaker(
            self.engine, expire_on_commit=False, class_=AsyncSession
        )

    @asynccontextmanager
    async def connect(
        self, lock_timeout: Optional[float] = None
    ) -> AsyncIterator[Connection]:
        """Runs the body in one transaction.

        The transaction commits when the body returns and rolls back when it
        raises. Only failing to begin the transaction because of a lock is
        retried, with exponential back-off until `lock_timeout` has passed.
        Errors raised by the body always propagate.
        """
        timeout = lock_timeout or settings.db_lock_timeout
        deadline = time.monotonic() + timeout
        delay = 0.1
        attempts = 0

        while True:
            attempts += 1
            session = self.async_session()
            entered = False
            try:
                async with session.begin():
                    entered = True
                    yield Connection(session, self.type, self.schema)
                return
            except Exception as e:
                if entered or not _is_lock_error(e):
                    raise
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise DatabaseLockTimeout(
                        f"database {self.name} still locked after {timeout}s"
                        f" and {attempts} attempts"
                    ) from e
                logger.trace(f"Database {self.name} locked, retrying: {e}")
                await asyncio.sleep(min(delay, remaining))
                delay *= 2
            finally:
                await session.close()

    async def fetchall(self, query: str, values: Optional[dict] = None) -> list:
        async with self.connect() as conn:
            return await conn.fetchall(query, values)

    async def fetchone(self, query: str, values: Optional[dict] = None):
        async with self.connect() as conn:
            return await conn.fetchone(query, values)

    async def execute(self, query: str, values: Optional[dict] = None):
        async with self.connect() as conn:
            return await conn.execute(query, values)
