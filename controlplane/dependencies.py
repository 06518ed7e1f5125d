from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from time import perf_counter
from typing import Any, AsyncIterator, Dict, List, Optional
from uuid import uuid4

from fastapi import Depends
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from controlplane.config import Settings, get_settings
from controlplane.logger import get_logger
from controlplane.models import Base
from controlplane.services.rotation_lock import build_lock_manager
from controlplane.services.rotation_pool import RotationPool, load_rotation_pool
from controlplane.services.rotations import RotationAllocator

_DB_LOGGER = get_logger("db")
_DB_SESSION_LOGGER = get_logger("db.session")
_QUERY_STACK_KEY = "controlplane_query_stack"


def _clip(value: Any, max_length: int) -> str:
    text = " ".join(str(value or "").split())
    if max_length <= 0 or len(text) <= max_length:
        return text
    if max_length <= 3:
        return text[:max_length]
    return f"{text[: max_length - 3]}..."


def _query_stack(connection: Any) -> List[Dict[str, Any]]:
    return connection.info.setdefault(_QUERY_STACK_KEY, [])


def _pop_query(connection: Any) -> Dict[str, Any]:
    stack = _query_stack(connection)
    return stack.pop() if stack else {}


def _install_query_logging(engine: AsyncEngine, *, database_url: str, settings: Settings) -> None:
    """Time every statement; log it when enabled, and always log slow or failed ones."""
    sync_engine = engine.sync_engine
    if sync_engine.info.get("controlplane_query_logging"):
        return
    sync_engine.info["controlplane_query_logging"] = True
    dialect = database_url.split("://", maxsplit=1)[0]
    max_length = settings.log_sql_max_length

    @event.listens_for(sync_engine, "before_cursor_execute")
    def _before_cursor_execute(
        conn: Any, cursor: Any, statement: Any, parameters: Any, context: Any, executemany: bool
    ) -> None:
        _query_stack(conn).append(
            {"start": perf_counter(), "statement": statement, "parameters": parameters, "executemany": executemany}
        )

    @event.listens_for(sync_engine, "after_cursor_execute")
    def _after_cursor_execute(
        conn: Any, cursor: Any, statement: Any, parameters: Any, context: Any, executemany: bool
    ) -> None:
        query = _pop_query(conn)
        duration_ms = round((perf_counter() - float(query.get("start", perf_counter()))) * 1000, 1)
        sql = _clip(query.get("statement"), max_length)

        if settings.log_db_queries:
            fields: Dict[str, Any] = {
                "duration_ms": duration_ms,
                "rowcount": getattr(cursor, "rowcount", None),
                "executemany": bool(query.get("executemany")),
                "sql": sql,
                "db": dialect,
                "connection_id": id(conn),
            }
            if settings.log_db_query_params:
                fields["params"] = _clip(repr(query.get("parameters")), max_length)
            _DB_LOGGER.info("query.execute", "Executed SQL statement", **fields)

        if duration_ms >= settings.log_slow_query_ms:
            _DB_LOGGER.warning(
                "query.slow",
                "Slow SQL statement",
                duration_ms=duration_ms,
                sql=sql,
                connection_id=id(conn),
            )

    @event.listens_for(sync_engine, "handle_error")
    def _handle_error(exception_context: Any) -> None:
        connection = exception_context.connection
        error = exception_context.original_exception
        fields: Dict[str, Any] = {
            "error_type": type(error).__name__,
            "error": str(error),
            "sql": _clip(exception_context.statement, max_length),
        }
        if connection is not None:
            query = _pop_query(connection)
            if query:
                fields["duration_ms"] = round((perf_counter() - float(query["start"])) * 1000, 1)
            fields["connection_id"] = id(connection)
        if settings.log_db_query_params:
            fields["params"] = _clip(repr(exception_context.parameters), max_length)
        # Includes the IntegrityError of a contended rotation lock insert.
        _DB_LOGGER.warning("query.error", "SQL execution failed", **fields)


@lru_cache
def get_engine(database_url: str) -> AsyncEngine:
    engine = create_async_engine(database_url, pool_pre_ping=True)

    if database_url.startswith("sqlite"):

        @event.listens_for(engine.sync_engine, "connect")
        def _set_sqlite_pragma(dbapi_connection: Any, connection_record: Any) -> None:
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    _install_query_logging(engine, database_url=database_url, settings=get_settings())
    return engine


@lru_cache
def get_sessionmaker(database_url: str) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=get_engine(database_url), expire_on_commit=False)


async def get_db_session(
    settings: Settings = Depends(get_settings),
) -> AsyncIterator[AsyncSession]:
    sessionmaker = get_sessionmaker(settings.database_url)
    start = perf_counter()

    with _DB_SESSION_LOGGER.context(db_session_id=uuid4().hex[:12]):
        _DB_SESSION_LOGGER.debug("session.open", "Opened DB session")
        async with sessionmaker() as session:
            try:
                yield session
            except Exception as exc:
                if session.in_transaction():
                    await session.rollback()
                    _DB_SESSION_LOGGER.warning(
                        "session.rollback",
                        "Rolled back DB transaction after error",
                        error_type=type(exc).__name__,
                    )
                raise
            finally:
                _DB_SESSION_LOGGER.debug(
                    "session.close",
                    "Closed DB session",
                    duration_ms=round((perf_counter() - start) * 1000, 1),
                )


def _sqlite_path(database_url: str) -> Optional[Path]:
    if not database_url.startswith("sqlite"):
        return None
    _, _, path = database_url.partition(":///")
    if not path or path == ":memory:":
        return None
    return Path(path)


async def init_database(database_url: str) -> None:
    """Create missing tables. Production schemas are managed by alembic."""
    sqlite_path = _sqlite_path(database_url)
    if sqlite_path is not None:
        sqlite_path.parent.mkdir(parents=True, exist_ok=True)
    engine = get_engine(database_url)
    async with engine.begin() as connection:
        await connection.run_sync(Base.metadata.create_all)
    _DB_LOGGER.info("schema.create", "Ensured database tables", db=database_url.split("://", maxsplit=1)[0])


@lru_cache
def get_rotation_pool(rotations_file: str) -> RotationPool:
    return load_rotation_pool(rotations_file)


@lru_cache
def get_rotation_allocator() -> RotationAllocator:
    """Process-wide allocator; one pool and one lock manager per process."""
    settings = get_settings()
    pool = get_rotation_pool(settings.rotations_file)
    lock_manager = build_lock_manager(settings, get_sessionmaker(settings.database_url))
    return RotationAllocator(pool, lock_manager)
