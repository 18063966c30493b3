from __future__ import annotations

from time import perf_counter
from typing import TYPE_CHECKING, Any

from fastapi import Request
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from mcloud.config import Settings
from mcloud.logger import get_logger

if TYPE_CHECKING:
    from mcloud.control_plane import ControlPlane
    from mcloud.services.lifecycle import NodeLifecycleManager
    from mcloud.services.operations import OperationRunner
    from mcloud.services.orchestrator import BootstrapOrchestrator
    from mcloud.services.store import ClusterStateStore

_DB_LOGGER = get_logger("db")
_QUERY_CONTEXT_STACK_KEY = "mcloud_query_stack"
_SLOW_QUERY_MS = 200


def _truncate(value: str, max_length: int) -> str:
    if max_length <= 0 or len(value) <= max_length:
        return value
    if max_length <= 3:
        return value[:max_length]
    return f"{value[: max_length - 3]}..."


def _format_sql(statement: Any, max_length: int) -> str:
    return _truncate(" ".join(str(statement or "").split()), max_length)


def _format_params(parameters: Any, max_length: int) -> str:
    return _truncate(" ".join(repr(parameters).split()), max_length)


def _get_query_stack(connection: Any) -> list[dict[str, Any]]:
    stack = connection.info.get(_QUERY_CONTEXT_STACK_KEY)
    if isinstance(stack, list):
        return stack
    stack = []
    connection.info[_QUERY_CONTEXT_STACK_KEY] = stack
    return stack


def _install_query_logging(engine: AsyncEngine, *, settings: Settings) -> None:
    sync_engine = engine.sync_engine

    @event.listens_for(sync_engine, "before_cursor_execute")
    def _before_cursor_execute(
        conn: Any,
        cursor: Any,
        statement: Any,
        parameters: Any,
        context: Any,
        executemany: bool,
    ) -> None:
        del cursor, context
        _get_query_stack(conn).append(
            {
                "start": perf_counter(),
                "statement": statement,
                "parameters": parameters,
                "executemany": executemany,
            }
        )

    @event.listens_for(sync_engine, "after_cursor_execute")
    def _after_cursor_execute(
        conn: Any,
        cursor: Any,
        statement: Any,
        parameters: Any,
        context: Any,
        executemany: bool,
    ) -> None:
        del statement, parameters, context, executemany
        stack = _get_query_stack(conn)
        query_context = stack.pop() if stack else {}
        duration_ms = (perf_counter() - float(query_context.get("start", perf_counter()))) * 1000
        sql = _format_sql(query_context.get("statement"), settings.log_sql_max_length)

        if settings.log_db_queries:
            fields: dict[str, Any] = {
                "duration_ms": round(duration_ms, 1),
                "rowcount": getattr(cursor, "rowcount", None),
                "executemany": bool(query_context.get("executemany")),
                "sql": sql,
                "connection_id": id(conn),
            }
            if settings.log_db_query_params:
                fields["params"] = _format_params(
                    query_context.get("parameters"),
                    settings.log_sql_max_length,
                )
            _DB_LOGGER.debug("query.execute", "Executed SQL statement", **fields)

        if duration_ms >= _SLOW_QUERY_MS:
            _DB_LOGGER.warning(
                "query.slow",
                "Slow SQL statement",
                duration_ms=round(duration_ms, 1),
                sql=sql,
                connection_id=id(conn),
            )

    @event.listens_for(sync_engine, "handle_error")
    def _handle_error(exception_context: Any) -> None:
        connection = exception_context.connection
        if connection is not None:
            stack = _get_query_stack(connection)
            if stack:
                stack.pop()
        fields: dict[str, Any] = {
            "error_type": type(exception_context.original_exception).__name__,
            "error": str(exception_context.original_exception),
            "sql": _format_sql(exception_context.statement, settings.log_sql_max_length),
        }
        if settings.log_db_query_params:
            fields["params"] = _format_params(exception_context.parameters, settings.log_sql_max_length)
        # Constraint violations are often expected (duplicate joins), keep them below error.
        _DB_LOGGER.warning("query.error", "SQL execution failed", **fields)


def build_engine(settings: Settings) -> AsyncEngine:
    database_url = settings.database_url
    engine = create_async_engine(database_url, pool_pre_ping=True)

    if database_url.startswith("sqlite"):
        busy_timeout_ms = int(settings.store_busy_timeout_ms)

        @event.listens_for(engine.sync_engine, "connect")
        def _set_sqlite_pragma(dbapi_connection: Any, connection_record: Any) -> None:
            del connection_record
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.execute(f"PRAGMA busy_timeout={busy_timeout_ms}")
            cursor.close()

    _install_query_logging(engine, settings=settings)
    return engine


def get_control_plane(request: Request) -> "ControlPlane":
    return request.app.state.control_plane


def get_store(request: Request) -> "ClusterStateStore":
    return get_control_plane(request).store


def get_orchestrator(request: Request) -> "BootstrapOrchestrator":
    return get_control_plane(request).orchestrator


def get_lifecycle(request: Request) -> "NodeLifecycleManager":
    return get_control_plane(request).lifecycle


def get_operations(request: Request) -> "OperationRunner":
    return get_control_plane(request).operations
