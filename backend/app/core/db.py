"""
Database engine with Prometheus instrumentation
"""

import re
import time
from collections.abc import Generator
from contextlib import contextmanager

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlmodel import Session, create_engine

from app.core.config import settings
from app.core.metrics import (
    db_connection_hold_seconds,
    db_pool_available,
    db_pool_in_use,
    db_queries_total,
    db_query_duration_seconds,
    db_query_errors_total,
)

engine = create_engine(
    str(settings.SQLALCHEMY_DATABASE_URI),
    pool_size=10,
    max_overflow=20,
    pool_pre_ping=True,
    pool_recycle=3600,
)

_TABLE_PATTERN = re.compile(r"(?:from|into|update|join)\s+\"?([a-z_][a-z0-9_]*)")
_OPERATIONS = ("select", "insert", "update", "delete")


def classify_statement(statement: str) -> tuple[str, str]:
    """
    Return (operation, table) for a SQL statement.

    Only the first table mentioned is reported; that is enough to keep the
    histogram's label cardinality bounded by the schema.
    """
    normalized = " ".join(statement.lower().split())
    operation = next((op for op in _OPERATIONS if normalized.startswith(op)), "other")
    match = _TABLE_PATTERN.search(normalized)
    return operation, match.group(1) if match else "unknown"


def _classify_error(exception: BaseException) -> str:
    name = type(exception).__name__.lower()
    if "timeout" in name:
        return "timeout"
    if "constraint" in name or "integrity" in name:
        return "constraint"
    if "connection" in name or "operational" in name:
        return "connection"
    return "other"


def update_pool_metrics(bound: Engine) -> None:
    pool_obj = bound.pool
    if not hasattr(pool_obj, "checkedout"):
        return
    checked_out = pool_obj.checkedout()  # type: ignore[attr-defined]
    size = pool_obj.size()  # type: ignore[attr-defined]
    overflow = pool_obj.overflow()  # type: ignore[attr-defined]
    db_pool_in_use.set(checked_out)
    db_pool_available.set(max(size - checked_out + overflow, 0))


def instrument_engine(bound: Engine) -> Engine:
    """Attach pool and query metric listeners to an engine."""

    @event.listens_for(bound, "checkout")
    def on_checkout(dbapi_conn, connection_record, connection_proxy):
        connection_record.info["checked_out_at"] = time.time()
        update_pool_metrics(bound)

    @event.listens_for(bound, "checkin")
    def on_checkin(dbapi_conn, connection_record):
        started = connection_record.info.pop("checked_out_at", None)
        if started is not None:
            db_connection_hold_seconds.observe(time.time() - started)
        update_pool_metrics(bound)

    @event.listens_for(bound, "before_cursor_execute")
    def before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
        context._query_start_time = time.time()

    @event.listens_for(bound, "after_cursor_execute")
    def after_cursor_execute(conn, cursor, statement, parameters, context, executemany):
        started = getattr(context, "_query_start_time", None)
        if started is None:
            return
        operation, table = classify_statement(statement)
        db_query_duration_seconds.labels(operation=operation, table=table).observe(
            time.time() - started
        )
        db_queries_total.labels(operation=operation).inc()

    @event.listens_for(bound, "handle_error")
    def handle_error(exception_context):
        db_query_errors_total.labels(
            error_type=_classify_error(exception_context.original_exception)
        ).inc()

    return bound


instrument_engine(engine)


@contextmanager
def session_scope(bind: Engine | None = None) -> Generator[Session, None, None]:
    """
    Session for background tasks: commits on success, rolls back on error.

    Usage:
        with session_scope() as session:
            session.exec(...)
    """
    session = Session(bind or engine)
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
