"""
Module: approval_kernel.db.engine
Responsibility: Process-wide engine and session factory for the approval
    kernel, plus schema creation and a commit-or-rollback session scope.
Architecture position: Kernel > DB.  Imports models and triggers lazily,
    only inside create_tables/drop_tables.

Backends:
    - PostgreSQL (production): pooled connections with pre-ping, READ
      COMMITTED isolation.  Workflow transitions and sequence allocation
      take row locks with SELECT ... FOR UPDATE.
    - SQLite (development and tests): pysqlite's own transaction handling
      is switched off and SQLAlchemy emits BEGIN, so SAVEPOINTs nest inside
      an outer test transaction.  ``sqlite://`` shares one connection
      through a StaticPool.

Failure modes:
    - RuntimeError from every accessor before init_engine_from_url().
    - OperationalError from create_tables when trigger installation keeps
      deadlocking (three attempts).
"""

import atexit
import time
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from approval_kernel.logging_config import configure_logging, get_logger

logger = get_logger("db.engine")

TRIGGER_INSTALL_ATTEMPTS = 3

_engine: Engine | None = None
_session_factory: sessionmaker[Session] | None = None


def _sqlite_engine(database_url: str, echo: bool) -> Engine:
    in_memory = database_url in ("sqlite://", "sqlite:///:memory:") or ":memory:" in database_url
    engine = create_engine(
        database_url,
        echo=echo,
        connect_args={"check_same_thread": False},
        **({"poolclass": StaticPool} if in_memory else {}),
    )

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


def init_engine_from_url(
    database_url: str,
    echo: bool = False,
    pool_size: int = 20,
    max_overflow: int = 10,
    pool_timeout: int = 30,
    pool_recycle: int = 1800,
) -> Engine:
    """
    Create the process-wide engine and session factory.

    A second call replaces both.  Pool arguments apply to PostgreSQL only.
    """
    global _engine, _session_factory

    if database_url.startswith("sqlite"):
        _engine = _sqlite_engine(database_url, echo)
    else:
        _engine = create_engine(
            database_url,
            echo=echo,
            poolclass=QueuePool,
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_pre_ping=True,
            pool_timeout=pool_timeout,
            pool_recycle=pool_recycle,
            isolation_level="READ COMMITTED",
        )
    _session_factory = sessionmaker(bind=_engine, expire_on_commit=False)

    configure_logging()
    logger.info(
        "engine_initialized",
        extra={"dialect": _engine.dialect.name, "pool_class": type(_engine.pool).__name__},
    )
    return _engine


def _require_engine() -> Engine:
    if _engine is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")
    return _engine


def get_engine() -> Engine:
    return _require_engine()


def get_session_factory() -> sessionmaker[Session]:
    """The factory handed to EscalationMonitor, which opens one session per sweep."""
    _require_engine()
    assert _session_factory is not None
    return _session_factory


def get_session() -> Session:
    return get_session_factory()()


@contextmanager
def session_scope() -> Iterator[Session]:
    """
    Commit on success, roll back and re-raise on error, always close.

    A workflow transition and its audit entry share this transaction.

        with session_scope() as session:
            build_services(session, config, membership).workflows.take_action(request)
    """
    session = get_session()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        logger.warning("transaction_rolled_back", exc_info=True)
        raise
    finally:
        session.close()


def create_tables(install_triggers: bool = True) -> None:
    """Create every table; then install the append-only triggers."""
    from approval_kernel.db.base import Base
    from approval_kernel.db.triggers import install_immutability_triggers
    from approval_kernel.models import import_all_models

    engine = _require_engine()
    import_all_models()
    Base.metadata.create_all(engine)
    if not install_triggers:
        return

    for attempt in range(1, TRIGGER_INSTALL_ATTEMPTS + 1):
        try:
            install_immutability_triggers(engine)
            return
        except OperationalError as exc:
            if "deadlock" not in str(exc).lower() or attempt == TRIGGER_INSTALL_ATTEMPTS:
                raise
            logger.warning(
                "trigger_install_deadlock_retry",
                extra={"attempt": attempt, "max_attempts": TRIGGER_INSTALL_ATTEMPTS},
            )
            time.sleep(0.5 * attempt)


def drop_tables() -> None:
    """Remove triggers and tables.  Tests and local resets only."""
    from approval_kernel.db.base import Base
    from approval_kernel.db.triggers import uninstall_immutability_triggers
    from approval_kernel.models import import_all_models

    engine = _require_engine()
    import_all_models()
    uninstall_immutability_triggers(engine)
    Base.metadata.drop_all(engine)


def reset_engine() -> None:
    """Dispose the engine and forget the session factory."""
    global _engine, _session_factory
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _session_factory = None


@atexit.register
def _dispose_on_exit() -> None:
    if _engine is not None:
        _engine.dispose()
