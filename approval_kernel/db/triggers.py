"""
Module: approval_kernel.db.triggers
Responsibility: Loading, installing, and verifying database-level
    append-only triggers.  This is the storage-level complement to the ORM
    listeners in db/immutability.py.
Architecture position: Kernel > DB.  May import from db/ only (pathlib for
    SQL file loading, sqlalchemy for execution).  MUST NOT import from
    models/, services/, domain/, or outer layers.

Invariants enforced (via 4 triggers per dialect):
    - approval_audit_log rows: no UPDATE, no DELETE, ever.
    - approval_actions rows: no UPDATE, no DELETE, ever.

Failure modes:
    - PostgreSQL RAISE EXCEPTION / SQLite RAISE(ABORT) on any violation,
      surfaced by SQLAlchemy as a DBAPIError subclass.
    - FileNotFoundError if SQL files are missing from sql/<dialect>/.
    - ValueError for a dialect with no trigger set.

Audit relevance:
    Even if the ORM layer is bypassed (raw SQL, bulk statements, direct
    database access) the database refuses to rewrite approval history.
"""

from pathlib import Path

from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine

from approval_kernel.logging_config import get_logger

logger = get_logger("db.triggers")

SQL_DIR = Path(__file__).parent / "sql"

TRIGGER_FILES = [
    "01_audit_log.sql",
    "02_approval_action.sql",
]

DROP_FILE = "99_drop_all.sql"

SUPPORTED_DIALECTS = ("postgresql", "sqlite")

ALL_TRIGGER_NAMES = [
    "trg_audit_log_immutability_update",
    "trg_audit_log_immutability_delete",
    "trg_approval_action_immutability_update",
    "trg_approval_action_immutability_delete",
]

PROTECTED_TABLES = ("approval_audit_log", "approval_actions")


def _dialect_dir(engine: Engine) -> Path:
    name = engine.dialect.name
    if name not in SUPPORTED_DIALECTS:
        raise ValueError(f"No immutability triggers available for dialect {name!r}")
    return SQL_DIR / name


def _load_sql_file(engine: Engine, filename: str) -> str:
    """
    Load SQL content for the engine's dialect.

    Raises:
        FileNotFoundError: If the file doesn't exist.
    """
    return (_dialect_dir(engine) / filename).read_text(encoding="utf-8")


def _execute_script(engine: Engine, sql_content: str) -> None:
    """Run a multi-statement script on the engine's dialect."""
    if engine.dialect.name == "sqlite":
        # sqlite3 executes one statement per execute(); trigger bodies
        # contain semicolons, so the script runs through executescript().
        raw = engine.raw_connection()
        try:
            raw.driver_connection.executescript(sql_content)
        finally:
            raw.close()
        return

    with engine.connect() as conn:
        conn.execute(text(sql_content))
        conn.commit()


def install_immutability_triggers(engine: Engine) -> None:
    """
    Install database-level append-only triggers.

    Preconditions: Tables must exist (call after Base.metadata.create_all()).
    Postconditions: All triggers in ALL_TRIGGER_NAMES are installed.
        Installation is idempotent.
    """
    parts = []
    for filename in TRIGGER_FILES:
        parts.append(f"-- Loading: {filename}")
        parts.append(_load_sql_file(engine, filename))
    _execute_script(engine, "\n".join(parts))
    logger.info(
        "immutability_triggers_installed",
        extra={"dialect": engine.dialect.name, "trigger_count": len(ALL_TRIGGER_NAMES)},
    )


def uninstall_immutability_triggers(engine: Engine) -> None:
    """
    Remove database-level append-only triggers.

    WARNING: Only for test teardown and schema migrations.  Re-install
    immediately afterwards.
    """
    existing = set(inspect(engine).get_table_names())
    if not all(table in existing for table in PROTECTED_TABLES):
        return
    _execute_script(engine, _load_sql_file(engine, DROP_FILE))
    logger.warning(
        "immutability_triggers_uninstalled",
        extra={"dialect": engine.dialect.name},
    )


def get_installed_triggers(engine: Engine) -> list[str]:
    """List the append-only triggers currently installed."""
    if engine.dialect.name == "sqlite":
        query = "SELECT name FROM sqlite_master WHERE type = 'trigger' ORDER BY name"
    else:
        query = "SELECT tgname FROM pg_trigger WHERE NOT tgisinternal ORDER BY tgname"

    with engine.connect() as conn:
        names = [row[0] for row in conn.execute(text(query))]
    return [name for name in names if name in ALL_TRIGGER_NAMES]


def triggers_installed(engine: Engine) -> bool:
    """True iff every trigger in ALL_TRIGGER_NAMES is installed."""
    return set(get_installed_triggers(engine)) == set(ALL_TRIGGER_NAMES)
