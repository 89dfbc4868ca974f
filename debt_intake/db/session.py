import logging

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine.url import make_url
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from debt_intake.core.config import settings

logger = logging.getLogger(__name__)

_engine = None


def _report_connection_failure(exc: Exception) -> None:
    """Log where we tried to connect; the password is masked."""
    url = make_url(settings.database_url)
    logger.warning(
        "Database unreachable at %s (%s); imports will fail until it is available",
        url.render_as_string(hide_password=True),
        exc,
    )


def _install_sqlite_hooks(engine) -> None:
    # pysqlite defers BEGIN and breaks SAVEPOINT; take over transaction control
    # and turn on foreign keys, which SQLite leaves off by default.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def _create_engine():
    url = make_url(settings.database_url)
    if url.get_backend_name() == "sqlite":
        kwargs = {"connect_args": {"check_same_thread": False, "timeout": 30}}
        if not url.database or url.database == ":memory:":
            # In-memory databases must share one connection across threads.
            kwargs["poolclass"] = StaticPool
        engine = create_engine(settings.database_url, **kwargs)
        _install_sqlite_hooks(engine)
        return engine
    return create_engine(settings.database_url, pool_pre_ping=True)


def get_engine():
    global _engine
    if _engine is None:
        try:
            _engine = _create_engine()
            with _engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as e:
            _report_connection_failure(e)
            _engine = _create_engine()
    return _engine


def dialect_insert(table, bind=None):
    """
    Return an INSERT construct that supports ``ON CONFLICT`` for the active dialect.

    Args:
        table: Table (or mapped class ``__table__``) to insert into.
        bind: Engine or connection used to pick the dialect; defaults to the global engine.
    """
    bind = bind if bind is not None else get_engine()
    if bind.dialect.name == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        from sqlalchemy.dialects.postgresql import insert
    return insert(table)


SessionLocal = None

Base = declarative_base()


def get_session_local():
    global SessionLocal
    if SessionLocal is None:
        engine = get_engine()
        SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    return SessionLocal


def create_all_tables() -> None:
    # Importing models registers every table on Base.metadata.
    from debt_intake.db import models  # noqa: F401

    Base.metadata.create_all(bind=get_engine())
