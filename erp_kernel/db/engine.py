"""
Module: erp_kernel.db.engine
Responsibility: SQLAlchemy engine construction, session factories, and
    transactional scope utilities.
Architecture position: Kernel > DB.  Holds no module-level engine or session
    state: the composition root builds one Engine and one session factory and
    passes them to whoever needs them.

Invariants enforced:
    - PostgreSQL runs at READ COMMITTED with explicit row locks
      (SELECT ... FOR UPDATE) where stronger isolation is needed.
    - SQLite runs with driver-level autocommit disabled and SQLAlchemy
      emitting BEGIN itself, so that savepoints (begin_nested) behave, and
      with foreign keys enforced.
    - In-memory SQLite shares one connection (StaticPool) so every session
      sees the same database.

Failure modes:
    - OperationalError on connection failure; callers wrap with
      run_with_retry for transient errors.
"""

from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from erp_kernel.logging_config import get_logger

logger = get_logger("db.engine")


def create_engine_from_url(
    database_url: str = "sqlite://",
    echo: bool = False,
    pool_size: int = 20,
    max_overflow: int = 10,
    pool_pre_ping: bool = True,
    pool_timeout: int = 30,
    pool_recycle: int = 1800,
) -> Engine:
    """
    Build an Engine for ``database_url``.

    Args:
        database_url: Any SQLAlchemy URL.  ``sqlite://`` is in-memory.
        echo: If True, log all SQL statements.
        pool_size: Connections kept in the pool (server databases only).
        max_overflow: Max connections beyond pool_size.
        pool_pre_ping: Test connections before use.
        pool_timeout: Seconds to wait for a pooled connection.
        pool_recycle: Seconds after which a connection is recycled.
    """
    if database_url.startswith("sqlite"):
        engine = _create_sqlite_engine(database_url, echo)
        dialect = "sqlite"
    else:
        engine = create_engine(
            database_url,
            echo=echo,
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_pre_ping=pool_pre_ping,
            pool_timeout=pool_timeout,
            pool_recycle=pool_recycle,
            isolation_level="READ COMMITTED",
        )
        dialect = engine.dialect.name

    logger.info(
        "engine_initialized",
        extra={"dialect": dialect, "pool_size": pool_size, "echo": echo},
    )
    return engine


def _create_sqlite_engine(database_url: str, echo: bool) -> Engine:
    in_memory = database_url in ("sqlite://", "sqlite:///:memory:")
    kwargs: dict = {"connect_args": {"check_same_thread": False}}
    if in_memory:
        kwargs["poolclass"] = StaticPool
    engine = create_engine(database_url, echo=echo, **kwargs)

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # SQLAlchemy issues BEGIN itself (see _on_begin)
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


def create_session_factory(engine: Engine) -> sessionmaker[Session]:
    """Session factory bound to ``engine``; objects stay usable after commit."""
    return sessionmaker(bind=engine, expire_on_commit=False)


@contextmanager
def session_scope(
    session_factory: sessionmaker[Session],
) -> Generator[Session, None, None]:
    """
    Provide a transactional scope around a series of operations.

    Postconditions: On normal exit, the session is committed and closed.
        On exception, the session is rolled back and closed and the
        exception re-raised.

    Usage:
        with session_scope(ctx.session_factory) as session:
            ctx.ledger(session).post_entry(entry_id, actor_id=actor)
    """
    session = session_factory()
    logger.debug("transaction_started")
    try:
        yield session
        session.commit()
        logger.debug("transaction_committed")
    except Exception:
        session.rollback()
        logger.warning("transaction_rolled_back", exc_info=True)
        raise
    finally:
        session.close()


def create_tables(engine: Engine) -> None:
    """
    Create every table owned by the engines.

    Imports all model modules first so that Base.metadata is complete.
    """
    from erp_kernel.db.base import Base
    from erp_kernel.models import import_all_models

    import_all_models()
    Base.metadata.create_all(engine)
    logger.info("tables_created", extra={"table_count": len(Base.metadata.tables)})


def drop_tables(engine: Engine) -> None:
    """Drop all tables. Use with caution - primarily for testing."""
    from erp_kernel.db.base import Base
    from erp_kernel.models import import_all_models

    import_all_models()
    Base.metadata.drop_all(engine)
