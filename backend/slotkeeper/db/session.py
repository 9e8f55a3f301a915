"""Engine and session factory."""

from collections.abc import Generator
from typing import Annotated

from fastapi import Depends
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from slotkeeper.core.config import Settings, settings
from slotkeeper.db.base import Base


def is_sqlite(database_url: str) -> bool:
    return database_url.startswith("sqlite")


def create_db_engine(config: Settings) -> Engine:
    """Build the engine for ``config.database_url``.

    SQLite gets a cross-thread connection and foreign keys switched on;
    server databases get a sized, pre-pinged pool.
    """
    if is_sqlite(config.database_url):
        db_engine = create_engine(
            config.database_url,
            connect_args={"check_same_thread": False},
            echo=config.db_echo,
        )

        @event.listens_for(db_engine, "connect")
        def _enable_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return db_engine

    return create_engine(
        config.database_url,
        pool_size=config.db_pool_size,
        max_overflow=config.db_max_overflow,
        pool_pre_ping=True,
        pool_recycle=3600,
        echo=config.db_echo,
    )


engine = create_db_engine(settings)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(bind: Engine = engine) -> None:
    """Create tables on SQLite. Server databases are migrated with Alembic."""
    if is_sqlite(str(bind.url)):
        # Register every table on Base.metadata
        import slotkeeper.models  # noqa: F401

        Base.metadata.create_all(bind=bind)


def get_db() -> Generator[Session, None, None]:
    """Request-scoped session dependency."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


DbSession = Annotated[Session, Depends(get_db)]
