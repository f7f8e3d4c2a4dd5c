"""
SQLAlchemy engine, session, and base. DB path from config or default.
"""
import logging
from pathlib import Path
from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, declarative_base, Session
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

Base = declarative_base()

DEFAULT_DB_DIR = Path.home() / ".visa_dashboard"


def resolve_db_url(config_data: Optional[dict] = None) -> str:
    """
    Build the SQLAlchemy URL from the database section of the app config.
    database.url wins over database.path; with neither, ~/.visa_dashboard/dashboard.db is used.
    """
    db_config = (config_data or {}).get("database") or {}
    url = db_config.get("url")
    if url:
        return url
    path = db_config.get("path")
    if path:
        path = Path(path).expanduser().resolve()
        path.parent.mkdir(parents=True, exist_ok=True)
        return f"sqlite:///{path}"
    DEFAULT_DB_DIR.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{DEFAULT_DB_DIR / 'dashboard.db'}"


def _is_memory_url(db_url: str) -> bool:
    return db_url in ("sqlite://", "sqlite:///:memory:") or ":memory:" in db_url


class Database:
    """Owns one engine and its session factory. Created by the app and handed to the Store."""

    def __init__(self, db_url: str):
        self.db_url = db_url
        self._engine: Optional[Engine] = None
        self._SessionLocal = None

    @classmethod
    def from_config(cls, config_data: Optional[dict] = None) -> "Database":
        return cls(resolve_db_url(config_data))

    @property
    def engine(self) -> Optional[Engine]:
        return self._engine

    def init(self) -> None:
        """Create the engine and all tables. Safe to call twice."""
        if self._engine is not None:
            logger.debug("Database already initialized")
            return

        kwargs = {"echo": False, "future": True}
        if self.db_url.startswith("sqlite"):
            # Timer threads and the API threadpool share the engine
            kwargs["connect_args"] = {"check_same_thread": False}
            if _is_memory_url(self.db_url):
                # One connection, otherwise every session sees its own empty database
                kwargs["poolclass"] = StaticPool
        self._engine = create_engine(self.db_url, **kwargs)

        # Import model module so tables are registered with Base
        from visa_dashboard.core import models as _core_models  # noqa: F401

        Base.metadata.create_all(self._engine)
        self._SessionLocal = sessionmaker(
            bind=self._engine, autocommit=False, autoflush=False, expire_on_commit=False
        )
        logger.info(f"Database initialized: {self.db_url.split('?')[0]}")

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """Context manager for a single DB session. Commits on success, rolls back on error."""
        if self._SessionLocal is None:
            raise RuntimeError("Database not initialized. Call init() first.")
        session = self._SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def dispose(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
            self._SessionLocal = None
