from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from gatekeeper.config import Settings
from gatekeeper.models import Base

logger = logging.getLogger(__name__)


engine: Engine | None = None
_session_factory: sessionmaker | None = None


class _SessionWrapper:
    """Callable proxy returning sessions from the current factory."""

    def __call__(self, *args: Any, **kwargs: Any):
        if _session_factory is None:
            raise RuntimeError("Database not initialized")
        return _session_factory(*args, **kwargs)


SessionLocal = _SessionWrapper()


def _engine_kwargs(database_url: str) -> dict[str, Any]:
    kwargs: dict[str, Any] = {
        "future": True,
        "pool_size": 50,
        "max_overflow": 0,
        "pool_recycle": 30,
        "pool_pre_ping": True,
    }
    if database_url.startswith("sqlite"):
        # writers queue on the database lock instead of failing fast;
        # pooled connections move between worker threads
        kwargs["connect_args"] = {"timeout": 30, "check_same_thread": False}
    return kwargs


def init_db(cfg: Settings) -> None:
    """Create engine and session factory using SQLAlchemy's ``create_engine``."""
    global engine, _session_factory

    engine = create_engine(cfg.database_url, **_engine_kwargs(cfg.database_url))
    _session_factory = sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )

    if cfg.db_create_all:
        Base.metadata.create_all(engine)
    logger.info("Database initialized: %s", engine.url.render_as_string(hide_password=True))
