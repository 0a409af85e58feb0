from __future__ import annotations

from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False)


def init_engine(database_url: str, **engine_options):
    if database_url.startswith("sqlite"):
        engine_options.setdefault("connect_args", {"check_same_thread": False, "timeout": 30})
    else:
        engine_options.setdefault("pool_pre_ping", True)
    engine = create_engine(database_url, future=True, **engine_options)
    SessionLocal.configure(bind=engine)
    return engine


def _ensure_initialized(session_factory) -> None:
    if session_factory.kw.get("bind") is None:
        raise RuntimeError("Database engine not initialized. Call init_engine() before use.")


@contextmanager
def get_session(session_factory=None):
    session_factory = session_factory or SessionLocal
    _ensure_initialized(session_factory)
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
