from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from scriptmarket.core.config import settings


def build_engine(pool_size: int, max_overflow: int, application_name: str):
    return create_engine(
        settings.database_url,
        pool_pre_ping=True,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_recycle=settings.db_pool_recycle_seconds,
        connect_args={
            "connect_timeout": settings.db_connect_timeout,
            "application_name": application_name,
            "options": f"-c statement_timeout={settings.db_statement_timeout_ms}",
        },
    )


engine = build_engine(settings.db_pool_size, settings.db_max_overflow, "scriptmarket-api")
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)


def use_worker_pool() -> None:
    """
    Called in each forked Celery worker process: drop the connections
    inherited from the parent and rebind SessionLocal to the worker pool.
    """
    global engine
    engine.dispose(close=False)
    engine = build_engine(settings.db_worker_pool_size, settings.db_worker_max_overflow, "scriptmarket-worker")
    SessionLocal.configure(bind=engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
