"""Engine pool sizing for the API process and forked Celery workers."""
from unittest.mock import MagicMock, patch

from scriptmarket.core.config import settings
from scriptmarket.db import session


def test_api_engine_uses_api_pool():
    assert session.engine.pool.size() == settings.db_pool_size
    assert session.SessionLocal.kw["bind"] is session.engine


def test_worker_process_gets_small_pool():
    original = session.engine
    worker_engine = MagicMock()
    try:
        with patch.object(session, "create_engine", return_value=worker_engine) as create, \
                patch.object(original, "dispose") as dispose:
            session.use_worker_pool()

        dispose.assert_called_once_with(close=False)
        kwargs = create.call_args.kwargs
        assert kwargs["pool_size"] == settings.db_worker_pool_size
        assert kwargs["max_overflow"] == settings.db_worker_max_overflow
        assert kwargs["connect_args"]["application_name"] == "scriptmarket-worker"
        assert kwargs["connect_args"]["options"] == f"-c statement_timeout={settings.db_statement_timeout_ms}"
        assert session.SessionLocal.kw["bind"] is worker_engine
    finally:
        session.engine = original
        session.SessionLocal.configure(bind=original)


def test_worker_signal_rebinds_pool():
    from scriptmarket.core import celery_app

    with patch.object(celery_app, "use_worker_pool") as use_worker_pool:
        celery_app._init_worker_db_pool()
    use_worker_pool.assert_called_once()
