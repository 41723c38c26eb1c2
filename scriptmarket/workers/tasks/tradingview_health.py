"""
Celery periodic task: re-validate stored seller TradingView sessions.
"""
import logging

from scriptmarket.core.celery_app import celery_app
from scriptmarket.db.session import SessionLocal
from scriptmarket.services.tradingview.service import TradingViewService
from scriptmarket.utils.metrics import sweep_runs_total

logger = logging.getLogger(__name__)


@celery_app.task(name="scriptmarket.workers.tasks.tradingview_health.check_tradingview_sessions")
def check_tradingview_sessions() -> dict:
    db = SessionLocal()
    try:
        result = TradingViewService(db).health_check()
        sweep_runs_total.labels(task="check_tradingview_sessions", status="ok").inc()
        return result
    except Exception:
        db.rollback()
        sweep_runs_total.labels(task="check_tradingview_sessions", status="error").inc()
        logger.exception("check_tradingview_sessions_error")
        return {"checked": 0, "error": "exception"}
    finally:
        db.close()
