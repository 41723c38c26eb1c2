"""
Celery periodic task: expire trial assignments and revoke their TradingView access.
"""
import logging

from scriptmarket.core.celery_app import celery_app
from scriptmarket.db.session import SessionLocal
from scriptmarket.services.trials.service import TrialService
from scriptmarket.utils.metrics import sweep_runs_total

logger = logging.getLogger(__name__)


@celery_app.task(name="scriptmarket.workers.tasks.trial_cleanup.expire_trials")
def expire_trials() -> dict:
    db = SessionLocal()
    try:
        result = TrialService(db).expire_trials()
        sweep_runs_total.labels(task="expire_trials", status="ok").inc()
        return result
    except Exception:
        db.rollback()
        sweep_runs_total.labels(task="expire_trials", status="error").inc()
        logger.exception("expire_trials_error")
        return {"processed": 0, "error": "exception"}
    finally:
        db.close()
