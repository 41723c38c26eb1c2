"""
Celery periodic task: pay out available seller balances above the minimum.
"""
import logging

from scriptmarket.core.celery_app import celery_app
from scriptmarket.db.session import SessionLocal
from scriptmarket.services.payouts.service import PayoutService
from scriptmarket.utils.metrics import sweep_runs_total

logger = logging.getLogger(__name__)


@celery_app.task(
    name="scriptmarket.workers.tasks.payouts.process_payouts",
    time_limit=900,
    soft_time_limit=840,
)
def process_payouts() -> dict:
    db = SessionLocal()
    try:
        result = PayoutService(db).process_payouts()
        sweep_runs_total.labels(task="process_payouts", status="ok").inc()
        return result
    except Exception:
        db.rollback()
        sweep_runs_total.labels(task="process_payouts", status="error").inc()
        logger.exception("process_payouts_error")
        return {"processed": 0, "error": "exception"}
    finally:
        db.close()
