"""
Celery periodic task: move matured seller earnings from pending to available.
"""
import logging

from scriptmarket.core.celery_app import celery_app
from scriptmarket.db.session import SessionLocal
from scriptmarket.ledger.service import LedgerService
from scriptmarket.utils.metrics import sweep_runs_total

logger = logging.getLogger(__name__)


@celery_app.task(name="scriptmarket.ledger.tasks.settle_balances")
def settle_balances() -> dict:
    """Settle every seller whose purchases are past the clearance window."""
    db = SessionLocal()
    try:
        result = LedgerService(db).settle_balances()
        sweep_runs_total.labels(task="settle_balances", status="ok").inc()
        logger.info("settle_balances_done", extra={"processed": result["settled"], "errors": result["errors"]})
        return result
    except Exception:
        db.rollback()
        sweep_runs_total.labels(task="settle_balances", status="error").inc()
        logger.exception("settle_balances_error")
        return {"settled": 0, "error": "exception"}
    finally:
        db.close()
