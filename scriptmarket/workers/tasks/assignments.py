"""
Celery task: grant TradingView access for one pending script assignment.
"""
import logging

from scriptmarket.core.celery_app import celery_app
from scriptmarket.db.session import SessionLocal
from scriptmarket.services.assignments.service import AssignmentError, AssignmentService

logger = logging.getLogger(__name__)


@celery_app.task(
    name="scriptmarket.workers.tasks.assignments.dispatch_assignment",
    time_limit=120,
    soft_time_limit=100,
)
def dispatch_assignment(assignment_id: str) -> dict:
    """Dispatch a single assignment; the outcome is stored on the row, never retried here."""
    db = SessionLocal()
    try:
        assignment = AssignmentService(db).dispatch(assignment_id)
        db.commit()
        return {"assignment_id": assignment.id, "status": assignment.status}
    except AssignmentError as e:
        db.rollback()
        logger.warning("dispatch_assignment_rejected", extra={"assignment_id": assignment_id, "error": str(e)})
        return {"assignment_id": assignment_id, "error": str(e)}
    except Exception:
        db.rollback()
        logger.exception("dispatch_assignment_error", extra={"assignment_id": assignment_id})
        return {"assignment_id": assignment_id, "error": "exception"}
    finally:
        db.close()
