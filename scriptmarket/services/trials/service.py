"""
TrialService: expire trial assignments whose access window has passed.
"""
import logging
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from scriptmarket.models.script_assignment import ScriptAssignment
from scriptmarket.services.assignments.service import AssignmentService
from scriptmarket.utils.metrics import assignments_total

logger = logging.getLogger(__name__)


class TrialService:
    def __init__(self, db: Session, assignments: AssignmentService | None = None):
        self.db = db
        self.assignments = assignments or AssignmentService(db)

    def expired_trials(self, now: datetime) -> list[ScriptAssignment]:
        # strict: a trial expiring exactly at `now` is still valid
        return (
            self.db.query(ScriptAssignment)
            .filter(
                ScriptAssignment.is_trial.is_(True),
                ScriptAssignment.status == "assigned",
                ScriptAssignment.expires_at < now,
            )
            .all()
        )

    def expire_trials(self, now: datetime | None = None) -> dict:
        """
        Mark overdue trials expired, then revoke them on TradingView.
        The local transition is committed before the remote call; a failed revoke
        is logged and does not undo it.
        """
        now = now or datetime.now(timezone.utc)
        trials = self.expired_trials(now)
        processed = 0
        errors = 0

        for assignment in trials:
            try:
                assignment.status = "expired"
                self.db.add(assignment)
                self.db.commit()
            except Exception:
                self.db.rollback()
                errors += 1
                logger.exception("trial_expire_failed", extra={"assignment_id": assignment.id})
                continue

            processed += 1
            assignments_total.labels(status="expired").inc()
            if not self.assignments.revoke_remote(assignment):
                errors += 1
            try:
                self.db.commit()
            except Exception:
                self.db.rollback()
                logger.exception("trial_revoke_log_commit_failed", extra={"assignment_id": assignment.id})

        logger.info(
            "expire_trials_done",
            extra={"processed": processed, "errors": errors},
        )
        return {"processed": processed, "errors": errors, "total": len(trials)}
