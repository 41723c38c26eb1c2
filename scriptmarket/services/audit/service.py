import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from scriptmarket.models.assignment_log import AssignmentLog

logger = logging.getLogger(__name__)


class AssignmentLogService:
    """Append-only trail of dispatch and revoke outcomes. Never fails the caller."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def log(
        self,
        assignment_id: str,
        message: str,
        level: str = "info",
        purchase_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> AssignmentLog | None:
        entry = AssignmentLog(
            assignment_id=assignment_id,
            purchase_id=purchase_id,
            log_level=level,
            message=message,
            details=details or {},
        )
        try:
            with self.db.begin_nested():
                self.db.add(entry)
        except SQLAlchemyError as e:
            logger.warning("assignment_log_write_failed", extra={"assignment_id": assignment_id, "error": str(e)})
            return None
        return entry
