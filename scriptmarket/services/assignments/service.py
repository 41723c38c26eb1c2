"""
AssignmentService: script access lifecycle on TradingView.

pending -> assigned | failed      (dispatch)
failed  -> pending                (operator retry)
assigned(trial) -> expired        (trial sweeper)
pending | assigned | failed -> revoked   (subscription end, refund)
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from cryptography.exceptions import InvalidTag
from sqlalchemy.orm import Session

from scriptmarket.core.config import settings
from scriptmarket.models.program import Program, ProgramScript
from scriptmarket.models.profile import Profile
from scriptmarket.models.purchase import Purchase
from scriptmarket.models.script_assignment import OPEN_STATUSES, ScriptAssignment
from scriptmarket.services.audit.service import AssignmentLogService
from scriptmarket.services.tradingview.client import TradingViewClient, TradingViewError
from scriptmarket.services.tradingview.crypto import decrypt_cookie
from scriptmarket.utils.metrics import assignments_total

logger = logging.getLogger(__name__)


class AssignmentError(Exception):
    """Assignment cannot proceed (missing data, seller not connected, bad state)."""


class AssignmentService:
    def __init__(self, db: Session, client_factory=TradingViewClient):
        self.db = db
        self.client_factory = client_factory
        self.logs = AssignmentLogService(db)

    def get(self, assignment_id: str) -> ScriptAssignment | None:
        return (
            self.db.query(ScriptAssignment)
            .filter(ScriptAssignment.id == assignment_id)
            .one_or_none()
        )

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def program_pine_ids(self, program: Program) -> list[str]:
        """Linked scripts in display order; falls back to the legacy single-script column."""
        rows = (
            self.db.query(ProgramScript)
            .filter(ProgramScript.program_id == program.id)
            .order_by(ProgramScript.display_order)
            .all()
        )
        pine_ids = [row.pine_id for row in rows if row.pine_id]
        if not pine_ids and program.tradingview_script_id:
            pine_ids = [program.tradingview_script_id]
        return pine_ids

    def create_for_purchase(
        self, purchase: Purchase, pine_ids: list[str], access_type: str
    ) -> list[ScriptAssignment]:
        created = []
        for pine_id in pine_ids:
            assignment = ScriptAssignment(
                purchase_id=purchase.id,
                program_id=purchase.program_id,
                buyer_id=purchase.buyer_id,
                seller_id=purchase.seller_id,
                status="pending",
                access_type=access_type,
                is_trial=False,
                tradingview_username=purchase.tradingview_username,
                pine_id=pine_id,
                assignment_attempts=0,
                assignment_details={},
            )
            self.db.add(assignment)
            created.append(assignment)
        self.db.flush()
        for assignment in created:
            assignments_total.labels(status="pending").inc()
        return created

    def grant_trial(
        self, program_id: str, buyer_id: str, tradingview_username: str
    ) -> list[ScriptAssignment]:
        """Create pending trial assignments for every script of a published program."""
        if not tradingview_username:
            raise AssignmentError("tradingview_username is required")
        program = self.db.query(Program).filter(Program.id == program_id).one_or_none()
        if not program or program.status != "published":
            raise AssignmentError("Program not found or not published")

        open_trial = (
            self.db.query(ScriptAssignment.id)
            .filter(
                ScriptAssignment.program_id == program_id,
                ScriptAssignment.buyer_id == buyer_id,
                ScriptAssignment.is_trial.is_(True),
                ScriptAssignment.status.in_(OPEN_STATUSES),
            )
            .first()
        )
        if open_trial:
            raise AssignmentError("Buyer already has a trial for this program")

        pine_ids = self.program_pine_ids(program)
        if not pine_ids:
            raise AssignmentError("Program has no linked TradingView scripts")

        created = []
        for pine_id in pine_ids:
            assignment = ScriptAssignment(
                purchase_id=None,
                program_id=program.id,
                buyer_id=buyer_id,
                seller_id=program.seller_id,
                status="pending",
                access_type="trial",
                is_trial=True,
                tradingview_username=tradingview_username,
                pine_id=pine_id,
                assignment_attempts=0,
                assignment_details={},
            )
            self.db.add(assignment)
            created.append(assignment)
        self.db.flush()
        for assignment in created:
            assignments_total.labels(status="pending").inc()
        logger.info(
            "trial_granted",
            extra={"program_id": program.id, "buyer_id": buyer_id, "processed": len(created)},
        )
        return created

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _seller_client(self, seller_id: str) -> TradingViewClient:
        profile = self.db.query(Profile).filter(Profile.id == seller_id).one_or_none()
        if (
            not profile
            or not profile.is_tradingview_connected
            or not profile.tradingview_session_cookie
            or not profile.tradingview_signed_session_cookie
        ):
            raise AssignmentError("Seller TradingView account not connected")
        try:
            session_cookie = decrypt_cookie(profile.tradingview_session_cookie)
            signed_cookie = decrypt_cookie(profile.tradingview_signed_session_cookie)
        except (InvalidTag, ValueError) as e:
            raise AssignmentError("Failed to decrypt seller TradingView credentials") from e
        return self.client_factory(session_cookie, signed_cookie)

    def _access_expiry(self, assignment: ScriptAssignment, now: datetime) -> datetime:
        if assignment.is_trial:
            program = (
                self.db.query(Program).filter(Program.id == assignment.program_id).one_or_none()
            )
            days = (program.trial_period_days if program else None) or settings.trial_default_days
        else:
            days = settings.grant_default_days
        return now + timedelta(days=days)

    def dispatch(self, assignment_id: str) -> ScriptAssignment:
        """
        Grant access on TradingView for a pending assignment.
        Failures end in status=failed with error_message; nothing is retried here.
        """
        assignment = self.get(assignment_id)
        if not assignment:
            raise AssignmentError(f"Assignment not found: {assignment_id}")
        if assignment.status != "pending":
            logger.info(
                "assignment_dispatch_skipped",
                extra={"assignment_id": assignment.id, "error": f"status={assignment.status}"},
            )
            return assignment

        now = datetime.now(timezone.utc)
        assignment.assignment_attempts = (assignment.assignment_attempts or 0) + 1
        assignment.last_attempt_at = now

        client = None
        try:
            if not assignment.pine_id or not assignment.tradingview_username:
                raise AssignmentError("Missing required parameters: pine_id, tradingview_username")
            client = self._seller_client(assignment.seller_id)
            if not client.username_exists(assignment.tradingview_username):
                raise AssignmentError(
                    f'TradingView username "{assignment.tradingview_username}" not found'
                )
            access_until = self._access_expiry(assignment, now)
            result = client.grant_access(
                assignment.pine_id, assignment.tradingview_username, access_until
            )
        except (AssignmentError, TradingViewError) as e:
            self._mark_failed(assignment, str(e), now)
            return assignment
        finally:
            if client is not None:
                client.close()

        assignment.status = "assigned"
        assignment.assigned_at = now
        assignment.error_message = None
        if assignment.is_trial:
            assignment.expires_at = access_until
        assignment.assignment_details = {
            "pine_id": assignment.pine_id,
            "tradingview_username": assignment.tradingview_username,
            "access_type": assignment.access_type,
            "already_had_access": result.get("already", False),
            "expiration": result.get("expiration"),
            "assigned_at": now.isoformat(),
        }
        self.db.add(assignment)
        self.db.flush()

        assignments_total.labels(status="assigned").inc()
        self.logs.log(
            assignment.id,
            "TradingView access granted",
            purchase_id=assignment.purchase_id,
            details={"pine_id": assignment.pine_id, "expiration": result.get("expiration")},
        )
        logger.info(
            "assignment_assigned",
            extra={"assignment_id": assignment.id, "buyer_id": assignment.buyer_id},
        )
        return assignment

    def _mark_failed(self, assignment: ScriptAssignment, message: str, now: datetime) -> None:
        assignment.status = "failed"
        assignment.error_message = message
        assignment.assignment_details = {
            "pine_id": assignment.pine_id,
            "tradingview_username": assignment.tradingview_username,
            "error": message,
            "failed_at": now.isoformat(),
        }
        self.db.add(assignment)
        self.db.flush()

        assignments_total.labels(status="failed").inc()
        self.logs.log(
            assignment.id,
            "TradingView access grant failed",
            level="error",
            purchase_id=assignment.purchase_id,
            details={"error": message},
        )
        logger.warning(
            "assignment_failed",
            extra={"assignment_id": assignment.id, "error": message},
        )

    def retry(self, assignment_id: str) -> ScriptAssignment:
        """Operator retry: failed -> pending. Caller commits and enqueues dispatch."""
        assignment = self.get(assignment_id)
        if not assignment:
            raise AssignmentError(f"Assignment not found: {assignment_id}")
        if assignment.status != "failed":
            raise AssignmentError(f"Only failed assignments can be retried (status={assignment.status})")
        assignment.status = "pending"
        assignment.error_message = None
        self.db.add(assignment)
        self.db.flush()
        logger.info("assignment_retry_requested", extra={"assignment_id": assignment.id})
        return assignment

    # ------------------------------------------------------------------
    # Revocation
    # ------------------------------------------------------------------

    def revoke_remote(self, assignment: ScriptAssignment) -> bool:
        """Best-effort removal on TradingView. The local record stays authoritative."""
        if not assignment.pine_id or not assignment.tradingview_username:
            return False
        client = None
        try:
            client = self._seller_client(assignment.seller_id)
            result = client.revoke_access(assignment.pine_id, assignment.tradingview_username)
        except (AssignmentError, TradingViewError) as e:
            logger.warning(
                "assignment_remote_revoke_failed",
                extra={"assignment_id": assignment.id, "error": str(e)},
            )
            self.logs.log(
                assignment.id,
                "Failed to revoke TradingView access",
                level="error",
                purchase_id=assignment.purchase_id,
                details={"error": str(e), "pine_id": assignment.pine_id},
            )
            return False
        finally:
            if client is not None:
                client.close()

        self.logs.log(
            assignment.id,
            "TradingView access revoked",
            purchase_id=assignment.purchase_id,
            details={"pine_id": assignment.pine_id, "result": result},
        )
        return True

    def revoke(self, assignment: ScriptAssignment, reason: str) -> bool:
        """Local transition to revoked, then best-effort remote revoke if access was granted."""
        if assignment.status not in OPEN_STATUSES:
            return False
        was_assigned = assignment.status == "assigned"
        assignment.status = "revoked"
        assignment.expires_at = datetime.now(timezone.utc)
        assignment.error_message = reason
        self.db.add(assignment)
        self.db.flush()
        assignments_total.labels(status="revoked").inc()
        logger.info("assignment_revoked", extra={"assignment_id": assignment.id, "error": reason})
        if was_assigned:
            self.revoke_remote(assignment)
        return True

    def revoke_for_purchases(self, purchase_ids: list[str], reason: str) -> int:
        if not purchase_ids:
            return 0
        assignments = (
            self.db.query(ScriptAssignment)
            .filter(
                ScriptAssignment.purchase_id.in_(purchase_ids),
                ScriptAssignment.status.in_(OPEN_STATUSES),
            )
            .all()
        )
        return sum(1 for assignment in assignments if self.revoke(assignment, reason))
