"""
PayoutService: pay out matured seller balances.

Per seller: lock the balance, bail if a payout is still processing, record a
processing Payout and commit; then move the money. Only a successful transfer
debits available_balance.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone

import stripe
from sqlalchemy.orm import Session

from scriptmarket.ledger.config import get_payout_minimum, to_money
from scriptmarket.ledger.service import LedgerService
from scriptmarket.models.payout import Payout
from scriptmarket.models.profile import Profile
from scriptmarket.models.seller_balance import SellerBalance
from scriptmarket.services.payouts.methods import PayoutMethod, resolve_method
from scriptmarket.utils.metrics import payouts_total

logger = logging.getLogger(__name__)


class PayoutService:
    def __init__(self, db: Session, ledger: LedgerService | None = None):
        self.db = db
        self.ledger = ledger or LedgerService(db)

    def eligible_balances(self) -> list[SellerBalance]:
        return (
            self.db.query(SellerBalance)
            .filter(SellerBalance.available_balance >= get_payout_minimum())
            .all()
        )

    def sellers_with_processing_payout(self) -> set[str]:
        rows = self.db.query(Payout.seller_id).filter(Payout.status == "processing").all()
        return {row[0] for row in rows}

    def has_processing_payout(self, seller_id: str) -> bool:
        row = (
            self.db.query(Payout.id)
            .filter(Payout.seller_id == seller_id, Payout.status == "processing")
            .first()
        )
        return row is not None

    def method_for(self, seller_id: str) -> PayoutMethod:
        profile = self.db.query(Profile).filter(Profile.id == seller_id).one_or_none()
        return resolve_method(profile)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def process_payouts(self) -> dict:
        balances = self.eligible_balances()
        if not balances:
            logger.info("process_payouts_nothing_eligible")
            return {"processed": 0, "results": []}

        busy = self.sellers_with_processing_payout()
        results = []
        for balance in balances:
            seller_id = balance.seller_id
            if seller_id in busy:
                results.append({"seller_id": seller_id, "success": False, "error": "Payout already processing"})
                continue
            try:
                results.append(self.pay_seller(seller_id))
            except Exception as e:
                self.db.rollback()
                logger.exception("payout_seller_failed", extra={"seller_id": seller_id})
                results.append({"seller_id": seller_id, "success": False, "error": str(e)})

        logger.info(
            "process_payouts_done",
            extra={
                "processed": len(results),
                "errors": sum(1 for r in results if not r["success"]),
            },
        )
        return {"processed": len(results), "results": results}

    def pay_seller(self, seller_id: str) -> dict:
        method = self.method_for(seller_id)

        balance = self.ledger.lock_balance(seller_id)
        # a committed processing payout has not been debited yet
        if self.has_processing_payout(seller_id):
            self.db.rollback()
            return {"seller_id": seller_id, "success": False, "error": "Payout already processing"}
        amount = to_money(balance.available_balance)
        if amount < get_payout_minimum():
            self.db.rollback()
            return {"seller_id": seller_id, "success": False, "error": "Balance below payout minimum"}

        payout = Payout(
            seller_id=seller_id,
            amount=amount,
            status="processing",
            payout_method=method.name,
        )
        self.db.add(payout)
        self.db.flush()

        reason = method.unavailable_reason()
        if reason:
            return self._fail(payout, reason)
        self.db.commit()

        try:
            reference = method.execute(payout)
        except stripe.StripeError as e:
            return self._fail(payout, e.user_message or str(e))
        except Exception as e:
            logger.exception("payout_transfer_error", extra={"payout_id": payout.id, "seller_id": seller_id})
            return self._fail(payout, f"{type(e).__name__}: {e}")

        payout.status = "completed"
        payout.stripe_transfer_id = reference
        payout.completed_at = datetime.now(timezone.utc)
        self.db.add(payout)
        self.ledger.debit_payout(payout)
        self.db.commit()

        payouts_total.labels(method=method.name, status="completed").inc()
        logger.info(
            "payout_completed",
            extra={"payout_id": payout.id, "seller_id": seller_id, "amount": str(amount)},
        )
        return {
            "seller_id": seller_id,
            "success": True,
            "amount": str(amount),
            "transfer_id": reference,
        }

    def _fail(self, payout: Payout, reason: str) -> dict:
        payout.status = "failed"
        payout.failure_reason = reason
        self.db.add(payout)
        self.db.commit()
        payouts_total.labels(method=payout.payout_method, status="failed").inc()
        logger.warning(
            "payout_failed",
            extra={"payout_id": payout.id, "seller_id": payout.seller_id, "error": reason},
        )
        return {"seller_id": payout.seller_id, "success": False, "error": reason}
