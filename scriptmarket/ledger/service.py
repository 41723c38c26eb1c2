"""
LedgerService: seller balances as an append-only ledger plus a materialized balance.

Every mutation goes through apply_delta: the SellerBalance row is upserted and
locked (SELECT ... FOR UPDATE) before the deltas are applied, so sale credits,
settlements, refunds and payouts for one seller serialize.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.orm import Session

from scriptmarket.ledger.config import get_clearance_days, to_money
from scriptmarket.models.balance_transaction import BalanceTransaction
from scriptmarket.models.payout import Payout
from scriptmarket.models.purchase import Purchase
from scriptmarket.models.seller_balance import SellerBalance
from scriptmarket.utils.metrics import ledger_operations_total, settled_amount_total

logger = logging.getLogger(__name__)

LEDGER_KINDS = ("sale", "settlement", "payout", "refund")
ZERO = Decimal("0.00")


class LedgerService:
    def __init__(self, db: Session):
        self.db = db

    # ------------------------------------------------------------------
    # Balance primitive
    # ------------------------------------------------------------------

    def get_balance(self, seller_id: str) -> SellerBalance | None:
        return (
            self.db.query(SellerBalance)
            .filter(SellerBalance.seller_id == seller_id)
            .one_or_none()
        )

    def lock_balance(self, seller_id: str) -> SellerBalance:
        self.db.execute(
            pg_insert(SellerBalance)
            .values(
                seller_id=seller_id,
                pending_balance=ZERO,
                available_balance=ZERO,
                total_earned=ZERO,
                total_paid_out=ZERO,
            )
            .on_conflict_do_nothing(index_elements=["seller_id"])
        )
        return (
            self.db.query(SellerBalance)
            .filter(SellerBalance.seller_id == seller_id)
            .with_for_update()
            .one()
        )

    def apply_delta(
        self,
        seller_id: str,
        kind: str,
        pending_delta=ZERO,
        available_delta=ZERO,
        purchase_id: str | None = None,
        payout_id: str | None = None,
        note: str | None = None,
    ) -> SellerBalance:
        """Apply one ledger entry atomically. Caller owns the commit."""
        balance = self.lock_balance(seller_id)
        return self._apply(balance, kind, pending_delta, available_delta, purchase_id, payout_id, note)

    def _apply(
        self,
        balance: SellerBalance,
        kind: str,
        pending_delta,
        available_delta,
        purchase_id: str | None,
        payout_id: str | None,
        note: str | None,
    ) -> SellerBalance:
        if kind not in LEDGER_KINDS:
            raise ValueError(f"unknown ledger kind: {kind}")
        pending_delta = to_money(pending_delta)
        available_delta = to_money(available_delta)

        balance.pending_balance = to_money(balance.pending_balance or ZERO) + pending_delta
        balance.available_balance = to_money(balance.available_balance or ZERO) + available_delta
        if kind == "sale":
            balance.total_earned = to_money(balance.total_earned or ZERO) + pending_delta
        elif kind == "refund":
            balance.total_earned = to_money(balance.total_earned or ZERO) + pending_delta + available_delta
        elif kind == "payout":
            balance.total_paid_out = to_money(balance.total_paid_out or ZERO) - available_delta
        self.db.add(balance)

        entry = BalanceTransaction(
            seller_id=balance.seller_id,
            kind=kind,
            pending_delta=pending_delta,
            available_delta=available_delta,
            purchase_id=purchase_id,
            payout_id=payout_id,
            note=note,
        )
        self.db.add(entry)
        self.db.flush()

        ledger_operations_total.labels(kind=kind).inc()
        logger.info(
            "ledger_delta_applied",
            extra={
                "seller_id": balance.seller_id,
                "purchase_id": purchase_id,
                "payout_id": payout_id,
                "amount": str(pending_delta + available_delta),
            },
        )
        return balance

    # ------------------------------------------------------------------
    # Sale / refund / payout entries
    # ------------------------------------------------------------------

    def credit_sale(self, purchase: Purchase) -> SellerBalance:
        return self.apply_delta(
            purchase.seller_id,
            "sale",
            pending_delta=purchase.seller_owed,
            purchase_id=purchase.id,
        )

    def reverse_sale(self, purchase: Purchase) -> SellerBalance:
        """Refund: take seller_owed back from whichever bucket currently holds it."""
        owed = to_money(purchase.seller_owed)
        if purchase.settled_at is None:
            return self.apply_delta(purchase.seller_id, "refund", pending_delta=-owed, purchase_id=purchase.id)
        return self.apply_delta(purchase.seller_id, "refund", available_delta=-owed, purchase_id=purchase.id)

    def debit_payout(self, payout: Payout) -> SellerBalance:
        return self.apply_delta(
            payout.seller_id,
            "payout",
            available_delta=-to_money(payout.amount),
            payout_id=payout.id,
        )

    # ------------------------------------------------------------------
    # Settlement (called by Celery beat)
    # ------------------------------------------------------------------

    def clearance_cutoff(self, now: datetime | None = None) -> datetime:
        now = now or datetime.now(timezone.utc)
        return now - timedelta(days=get_clearance_days())

    def matured_purchases(self, cutoff: datetime) -> list[Purchase]:
        return (
            self.db.query(Purchase)
            .filter(
                Purchase.status == "completed",
                Purchase.settled_at.is_(None),
                Purchase.updated_at < cutoff,
            )
            .all()
        )

    def settle_seller(self, seller_id: str, cutoff: datetime) -> Decimal:
        """
        Move matured earnings of one seller from pending to available.
        Each purchase is stamped settled_at under the balance lock, so it is moved exactly once.
        """
        balance = self.lock_balance(seller_id)
        purchases = (
            self.db.query(Purchase)
            .filter(
                Purchase.seller_id == seller_id,
                Purchase.status == "completed",
                Purchase.settled_at.is_(None),
                Purchase.updated_at < cutoff,
            )
            .with_for_update()
            .all()
        )
        if not purchases:
            return ZERO

        now = datetime.now(timezone.utc)
        total = ZERO
        for purchase in purchases:
            purchase.settled_at = now
            self.db.add(purchase)
            total += to_money(purchase.seller_owed)

        self._apply(
            balance,
            "settlement",
            pending_delta=-total,
            available_delta=total,
            purchase_id=None,
            payout_id=None,
            note=f"settled {len(purchases)} purchases",
        )
        return total

    def settle_balances(self, now: datetime | None = None) -> dict:
        """Settle every seller with matured purchases; one transaction per seller."""
        cutoff = self.clearance_cutoff(now)
        candidates = self.matured_purchases(cutoff)
        if not candidates:
            logger.info("settle_balances_nothing_to_settle")
            return {"settled": 0, "total_amount": "0.00", "errors": 0}

        by_seller: dict[str, Decimal] = defaultdict(lambda: ZERO)
        for purchase in candidates:
            by_seller[purchase.seller_id] += to_money(purchase.seller_owed)

        settled = 0
        errors = 0
        total = ZERO
        for seller_id, expected in by_seller.items():
            try:
                moved = self.settle_seller(seller_id, cutoff)
                self.db.commit()
            except Exception:
                self.db.rollback()
                errors += 1
                logger.exception("settle_seller_failed", extra={"seller_id": seller_id})
                continue
            if moved > 0:
                settled += 1
                total += moved
                settled_amount_total.inc(float(moved))
            if moved != expected:
                # purchases changed between the scan and the locked re-select
                logger.warning(
                    "settle_amount_changed",
                    extra={"seller_id": seller_id, "amount": str(moved), "error": f"expected {expected}"},
                )
            logger.info(
                "seller_settled",
                extra={"seller_id": seller_id, "amount": str(moved)},
            )

        return {"settled": settled, "total_amount": str(total), "errors": errors}
