"""
WebhookService: applies verified Stripe events to the ledger.

checkout.session.completed records the purchase at the amount Stripe collected;
paid subscription invoices after the first record renewals. Nothing here talks
to TradingView: assignments are created pending and dispatched by Celery after
commit.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from scriptmarket.ledger.config import from_cents, split_amount
from scriptmarket.ledger.service import LedgerService
from scriptmarket.models.profile import Profile
from scriptmarket.models.program import Program, ProgramPrice
from scriptmarket.models.purchase import Purchase
from scriptmarket.models.subscription import UserSubscription
from scriptmarket.services.assignments.service import AssignmentService
from scriptmarket.utils.metrics import purchases_recorded_total, webhook_events_total
from scriptmarket.workers.tasks.assignments import dispatch_assignment

logger = logging.getLogger(__name__)

REQUIRED_METADATA = ("program_id", "price_id", "user_id", "seller_id")
ENDED_SUBSCRIPTION_STATUSES = ("canceled", "unpaid", "incomplete_expired")


class WebhookValidationError(Exception):
    """Event is well-formed but cannot be applied (missing metadata, unknown program)."""


def _ts(value) -> datetime | None:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


class WebhookService:
    def __init__(
        self,
        db: Session,
        ledger: LedgerService | None = None,
        assignments: AssignmentService | None = None,
    ):
        self.db = db
        self.ledger = ledger or LedgerService(db)
        self.assignments = assignments or AssignmentService(db)
        self._handlers = {
            "checkout.session.completed": self.handle_checkout_completed,
            "checkout.session.async_payment_succeeded": self.handle_async_payment_succeeded,
            "payment_intent.succeeded": self.handle_payment_succeeded,
            "customer.subscription.created": self.handle_subscription_updated,
            "customer.subscription.updated": self.handle_subscription_updated,
            "customer.subscription.deleted": self.handle_subscription_deleted,
            "invoice.payment_succeeded": self.handle_invoice_paid,
            "invoice.payment_failed": self.handle_invoice_failed,
            "charge.refunded": self.handle_charge_refunded,
        }

    def handle_event(self, event: dict) -> dict:
        event_type = event.get("type") or ""
        obj = (event.get("data") or {}).get("object") or {}
        handler = self._handlers.get(event_type)
        if handler is None:
            logger.info("webhook_event_ignored", extra={"event_id": event.get("id"), "event_type": event_type})
            webhook_events_total.labels(event_type=event_type, outcome="ignored").inc()
            return {"received": True, "outcome": "ignored"}

        result = handler(obj)
        webhook_events_total.labels(event_type=event_type, outcome=result["outcome"]).inc()
        logger.info(
            "webhook_event_handled",
            extra={"event_id": event.get("id"), "event_type": event_type, "outcome": result["outcome"]},
        )
        return {"received": True, **result}

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------

    def purchase_by_intent(self, payment_intent_id: str) -> Purchase | None:
        return (
            self.db.query(Purchase)
            .filter(Purchase.payment_intent_id == payment_intent_id)
            .one_or_none()
        )

    def fee_percent_for(self, seller_id: str, from_metadata=None) -> Decimal | None:
        """Metadata rate, else the seller's negotiated rate, else None (platform default)."""
        if from_metadata not in (None, ""):
            try:
                return Decimal(str(from_metadata))
            except InvalidOperation:
                logger.warning("webhook_bad_fee_percent", extra={"seller_id": seller_id, "error": str(from_metadata)})
        profile = self.db.query(Profile).filter(Profile.id == seller_id).one_or_none()
        if profile is not None and profile.fee_percent is not None:
            return Decimal(profile.fee_percent)
        return None

    def _validate_checkout(self, metadata: dict) -> tuple[Program, ProgramPrice]:
        missing = [key for key in REQUIRED_METADATA if not metadata.get(key)]
        if missing:
            raise WebhookValidationError(f"Missing required metadata: {', '.join(missing)}")

        program = (
            self.db.query(Program).filter(Program.id == metadata["program_id"]).one_or_none()
        )
        if program is None:
            raise WebhookValidationError(f"Program not found: {metadata['program_id']}")
        if program.status != "published":
            raise WebhookValidationError(f"Program is not published: {program.id}")
        if program.seller_id != metadata["seller_id"]:
            raise WebhookValidationError(f"Seller ID mismatch for program: {program.id}")

        price = (
            self.db.query(ProgramPrice).filter(ProgramPrice.id == metadata["price_id"]).one_or_none()
        )
        if price is None or price.program_id != program.id:
            raise WebhookValidationError(f"Price not found for program: {metadata['price_id']}")
        return program, price

    def _insert_purchase(self, purchase: Purchase) -> bool:
        """Insert under a savepoint. False when the payment was already recorded."""
        try:
            with self.db.begin_nested():
                self.db.add(purchase)
                self.db.flush()
        except IntegrityError:
            # concurrent delivery of the same payment won the insert
            logger.info("purchase_duplicate_delivery", extra={"event_id": purchase.payment_intent_id})
            return False
        return True

    def _fulfill(self, purchase: Purchase, program: Program, price: ProgramPrice) -> list:
        """Credit the seller for what was collected and create pending access."""
        if purchase.seller_owed > 0:
            self.ledger.credit_sale(purchase)
        if not purchase.tradingview_username:
            return []
        pine_ids = self.assignments.program_pine_ids(program)
        if not pine_ids:
            logger.warning("checkout_program_has_no_scripts", extra={"program_id": program.id})
            return []
        access_type = "subscription" if price.price_type == "recurring" else "full_purchase"
        return self.assignments.create_for_purchase(purchase, pine_ids, access_type)

    @staticmethod
    def _dispatch(assignments: list) -> list[str]:
        assignment_ids = [a.id for a in assignments]
        for assignment_id in assignment_ids:
            dispatch_assignment.delay(assignment_id)
        return assignment_ids

    def handle_checkout_completed(self, session: dict) -> dict:
        """
        Record the purchase at the amount Stripe collected (net of tax).
        unpaid sessions (delayed payment methods) stay pending until the payment succeeds;
        trial subscriptions complete with nothing to credit.
        """
        metadata = session.get("metadata") or {}
        program, price = self._validate_checkout(metadata)

        payment_intent_id = session.get("payment_intent") or session.get("id")
        if not payment_intent_id:
            raise WebhookValidationError("Checkout session has no id")
        if self.purchase_by_intent(payment_intent_id) is not None:
            logger.info("checkout_duplicate_delivery", extra={"event_id": payment_intent_id})
            return {"outcome": "duplicate"}

        seller_id = metadata["seller_id"]
        tax = (session.get("total_details") or {}).get("amount_tax") or 0
        amount = from_cents((session.get("amount_total") or 0) - tax)
        fee_percent = self.fee_percent_for(seller_id, metadata.get("fee_percent"))
        platform_fee, seller_owed = split_amount(amount, fee_percent)
        username = (metadata.get("tradingview_username") or "").strip() or None
        paid = session.get("payment_status") in ("paid", "no_payment_required")

        purchase = Purchase(
            program_id=program.id,
            price_id=price.id,
            buyer_id=metadata["user_id"],
            seller_id=seller_id,
            amount=amount,
            platform_fee=platform_fee,
            seller_owed=seller_owed,
            status="completed" if paid else "pending",
            payment_intent_id=payment_intent_id,
            checkout_session_id=session.get("id"),
            subscription_id=session.get("subscription"),
            tradingview_username=username,
        )
        if not self._insert_purchase(purchase):
            return {"outcome": "duplicate"}

        assignments = self._fulfill(purchase, program, price) if paid else []

        self.db.commit()
        purchases_recorded_total.inc()
        logger.info(
            "purchase_recorded",
            extra={
                "purchase_id": purchase.id,
                "program_id": program.id,
                "buyer_id": purchase.buyer_id,
                "seller_id": seller_id,
                "amount": str(purchase.amount),
                "outcome": purchase.status,
            },
        )
        return {"outcome": "processed", "purchase_id": purchase.id, "assignment_ids": self._dispatch(assignments)}

    def _locked_purchase(self, payment_intent_id: str) -> Purchase | None:
        return (
            self.db.query(Purchase)
            .filter(Purchase.payment_intent_id == payment_intent_id)
            .with_for_update()
            .one_or_none()
        )

    def _complete_pending(self, payment_intent_id: str) -> dict:
        purchase = self._locked_purchase(payment_intent_id)
        if purchase is None or purchase.status != "pending":
            return {"outcome": "ignored"}
        program = self.db.query(Program).filter(Program.id == purchase.program_id).one_or_none()
        price = self.db.query(ProgramPrice).filter(ProgramPrice.id == purchase.price_id).one_or_none()
        if program is None or price is None:
            raise WebhookValidationError(f"Program or price missing for purchase: {purchase.id}")

        purchase.status = "completed"
        self.db.add(purchase)
        assignments = self._fulfill(purchase, program, price)
        self.db.commit()
        logger.info("purchase_payment_completed", extra={"purchase_id": purchase.id, "seller_id": purchase.seller_id})
        return {"outcome": "processed", "purchase_id": purchase.id, "assignment_ids": self._dispatch(assignments)}

    def handle_payment_succeeded(self, intent: dict) -> dict:
        return self._complete_pending(intent.get("id") or "")

    def handle_async_payment_succeeded(self, session: dict) -> dict:
        return self._complete_pending(session.get("payment_intent") or session.get("id") or "")

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def _subscription(self, stripe_subscription_id: str) -> UserSubscription | None:
        return (
            self.db.query(UserSubscription)
            .filter(UserSubscription.stripe_subscription_id == stripe_subscription_id)
            .one_or_none()
        )

    def _upsert_subscription(self, sub: dict, status: str | None = None) -> UserSubscription:
        record = self._subscription(sub["id"])
        if record is None:
            metadata = sub.get("metadata") or {}
            record = UserSubscription(
                stripe_subscription_id=sub["id"],
                user_id=metadata.get("user_id"),
                program_id=metadata.get("program_id"),
            )
        record.stripe_customer_id = sub.get("customer") or record.stripe_customer_id
        record.status = status or sub.get("status") or record.status or "active"
        record.cancel_at_period_end = bool(sub.get("cancel_at_period_end"))

        # newer API versions report the period on the subscription items
        items = (sub.get("items") or {}).get("data") or [{}]
        start = sub.get("current_period_start") or items[0].get("current_period_start")
        end = sub.get("current_period_end") or items[0].get("current_period_end")
        if start:
            record.current_period_start = _ts(start)
        if end:
            record.current_period_end = _ts(end)
        self.db.add(record)
        return record

    def _revoke_subscription_access(self, stripe_subscription_id: str, reason: str) -> int:
        rows = (
            self.db.query(Purchase.id)
            .filter(Purchase.subscription_id == stripe_subscription_id, Purchase.status == "completed")
            .all()
        )
        return self.assignments.revoke_for_purchases([row[0] for row in rows], reason)

    def handle_subscription_updated(self, sub: dict) -> dict:
        record = self._upsert_subscription(sub)
        revoked = 0
        if record.status in ENDED_SUBSCRIPTION_STATUSES:
            revoked = self._revoke_subscription_access(sub["id"], f"subscription {record.status}")
        self.db.commit()
        logger.info(
            "subscription_synced",
            extra={"buyer_id": record.user_id, "program_id": record.program_id, "processed": revoked},
        )
        return {"outcome": "processed", "revoked": revoked}

    def handle_subscription_deleted(self, sub: dict) -> dict:
        self._upsert_subscription(sub, status="canceled")
        revoked = self._revoke_subscription_access(sub["id"], "subscription canceled")
        self.db.commit()
        logger.info("subscription_canceled", extra={"processed": revoked})
        return {"outcome": "processed", "revoked": revoked}

    @staticmethod
    def _invoice_subscription(invoice: dict) -> tuple[str | None, dict]:
        """(subscription id, subscription metadata) across old and new invoice shapes."""
        if invoice.get("subscription"):
            details = invoice.get("subscription_details") or {}
            return invoice["subscription"], details.get("metadata") or {}
        details = (invoice.get("parent") or {}).get("subscription_details") or {}
        return details.get("subscription"), details.get("metadata") or {}

    def _record_renewal(self, invoice: dict, stripe_subscription_id: str, metadata: dict) -> Purchase | None:
        """One Purchase per paid invoice after the first; the first one is the checkout purchase."""
        payment_intent_id = invoice.get("payment_intent") or invoice.get("id")
        if self.purchase_by_intent(payment_intent_id) is not None:
            return None
        first = (
            self.db.query(Purchase)
            .filter(Purchase.subscription_id == stripe_subscription_id)
            .order_by(Purchase.purchased_at)
            .first()
        )
        if first is None:
            raise WebhookValidationError(f"No purchase recorded for subscription: {stripe_subscription_id}")

        amount = from_cents((invoice.get("amount_paid") or 0) - (invoice.get("tax") or 0))
        fee_percent = self.fee_percent_for(first.seller_id, metadata.get("fee_percent"))
        platform_fee, seller_owed = split_amount(amount, fee_percent)
        purchase = Purchase(
            program_id=first.program_id,
            price_id=first.price_id,
            buyer_id=first.buyer_id,
            seller_id=first.seller_id,
            amount=amount,
            platform_fee=platform_fee,
            seller_owed=seller_owed,
            status="completed",
            payment_intent_id=payment_intent_id,
            subscription_id=stripe_subscription_id,
            tradingview_username=first.tradingview_username,
        )
        if not self._insert_purchase(purchase):
            return None
        if seller_owed > 0:
            self.ledger.credit_sale(purchase)
        return purchase

    def handle_invoice_paid(self, invoice: dict) -> dict:
        subscription_id, metadata = self._invoice_subscription(invoice)
        if not subscription_id:
            return {"outcome": "ignored"}

        record = self._subscription(subscription_id)
        if record is not None:
            record.status = "active"
            lines = (invoice.get("lines") or {}).get("data") or []
            period_end = ((lines[0].get("period") or {}).get("end")) if lines else None
            if period_end:
                record.current_period_end = _ts(period_end)
            self.db.add(record)

        renewal = None
        if invoice.get("billing_reason") != "subscription_create" and (invoice.get("amount_paid") or 0) > 0:
            renewal = self._record_renewal(invoice, subscription_id, metadata)
        if record is None and renewal is None:
            return {"outcome": "ignored"}

        self.db.commit()
        if renewal is None:
            return {"outcome": "processed"}
        purchases_recorded_total.inc()
        logger.info(
            "subscription_renewal_recorded",
            extra={"purchase_id": renewal.id, "seller_id": renewal.seller_id, "amount": str(renewal.amount)},
        )
        return {"outcome": "processed", "purchase_id": renewal.id}

    def handle_invoice_failed(self, invoice: dict) -> dict:
        subscription_id, _ = self._invoice_subscription(invoice)
        record = self._subscription(subscription_id or "")
        if record is None:
            return {"outcome": "ignored"}
        record.status = "past_due"
        self.db.add(record)
        self.db.commit()
        logger.warning("subscription_payment_failed", extra={"buyer_id": record.user_id})
        return {"outcome": "processed"}

    # ------------------------------------------------------------------
    # Refunds
    # ------------------------------------------------------------------

    def handle_charge_refunded(self, charge: dict) -> dict:
        purchase = self.purchase_by_intent(charge.get("payment_intent") or "")
        if purchase is None or purchase.status != "completed":
            return {"outcome": "ignored"}
        if not charge.get("refunded"):
            logger.info("partial_refund_ignored", extra={"purchase_id": purchase.id})
            return {"outcome": "ignored"}

        # lock first so settlement cannot move this purchase concurrently
        self.ledger.lock_balance(purchase.seller_id)
        self.db.refresh(purchase)
        purchase.status = "refunded"
        self.db.add(purchase)
        self.ledger.reverse_sale(purchase)
        revoked = self.assignments.revoke_for_purchases([purchase.id], "purchase refunded")
        self.db.commit()
        logger.info(
            "purchase_refunded",
            extra={"purchase_id": purchase.id, "seller_id": purchase.seller_id, "processed": revoked},
        )
        return {"outcome": "processed", "purchase_id": purchase.id}
