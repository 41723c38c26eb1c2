"""Tests for LedgerService: apply_delta primitive, settlement, refunds, payouts."""
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import MagicMock, patch
from uuid import uuid4

import pytest


def _make_balance(**kwargs):
    from scriptmarket.models.seller_balance import SellerBalance

    return SellerBalance(
        seller_id=kwargs.get("seller_id", "seller-1"),
        pending_balance=Decimal(kwargs.get("pending", "0.00")),
        available_balance=Decimal(kwargs.get("available", "0.00")),
        total_earned=Decimal(kwargs.get("earned", "0.00")),
        total_paid_out=Decimal(kwargs.get("paid_out", "0.00")),
    )


def _make_purchase(**kwargs):
    from scriptmarket.models.purchase import Purchase

    return Purchase(
        id=kwargs.get("id", str(uuid4())),
        program_id="prog-1",
        buyer_id="buyer-1",
        seller_id=kwargs.get("seller_id", "seller-1"),
        amount=Decimal(kwargs.get("amount", "100.00")),
        platform_fee=Decimal(kwargs.get("platform_fee", "10.00")),
        seller_owed=Decimal(kwargs.get("seller_owed", "90.00")),
        status=kwargs.get("status", "completed"),
        payment_intent_id=kwargs.get("payment_intent_id", f"pi_{uuid4().hex[:8]}"),
        settled_at=kwargs.get("settled_at"),
    )


def _added(db, cls):
    return [c.args[0] for c in db.add.call_args_list if isinstance(c.args[0], cls)]


class TestApplyDelta:
    def test_sale_credits_pending_and_total_earned(self):
        from scriptmarket.ledger.service import LedgerService
        from scriptmarket.models.balance_transaction import BalanceTransaction

        db = MagicMock()
        balance = _make_balance()
        svc = LedgerService(db)
        with patch.object(svc, "lock_balance", return_value=balance):
            svc.apply_delta("seller-1", "sale", pending_delta=Decimal("90"), purchase_id="p1")

        assert balance.pending_balance == Decimal("90.00")
        assert balance.available_balance == Decimal("0.00")
        assert balance.total_earned == Decimal("90.00")
        entries = _added(db, BalanceTransaction)
        assert len(entries) == 1
        assert entries[0].kind == "sale"
        assert entries[0].purchase_id == "p1"
        db.flush.assert_called()

    def test_unknown_kind_rejected_before_any_write(self):
        from scriptmarket.ledger.service import LedgerService

        db = MagicMock()
        balance = _make_balance()
        svc = LedgerService(db)
        with patch.object(svc, "lock_balance", return_value=balance):
            with pytest.raises(ValueError):
                svc.apply_delta("seller-1", "bonus", pending_delta=Decimal("1"))

        assert balance.pending_balance == Decimal("0.00")
        db.add.assert_not_called()

    def test_credit_sale_uses_seller_owed(self):
        from scriptmarket.ledger.service import LedgerService

        db = MagicMock()
        balance = _make_balance()
        purchase = _make_purchase(seller_owed="90.00")
        svc = LedgerService(db)
        with patch.object(svc, "lock_balance", return_value=balance):
            svc.credit_sale(purchase)

        assert balance.pending_balance == Decimal("90.00")

    def test_debit_payout_reduces_available_and_counts_paid_out(self):
        from scriptmarket.ledger.service import LedgerService
        from scriptmarket.models.payout import Payout

        db = MagicMock()
        balance = _make_balance(available="90.00")
        payout = Payout(id="po-1", seller_id="seller-1", amount=Decimal("90.00"), payout_method="connected_transfer")
        svc = LedgerService(db)
        with patch.object(svc, "lock_balance", return_value=balance):
            svc.debit_payout(payout)

        assert balance.available_balance == Decimal("0.00")
        assert balance.total_paid_out == Decimal("90.00")


class TestReverseSale:
    def test_unsettled_refund_comes_from_pending(self):
        from scriptmarket.ledger.service import LedgerService

        db = MagicMock()
        balance = _make_balance(pending="90.00", earned="90.00")
        svc = LedgerService(db)
        with patch.object(svc, "lock_balance", return_value=balance):
            svc.reverse_sale(_make_purchase(settled_at=None))

        assert balance.pending_balance == Decimal("0.00")
        assert balance.available_balance == Decimal("0.00")
        assert balance.total_earned == Decimal("0.00")

    def test_settled_refund_comes_from_available(self):
        from scriptmarket.ledger.service import LedgerService

        db = MagicMock()
        balance = _make_balance(available="30.00", earned="90.00")
        svc = LedgerService(db)
        with patch.object(svc, "lock_balance", return_value=balance):
            svc.reverse_sale(_make_purchase(settled_at=datetime.now(timezone.utc)))

        assert balance.pending_balance == Decimal("0.00")
        assert balance.available_balance == Decimal("-60.00")


class TestSettlement:
    def test_clearance_cutoff_is_seven_days(self):
        from scriptmarket.ledger.service import LedgerService

        now = datetime(2026, 3, 10, tzinfo=timezone.utc)
        assert LedgerService(MagicMock()).clearance_cutoff(now) == now - timedelta(days=7)

    def test_settle_seller_moves_exact_matured_sum_and_marks_purchases(self):
        from scriptmarket.ledger.service import LedgerService

        db = MagicMock()
        balance = _make_balance(pending="135.00")
        purchases = [_make_purchase(seller_owed="90.00"), _make_purchase(seller_owed="45.00")]
        db.query.return_value.filter.return_value.with_for_update.return_value.all.return_value = purchases

        svc = LedgerService(db)
        with patch.object(svc, "lock_balance", return_value=balance):
            moved = svc.settle_seller("seller-1", datetime.now(timezone.utc))

        assert moved == Decimal("135.00")
        assert balance.pending_balance == Decimal("0.00")
        assert balance.available_balance == Decimal("135.00")
        assert all(p.settled_at is not None for p in purchases)

    def test_settle_seller_twice_moves_nothing_second_time(self):
        from scriptmarket.ledger.service import LedgerService

        db = MagicMock()
        balance = _make_balance(pending="90.00")
        purchase = _make_purchase(seller_owed="90.00")
        locked = db.query.return_value.filter.return_value.with_for_update.return_value
        locked.all.side_effect = [[purchase], []]

        svc = LedgerService(db)
        cutoff = datetime.now(timezone.utc)
        with patch.object(svc, "lock_balance", return_value=balance):
            first = svc.settle_seller("seller-1", cutoff)
            second = svc.settle_seller("seller-1", cutoff)

        assert first == Decimal("90.00")
        assert second == Decimal("0.00")
        assert balance.available_balance == Decimal("90.00")
        assert balance.pending_balance == Decimal("0.00")

    def test_settle_balances_nothing_matured(self):
        from scriptmarket.ledger.service import LedgerService

        svc = LedgerService(MagicMock())
        with patch.object(svc, "matured_purchases", return_value=[]):
            result = svc.settle_balances()

        assert result == {"settled": 0, "total_amount": "0.00", "errors": 0}

    def test_settle_balances_one_seller_failure_does_not_stop_others(self):
        from scriptmarket.ledger.service import LedgerService

        db = MagicMock()
        svc = LedgerService(db)
        candidates = [
            _make_purchase(seller_id="s1", seller_owed="90.00"),
            _make_purchase(seller_id="s2", seller_owed="45.00"),
        ]

        def settle(seller_id, cutoff):
            if seller_id == "s1":
                raise RuntimeError("lock timeout")
            return Decimal("45.00")

        with patch.object(svc, "matured_purchases", return_value=candidates), \
                patch.object(svc, "settle_seller", side_effect=settle):
            result = svc.settle_balances()

        assert result["settled"] == 1
        assert result["errors"] == 1
        assert result["total_amount"] == "45.00"
        db.rollback.assert_called_once()
        db.commit.assert_called_once()
