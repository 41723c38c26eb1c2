"""Tests for AssignmentService: dispatch outcomes, retry, trials, revocation."""
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest


def _make_assignment(**kwargs):
    from scriptmarket.models.script_assignment import ScriptAssignment

    return ScriptAssignment(
        id=kwargs.get("id", "asg-1"),
        purchase_id=kwargs.get("purchase_id", "p1"),
        program_id="prog-1",
        buyer_id="buyer-1",
        seller_id="seller-1",
        status=kwargs.get("status", "pending"),
        access_type=kwargs.get("access_type", "full_purchase"),
        is_trial=kwargs.get("is_trial", False),
        tradingview_username=kwargs.get("tradingview_username", "trader_joe"),
        pine_id=kwargs.get("pine_id", "PUB;abc"),
        assignment_attempts=kwargs.get("assignment_attempts", 0),
        assignment_details={},
    )


def _service(client=None):
    from scriptmarket.services.assignments.service import AssignmentService

    db = MagicMock()
    client = client or MagicMock()
    svc = AssignmentService(db, client_factory=MagicMock(return_value=client))
    svc.logs = MagicMock()
    return svc, db, client


def _ok_client():
    client = MagicMock()
    client.username_exists.return_value = True
    client.grant_access.return_value = {"granted": True, "already": False, "response": {"status": "ok"}, "expiration": "x"}
    return client


class TestDispatch:
    def test_success_marks_assigned(self):
        svc, db, client = _service(_ok_client())
        assignment = _make_assignment()

        with patch.object(svc, "get", return_value=assignment), \
                patch.object(svc, "_seller_client", return_value=client):
            result = svc.dispatch("asg-1")

        assert result.status == "assigned"
        assert result.assigned_at is not None
        assert result.assignment_attempts == 1
        assert result.last_attempt_at is not None
        assert result.expires_at is None
        assert result.assignment_details["pine_id"] == "PUB;abc"
        client.grant_access.assert_called_once()
        client.close.assert_called_once()

    def test_non_trial_grant_expires_in_a_year(self):
        svc, db, client = _service(_ok_client())
        assignment = _make_assignment()

        with patch.object(svc, "get", return_value=assignment), \
                patch.object(svc, "_seller_client", return_value=client):
            svc.dispatch("asg-1")

        expires_at = client.grant_access.call_args.args[2]
        assert abs(expires_at - (datetime.now(timezone.utc) + timedelta(days=365))) < timedelta(minutes=1)

    def test_trial_uses_program_trial_days_and_sets_expiry(self):
        svc, db, client = _service(_ok_client())
        assignment = _make_assignment(is_trial=True, access_type="trial")
        db.query.return_value.filter.return_value.one_or_none.return_value = MagicMock(trial_period_days=3)

        with patch.object(svc, "get", return_value=assignment), \
                patch.object(svc, "_seller_client", return_value=client):
            svc.dispatch("asg-1")

        assert assignment.status == "assigned"
        expected = datetime.now(timezone.utc) + timedelta(days=3)
        assert abs(assignment.expires_at - expected) < timedelta(minutes=1)

    def test_already_has_access_counts_as_success(self):
        client = _ok_client()
        client.grant_access.return_value = {"granted": True, "already": True, "response": {}, "expiration": "x"}
        svc, db, _ = _service(client)
        assignment = _make_assignment()

        with patch.object(svc, "get", return_value=assignment), \
                patch.object(svc, "_seller_client", return_value=client):
            svc.dispatch("asg-1")

        assert assignment.status == "assigned"
        assert assignment.assignment_details["already_had_access"] is True

    def test_missing_pine_id_fails_without_calling_tradingview(self):
        svc, db, client = _service()
        assignment = _make_assignment(pine_id=None)

        with patch.object(svc, "get", return_value=assignment), \
                patch.object(svc, "_seller_client") as seller_client:
            svc.dispatch("asg-1")

        assert assignment.status == "failed"
        assert "Missing required parameters" in assignment.error_message
        seller_client.assert_not_called()

    def test_unknown_username_fails(self):
        client = _ok_client()
        client.username_exists.return_value = False
        svc, db, _ = _service(client)
        assignment = _make_assignment()

        with patch.object(svc, "get", return_value=assignment), \
                patch.object(svc, "_seller_client", return_value=client):
            svc.dispatch("asg-1")

        assert assignment.status == "failed"
        assert assignment.error_message == 'TradingView username "trader_joe" not found'
        client.grant_access.assert_not_called()
        client.close.assert_called_once()

    def test_tradingview_error_recorded(self):
        from scriptmarket.services.tradingview.client import TradingViewError

        client = _ok_client()
        client.grant_access.side_effect = TradingViewError("Failed to add script access: 403")
        svc, db, _ = _service(client)
        assignment = _make_assignment()

        with patch.object(svc, "get", return_value=assignment), \
                patch.object(svc, "_seller_client", return_value=client):
            svc.dispatch("asg-1")

        assert assignment.status == "failed"
        assert assignment.error_message == "Failed to add script access: 403"
        svc.logs.log.assert_called_once()

    def test_seller_not_connected_fails(self):
        svc, db, client = _service()
        assignment = _make_assignment()
        db.query.return_value.filter.return_value.one_or_none.return_value = MagicMock(is_tradingview_connected=False)

        with patch.object(svc, "get", return_value=assignment):
            svc.dispatch("asg-1")

        assert assignment.status == "failed"
        assert assignment.error_message == "Seller TradingView account not connected"

    def test_non_pending_assignment_is_left_alone(self):
        svc, db, client = _service()
        assignment = _make_assignment(status="assigned")

        with patch.object(svc, "get", return_value=assignment):
            svc.dispatch("asg-1")

        assert assignment.status == "assigned"
        assert assignment.assignment_attempts == 0

    def test_missing_assignment_raises(self):
        from scriptmarket.services.assignments.service import AssignmentError

        svc, db, client = _service()
        with patch.object(svc, "get", return_value=None):
            with pytest.raises(AssignmentError):
                svc.dispatch("nope")


class TestSellerClient:
    def test_decrypts_stored_cookies(self):
        from scriptmarket.services.tradingview.crypto import encrypt_cookie

        svc, db, client = _service()
        profile = MagicMock(
            is_tradingview_connected=True,
            tradingview_session_cookie=encrypt_cookie("sess"),
            tradingview_signed_session_cookie=encrypt_cookie("sign"),
        )
        db.query.return_value.filter.return_value.one_or_none.return_value = profile

        assert svc._seller_client("seller-1") is client
        svc.client_factory.assert_called_once_with("sess", "sign")

    def test_undecryptable_cookies_rejected(self):
        from scriptmarket.services.assignments.service import AssignmentError
        from scriptmarket.services.tradingview.crypto import encrypt_cookie

        svc, db, client = _service()
        other_key = b"x" * 32
        profile = MagicMock(
            is_tradingview_connected=True,
            tradingview_session_cookie=encrypt_cookie("sess", key=other_key),
            tradingview_signed_session_cookie=encrypt_cookie("sign", key=other_key),
        )
        db.query.return_value.filter.return_value.one_or_none.return_value = profile

        with pytest.raises(AssignmentError, match="decrypt"):
            svc._seller_client("seller-1")


class TestRetry:
    def test_failed_goes_back_to_pending(self):
        svc, db, client = _service()
        assignment = _make_assignment(status="failed")
        assignment.error_message = "boom"

        with patch.object(svc, "get", return_value=assignment):
            svc.retry("asg-1")

        assert assignment.status == "pending"
        assert assignment.error_message is None

    def test_only_failed_can_be_retried(self):
        from scriptmarket.services.assignments.service import AssignmentError

        svc, db, client = _service()
        with patch.object(svc, "get", return_value=_make_assignment(status="assigned")):
            with pytest.raises(AssignmentError):
                svc.retry("asg-1")


class TestGrantTrial:
    def _program(self, status="published"):
        return MagicMock(id="prog-1", seller_id="seller-1", status=status, tradingview_script_id=None)

    def test_creates_pending_trial_per_script(self):
        svc, db, client = _service()
        db.query.return_value.filter.return_value.one_or_none.return_value = self._program()
        db.query.return_value.filter.return_value.first.return_value = None

        with patch.object(svc, "program_pine_ids", return_value=["PUB;a", "PUB;b"]):
            created = svc.grant_trial("prog-1", "buyer-1", "trader_joe")

        assert len(created) == 2
        assert all(a.is_trial and a.status == "pending" and a.access_type == "trial" for a in created)
        assert all(a.purchase_id is None for a in created)
        assert [a.pine_id for a in created] == ["PUB;a", "PUB;b"]

    def test_unpublished_program_rejected(self):
        from scriptmarket.services.assignments.service import AssignmentError

        svc, db, client = _service()
        db.query.return_value.filter.return_value.one_or_none.return_value = self._program(status="draft")
        with pytest.raises(AssignmentError):
            svc.grant_trial("prog-1", "buyer-1", "trader_joe")

    def test_second_open_trial_rejected(self):
        from scriptmarket.services.assignments.service import AssignmentError

        svc, db, client = _service()
        db.query.return_value.filter.return_value.one_or_none.return_value = self._program()
        db.query.return_value.filter.return_value.first.return_value = ("asg-old",)
        with pytest.raises(AssignmentError, match="already has a trial"):
            svc.grant_trial("prog-1", "buyer-1", "trader_joe")
        db.add.assert_not_called()


class TestProgramPineIds:
    def test_falls_back_to_legacy_script_column(self):
        svc, db, client = _service()
        db.query.return_value.filter.return_value.order_by.return_value.all.return_value = []
        program = MagicMock(id="prog-1", tradingview_script_id="PUB;legacy")
        assert svc.program_pine_ids(program) == ["PUB;legacy"]

    def test_linked_scripts_in_order(self):
        svc, db, client = _service()
        db.query.return_value.filter.return_value.order_by.return_value.all.return_value = [
            MagicMock(pine_id="PUB;1"),
            MagicMock(pine_id="PUB;2"),
        ]
        program = MagicMock(id="prog-1", tradingview_script_id="PUB;legacy")
        assert svc.program_pine_ids(program) == ["PUB;1", "PUB;2"]


class TestRevoke:
    def test_assigned_is_revoked_locally_and_remotely(self):
        svc, db, client = _service()
        assignment = _make_assignment(status="assigned")

        with patch.object(svc, "revoke_remote", return_value=True) as remote:
            assert svc.revoke(assignment, "subscription canceled") is True

        assert assignment.status == "revoked"
        assert assignment.expires_at is not None
        remote.assert_called_once_with(assignment)

    def test_pending_revoked_without_remote_call(self):
        svc, db, client = _service()
        assignment = _make_assignment(status="pending")

        with patch.object(svc, "revoke_remote") as remote:
            svc.revoke(assignment, "purchase refunded")

        assert assignment.status == "revoked"
        remote.assert_not_called()

    def test_terminal_status_untouched(self):
        svc, db, client = _service()
        assignment = _make_assignment(status="expired")
        assert svc.revoke(assignment, "x") is False
        assert assignment.status == "expired"

    def test_remote_failure_is_logged_not_raised(self):
        from scriptmarket.services.tradingview.client import TradingViewError

        client = MagicMock()
        client.revoke_access.side_effect = TradingViewError("TradingView revocation failed: 500")
        svc, db, _ = _service(client)
        assignment = _make_assignment(status="expired")

        with patch.object(svc, "_seller_client", return_value=client):
            assert svc.revoke_remote(assignment) is False

        svc.logs.log.assert_called_once()
        assert svc.logs.log.call_args.kwargs["level"] == "error"
        client.close.assert_called_once()
