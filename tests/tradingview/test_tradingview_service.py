"""Tests for TradingViewService: connect, sync, disconnect, session health sweep."""
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy.exc import SQLAlchemyError


def _service(db, client):
    from scriptmarket.services.tradingview.service import TradingViewService

    return TradingViewService(db, client_factory=MagicMock(return_value=client))


class TestConnect:
    def test_stores_encrypted_cookies(self):
        from scriptmarket.services.tradingview.crypto import decrypt_cookie

        db = MagicMock()
        profile = MagicMock(is_tradingview_connected=False)
        db.query.return_value.filter.return_value.one_or_none.return_value = profile
        client = MagicMock()
        client.username_exists.return_value = True

        _service(db, client).connect("seller-1", "seller_one", "sess", "sign")

        assert profile.is_tradingview_connected is True
        assert profile.tradingview_username == "seller_one"
        assert profile.tradingview_session_cookie != "sess"
        assert decrypt_cookie(profile.tradingview_session_cookie) == "sess"
        assert decrypt_cookie(profile.tradingview_signed_session_cookie) == "sign"
        client.close.assert_called_once()
        db.commit.assert_called_once()

    def test_unknown_username_not_saved(self):
        from scriptmarket.services.tradingview.client import TradingViewError

        db = MagicMock()
        profile = MagicMock(is_tradingview_connected=False)
        db.query.return_value.filter.return_value.one_or_none.return_value = profile
        client = MagicMock()
        client.username_exists.return_value = False

        with pytest.raises(TradingViewError):
            _service(db, client).connect("seller-1", "ghost", "sess", "sign")
        assert profile.is_tradingview_connected is False
        db.commit.assert_not_called()


class TestSync:
    def test_not_connected(self):
        from scriptmarket.services.tradingview.service import TradingViewNotConnected

        db = MagicMock()
        db.query.return_value.filter.return_value.one_or_none.return_value = MagicMock(is_tradingview_connected=False)
        with pytest.raises(TradingViewNotConnected):
            _service(db, MagicMock()).sync_scripts("seller-1")

    def test_upserts_publications(self):
        from scriptmarket.services.tradingview.crypto import encrypt_cookie

        db = MagicMock()
        profile = MagicMock(
            is_tradingview_connected=True,
            tradingview_username="seller_one",
            tradingview_session_cookie=encrypt_cookie("sess"),
            tradingview_signed_session_cookie=encrypt_cookie("sign"),
        )
        db.query.return_value.filter.return_value.one_or_none.return_value = profile
        client = MagicMock()
        client.fetch_published_scripts.return_value = [
            {"scriptIdPart": "PUB;1", "title": "Trend Rider", "link": "/script/abc/"},
            {"scriptIdPart": "PUB;2", "title": "Range Finder", "link": "/script/def/", "likes_count": 4},
        ]
        svc = _service(db, client)

        assert svc.sync_scripts("seller-1") == 2
        svc.client_factory.assert_called_once_with("sess", "sign")
        client.fetch_published_scripts.assert_called_once_with("seller_one")
        db.execute.assert_called_once()
        db.commit.assert_called_once()

    def test_no_publications_skips_upsert(self):
        from scriptmarket.services.tradingview.crypto import encrypt_cookie

        db = MagicMock()
        db.query.return_value.filter.return_value.one_or_none.return_value = MagicMock(
            is_tradingview_connected=True,
            tradingview_username="seller_one",
            tradingview_session_cookie=encrypt_cookie("sess"),
            tradingview_signed_session_cookie=encrypt_cookie("sign"),
        )
        client = MagicMock()
        client.fetch_published_scripts.return_value = []

        assert _service(db, client).sync_scripts("seller-1") == 0
        db.execute.assert_not_called()


class TestDisconnect:
    def test_clears_credentials_and_unpublishes(self):
        db = MagicMock()
        profile = MagicMock(is_tradingview_connected=True)
        db.query.return_value.filter.return_value.one_or_none.return_value = profile
        db.query.return_value.filter.return_value.delete.return_value = 3
        db.query.return_value.filter.return_value.update.return_value = 2

        result = _service(db, MagicMock()).disconnect("seller-1")

        assert result == {"scripts_removed": 3, "programs_unpublished": 2}
        assert profile.is_tradingview_connected is False
        assert profile.tradingview_session_cookie is None

    def test_demotion_failure_swallowed(self):
        db = MagicMock()
        profile = MagicMock(is_tradingview_connected=True)
        db.query.return_value.filter.return_value.one_or_none.return_value = profile
        db.query.return_value.filter.return_value.delete.return_value = 1
        db.query.return_value.filter.return_value.update.side_effect = SQLAlchemyError("deadlock")

        result = _service(db, MagicMock()).disconnect("seller-1")

        assert result == {"scripts_removed": 1, "programs_unpublished": 0}
        assert profile.is_tradingview_connected is False
        db.rollback.assert_called_once()


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _seller(seller_id, validated_at=None, session="sess"):
    from scriptmarket.models.profile import Profile
    from scriptmarket.services.tradingview.crypto import encrypt_cookie

    return Profile(
        id=seller_id,
        tradingview_username=f"{seller_id}_tv",
        tradingview_session_cookie=encrypt_cookie(session),
        tradingview_signed_session_cookie=encrypt_cookie("sign"),
        is_tradingview_connected=True,
        tradingview_last_validated_at=validated_at,
        tradingview_connection_status="active",
    )


def _sweep(db, client, profiles):
    svc = _service(db, client)
    with patch.object(svc, "connected_profiles", return_value=profiles), \
            patch("scriptmarket.services.tradingview.service.time.sleep") as sleep:
        result = svc.health_check(now=NOW)
    return svc, result, sleep


class TestHealthCheck:
    def test_healthy_session_marked_active(self):
        db = MagicMock()
        seller = _seller("seller-1")
        client = MagicMock()
        client.session_error.return_value = None

        svc, result, _ = _sweep(db, client, [seller])

        assert result == {"total": 1, "checked": 1, "expired": 0, "errors": 0, "programs_unpublished": 0}
        assert seller.tradingview_connection_status == "active"
        assert seller.tradingview_last_error is None
        assert seller.tradingview_last_validated_at == NOW
        svc.client_factory.assert_called_once_with("sess", "sign")
        client.session_error.assert_called_once_with("seller-1_tv")
        client.close.assert_called_once()
        db.query.return_value.filter.return_value.update.assert_not_called()

    def test_expired_session_unpublishes_programs(self):
        db = MagicMock()
        db.query.return_value.filter.return_value.update.return_value = 3
        seller = _seller("seller-1")
        client = MagicMock()
        client.session_error.return_value = "Authentication failed - cookies expired"

        _, result, _ = _sweep(db, client, [seller])

        assert result["expired"] == 1
        assert result["programs_unpublished"] == 3
        assert seller.tradingview_connection_status == "expired"
        assert seller.tradingview_last_error == "Authentication failed - cookies expired"
        assert seller.is_tradingview_connected is True

    def test_recently_validated_seller_skipped(self):
        db = MagicMock()
        fresh = _seller("seller-1", validated_at=NOW - timedelta(hours=1))
        stale = _seller("seller-2", validated_at=NOW - timedelta(hours=7))
        client = MagicMock()
        client.session_error.return_value = None

        _, result, _ = _sweep(db, client, [fresh, stale])

        assert result["total"] == 2
        assert result["checked"] == 1
        client.session_error.assert_called_once_with("seller-2_tv")
        assert fresh.tradingview_last_validated_at == NOW - timedelta(hours=1)

    def test_tradingview_outage_marks_error_without_unpublishing(self):
        from scriptmarket.services.tradingview.client import TradingViewError

        db = MagicMock()
        seller = _seller("seller-1")
        client = MagicMock()
        client.session_error.side_effect = TradingViewError("TradingView unavailable (status: 502)")

        _, result, _ = _sweep(db, client, [seller])

        assert result["errors"] == 1
        assert result["expired"] == 0
        assert seller.tradingview_connection_status == "error"
        assert "502" in seller.tradingview_last_error
        client.close.assert_called_once()
        db.query.return_value.filter.return_value.update.assert_not_called()

    def test_undecryptable_cookie_marks_error_and_continues(self):
        db = MagicMock()
        broken = _seller("seller-1")
        broken.tradingview_session_cookie = "bm90LWEtdmFsaWQtY2lwaGVydGV4dA=="
        healthy = _seller("seller-2")
        client = MagicMock()
        client.session_error.return_value = None

        _, result, sleep = _sweep(db, client, [broken, healthy])

        assert result["checked"] == 2
        assert result["errors"] == 1
        assert broken.tradingview_connection_status == "error"
        assert healthy.tradingview_connection_status == "active"
        assert db.commit.call_count == 2
        sleep.assert_called_once()

    def test_demotion_failure_swallowed(self):
        db = MagicMock()
        db.query.return_value.filter.return_value.update.side_effect = SQLAlchemyError("deadlock")
        client = MagicMock()
        client.session_error.return_value = "Authentication failed - cookies expired"

        _, result, _ = _sweep(db, client, [_seller("seller-1")])

        assert result["expired"] == 1
        assert result["programs_unpublished"] == 0
        db.rollback.assert_called_once()
