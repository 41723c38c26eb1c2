"""
Seller-side TradingView integration: connect credentials, sync published
scripts, disconnect, and the periodic session health sweep.
"""
from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta, timezone

from cryptography.exceptions import InvalidTag
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from scriptmarket.core.config import settings
from scriptmarket.models.profile import Profile
from scriptmarket.models.program import Program, TradingViewScript
from scriptmarket.services.tradingview.client import TradingViewClient, TradingViewError
from scriptmarket.services.tradingview.crypto import decrypt_cookie, encrypt_cookie

logger = logging.getLogger(__name__)


class TradingViewNotConnected(Exception):
    """Seller has no usable TradingView session."""


class TradingViewService:
    def __init__(self, db: Session, client_factory=TradingViewClient):
        self.db = db
        self.client_factory = client_factory

    def _profile(self, user_id: str) -> Profile:
        profile = self.db.query(Profile).filter(Profile.id == user_id).one_or_none()
        if profile is None:
            raise TradingViewNotConnected("User profile not found")
        return profile

    def connect(self, user_id: str, username: str, session_cookie: str, signed_session_cookie: str) -> Profile:
        """
        Validate the session against TradingView, then store the cookies encrypted.
        Raises TradingViewError when TradingView rejects the session or the username.
        """
        if not username or not session_cookie or not signed_session_cookie:
            raise ValueError("Missing required credentials")
        profile = self._profile(user_id)

        client = self.client_factory(session_cookie, signed_session_cookie)
        try:
            if not client.username_exists(username):
                raise TradingViewError(f'TradingView username "{username}" not found')
        finally:
            client.close()

        profile.tradingview_username = username
        profile.tradingview_session_cookie = encrypt_cookie(session_cookie)
        profile.tradingview_signed_session_cookie = encrypt_cookie(signed_session_cookie)
        profile.is_tradingview_connected = True
        profile.tradingview_last_validated_at = datetime.now(timezone.utc)
        profile.tradingview_connection_status = "active"
        profile.tradingview_last_error = None
        self.db.add(profile)
        self.db.commit()
        logger.info("tradingview_connected", extra={"seller_id": user_id})
        return profile

    def sync_scripts(self, user_id: str) -> int:
        """Upsert the seller's published scripts. Returns how many were found."""
        profile = self._profile(user_id)
        if (
            not profile.is_tradingview_connected
            or not profile.tradingview_username
            or not profile.tradingview_session_cookie
            or not profile.tradingview_signed_session_cookie
        ):
            raise TradingViewNotConnected("TradingView not connected. Please connect your account in settings.")
        try:
            session_cookie = decrypt_cookie(profile.tradingview_session_cookie)
            signed_cookie = decrypt_cookie(profile.tradingview_signed_session_cookie)
        except (InvalidTag, ValueError) as e:
            raise TradingViewNotConnected("Stored TradingView credentials cannot be decrypted") from e

        client = self.client_factory(session_cookie, signed_cookie)
        try:
            publications = client.fetch_published_scripts(profile.tradingview_username)
        finally:
            client.close()

        now = datetime.now(timezone.utc)
        base_url = settings.tradingview_base_url.rstrip("/")
        rows = [
            {
                "user_id": user_id,
                "script_id": p["scriptIdPart"],
                "title": p["title"],
                "publication_url": f"{base_url}{p['link']}",
                "image_url": p.get("image_url"),
                "likes": p.get("likes_count") or 0,
                "reviews_count": p.get("reviews_count") or 0,
                "last_synced_at": now,
            }
            for p in publications
        ]
        if rows:
            stmt = pg_insert(TradingViewScript).values(rows)
            stmt = stmt.on_conflict_do_update(
                index_elements=["user_id", "script_id"],
                set_={
                    "title": stmt.excluded.title,
                    "publication_url": stmt.excluded.publication_url,
                    "image_url": stmt.excluded.image_url,
                    "likes": stmt.excluded.likes,
                    "reviews_count": stmt.excluded.reviews_count,
                    "last_synced_at": stmt.excluded.last_synced_at,
                },
            )
            self.db.execute(stmt)
        profile.tradingview_last_validated_at = now
        self.db.add(profile)
        self.db.commit()
        logger.info("tradingview_scripts_synced", extra={"seller_id": user_id, "processed": len(rows)})
        return len(rows)

    def disconnect(self, user_id: str) -> dict:
        profile = self._profile(user_id)
        deleted = (
            self.db.query(TradingViewScript)
            .filter(TradingViewScript.user_id == user_id)
            .delete(synchronize_session=False)
        )
        profile.tradingview_session_cookie = None
        profile.tradingview_signed_session_cookie = None
        profile.is_tradingview_connected = False
        profile.tradingview_connection_status = None
        self.db.add(profile)
        self.db.commit()

        demoted = 0
        try:
            demoted = (
                self.db.query(Program)
                .filter(Program.seller_id == user_id, Program.status == "published")
                .update({Program.status: "draft"}, synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.warning("tradingview_disconnect_demote_failed", extra={"seller_id": user_id, "error": str(e)})

        logger.info("tradingview_disconnected", extra={"seller_id": user_id, "processed": deleted})
        return {"scripts_removed": deleted, "programs_unpublished": demoted}

    # ------------------------------------------------------------------
    # Session health sweep
    # ------------------------------------------------------------------

    def connected_profiles(self) -> list[Profile]:
        return (
            self.db.query(Profile)
            .filter(
                Profile.is_tradingview_connected.is_(True),
                Profile.tradingview_session_cookie.isnot(None),
                Profile.tradingview_signed_session_cookie.isnot(None),
            )
            .all()
        )

    def _session_error(self, profile: Profile) -> str | None:
        session_cookie = decrypt_cookie(profile.tradingview_session_cookie)
        signed_cookie = decrypt_cookie(profile.tradingview_signed_session_cookie)
        client = self.client_factory(session_cookie, signed_cookie)
        try:
            return client.session_error(profile.tradingview_username or "")
        finally:
            client.close()

    def health_check(self, now: datetime | None = None) -> dict:
        """
        Re-validate stored seller sessions not validated within
        tradingview_revalidate_hours. Sellers whose cookies no longer
        authenticate are marked expired and their published programs go
        back to draft; TradingView outages and undecryptable cookies are
        marked error and leave programs alone.
        """
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(hours=settings.tradingview_revalidate_hours)
        profiles = self.connected_profiles()
        due = [
            p for p in profiles
            if p.tradingview_last_validated_at is None or p.tradingview_last_validated_at <= cutoff
        ]

        expired_ids: list[str] = []
        errors = 0
        for i, profile in enumerate(due):
            if i and settings.tradingview_health_check_delay_seconds > 0:
                time.sleep(settings.tradingview_health_check_delay_seconds)
            try:
                reason = self._session_error(profile)
                status = "expired" if reason else "active"
            except (TradingViewError, InvalidTag, ValueError) as e:
                reason = str(e) or type(e).__name__
                status = "error"

            profile.tradingview_connection_status = status
            profile.tradingview_last_error = reason
            profile.tradingview_last_validated_at = now
            self.db.add(profile)
            self.db.commit()

            if status == "expired":
                expired_ids.append(profile.id)
                logger.warning("tradingview_session_expired", extra={"seller_id": profile.id, "error": reason})
            elif status == "error":
                errors += 1
                logger.warning("tradingview_session_check_failed", extra={"seller_id": profile.id, "error": reason})

        demoted = 0
        if expired_ids:
            try:
                demoted = (
                    self.db.query(Program)
                    .filter(Program.seller_id.in_(expired_ids), Program.status == "published")
                    .update({Program.status: "draft"}, synchronize_session=False)
                )
                self.db.commit()
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.warning("tradingview_expired_demote_failed", extra={"error": str(e)})

        result = {
            "total": len(profiles),
            "checked": len(due),
            "expired": len(expired_ids),
            "errors": errors,
            "programs_unpublished": demoted,
        }
        logger.info("tradingview_health_check_done", extra=result)
        return result
