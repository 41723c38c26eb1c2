"""
TradingView client wrapper using httpx sync client.
Acts on behalf of a seller (their session cookies) to grant and revoke
invite-only script access. Sync interface for Celery workers.
"""
import json
import logging
import re
import time
from datetime import datetime
from urllib.parse import quote

import httpx
import pybreaker

from scriptmarket.core.config import settings
from scriptmarket.services.circuit_breaker import get_circuit_breaker
from scriptmarket.utils.metrics import (
    tradingview_request_duration_seconds,
    tradingview_requests_total,
)


logger = logging.getLogger(__name__)

BOOTSTRAP_RE = re.compile(
    r'<script id="user-page-bootstrap-data" type="application/json">([\s\S]*?)</script>'
)
AUTHENTICATED_RE = re.compile(r'<html[^>]*\bclass="[^"]*\bis-authenticated\b')


class TradingViewError(Exception):
    """TradingView rejected or failed a request."""


class TradingViewClient:
    """
    Sync TradingView client for a single seller session.
    Every request passes through the shared "tradingview" circuit breaker.
    """

    def __init__(self, session_cookie: str, signed_session_cookie: str) -> None:
        self._base_url = settings.tradingview_base_url.rstrip("/")
        self._cookies = {"sessionid": session_cookie, "sessionid_sign": signed_session_cookie}
        self._client: httpx.Client | None = None
        self._breaker = get_circuit_breaker("tradingview")

    @property
    def client(self) -> httpx.Client:
        """Lazy initialization of httpx client."""
        if self._client is None:
            self._client = httpx.Client(
                base_url=self._base_url,
                cookies=self._cookies,
                headers={"User-Agent": settings.tradingview_user_agent},
                timeout=settings.http_client_timeout,
            )
        return self._client

    def _record_request(self, method: str, status: str, duration: float) -> None:
        tradingview_requests_total.labels(method=method, status=status).inc()
        tradingview_request_duration_seconds.labels(method=method).observe(duration)

    def _call(self, method: str, func, *args, **kwargs):
        start = time.time()
        try:
            result = self._breaker.call(func, *args, **kwargs)
        except pybreaker.CircuitBreakerError as e:
            self._record_request(method, "circuit_open", time.time() - start)
            raise TradingViewError("TradingView temporarily unavailable (circuit open)") from e
        except TradingViewError:
            self._record_request(method, "error", time.time() - start)
            raise
        except httpx.HTTPError as e:
            self._record_request(method, "error", time.time() - start)
            raise TradingViewError(f"{method}: {type(e).__name__}: {e}") from e
        except ValueError as e:
            self._record_request(method, "error", time.time() - start)
            raise TradingViewError(f"{method}: unexpected response body") from e
        self._record_request(method, "success", time.time() - start)
        return result

    # ------------------------------------------------------------------
    # Username lookup
    # ------------------------------------------------------------------

    def _username_hint(self, username: str) -> list:
        resp = self.client.get(f"/username_hint/?s={quote(username)}")
        if resp.status_code != 200:
            raise TradingViewError(f"username lookup failed: {resp.status_code}")
        return resp.json()

    def username_exists(self, username: str) -> bool:
        hints = self._call("username_hint", self._username_hint, username)
        wanted = username.lower()
        return any((item.get("username") or "").lower() == wanted for item in hints)

    # ------------------------------------------------------------------
    # Access grant / revoke
    # ------------------------------------------------------------------

    def _add_access(self, pine_id: str, username: str, expiration: str) -> dict:
        resp = self.client.post(
            "/pine_perm/add/",
            data={"pine_id": pine_id, "username_recip": username, "expiration": expiration},
            headers={"Referer": f"{self._base_url}/script/{pine_id}/"},
        )
        if resp.status_code >= 400:
            logger.warning(f"TradingView add access error: {resp.status_code} {resp.text[:500]}")
            raise TradingViewError(f"Failed to add script access: {resp.status_code}")
        return resp.json()

    def grant_access(self, pine_id: str, username: str, expires_at: datetime) -> dict:
        """
        Grant invite-only access until expires_at.
        An "already has access" answer counts as success.
        """
        expiration = expires_at.strftime("%Y-%m-%dT%H:%M:%SZ")
        data = self._call("pine_perm_add", self._add_access, pine_id, username, expiration)
        if data.get("status") == "ok":
            return {"granted": True, "already": False, "response": data, "expiration": expiration}
        error = data.get("error")
        if error:
            lowered = str(error).lower()
            if "already" in lowered or "exist" in lowered:
                return {"granted": True, "already": True, "response": data, "expiration": expiration}
            raise TradingViewError(f"TradingView returned an error: {error}")
        logger.info("tradingview_grant_unclear_response", extra={"error": json.dumps(data)[:200]})
        return {"granted": True, "already": False, "response": data, "expiration": expiration}

    def _remove_access(self, pine_id: str, username: str) -> dict:
        resp = self.client.post(
            "/pine_perm/remove_user_from_script/",
            data={"pine_id": pine_id, "username_recip": username},
            headers={"Referer": f"{self._base_url}/", "X-Requested-With": "XMLHttpRequest"},
        )
        if resp.status_code >= 400:
            raise TradingViewError(f"TradingView revocation failed: {resp.status_code}")
        return resp.json()

    def revoke_access(self, pine_id: str, username: str) -> dict:
        return self._call("pine_perm_remove", self._remove_access, pine_id, username)

    # ------------------------------------------------------------------
    # Published scripts
    # ------------------------------------------------------------------

    def _profile_page(self, username: str) -> str:
        resp = self.client.get(f"/u/{quote(username)}/")
        if resp.status_code != 200:
            raise TradingViewError(f"Failed to fetch from TradingView (status: {resp.status_code})")
        return resp.text

    def fetch_published_scripts(self, username: str) -> list[dict]:
        """Return publications from the profile page bootstrap JSON."""
        html = self._call("profile_page", self._profile_page, username)
        match = BOOTSTRAP_RE.search(html)
        if not match:
            raise TradingViewError("Failed to find script data on TradingView page")
        try:
            data = json.loads(match.group(1))
        except ValueError as e:
            raise TradingViewError("Failed to parse script data from TradingView page") from e
        publications = (data.get("public_scripts") or {}).get("publications") or []
        return [
            p for p in publications
            if p.get("scriptIdPart") and p.get("title") and p.get("link")
        ]

    # ------------------------------------------------------------------
    # Session health
    # ------------------------------------------------------------------

    def _session_page(self, username: str) -> tuple[int, str]:
        resp = self.client.get(f"/u/{quote(username)}/")
        if resp.status_code >= 500:
            raise TradingViewError(f"TradingView unavailable (status: {resp.status_code})")
        return resp.status_code, resp.text

    def session_error(self, username: str) -> str | None:
        """
        None while the stored cookies still authenticate, else why they do not.
        Server-side failures raise TradingViewError instead.
        """
        status, html = self._call("session_check", self._session_page, username)
        if status != 200:
            return f"HTTP {status}: Connection failed"
        if not AUTHENTICATED_RE.search(html):
            return "Authentication failed - cookies expired"
        return None

    def close(self) -> None:
        """Close httpx client."""
        if self._client is not None:
            try:
                self._client.close()
            except Exception as e:
                logger.warning("Failed to close client", extra={"error": str(e)})
            finally:
                self._client = None
