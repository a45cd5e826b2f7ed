from __future__ import annotations

import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests

from bulkops.config import dlog
from bulkops.credentials import Credentials
from bulkops.regions import api_base_url, auth_base_url


USER_AGENT = "pingone-bulkops/1.0"

NON_RETRYABLE_STATUSES = {400, 401, 403}
RETRYABLE_STATUSES = {408, 429}


class TokenError(Exception):
    """Token acquisition failed; status_code is the upstream HTTP status when there was one."""

    def __init__(self, message: str, status_code: Optional[int] = None, network: bool = False) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.network = network


class CredentialsError(TokenError):
    def __init__(self, missing: List[str]) -> None:
        super().__init__(f"Missing required credentials: {', '.join(missing)}")
        self.missing = missing


def _iso(ts: Optional[float]) -> Optional[str]:
    if not ts:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def _is_retryable(status: int) -> bool:
    return status in RETRYABLE_STATUSES or status >= 500


class TokenService:
    """Client-credentials token cache for the PingOne worker application.

    Tokens are reused until ``expiry_margin`` seconds before they expire.
    Acquisition is single-flight: concurrent callers block on one lock and the
    losers pick up the winner's token. After every acquisition a daemon timer
    re-acquires ``refresh_lead`` seconds before expiry; a failed scheduled
    refresh is retried after another ``refresh_lead`` seconds.
    """

    def __init__(
        self,
        credentials_loader: Optional[Callable[[], Optional[Credentials]]] = None,
        *,
        session: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
        expiry_margin: float = 30.0,
        refresh_lead: float = 60.0,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        timeout: float = 30.0,
        auto_refresh: bool = True,
    ) -> None:
        self._loader = credentials_loader
        self._session = session or requests.Session()
        self._clock = clock
        self._sleep = sleep
        self.expiry_margin = expiry_margin
        self.refresh_lead = refresh_lead
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.timeout = timeout
        self.auto_refresh = auto_refresh

        self._acquire_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._token: Optional[str] = None
        self._token_type: Optional[str] = None
        self._expires_at: float = 0.0
        self._acquired_at: Optional[float] = None
        self._credentials: Optional[Credentials] = None
        self._refresh_timer: Optional[threading.Timer] = None
        self._stopped = False

    # ---------- public API ----------
    def get_token(self, credentials: Optional[Credentials] = None) -> str:
        creds = self._resolve_credentials(credentials)
        token = self._cached_for(creds)
        if token:
            return token
        with self._acquire_lock:
            # Another caller may have acquired while we waited.
            token = self._cached_for(creds)
            if token:
                return token
            return self._acquire(creds)

    def refresh(self, credentials: Optional[Credentials] = None) -> str:
        """Force a new token regardless of the cache."""
        creds = self._resolve_credentials(credentials)
        with self._acquire_lock:
            return self._acquire(creds)

    def clear(self) -> None:
        self._cancel_timer()
        with self._state_lock:
            self._token = None
            self._token_type = None
            self._expires_at = 0.0
            self._acquired_at = None
        dlog("token_cleared", {})

    def shutdown(self) -> None:
        """Drop the token and credentials; no background refresh runs afterwards."""
        with self._state_lock:
            self._stopped = True
        self.clear()
        with self._state_lock:
            self._credentials = None

    def status(self) -> Dict[str, Any]:
        now = self._clock()
        with self._state_lock:
            creds = self._credentials
            return {
                "has_token": bool(self._token),
                "is_valid": bool(self._token) and now < self._expires_at,
                "expires_in": int(max(0.0, self._expires_at - now)) if self._token else 0,
                "expires_at": _iso(self._expires_at) if self._token else None,
                "acquired_at": _iso(self._acquired_at),
                "token_type": self._token_type,
                "environment_id": creds.environment_id if creds else None,
                "region": creds.region if creds else None,
                "source": creds.source if creds else None,
                "refresh_scheduled": self._refresh_timer is not None,
            }

    @property
    def environment_id(self) -> Optional[str]:
        creds = self._credentials or (self._loader() if self._loader else None)
        return creds.environment_id if creds else None

    def api_base_url(self) -> str:
        creds = self._credentials or (self._loader() if self._loader else None)
        return api_base_url(creds.region if creds else None)

    # ---------- internals ----------
    def _resolve_credentials(self, explicit: Optional[Credentials]) -> Credentials:
        creds = explicit
        if creds is None and self._loader is not None:
            creds = self._loader()
        if creds is None:
            creds = self._credentials
        if creds is None:
            raise CredentialsError(["PINGONE_ENVIRONMENT_ID", "PINGONE_CLIENT_ID", "PINGONE_CLIENT_SECRET"])
        missing = creds.missing_fields()
        if missing:
            raise CredentialsError(missing)
        return creds

    def _cached_for(self, creds: Credentials) -> Optional[str]:
        with self._state_lock:
            if not self._token or self._credentials is None:
                return None
            if (self._credentials.environment_id, self._credentials.client_id) != (creds.environment_id, creds.client_id):
                return None
            if self._clock() < self._expires_at - self.expiry_margin:
                return self._token
        return None

    def _acquire(self, creds: Credentials, background: bool = False) -> str:
        url = f"{auth_base_url(creds.region)}/{creds.environment_id}/as/token"
        last_error: Optional[TokenError] = None
        for attempt in range(self.max_retries + 1):
            if attempt:
                delay = self.retry_delay * (2 ** (attempt - 1))
                dlog("token_retry", {"attempt": attempt, "delay": delay, "error": str(last_error)})
                self._sleep(delay)
            dlog("token_request", {"environment_id": creds.environment_id, "region": creds.region, "attempt": attempt})
            try:
                resp = self._session.post(
                    url,
                    data={"grant_type": "client_credentials"},
                    auth=(creds.client_id, creds.client_secret),
                    headers={"User-Agent": USER_AGENT, "Accept": "application/json"},
                    timeout=self.timeout,
                )
            except requests.RequestException as e:
                last_error = TokenError(f"Network error contacting PingOne: {e}", network=True)
                continue

            if resp.status_code >= 400:
                last_error = TokenError(
                    f"Token request failed with status {resp.status_code}: {resp.text[:500]}",
                    status_code=resp.status_code,
                )
                if resp.status_code in NON_RETRYABLE_STATUSES or not _is_retryable(resp.status_code):
                    break
                continue

            try:
                data = resp.json()
            except ValueError as e:
                raise TokenError(f"Invalid JSON in token response: {e}", status_code=resp.status_code) from e
            if not data.get("access_token"):
                raise TokenError("No access token in response", status_code=resp.status_code)

            expires_in = float(data.get("expires_in") or 3600)
            now = self._clock()
            with self._state_lock:
                if background and self._stopped:
                    dlog("token_refresh_discarded", {"environment_id": creds.environment_id})
                    return data["access_token"]
                self._token = data["access_token"]
                self._token_type = data.get("token_type")
                self._expires_at = now + expires_in
                self._acquired_at = now
                self._credentials = creds
            self._schedule_refresh(max(0.0, expires_in - self.refresh_lead))
            dlog(
                "token_acquired",
                {"environment_id": creds.environment_id, "expires_in": expires_in, "token_type": data.get("token_type")},
            )
            return data["access_token"]

        if last_error is None:
            last_error = TokenError("Token acquisition failed")
        dlog("token_acquire_failed", {"environment_id": creds.environment_id, "error": str(last_error)})
        raise last_error

    def _schedule_refresh(self, delay: float) -> None:
        self._cancel_timer()
        if not self.auto_refresh or self._stopped:
            return
        timer = threading.Timer(delay, self._scheduled_refresh)
        timer.daemon = True
        self._refresh_timer = timer
        timer.start()
        dlog("token_refresh_scheduled", {"in_seconds": round(delay, 1)})

    def _cancel_timer(self) -> None:
        timer = self._refresh_timer
        self._refresh_timer = None
        if timer is not None:
            timer.cancel()

    def _scheduled_refresh(self) -> None:
        if self._stopped:
            return
        try:
            creds = self._resolve_credentials(None)
            with self._acquire_lock:
                if self._stopped:
                    return
                self._acquire(creds, background=True)
        except TokenError as e:
            # The cached token is kept until its own expiry.
            dlog("token_scheduled_refresh_failed", str(e))
            self._schedule_refresh(self.refresh_lead)


def map_token_error(exc: Exception) -> Tuple[int, str, str]:
    """Translate a token failure into (http_status, code, user-facing message)."""
    if isinstance(exc, CredentialsError):
        return 400, "SETTINGS_INCOMPLETE", f"Settings incomplete: {', '.join(exc.missing)}."
    status = getattr(exc, "status_code", None)
    if status in (400, 401):
        return 401, "INVALID_CREDENTIALS", "Invalid PingOne credentials. Please update the settings and try again."
    if status == 403:
        return 403, "FORBIDDEN_ACCESS", "Access forbidden for the provided credentials. Check environment and app permissions."
    if status == 429:
        return 429, "RATE_LIMIT", "Too many requests. Please wait and try again."
    if status == 408:
        return 408, "TIMEOUT", "Request timed out. Please try again."
    if getattr(exc, "network", False) or isinstance(exc, requests.RequestException):
        return 503, "NETWORK_ERROR", "Network error contacting PingOne. Please check connectivity."
    return 500, "TOKEN_REFRESH_FAILED", "Failed to refresh token. Please try again."
