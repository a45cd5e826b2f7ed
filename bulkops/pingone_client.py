from __future__ import annotations

import threading
import time
from typing import Any, Callable, Dict, Iterator, List, Optional

import requests

from bulkops.config import dlog
from bulkops.metrics import ApiMetrics
from bulkops.token_service import USER_AGENT, TokenService


class PingOneApiError(Exception):
    """Non-success response (or unreachable host) from the PingOne management API."""

    def __init__(self, status_code: Optional[int], message: str) -> None:
        super().__init__(f"PingOne API error ({status_code if status_code is not None else 'network'}): {message}")
        self.status_code = status_code
        self.message = message


def _error_message(resp: requests.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:500] or resp.reason or "unknown error"
    if isinstance(body, dict):
        details = body.get("details")
        if isinstance(details, list) and details and isinstance(details[0], dict) and details[0].get("message"):
            return str(details[0]["message"])
        if body.get("message"):
            return str(body["message"])
    return resp.text[:500]


def _quote(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


class PingOneClient:
    """Thin wrapper around the PingOne management API for population and user calls.

    Bearer tokens come from the shared TokenService. A 401 clears the cached
    token and is retried once; 429/5xx and network errors are retried with
    exponential backoff (honouring Retry-After when present).
    """

    def __init__(
        self,
        tokens: TokenService,
        *,
        session: Optional[requests.Session] = None,
        timeout: float = 60.0,
        max_retries: int = 2,
        retry_delay: float = 1.0,
        rate_limit: Optional[int] = None,
        metrics: Optional[ApiMetrics] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._tokens = tokens
        self._session = session or requests.Session()
        self._timeout = timeout
        self._max_retries = max_retries
        self._retry_delay = retry_delay
        self._metrics = metrics
        self._sleep = sleep
        self._clock = clock
        self._pace_lock = threading.Lock()
        self._next_slot = 0.0
        self.rate_limit = rate_limit

    # ---------- populations ----------
    def list_populations(self) -> List[Dict]:
        data = self._request("GET", "/populations", route="GET /populations") or {}
        return list((data.get("_embedded") or {}).get("populations") or [])

    def get_population(self, population_id: str) -> Dict:
        return self._request("GET", f"/populations/{population_id}", route="GET /populations/{id}") or {}

    # ---------- users ----------
    def iter_users(
        self,
        population_id: Optional[str] = None,
        filter: Optional[str] = None,
        page_size: int = 100,
    ) -> Iterator[Dict]:
        clauses = []
        if population_id:
            clauses.append(f"population.id eq {_quote(population_id)}")
        if filter:
            clauses.append(filter)
        params: Optional[Dict[str, Any]] = {"limit": page_size}
        if clauses:
            params["filter"] = " and ".join(clauses)

        url: Optional[str] = "/users"
        while url:
            data = self._request("GET", url, route="GET /users", params=params) or {}
            for user in (data.get("_embedded") or {}).get("users") or []:
                yield user
            # The next link already carries the query string.
            params = None
            url = ((data.get("_links") or {}).get("next") or {}).get("href")

    def count_users(self, population_id: Optional[str] = None) -> int:
        params: Dict[str, Any] = {"limit": 1}
        if population_id:
            params["filter"] = f"population.id eq {_quote(population_id)}"
        data = self._request("GET", "/users", route="GET /users", params=params) or {}
        if data.get("count") is not None:
            return int(data["count"])
        return len((data.get("_embedded") or {}).get("users") or [])

    def find_user(
        self,
        *,
        username: Optional[str] = None,
        email: Optional[str] = None,
        population_id: Optional[str] = None,
    ) -> Optional[Dict]:
        if username:
            clause = f"username eq {_quote(username)}"
        elif email:
            clause = f"email eq {_quote(email)}"
        else:
            raise ValueError("find_user needs a username or an email")
        if population_id:
            clause += f" and population.id eq {_quote(population_id)}"
        data = self._request("GET", "/users", route="GET /users", params={"filter": clause, "limit": 1}) or {}
        users = (data.get("_embedded") or {}).get("users") or []
        return users[0] if users else None

    def get_user(self, user_id: str) -> Dict:
        return self._request("GET", f"/users/{user_id}", route="GET /users/{id}") or {}

    def create_user(self, payload: Dict) -> Dict:
        return self._request("POST", "/users", route="POST /users", json=payload) or {}

    def update_user(self, user_id: str, patch: Dict) -> Dict:
        return self._request("PATCH", f"/users/{user_id}", route="PATCH /users/{id}", json=patch) or {}

    def delete_user(self, user_id: str) -> None:
        self._request("DELETE", f"/users/{user_id}", route="DELETE /users/{id}")

    # ---------- transport ----------
    def _url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self._tokens.api_base_url()}/environments/{self._tokens.environment_id}{path}"

    def _pace(self) -> None:
        if not self.rate_limit:
            return
        interval = 1.0 / float(self.rate_limit)
        with self._pace_lock:
            now = self._clock()
            wait = self._next_slot - now
            self._next_slot = max(now, self._next_slot) + interval
        if wait > 0:
            self._sleep(wait)

    def _backoff(self, attempt: int, resp: Optional[requests.Response] = None) -> float:
        if resp is not None:
            retry_after = resp.headers.get("Retry-After")
            if retry_after:
                try:
                    return max(0.0, float(retry_after))
                except ValueError:
                    pass
        return self._retry_delay * (2 ** attempt)

    def _record(self, route: str, status_code: Optional[int], started: float) -> None:
        if self._metrics is None:
            return
        self._metrics.record(
            route=route,
            status_code=status_code,
            duration_ms=(self._clock() - started) * 1000.0,
            error=status_code is None or status_code >= 400,
        )

    def _request(
        self,
        method: str,
        path: str,
        *,
        route: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict] = None,
    ) -> Optional[Dict]:
        attempt = 0
        auth_retried = False
        while True:
            token = self._tokens.get_token()
            url = self._url(path)
            self._pace()
            started = self._clock()
            dlog("pingone_request", {"method": method, "url": url, "params": params, "attempt": attempt})
            try:
                resp = self._session.request(
                    method,
                    url,
                    params=params,
                    json=json,
                    headers={
                        "Authorization": f"Bearer {token}",
                        "Accept": "application/json",
                        "User-Agent": USER_AGENT,
                    },
                    timeout=self._timeout,
                )
            except requests.RequestException as e:
                self._record(route, None, started)
                if attempt < self._max_retries:
                    self._sleep(self._backoff(attempt))
                    attempt += 1
                    continue
                raise PingOneApiError(None, f"Could not reach PingOne: {e}") from e

            self._record(route, resp.status_code, started)

            if resp.status_code == 401 and not auth_retried:
                # Token revoked or expired early; drop it and try once more.
                self._tokens.clear()
                auth_retried = True
                continue
            if (resp.status_code == 429 or resp.status_code >= 500) and attempt < self._max_retries:
                self._sleep(self._backoff(attempt, resp))
                attempt += 1
                continue
            if resp.status_code >= 400:
                message = _error_message(resp)
                dlog("pingone_error", {"route": route, "status": resp.status_code, "message": message})
                raise PingOneApiError(resp.status_code, message)

            if resp.status_code == 204 or not resp.content:
                return None
            try:
                return resp.json()
            except ValueError as e:
                raise PingOneApiError(resp.status_code, f"Invalid JSON from PingOne: {e}") from e
