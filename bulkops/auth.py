from __future__ import annotations

import hmac
import os
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import bcrypt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from bulkops.config import dlog


basic_auth = HTTPBasic(auto_error=False)

_CHALLENGE = {"WWW-Authenticate": "Basic"}


def truthy(val: Optional[str]) -> bool:
    return val is not None and val.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class ConsoleAuthConfig:
    """HTTP Basic protection for the console API; off unless a password is configured."""

    enabled: bool
    username: str
    password_hash: Optional[str]
    password_plain: Optional[str]
    disabled_reason: Optional[str] = None

    @property
    def auth_mode(self) -> str:
        if not self.enabled:
            return "disabled"
        return "hash" if self.password_hash else "password"

    def verify(self, username: Optional[str], password: Optional[str]) -> bool:
        # Both parts are always checked.
        user_ok = hmac.compare_digest((self.username or "").encode("utf-8"), (username or "").encode("utf-8"))
        if self.password_hash:
            try:
                password_ok = bcrypt.checkpw((password or "").encode("utf-8"), self.password_hash.encode("utf-8"))
            except ValueError:
                password_ok = False
        else:
            password_ok = hmac.compare_digest((self.password_plain or "").encode("utf-8"), (password or "").encode("utf-8"))
        return user_ok and password_ok


def load_console_auth_config() -> ConsoleAuthConfig:
    """Build the console auth config from ENABLE_CONSOLE_AUTH / CONSOLE_* env vars."""
    requested = truthy(os.environ.get("ENABLE_CONSOLE_AUTH") or os.environ.get("CONSOLE_AUTH_ENABLED"))
    password_hash = os.environ.get("CONSOLE_PASSWORD_HASH") or None
    password_plain = os.environ.get("CONSOLE_PASSWORD") or None

    reason = None
    if requested and not (password_hash or password_plain):
        reason = "Console auth disabled: ENABLE_CONSOLE_AUTH set but no CONSOLE_PASSWORD_HASH or CONSOLE_PASSWORD provided."

    config = ConsoleAuthConfig(
        enabled=requested and reason is None,
        username=(os.environ.get("CONSOLE_USERNAME") or "").strip() or "admin",
        password_hash=password_hash,
        password_plain=password_plain,
        disabled_reason=reason,
    )
    dlog("console_auth_config", public_auth_config(config))
    return config


def require_console_user(config: ConsoleAuthConfig) -> Callable[..., Dict[str, Any]]:
    """FastAPI dependency factory; attach with ``dependencies=[Depends(...)]`` on a router."""

    def dependency(credentials: Optional[HTTPBasicCredentials] = Depends(basic_auth)) -> Dict[str, Any]:
        if not config.enabled:
            return {"username": None, "auth_mode": "disabled"}
        if credentials is None:
            raise HTTPException(status.HTTP_401_UNAUTHORIZED, detail="Authentication required", headers=_CHALLENGE)
        if not config.verify(credentials.username, credentials.password):
            dlog("console_auth_rejected", {"username": credentials.username})
            raise HTTPException(status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials", headers=_CHALLENGE)
        return {"username": config.username, "auth_mode": config.auth_mode}

    return dependency


def public_auth_config(config: ConsoleAuthConfig) -> Dict[str, Any]:
    return {
        "enabled": config.enabled,
        "username": config.username if config.enabled else None,
        "auth_mode": config.auth_mode,
        "disabled_reason": config.disabled_reason,
    }
