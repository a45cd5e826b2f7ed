from __future__ import annotations

import os
from dataclasses import dataclass, replace
from typing import List, Optional

from bulkops.config import dlog
from bulkops.regions import DEFAULT_REGION, normalize_region
from bulkops.settings_store import SettingsStore


PLACEHOLDERS = {"YOUR_CLIENT_ID_HERE", "YOUR_CLIENT_SECRET_HERE", "YOUR_ENVIRONMENT_ID_HERE"}


@dataclass(frozen=True)
class Credentials:
    """Worker application credentials for one PingOne environment."""

    environment_id: str
    client_id: str
    client_secret: str
    region: str = DEFAULT_REGION
    source: str = "explicit"

    def missing_fields(self) -> List[str]:
        missing = []
        if not _usable(self.environment_id):
            missing.append("PINGONE_ENVIRONMENT_ID")
        if not _usable(self.client_id):
            missing.append("PINGONE_CLIENT_ID")
        if not _usable(self.client_secret):
            missing.append("PINGONE_CLIENT_SECRET")
        return missing

    @property
    def valid(self) -> bool:
        return not self.missing_fields()

    def with_source(self, source: str) -> "Credentials":
        return replace(self, source=source)


def _usable(value: Optional[str]) -> bool:
    if not value or not str(value).strip():
        return False
    return str(value).strip() not in PLACEHOLDERS


def credentials_from_env() -> Optional[Credentials]:
    env_id = os.environ.get("PINGONE_ENVIRONMENT_ID")
    client_id = os.environ.get("PINGONE_CLIENT_ID")
    secret = os.environ.get("PINGONE_CLIENT_SECRET")
    if not (env_id or client_id or secret):
        return None
    return Credentials(
        environment_id=(env_id or "").strip(),
        client_id=(client_id or "").strip(),
        client_secret=(secret or "").strip(),
        region=normalize_region(os.environ.get("PINGONE_REGION")),
        source="environment",
    )


def credentials_from_settings(store: Optional[SettingsStore]) -> Optional[Credentials]:
    if store is None:
        return None
    return Credentials(
        environment_id=str(store.get("environment_id", "")).strip(),
        client_id=str(store.get("client_id", "")).strip(),
        client_secret=str(store.get("client_secret", "")).strip(),
        region=normalize_region(store.get("region")),
        source="settings",
    )


def load_credentials(store: Optional[SettingsStore] = None) -> Optional[Credentials]:
    """Return the first valid credentials from the environment, then the settings store."""
    for name, loader in (("environment", credentials_from_env), ("settings", lambda: credentials_from_settings(store))):
        creds = loader()
        if creds is None:
            continue
        if creds.valid:
            dlog("credentials_loaded", {"source": name, "environment_id": creds.environment_id, "region": creds.region})
            return creds
        dlog("credentials_incomplete", {"source": name, "missing": creds.missing_fields()})
    return None
