from __future__ import annotations

import json
import os
import time
from copy import deepcopy
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from bulkops.config import atomic_write_text, dlog
from bulkops.regions import DEFAULT_REGION, is_known_region, normalize_region


SETTINGS_SCHEMA_VERSION = 1
DEFAULT_RATE_LIMIT = 50
SECRET_MASK = "********"

REQUIRED_FIELDS = ("environment_id", "client_id", "client_secret")

# Older settings.json files were written by hand or by earlier tooling.
_LEGACY_KEYS: Dict[str, tuple] = {
    "environment_id": ("environmentId", "environment-id", "pingone_environment_id"),
    "client_id": ("apiClientId", "api-client-id", "clientId", "pingone_client_id"),
    "client_secret": ("apiSecret", "api-secret", "clientSecret", "pingone_client_secret"),
    "region": ("region", "pingone_region"),
    "default_population_id": ("defaultPopulationId", "default-population-id", "populationId"),
    "rate_limit": ("rateLimit", "rate-limit", "rate_limit"),
}


def _default_settings() -> Dict[str, Any]:
    return {
        "environment_id": None,
        "client_id": None,
        "client_secret": None,
        "region": DEFAULT_REGION,
        "default_population_id": None,
        "rate_limit": DEFAULT_RATE_LIMIT,
    }


def _from_legacy(raw: Dict[str, Any]) -> Dict[str, Any]:
    data: Dict[str, Any] = {}
    for field_name, keys in _LEGACY_KEYS.items():
        if field_name in raw:
            data[field_name] = raw[field_name]
            continue
        for key in keys:
            if raw.get(key) not in (None, ""):
                data[field_name] = raw[key]
                break
    return data


def _validate_rate_limit(value: Any) -> int:
    try:
        limit = int(value)
    except (TypeError, ValueError):
        raise ValueError(f"rate_limit must be an integer, got {value!r}")
    if limit < 1:
        raise ValueError("rate_limit must be at least 1")
    return limit


@dataclass
class SettingsStore:
    path: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=_default_settings)
    loaded_at: float = field(default_factory=time.time)

    def load(self) -> None:
        """Load settings from file if present; accepts versioned and legacy flat layouts."""
        if not self.path or not os.path.exists(self.path):
            return
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except Exception as e:
            dlog("settings_load_error", f"Could not read settings: {e}")
            return
        if not isinstance(raw, dict):
            dlog("settings_load_skip", "Settings file is not a JSON object")
            return

        version = raw.get("version")
        if version is None:
            data = _from_legacy(raw)
        elif version == SETTINGS_SCHEMA_VERSION and isinstance(raw.get("data"), dict):
            data = raw["data"]
        else:
            dlog("settings_load_skip", f"Incompatible settings version: {version}")
            return

        self.data = _default_settings()
        for key in self.data:
            if data.get(key) not in (None, ""):
                self.data[key] = data[key]
        self.data["region"] = normalize_region(self.data.get("region"))
        try:
            self.data["rate_limit"] = _validate_rate_limit(self.data.get("rate_limit"))
        except ValueError:
            self.data["rate_limit"] = DEFAULT_RATE_LIMIT
        self.loaded_at = time.time()
        dlog("settings_loaded", {"path": self.path, "legacy": version is None, "missing": self.missing_required()})

    def save(self) -> None:
        if not self.path:
            return
        payload = {"version": SETTINGS_SCHEMA_VERSION, "data": self.data}
        try:
            atomic_write_text(self.path, json.dumps(payload, indent=2))
        except Exception as e:
            dlog("settings_save_error", str(e))

    def get(self, key: str, default: Any = None) -> Any:
        value = self.data.get(key)
        return default if value in (None, "") else value

    def missing_required(self) -> List[str]:
        return [key for key in REQUIRED_FIELDS if not str(self.data.get(key) or "").strip()]

    def snapshot(self) -> Dict[str, Any]:
        data = deepcopy(self.data)
        if data.get("client_secret"):
            data["client_secret"] = SECRET_MASK
        return {
            "version": SETTINGS_SCHEMA_VERSION,
            "data": data,
            "path": self.path,
            "loaded_at": self.loaded_at,
            "missing": self.missing_required(),
        }

    def update(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Update allowed fields only and persist if a path is set."""
        changes: Dict[str, Any] = {}
        for key in ("environment_id", "client_id", "default_population_id"):
            if key in payload:
                value = payload.get(key)
                changes[key] = value.strip() if isinstance(value, str) else value
        if "client_secret" in payload:
            secret = payload.get("client_secret")
            # The masked value echoed back from snapshot() means "unchanged".
            if secret != SECRET_MASK:
                changes["client_secret"] = secret
        if "region" in payload:
            region = payload.get("region")
            if not is_known_region(region):
                raise ValueError(f"Unknown PingOne region: {region!r}")
            changes["region"] = normalize_region(region)
        if "rate_limit" in payload:
            changes["rate_limit"] = _validate_rate_limit(payload.get("rate_limit"))

        self.data.update(changes)
        self.save()
        dlog("settings_updated", {"fields": sorted(changes.keys())})
        return self.snapshot()
