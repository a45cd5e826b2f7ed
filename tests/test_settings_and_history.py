import json

import pytest

from bulkops.credentials import Credentials, credentials_from_env, load_credentials
from bulkops.history import HistoryStore
from bulkops.metrics import ApiMetrics
from bulkops.regions import api_base_url, auth_base_url, is_known_region, normalize_region
from bulkops.settings_store import DEFAULT_RATE_LIMIT, SECRET_MASK, SettingsStore


ENV_KEYS = ("PINGONE_ENVIRONMENT_ID", "PINGONE_CLIENT_ID", "PINGONE_CLIENT_SECRET", "PINGONE_REGION")


@pytest.fixture
def clean_env(monkeypatch):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    return monkeypatch


@pytest.mark.parametrize(
    "region, auth, api",
    [
        ("NorthAmerica", "https://auth.pingone.com", "https://api.pingone.com/v1"),
        ("eu", "https://auth.pingone.eu", "https://api.pingone.eu/v1"),
        ("AP", "https://auth.pingone.asia", "https://api.pingone.asia/v1"),
        ("canada", "https://auth.pingone.ca", "https://api.pingone.ca/v1"),
        ("Australia", "https://auth.pingone.com.au", "https://api.pingone.com.au/v1"),
        (None, "https://auth.pingone.com", "https://api.pingone.com/v1"),
    ],
)
def test_region_urls(region, auth, api):
    assert auth_base_url(region) == auth
    assert api_base_url(region) == api


def test_unknown_region_falls_back():
    assert not is_known_region("Mars")
    assert normalize_region("Mars") == "NorthAmerica"


def test_settings_round_trip_and_masking(tmp_path):
    path = tmp_path / "settings.json"
    store = SettingsStore(path=str(path))
    store.update({"environment_id": " env-1 ", "client_id": "cid", "client_secret": "shh", "region": "EU"})

    on_disk = json.loads(path.read_text())
    assert on_disk["version"] == 1
    assert on_disk["data"]["environment_id"] == "env-1"
    assert on_disk["data"]["region"] == "Europe"

    reloaded = SettingsStore(path=str(path))
    reloaded.load()
    snap = reloaded.snapshot()
    assert snap["data"]["client_secret"] == SECRET_MASK
    assert snap["missing"] == []
    assert reloaded.get("client_secret") == "shh"


def test_settings_reject_bad_values():
    store = SettingsStore()
    with pytest.raises(ValueError):
        store.update({"region": "Moon"})
    with pytest.raises(ValueError):
        store.update({"rate_limit": "fast"})
    assert store.get("rate_limit") == DEFAULT_RATE_LIMIT


def test_settings_load_legacy_layout(tmp_path):
    path = tmp_path / "settings.json"
    path.write_text(
        json.dumps({"environmentId": "env-2", "apiClientId": "cid", "apiSecret": "sec", "region": "Canada", "rateLimit": "oops"})
    )
    store = SettingsStore(path=str(path))
    store.load()
    assert store.get("environment_id") == "env-2"
    assert store.get("client_id") == "cid"
    assert store.get("region") == "Canada"
    assert store.get("rate_limit") == DEFAULT_RATE_LIMIT


def test_settings_ignore_unknown_version(tmp_path):
    path = tmp_path / "settings.json"
    path.write_text(json.dumps({"version": 99, "data": {"environment_id": "x"}}))
    store = SettingsStore(path=str(path))
    store.load()
    assert store.missing_required() == ["environment_id", "client_id", "client_secret"]


def test_credentials_prefer_environment(clean_env):
    store = SettingsStore()
    store.update({"environment_id": "env-settings", "client_id": "cid", "client_secret": "sec"})
    assert load_credentials(store).source == "settings"

    clean_env.setenv("PINGONE_ENVIRONMENT_ID", "env-env")
    clean_env.setenv("PINGONE_CLIENT_ID", "cid")
    clean_env.setenv("PINGONE_CLIENT_SECRET", "sec")
    clean_env.setenv("PINGONE_REGION", "eu")
    creds = load_credentials(store)
    assert (creds.environment_id, creds.region, creds.source) == ("env-env", "Europe", "environment")


def test_incomplete_environment_falls_through_to_settings(clean_env):
    clean_env.setenv("PINGONE_CLIENT_ID", "only-this")
    assert credentials_from_env().missing_fields() == ["PINGONE_ENVIRONMENT_ID", "PINGONE_CLIENT_SECRET"]
    assert load_credentials(SettingsStore()) is None


def test_placeholder_values_count_as_missing():
    creds = Credentials(environment_id="YOUR_ENVIRONMENT_ID_HERE", client_id="cid", client_secret=" ")
    assert creds.missing_fields() == ["PINGONE_ENVIRONMENT_ID", "PINGONE_CLIENT_SECRET"]
    assert not creds.valid


def test_history_filters_and_pagination():
    history = HistoryStore()
    history.add(type="import", status="completed", records_processed=10)
    history.add(type="export", status="completed")
    history.add(type="import", status="failed", error="boom")

    page = history.list(type="import")
    assert page["total"] == 2
    assert [e["id"] for e in page["history"]] == [3, 1]

    page = history.list(limit=1, offset=1)
    assert page["has_more"] is True
    assert page["history"][0]["id"] == 2

    assert history.clear(type="import") == 2
    assert history.list()["total"] == 1


def test_history_requires_type_and_status():
    with pytest.raises(ValueError):
        HistoryStore().add(type="import", status="")


def test_history_persists_and_trims(tmp_path):
    path = tmp_path / "history.ndjson"
    history = HistoryStore(path=str(path), max_entries=2)
    for status in ("completed", "failed", "cancelled"):
        history.add(type="delete", status=status)

    assert len(path.read_text().splitlines()) == 2
    reloaded = HistoryStore(path=str(path))
    assert [e["status"] for e in reloaded.list()["history"]] == ["cancelled", "failed"]
    assert reloaded.add(type="delete", status="completed").id == 4
    assert reloaded.delete(2).status == "failed"
    assert reloaded.get(2) is None


def test_metrics_summary_and_persistence(tmp_path):
    path = tmp_path / "metrics.json"
    metrics = ApiMetrics()
    metrics.configure_persistence(str(path))
    metrics.record(route="GET /users", status_code=200, duration_ms=10)
    metrics.record(route="GET /users", status_code=None, duration_ms=30, error=True)

    summary = metrics.summary()
    assert summary["total_calls"] == 2
    assert summary["total_errors"] == 1
    assert summary["error_rate"] == 0.5
    assert summary["avg_latency_ms"] == 20.0
    assert metrics.snapshot()["routes"]["GET /users"]["by_status"] == {"200": 1, "network_error": 1}

    restored = ApiMetrics()
    restored.configure_persistence(str(path))
    assert restored.summary()["total_calls"] == 2
    assert restored.snapshot()["routes"]["GET /users"]["latency_ms"]["count"] == 2
