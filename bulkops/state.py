from __future__ import annotations

import os
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from bulkops.auth import ConsoleAuthConfig, load_console_auth_config
from bulkops.config import dlog
from bulkops.credentials import load_credentials
from bulkops.history import HistoryStore
from bulkops.metrics import ApiMetrics
from bulkops.operations import BulkOperations, OperationResult
from bulkops.pingone_client import PingOneClient
from bulkops.progress import ProgressTracker
from bulkops.settings_store import SettingsStore
from bulkops.token_service import TokenService


DEFAULT_SETTINGS_FILE = os.path.join("data", "settings.json")
MAX_KEPT_RESULTS = 50


@dataclass
class AppState:
    settings: SettingsStore
    tokens: TokenService
    client: PingOneClient
    tracker: ProgressTracker
    history: HistoryStore
    metrics: ApiMetrics
    operations: BulkOperations
    auth_config: ConsoleAuthConfig
    start_time: float = field(default_factory=time.time)
    results: Dict[str, OperationResult] = field(default_factory=dict)
    running: Dict[str, str] = field(default_factory=dict)
    lock: threading.Lock = field(default_factory=threading.Lock)

    def reserve(self, kind: str, operation_id: str) -> Optional[str]:
        """Claim the single slot for an operation type; returns the holder's id if taken."""
        with self.lock:
            holder = self.running.get(kind)
            if holder:
                return holder
            self.running[kind] = operation_id
            return None

    def execute(self, kind: str, operation_id: str, fn: Callable[..., OperationResult], kwargs: Dict[str, Any]) -> None:
        try:
            result = fn(operation_id=operation_id, **kwargs)
            with self.lock:
                self.results[operation_id] = result
                while len(self.results) > MAX_KEPT_RESULTS:
                    self.results.pop(next(iter(self.results)))
        finally:
            with self.lock:
                if self.running.get(kind) == operation_id:
                    del self.running[kind]

    def apply_settings(self) -> None:
        """Push settings that live on long-lived objects after an update."""
        self.client.rate_limit = self.settings.get("rate_limit")
        self.tokens.clear()


def build_state(
    *,
    settings: Optional[SettingsStore] = None,
    tokens: Optional[TokenService] = None,
    client: Optional[PingOneClient] = None,
    tracker: Optional[ProgressTracker] = None,
    history: Optional[HistoryStore] = None,
    metrics: Optional[ApiMetrics] = None,
    auth_config: Optional[ConsoleAuthConfig] = None,
    chunk_pause: float = 0.1,
) -> AppState:
    """Wire the services together; anything not passed in is built from env."""
    if settings is None:
        settings = SettingsStore(path=os.environ.get("SETTINGS_FILE") or DEFAULT_SETTINGS_FILE)
        settings.load()
    if metrics is None:
        metrics = ApiMetrics()
        metrics_file = os.environ.get("METRICS_FILE")
        if metrics_file:
            metrics.configure_persistence(metrics_file)
            dlog("metrics_persistence_enabled", metrics_file)
    if tokens is None:
        tokens = TokenService(lambda: load_credentials(settings))
    if client is None:
        client = PingOneClient(tokens, rate_limit=settings.get("rate_limit"), metrics=metrics)
    if tracker is None:
        tracker = ProgressTracker(path=os.environ.get("PROGRESS_FILE") or None)
    if history is None:
        history = HistoryStore(path=os.environ.get("HISTORY_FILE") or None)
    if auth_config is None:
        auth_config = load_console_auth_config()

    return AppState(
        settings=settings,
        tokens=tokens,
        client=client,
        tracker=tracker,
        history=history,
        metrics=metrics,
        operations=BulkOperations(client, tracker, history, chunk_pause=chunk_pause),
        auth_config=auth_config,
    )
