from __future__ import annotations

import json
import os
import threading
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from bulkops.config import atomic_write_text, dlog


OPERATION_TYPES = ("import", "export", "modify", "delete")


@dataclass
class HistoryEntry:
    id: int
    type: str
    status: str
    timestamp: str
    population_id: Optional[str] = None
    population_name: Optional[str] = None
    records_processed: int = 0
    records_successful: int = 0
    records_errors: int = 0
    duration_ms: int = 0
    filename: Optional[str] = None
    error: Optional[str] = None
    operation_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class HistoryStore:
    """Operation history, newest-first on read, persisted as NDJSON."""

    def __init__(self, path: Optional[str] = None, max_entries: int = 1000) -> None:
        self.path = path
        self.max_entries = max_entries
        self._lock = threading.Lock()
        self._entries: List[HistoryEntry] = []
        self._load()

    def add(
        self,
        *,
        type: str,
        status: str,
        population_id: Optional[str] = None,
        population_name: Optional[str] = None,
        records_processed: int = 0,
        records_successful: int = 0,
        records_errors: int = 0,
        duration_ms: int = 0,
        filename: Optional[str] = None,
        error: Optional[str] = None,
        operation_id: Optional[str] = None,
    ) -> HistoryEntry:
        if not type or not status:
            raise ValueError("History entries need both 'type' and 'status'")
        with self._lock:
            next_id = max((e.id for e in self._entries), default=0) + 1
            entry = HistoryEntry(
                id=next_id,
                type=type,
                status=status,
                timestamp=datetime.now(timezone.utc).isoformat(),
                population_id=population_id,
                population_name=population_name,
                records_processed=int(records_processed or 0),
                records_successful=int(records_successful or 0),
                records_errors=int(records_errors or 0),
                duration_ms=int(duration_ms or 0),
                filename=filename,
                error=error,
                operation_id=operation_id,
            )
            self._entries.append(entry)
            if len(self._entries) > self.max_entries:
                self._entries = self._entries[-self.max_entries :]
            self._persist_locked()
        dlog("history_added", {"id": entry.id, "type": type, "status": status})
        return entry

    def list(
        self,
        *,
        type: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Dict[str, Any]:
        limit = max(0, int(limit))
        offset = max(0, int(offset))
        with self._lock:
            matched = [e for e in self._entries if _matches(e, type, status)]
        matched.sort(key=lambda e: (e.timestamp, e.id), reverse=True)
        page = matched[offset : offset + limit]
        return {
            "history": [e.to_dict() for e in page],
            "total": len(matched),
            "limit": limit,
            "offset": offset,
            "has_more": offset + limit < len(matched),
        }

    def get(self, entry_id: int) -> Optional[HistoryEntry]:
        with self._lock:
            for e in self._entries:
                if e.id == entry_id:
                    return e
        return None

    def delete(self, entry_id: int) -> Optional[HistoryEntry]:
        with self._lock:
            for index, e in enumerate(self._entries):
                if e.id == entry_id:
                    removed = self._entries.pop(index)
                    self._persist_locked()
                    return removed
        return None

    def clear(self, *, type: Optional[str] = None, status: Optional[str] = None) -> int:
        with self._lock:
            before = len(self._entries)
            self._entries = [e for e in self._entries if not _matches(e, type, status)]
            removed = before - len(self._entries)
            self._persist_locked()
        return removed

    # ---------- persistence helpers ----------
    def _load(self) -> None:
        if not self.path or not os.path.exists(self.path):
            return
        fields = HistoryEntry.__dataclass_fields__
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    data = json.loads(line)
                    self._entries.append(HistoryEntry(**{k: v for k, v in data.items() if k in fields}))
            self._entries = self._entries[-self.max_entries :]
        except Exception as e:
            dlog("history_load_error", f"Could not read history file: {e}")
            self._entries = []

    def _persist_locked(self) -> None:
        if not self.path:
            return
        text = "".join(json.dumps(e.to_dict()) + "\n" for e in self._entries)
        try:
            atomic_write_text(self.path, text)
        except Exception as e:
            dlog("history_persist_error", str(e))


def _matches(entry: HistoryEntry, type: Optional[str], status: Optional[str]) -> bool:
    return (not type or entry.type == type) and (not status or entry.status == status)
