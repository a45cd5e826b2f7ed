from __future__ import annotations

import json
import os
import threading
import time
from copy import deepcopy
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional

from bulkops.config import atomic_write_text, dlog


PROGRESS_SCHEMA_VERSION = 1

RUNNING = "running"
COMPLETED = "completed"
FAILED = "failed"
CANCELLED = "cancelled"
TERMINAL_STATUSES = {COMPLETED, FAILED, CANCELLED}

EVENTS = ("start", "update", "complete", "fail", "cancel")
ALL_EVENTS = "*"


def _now() -> float:
    return time.time()


@dataclass
class ProgressState:
    id: str
    progress: float = 0
    total: float = 100
    message: str = "Starting..."
    status: str = RUNNING
    start_time: float = field(default_factory=_now)
    update_time: float = field(default_factory=_now)
    end_time: Optional[float] = None
    auto_complete: bool = False
    auto_complete_delay: float = 0.5
    metadata: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def finished(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def percentage(self) -> int:
        if not self.total:
            return 0
        return int(round(100.0 * self.progress / self.total))

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["percentage"] = self.percentage
        return data

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "ProgressState":
        known = {k: raw[k] for k in cls.__dataclass_fields__ if k in raw}
        return cls(**known)


class ProgressTracker:
    """Tracks many long-running operations and fans state changes out to listeners.

    Listeners registered for a single event receive ``(id, state)``; listeners
    registered for ``"*"`` receive ``(event, id, state)``. States are copied
    before they are handed out, so listeners cannot mutate the tracker.
    """

    def __init__(self, path: Optional[str] = None) -> None:
        self._lock = threading.RLock()
        self._states: Dict[str, ProgressState] = {}
        self._listeners: Dict[str, List[Callable]] = {}
        self._cancellations: Dict[str, Callable[[], None]] = {}
        self._timers: Dict[str, threading.Timer] = {}
        self._path = path
        if path:
            self._load()

    # ---------- transitions ----------
    def start(
        self,
        op_id: str,
        *,
        total: float = 100,
        message: str = "Starting...",
        auto_complete: bool = False,
        auto_complete_delay: float = 0.5,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ProgressState:
        state = ProgressState(
            id=op_id,
            total=total,
            message=message,
            auto_complete=auto_complete,
            auto_complete_delay=auto_complete_delay,
            metadata=dict(metadata or {}),
        )
        with self._lock:
            self._states[op_id] = state
            self._cancel_timer_locked(op_id)
            self._persist_locked()
            snapshot = deepcopy(state)
        self._notify("start", op_id, snapshot)
        return snapshot

    def update(
        self,
        op_id: str,
        *,
        progress: Optional[float] = None,
        message: Optional[str] = None,
        total: Optional[float] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[ProgressState]:
        with self._lock:
            current = self._states.get(op_id)
            if current is None:
                dlog("progress_unknown_operation", {"action": "update", "id": op_id})
                return None
            if current.finished:
                return deepcopy(current)
            state = replace(current, update_time=_now(), metadata=dict(current.metadata))
            if total is not None:
                state.total = total
            if message is not None:
                state.message = message
            if metadata:
                state.metadata.update(metadata)
            if progress is not None:
                state.progress = min(max(0, progress), state.total)
            else:
                state.progress = min(state.progress, state.total)
            self._states[op_id] = state
            self._persist_locked()
            snapshot = deepcopy(state)
        self._notify("update", op_id, snapshot)

        if snapshot.auto_complete and snapshot.progress >= snapshot.total:
            self._arm_auto_complete(snapshot)
        return snapshot

    def _arm_auto_complete(self, snapshot: ProgressState) -> None:
        op_id = snapshot.id

        def fire() -> None:
            with self._lock:
                if self._timers.get(op_id) is not timer:
                    return
                del self._timers[op_id]
            self._finish(
                op_id, "complete", COMPLETED, message=snapshot.message or "Completed", fill=True, started_at=snapshot.start_time
            )

        timer = threading.Timer(snapshot.auto_complete_delay, fire)
        timer.daemon = True
        with self._lock:
            current = self._states.get(op_id)
            if current is None or current.finished or current.start_time != snapshot.start_time:
                return
            self._cancel_timer_locked(op_id)
            self._timers[op_id] = timer
        timer.start()

    def _cancel_timer_locked(self, op_id: str) -> None:
        timer = self._timers.pop(op_id, None)
        if timer is not None:
            timer.cancel()

    def complete(self, op_id: str, *, message: Optional[str] = None) -> Optional[ProgressState]:
        return self._finish(op_id, "complete", COMPLETED, message=message, fill=True)

    def fail(self, op_id: str, *, message: Optional[str] = None, error: Optional[str] = None) -> Optional[ProgressState]:
        return self._finish(op_id, "fail", FAILED, message=message, error=error)

    def cancel(self, op_id: str, *, message: Optional[str] = None) -> Optional[ProgressState]:
        state = self._finish(op_id, "cancel", CANCELLED, message=message or "Cancelled")
        with self._lock:
            callback = self._cancellations.pop(op_id, None)
        if callback is not None and state is not None and state.status == CANCELLED:
            try:
                callback()
            except Exception as e:
                dlog("progress_cancellation_error", {"id": op_id, "error": str(e)})
        return state

    def _finish(
        self,
        op_id: str,
        event: str,
        status: str,
        *,
        message: Optional[str] = None,
        error: Optional[str] = None,
        fill: bool = False,
        started_at: Optional[float] = None,
    ) -> Optional[ProgressState]:
        with self._lock:
            current = self._states.get(op_id)
            if current is None:
                dlog("progress_unknown_operation", {"action": event, "id": op_id})
                return None
            if current.finished:
                return deepcopy(current)
            if started_at is not None and current.start_time != started_at:
                return deepcopy(current)
            self._cancel_timer_locked(op_id)
            now = _now()
            state = replace(current, status=status, end_time=now, update_time=now, metadata=dict(current.metadata))
            if fill:
                state.progress = state.total
            if message is not None:
                state.message = message
            if error is not None:
                state.error = error
            self._states[op_id] = state
            if status != CANCELLED:
                self._cancellations.pop(op_id, None)
            self._persist_locked()
            snapshot = deepcopy(state)
        self._notify(event, op_id, snapshot)
        return snapshot

    # ---------- queries ----------
    def get(self, op_id: str) -> Optional[ProgressState]:
        with self._lock:
            state = self._states.get(op_id)
            return deepcopy(state) if state else None

    def all(self) -> List[ProgressState]:
        with self._lock:
            return [deepcopy(s) for s in self._states.values()]

    def active(self) -> List[ProgressState]:
        with self._lock:
            return [deepcopy(s) for s in self._states.values() if s.status == RUNNING]

    def clear_completed(self) -> int:
        with self._lock:
            finished = [op_id for op_id, s in self._states.items() if s.status != RUNNING]
            for op_id in finished:
                del self._states[op_id]
                self._cancellations.pop(op_id, None)
                self._cancel_timer_locked(op_id)
            self._persist_locked()
        return len(finished)

    def clear_all(self) -> None:
        with self._lock:
            self._states.clear()
            self._cancellations.clear()
            for op_id in list(self._timers):
                self._cancel_timer_locked(op_id)
            self._persist_locked()

    # ---------- cancellation + listeners ----------
    def register_cancellation(self, op_id: str, callback: Callable[[], None]) -> None:
        if not callable(callback):
            raise TypeError("Cancellation callback must be callable")
        with self._lock:
            self._cancellations[op_id] = callback

    def add_listener(self, event: str, listener: Callable) -> Callable[[], None]:
        if event != ALL_EVENTS and event not in EVENTS:
            raise ValueError(f"Unknown progress event: {event}")
        with self._lock:
            self._listeners.setdefault(event, []).append(listener)

        def remove() -> None:
            with self._lock:
                listeners = self._listeners.get(event)
                if listeners and listener in listeners:
                    listeners.remove(listener)

        return remove

    def remove_listeners(self, event: str) -> None:
        with self._lock:
            self._listeners.pop(event, None)

    def remove_all_listeners(self) -> None:
        with self._lock:
            self._listeners.clear()

    def _notify(self, event: str, op_id: str, state: ProgressState) -> None:
        with self._lock:
            specific = list(self._listeners.get(event, ()))
            catch_all = list(self._listeners.get(ALL_EVENTS, ()))
        for listener in specific:
            try:
                listener(op_id, state)
            except Exception as e:
                dlog("progress_listener_error", {"event": event, "id": op_id, "error": str(e)})
        for listener in catch_all:
            try:
                listener(event, op_id, state)
            except Exception as e:
                dlog("progress_listener_error", {"event": ALL_EVENTS, "id": op_id, "error": str(e)})

    # ---------- persistence helpers ----------
    def _persist_locked(self) -> None:
        if not self._path:
            return
        payload = {
            "version": PROGRESS_SCHEMA_VERSION,
            "operations": {op_id: asdict(s) for op_id, s in self._states.items()},
        }
        try:
            atomic_write_text(self._path, json.dumps(payload))
        except Exception as e:
            dlog("progress_persist_error", str(e))

    def _load(self) -> None:
        if not self._path or not os.path.exists(self._path):
            return
        try:
            with open(self._path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except Exception as e:
            dlog("progress_load_error", f"Could not read progress file: {e}")
            return
        if not isinstance(data, dict) or data.get("version") != PROGRESS_SCHEMA_VERSION:
            dlog("progress_load_skipped", "Incompatible progress file")
            return

        interrupted = 0
        for op_id, raw in (data.get("operations") or {}).items():
            try:
                state = ProgressState.from_dict(raw)
            except TypeError as e:
                dlog("progress_load_entry_skipped", {"id": op_id, "error": str(e)})
                continue
            if state.status == RUNNING:
                # Nothing is driving it any more.
                state.status = FAILED
                state.message = "Interrupted by restart"
                state.end_time = state.end_time or _now()
                interrupted += 1
            self._states[op_id] = state
        dlog("progress_loaded", {"count": len(self._states), "interrupted": interrupted})
