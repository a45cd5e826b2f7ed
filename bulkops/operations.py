from __future__ import annotations

import json
import threading
import time
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Union

from bulkops.config import dlog
from bulkops.history import HistoryStore
from bulkops.pingone_client import PingOneApiError, PingOneClient
from bulkops.progress import CANCELLED, COMPLETED, FAILED, ProgressTracker
from bulkops.records import (
    generate_csv,
    normalize_row,
    optimal_chunk_size,
    resolve_fields,
    row_to_patch,
    row_to_user_payload,
    user_to_row,
    validate_user_rows,
)


MAX_REPORTED_ERRORS = 100
EXPORT_FORMATS = ("csv", "json")


@dataclass
class OperationResult:
    operation_id: str
    type: str
    status: str = "running"
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)
    duration_ms: int = 0
    content: Optional[str] = None
    content_type: Optional[str] = None
    error: Optional[str] = None

    def add_error(self, row: Optional[int], message: str) -> None:
        self.failed += 1
        if len(self.errors) < MAX_REPORTED_ERRORS:
            self.errors.append({"row": row, "message": message})

    def to_dict(self, include_content: bool = False) -> Dict[str, Any]:
        data = asdict(self)
        if not include_content:
            data.pop("content")
        return data


def new_operation_id(kind: str) -> str:
    return f"{kind}_{uuid.uuid4().hex[:12]}"


class _Run:
    """Bookkeeping shared by every operation type: tracker entry, stop flag, history."""

    def __init__(self, ops: "BulkOperations", kind: str, operation_id: Optional[str], population_id: Optional[str], filename: Optional[str]):
        self.ops = ops
        self.kind = kind
        self.population_id = population_id
        self.filename = filename
        self.stop = threading.Event()
        self.started = time.monotonic()
        self.result = OperationResult(operation_id=operation_id or new_operation_id(kind), type=kind)

    def begin(self, total: int, message: str) -> None:
        op_id = self.result.operation_id
        self.ops.tracker.start(
            op_id,
            total=max(total, 0),
            message=message,
            metadata={"type": self.kind, "population_id": self.population_id, "filename": self.filename},
        )
        self.ops.tracker.register_cancellation(op_id, self.stop.set)

    def step(self, message: Optional[str] = None) -> None:
        self.result.processed += 1
        self.ops.tracker.update(
            self.result.operation_id,
            progress=self.result.processed,
            message=message,
            metadata=self._counts(),
        )

    def set_total(self, total: int) -> None:
        self.ops.tracker.update(self.result.operation_id, total=total)

    def _counts(self) -> Dict[str, int]:
        r = self.result
        return {"succeeded": r.succeeded, "failed": r.failed, "skipped": r.skipped}

    def finish(self, error: Optional[BaseException] = None) -> OperationResult:
        r = self.result
        r.duration_ms = int((time.monotonic() - self.started) * 1000)
        op_id = r.operation_id
        if error is not None:
            r.status = FAILED
            r.error = str(error)
            self.ops.tracker.fail(op_id, message=f"{self.kind.capitalize()} failed", error=str(error))
        elif self.stop.is_set():
            r.status = CANCELLED
        else:
            r.status = COMPLETED
            self.ops.tracker.update(op_id, metadata=self._counts())
            self.ops.tracker.complete(
                op_id,
                message=f"{self.kind.capitalize()} finished: {r.succeeded} succeeded, {r.failed} failed, {r.skipped} skipped",
            )
        if self.ops.history is not None:
            self.ops.history.add(
                type=self.kind,
                status=r.status,
                population_id=self.population_id,
                records_processed=r.processed,
                records_successful=r.succeeded,
                records_errors=r.failed,
                duration_ms=r.duration_ms,
                filename=self.filename,
                error=r.error,
                operation_id=op_id,
            )
        dlog("operation_finished", r.to_dict())
        return r


class BulkOperations:
    """Runs import/export/modify/delete against PingOne with progress and history.

    Records are processed in chunks; the stop flag set by a tracker
    cancellation is checked before every record. A failure on one record is
    counted and the run continues. Failures that prevent the run from
    enumerating its records (listing a population, token acquisition) fail the
    whole operation.
    """

    def __init__(
        self,
        client: PingOneClient,
        tracker: ProgressTracker,
        history: Optional[HistoryStore] = None,
        *,
        chunk_pause: float = 0.1,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.client = client
        self.tracker = tracker
        self.history = history
        self.chunk_pause = chunk_pause
        self._sleep = sleep

    # ---------- import ----------
    def run_import(
        self,
        rows: Sequence[Dict[str, Any]],
        population_id: Optional[str],
        *,
        skip_duplicates: bool = True,
        operation_id: Optional[str] = None,
        filename: Optional[str] = None,
    ) -> OperationResult:
        run = _Run(self, "import", operation_id, population_id, filename)
        run.begin(len(rows), f"Importing {len(rows)} users")
        try:
            report = validate_user_rows(rows)
            invalid = {e["row"]: e["message"] for e in report["errors"]}
            for index, row in self._records(run, rows):
                if index in invalid:
                    run.result.add_error(index, invalid[index])
                    run.step()
                    continue
                payload = row_to_user_payload(row, population_id)
                if not (payload.get("population") or {}).get("id"):
                    run.result.add_error(index, "No population given for row and no default population")
                    run.step()
                    continue
                try:
                    if skip_duplicates and self._find(row) is not None:
                        run.result.skipped += 1
                    else:
                        self.client.create_user(payload)
                        run.result.succeeded += 1
                except PingOneApiError as e:
                    run.result.add_error(index, e.message)
                run.step(f"Imported {run.result.succeeded} of {len(rows)}")
        except Exception as e:
            return run.finish(e)
        return run.finish()

    # ---------- export ----------
    def run_export(
        self,
        population_id: Optional[str] = None,
        *,
        fields: Union[str, Sequence[str]] = "basic",
        fmt: str = "csv",
        include_disabled: bool = True,
        operation_id: Optional[str] = None,
    ) -> OperationResult:
        if fmt not in EXPORT_FORMATS:
            raise ValueError(f"Unsupported export format: {fmt!r} (expected one of {', '.join(EXPORT_FORMATS)})")
        columns = resolve_fields(fields)
        filename = f"users-export-{time.strftime('%Y-%m-%d')}.{fmt}"
        run = _Run(self, "export", operation_id, population_id, filename)
        run.begin(0, "Counting users")
        try:
            run.set_total(self.client.count_users(population_id))
            exported: List[Dict[str, Any]] = []
            for user in self.client.iter_users(population_id=population_id):
                if run.stop.is_set():
                    break
                if not include_disabled and user.get("enabled") is False:
                    run.result.skipped += 1
                else:
                    exported.append(user_to_row(user, columns))
                    run.result.succeeded += 1
                run.step()
        except Exception as e:
            return run.finish(e)

        if fmt == "csv":
            run.result.content = generate_csv(exported, columns) if exported else ",".join(columns) + "\n"
            run.result.content_type = "text/csv"
        else:
            run.result.content = json.dumps({"users": exported, "count": len(exported)}, indent=2)
            run.result.content_type = "application/json"
        return run.finish()

    # ---------- modify ----------
    def run_modify(
        self,
        rows: Sequence[Dict[str, Any]],
        *,
        create_if_missing: bool = False,
        population_id: Optional[str] = None,
        operation_id: Optional[str] = None,
        filename: Optional[str] = None,
    ) -> OperationResult:
        run = _Run(self, "modify", operation_id, population_id, filename)
        run.begin(len(rows), f"Modifying {len(rows)} users")
        try:
            for index, row in self._records(run, rows):
                try:
                    user = self._find(row, population_id)
                    if user is None:
                        if create_if_missing:
                            payload = row_to_user_payload(row, population_id)
                            if not (payload.get("population") or {}).get("id"):
                                run.result.add_error(index, "User not found and no population to create it in")
                            else:
                                self.client.create_user(payload)
                                run.result.succeeded += 1
                        else:
                            run.result.add_error(index, "User not found")
                    else:
                        patch = row_to_patch(row)
                        if patch:
                            self.client.update_user(user["id"], patch)
                            run.result.succeeded += 1
                        else:
                            run.result.skipped += 1
                except PingOneApiError as e:
                    run.result.add_error(index, e.message)
                run.step()
        except Exception as e:
            return run.finish(e)
        return run.finish()

    # ---------- delete ----------
    def run_delete(
        self,
        rows: Optional[Sequence[Dict[str, Any]]] = None,
        *,
        population_id: Optional[str] = None,
        operation_id: Optional[str] = None,
        filename: Optional[str] = None,
    ) -> OperationResult:
        if not rows and not population_id:
            raise ValueError("Delete needs either records or a population_id")
        run = _Run(self, "delete", operation_id, population_id, filename)
        try:
            if rows:
                run.begin(len(rows), f"Deleting {len(rows)} users")
                targets: Sequence[Dict[str, Any]] = rows
                by_lookup = True
            else:
                run.begin(0, "Listing population users")
                targets = list(self.client.iter_users(population_id=population_id))
                run.set_total(len(targets))
                by_lookup = False

            for index, row in self._records(run, targets):
                try:
                    user = self._find(row, population_id) if by_lookup else row
                    if user is None:
                        run.result.skipped += 1
                    else:
                        self.client.delete_user(user["id"])
                        run.result.succeeded += 1
                except PingOneApiError as e:
                    if e.status_code == 404:
                        run.result.skipped += 1
                    else:
                        run.result.add_error(index, e.message)
                run.step()
        except Exception as e:
            return run.finish(e)
        return run.finish()

    # ---------- helpers ----------
    def _records(self, run: _Run, rows: Sequence[Dict[str, Any]]) -> Iterable:
        """Yield (index, row) in chunks, pausing between chunks and stopping on cancel."""
        size = optimal_chunk_size(len(rows))
        for start in range(0, len(rows), size):
            if start and self.chunk_pause:
                self._sleep(self.chunk_pause)
            for offset, row in enumerate(rows[start : start + size]):
                if run.stop.is_set():
                    dlog("operation_cancelled", {"id": run.result.operation_id, "at_row": start + offset})
                    return
                yield start + offset, row

    def _find(self, row: Dict[str, Any], population_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        r = normalize_row(row)
        if r.get("id"):
            try:
                return self.client.get_user(r["id"])
            except PingOneApiError as e:
                if e.status_code != 404:
                    raise
                return None
        if r.get("username"):
            user = self.client.find_user(username=r["username"], population_id=population_id)
            if user is not None or not r.get("email"):
                return user
        if r.get("email"):
            return self.client.find_user(email=r["email"], population_id=population_id)
        return None
