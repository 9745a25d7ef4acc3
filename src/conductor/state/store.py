from __future__ import annotations

import json
import os
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from conductor.errors import StateStoreError
from conductor.models import utcnow_iso


class StateStore:
    """Namespaced JSON envelopes on local disk.

    Every write holds the store lock: a thread lock for callers in this process
    (audit mirroring runs in worker threads) plus an ``O_EXCL`` lock file for
    other processes sharing the state directory. ``update_json`` reads, applies
    the updater and writes inside one lock hold, so concurrent updaters never
    lose each other's changes. ``set_json`` keeps the optimistic
    ``expected_revision`` check for callers that read first and write later.
    """

    NAMESPACES = {"memory", "audit", "runs", "metrics"}
    SCHEMA_VERSION = 1
    LOCK_TIMEOUT_SECONDS = 3.0
    LOCK_POLL_SECONDS = 0.02

    def __init__(self, state_dir: Path) -> None:
        self.state_dir = state_dir.resolve()
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.lock_file = self.state_dir / ".lock"
        self._thread_lock = threading.RLock()
        self._lock_depth = 0

    @staticmethod
    def _validate_namespace(namespace: str) -> None:
        if namespace not in StateStore.NAMESPACES:
            raise StateStoreError(f"Unsupported namespace: {namespace}")

    def _local_file(self, namespace: str) -> Path:
        return self.state_dir / f"{namespace}.json"

    def _take_lock_file(self) -> None:
        deadline = time.monotonic() + self.LOCK_TIMEOUT_SECONDS
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError as exc:
                if time.monotonic() >= deadline:
                    raise StateStoreError(
                        f"Timed out waiting for state lock {self.lock_file}."
                    ) from exc
                time.sleep(self.LOCK_POLL_SECONDS)
                continue
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(str(os.getpid()))
            return

    @contextmanager
    def locked(self) -> Iterator[None]:
        """Hold the store lock; re-entrant within one thread."""
        with self._thread_lock:
            if self._lock_depth == 0:
                self._take_lock_file()
            self._lock_depth += 1
            try:
                yield
            finally:
                self._lock_depth -= 1
                if self._lock_depth == 0:
                    self.lock_file.unlink(missing_ok=True)

    def _read_raw_json(self, namespace: str) -> Any:
        local_file = self._local_file(namespace)
        if not local_file.exists():
            return None
        try:
            return json.loads(local_file.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            return None

    def _write_raw_json(self, namespace: str, payload: Any) -> None:
        serialized = json.dumps(payload, ensure_ascii=False, separators=(",", ":"), default=str)
        target = self._local_file(namespace)
        staging = target.with_suffix(".json.tmp")
        staging.write_text(serialized, encoding="utf-8")
        os.replace(staging, target)

    def _envelope(self, data: Any, revision: int, updated_at: str | None = None) -> dict[str, Any]:
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": revision,
            "updated_at": updated_at or utcnow_iso(),
            "data": data,
        }

    def _normalize_envelope(self, raw_payload: Any, default: Any) -> dict[str, Any]:
        # Bare payloads written before the envelope format count as revision 1.
        if isinstance(raw_payload, dict) and {"schema_version", "revision", "data"} <= set(
            raw_payload
        ):
            return self._envelope(
                raw_payload["data"],
                int(raw_payload["revision"] or 1),
                raw_payload.get("updated_at"),
            )
        return self._envelope(default if raw_payload is None else raw_payload, 1)

    def get_envelope(self, namespace: str, default: Any | None = None) -> dict[str, Any]:
        self._validate_namespace(namespace)
        default_value = {} if default is None else default
        return self._normalize_envelope(self._read_raw_json(namespace), default_value)

    def get_json(self, namespace: str, default: Any | None = None) -> Any:
        return self.get_envelope(namespace, default=default).get("data")

    def set_json(self, namespace: str, data: Any, expected_revision: int | None = None) -> None:
        self._validate_namespace(namespace)
        with self.locked():
            revision = int(self.get_envelope(namespace)["revision"])
            if expected_revision is not None and expected_revision != revision:
                raise StateStoreError(
                    f"Concurrent state update detected for namespace '{namespace}': "
                    f"expected revision {expected_revision}, found {revision}."
                )
            self._write_raw_json(namespace, self._envelope(data, revision + 1))

    def update_json(
        self,
        namespace: str,
        updater: Callable[[Any], Any],
        default: Any | None = None,
    ) -> Any:
        """Apply ``updater`` to the current data and write the result atomically."""
        self._validate_namespace(namespace)
        with self.locked():
            current = self.get_envelope(namespace, default=default)
            updated = updater(current["data"])
            self._write_raw_json(namespace, self._envelope(updated, int(current["revision"]) + 1))
        return updated

    def append_records(self, namespace: str, key: str, records: list[Any], limit: int) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            result = payload if isinstance(payload, dict) else {}
            items = result.get(key)
            if not isinstance(items, list):
                items = []
            items.extend(records)
            result[key] = items[-limit:] if limit > 0 else items
            return result

        self.update_json(namespace, _updater, default={key: []})

    def get_records(self, namespace: str, key: str) -> list[Any]:
        payload = self.get_json(namespace, default={key: []})
        if not isinstance(payload, dict):
            return []
        items = payload.get(key, [])
        return items if isinstance(items, list) else []

    def get_metrics(self) -> dict[str, Any]:
        metrics = self.get_json("metrics", default={})
        return metrics if isinstance(metrics, dict) else {}

    def record_event(self, event: dict[str, Any], *, limit: int = 200) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            metrics = payload if isinstance(payload, dict) else {}
            events = metrics.get("events", [])
            if not isinstance(events, list):
                events = []
            event_payload = dict(event)
            event_payload.setdefault("at", utcnow_iso())
            events.append(event_payload)
            metrics["events"] = events[-limit:]
            name = str(event.get("event", ""))
            if name:
                counts = metrics.get("event_counts", {})
                if not isinstance(counts, dict):
                    counts = {}
                counts[name] = int(counts.get(name, 0)) + 1
                metrics["event_counts"] = counts
            return metrics

        self.update_json("metrics", _updater, default={})

    def upsert_run(self, run_id: str, updates: dict[str, Any]) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            result = payload if isinstance(payload, dict) else {}
            runs = result.get("runs", {})
            if not isinstance(runs, dict):
                runs = {}
            record = runs.get(run_id, {})
            if not isinstance(record, dict):
                record = {}
            record.update(updates)
            record["updated_at"] = utcnow_iso()
            runs[run_id] = record
            result["runs"] = runs
            return result

        self.update_json("runs", _updater, default={"runs": {}})

    def get_runs(self) -> dict[str, Any]:
        payload = self.get_json("runs", default={"runs": {}})
        if not isinstance(payload, dict):
            return {}
        runs = payload.get("runs", {})
        return runs if isinstance(runs, dict) else {}
