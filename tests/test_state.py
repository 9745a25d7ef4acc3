import json
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest

from conductor.errors import StateStoreError
from conductor.state import PersistentMemory, StateStore


def test_store_roundtrip_writes_envelope(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "state")
    payload = {"goal": "ship release notes"}

    store.set_json("memory", payload)

    on_disk = json.loads((tmp_path / "state" / "memory.json").read_text(encoding="utf-8"))
    assert store.get_json("memory") == payload
    assert on_disk["schema_version"] == StateStore.SCHEMA_VERSION
    assert on_disk["revision"] == 2
    assert on_disk["data"] == payload
    assert not (tmp_path / "state" / ".lock").exists()


def test_bare_payload_is_wrapped_in_an_envelope(tmp_path: Path) -> None:
    store = StateStore(tmp_path)
    (tmp_path / "runs.json").write_text(json.dumps({"runs": {"r1": {}}}), encoding="utf-8")

    envelope = store.get_envelope("runs")

    assert envelope["revision"] == 1
    assert envelope["data"] == {"runs": {"r1": {}}}


def test_unknown_namespace_is_rejected(tmp_path: Path) -> None:
    store = StateStore(tmp_path)

    with pytest.raises(StateStoreError):
        store.set_json("context", {})


def test_stale_revision_is_a_conflict(tmp_path: Path) -> None:
    store = StateStore(tmp_path)
    store.set_json("metrics", {"count": 1})
    revision = store.get_envelope("metrics")["revision"]
    store.set_json("metrics", {"count": 2})

    with pytest.raises(StateStoreError, match="Concurrent state update"):
        store.set_json("metrics", {"count": 3}, expected_revision=revision)


def test_update_json_increments_revision(tmp_path: Path) -> None:
    store = StateStore(tmp_path)
    store.set_json("metrics", {"count": 1})
    first_revision = store.get_envelope("metrics")["revision"]

    store.update_json(
        "metrics", lambda payload: {"count": payload["count"] + 1}, default={"count": 0}
    )

    assert store.get_json("metrics")["count"] == 2
    assert store.get_envelope("metrics")["revision"] > first_revision


def test_concurrent_updates_from_threads_are_not_lost(tmp_path: Path) -> None:
    stores = [StateStore(tmp_path), StateStore(tmp_path)]

    def bump(index: int) -> None:
        for _ in range(10):
            stores[index % 2].update_json(
                "metrics", lambda data: {"count": data.get("count", 0) + 1}
            )

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(bump, range(8)))

    assert stores[0].get_json("metrics") == {"count": 80}
    assert not (tmp_path / ".lock").exists()


def test_held_lock_file_times_out(tmp_path: Path) -> None:
    store = StateStore(tmp_path)
    store.LOCK_TIMEOUT_SECONDS = 0.05
    (tmp_path / ".lock").write_text("4242", encoding="utf-8")

    with pytest.raises(StateStoreError, match="Timed out"):
        store.update_json("metrics", lambda data: data)


def test_append_records_keeps_the_newest(tmp_path: Path) -> None:
    store = StateStore(tmp_path)

    store.append_records("audit", "records", [1, 2, 3], limit=4)
    store.append_records("audit", "records", [4, 5], limit=4)

    assert store.get_records("audit", "records") == [2, 3, 4, 5]
    assert store.get_records("audit", "missing") == []


def test_record_event_counts_by_name(tmp_path: Path) -> None:
    store = StateStore(tmp_path)

    store.record_event({"event": "backend_retry", "backend": "claude"})
    store.record_event({"event": "backend_retry", "backend": "claude"})
    store.record_event({"event": "run_finished"}, limit=2)

    metrics = store.get_metrics()
    assert metrics["event_counts"] == {"backend_retry": 2, "run_finished": 1}
    assert len(metrics["events"]) == 2
    assert "at" in metrics["events"][-1]


def test_upsert_run_merges_updates(tmp_path: Path) -> None:
    store = StateStore(tmp_path)

    store.upsert_run("session-1", {"goal": "x", "status": "in_progress"})
    store.upsert_run("session-1", {"status": "completed"})

    run = store.get_runs()["session-1"]
    assert run["goal"] == "x"
    assert run["status"] == "completed"
    assert "updated_at" in run


def test_persistent_memory_merges_across_instances(tmp_path: Path) -> None:
    PersistentMemory(StateStore(tmp_path)).merge({"schema_version": "v2"})
    memory = PersistentMemory(StateStore(tmp_path))
    memory.merge({"owner": "platform"})
    memory.merge({})

    assert memory.all() == {"schema_version": "v2", "owner": "platform"}
    assert memory.get("owner") == "platform"
    assert memory.get("missing") is None
