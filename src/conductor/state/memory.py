from __future__ import annotations

from typing import Any

from conductor.state.store import StateStore


class PersistentMemory:
    """Key/value facts that outlive a session, kept in the ``memory`` namespace."""

    def __init__(self, store: StateStore) -> None:
        self.store = store

    def all(self) -> dict[str, Any]:
        payload = self.store.get_json("memory", default={"entries": {}})
        if not isinstance(payload, dict):
            return {}
        entries = payload.get("entries", {})
        return dict(entries) if isinstance(entries, dict) else {}

    def get(self, key: str) -> Any | None:
        return self.all().get(key)

    def merge(self, delta: dict[str, Any]) -> None:
        if not delta:
            return

        def _updater(payload: Any) -> dict[str, Any]:
            result = payload if isinstance(payload, dict) else {}
            entries = result.get("entries", {})
            if not isinstance(entries, dict):
                entries = {}
            entries.update(delta)
            result["entries"] = entries
            return result

        self.store.update_json("memory", _updater, default={"entries": {}})
