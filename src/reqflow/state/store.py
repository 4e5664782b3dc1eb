from __future__ import annotations

import copy
import json
import os
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any


class StoreError(RuntimeError):
    """Raised when artifact-store operations fail."""


class NotFound(StoreError):
    """Raised when a record id does not exist in its namespace."""

    def __init__(self, namespace: str, item_id: int) -> None:
        super().__init__(f"{namespace} {item_id} not found")
        self.namespace = namespace
        self.item_id = item_id


class ArtifactStore(ABC):
    """Id-keyed record storage, one namespace per record kind."""

    NAMESPACES = {
        "users",
        "requirements",
        "use_cases",
        "deliverables",
        "assignments",
        "activity",
        "jobs",
        "metrics",
    }

    @staticmethod
    def _validate_namespace(namespace: str) -> None:
        if namespace not in ArtifactStore.NAMESPACES:
            raise StoreError(f"Unsupported namespace: {namespace}")

    @abstractmethod
    def get(self, namespace: str, item_id: int) -> dict[str, Any] | None:
        """Return a copy of the stored payload, or None."""

    @abstractmethod
    def put(self, namespace: str, item_id: int, payload: dict[str, Any]) -> None:
        """Insert or replace the payload stored under item_id."""

    @abstractmethod
    def delete(self, namespace: str, item_id: int) -> bool:
        """Remove a payload; returns whether it existed."""

    @abstractmethod
    def list(self, namespace: str) -> list[dict[str, Any]]:
        """Return every payload in the namespace ordered by id."""

    @abstractmethod
    def next_id(self, namespace: str) -> int:
        """Allocate the next integer id for the namespace."""

    def get_metrics(self) -> dict[str, Any]:
        return self.get("metrics", 0) or {}

    def set_metrics(self, metrics: dict[str, Any]) -> None:
        self.put("metrics", 0, metrics)


class MemoryStore(ArtifactStore):
    def __init__(self) -> None:
        self._data: dict[str, dict[int, dict[str, Any]]] = {name: {} for name in self.NAMESPACES}
        self._counters: dict[str, int] = {name: 0 for name in self.NAMESPACES}
        self._guard = threading.Lock()

    def get(self, namespace: str, item_id: int) -> dict[str, Any] | None:
        self._validate_namespace(namespace)
        payload = self._data[namespace].get(item_id)
        return copy.deepcopy(payload) if payload is not None else None

    def put(self, namespace: str, item_id: int, payload: dict[str, Any]) -> None:
        self._validate_namespace(namespace)
        with self._guard:
            self._data[namespace][item_id] = copy.deepcopy(payload)
            self._counters[namespace] = max(self._counters[namespace], item_id)

    def delete(self, namespace: str, item_id: int) -> bool:
        self._validate_namespace(namespace)
        with self._guard:
            return self._data[namespace].pop(item_id, None) is not None

    def list(self, namespace: str) -> list[dict[str, Any]]:
        self._validate_namespace(namespace)
        return [copy.deepcopy(self._data[namespace][key]) for key in sorted(self._data[namespace])]

    def next_id(self, namespace: str) -> int:
        self._validate_namespace(namespace)
        with self._guard:
            self._counters[namespace] += 1
            return self._counters[namespace]


class JsonFileStore(ArtifactStore):
    """One JSON envelope per namespace under a local state directory."""

    SCHEMA_VERSION = 1

    def __init__(self, state_dir: Path) -> None:
        self.state_dir = state_dir.resolve()
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.lock_file = self.state_dir / ".lock"

    @staticmethod
    def _utcnow_iso() -> str:
        return datetime.now(UTC).replace(microsecond=0).isoformat()

    def _file(self, namespace: str) -> Path:
        return self.state_dir / f"{namespace}.json"

    @contextmanager
    def _state_lock(self, timeout_seconds: float = 3.0):
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > timeout_seconds:
                    raise StoreError("Timed out waiting for state lock.") from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def _normalize_envelope(self, raw_payload: Any) -> dict[str, Any]:
        if (
            isinstance(raw_payload, dict)
            and "schema_version" in raw_payload
            and "data" in raw_payload
            and "revision" in raw_payload
        ):
            data = raw_payload.get("data") or {}
            return {
                "schema_version": int(raw_payload.get("schema_version") or self.SCHEMA_VERSION),
                "revision": int(raw_payload.get("revision") or 1),
                "updated_at": raw_payload.get("updated_at") or self._utcnow_iso(),
                "data": {
                    "items": dict(data.get("items") or {}),
                    "next_id": int(data.get("next_id") or 0),
                },
            }
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 1,
            "updated_at": self._utcnow_iso(),
            "data": {"items": {}, "next_id": 0},
        }

    def get_envelope(self, namespace: str) -> dict[str, Any]:
        self._validate_namespace(namespace)
        path = self._file(namespace)
        if not path.exists():
            return self._normalize_envelope(None)
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            raw = None
        return self._normalize_envelope(raw)

    def _update(
        self,
        namespace: str,
        updater: Callable[[dict[str, Any]], Any],
    ) -> Any:
        self._validate_namespace(namespace)
        with self._state_lock():
            current = self.get_envelope(namespace)
            data = current["data"]
            result = updater(data)
            envelope = {
                "schema_version": self.SCHEMA_VERSION,
                "revision": int(current["revision"]) + 1,
                "updated_at": self._utcnow_iso(),
                "data": data,
            }
            serialized = json.dumps(envelope, ensure_ascii=False, separators=(",", ":"))
            self._file(namespace).write_text(serialized, encoding="utf-8")
            return result

    def get(self, namespace: str, item_id: int) -> dict[str, Any] | None:
        items = self.get_envelope(namespace)["data"]["items"]
        return items.get(str(item_id))

    def put(self, namespace: str, item_id: int, payload: dict[str, Any]) -> None:
        def _updater(data: dict[str, Any]) -> None:
            data["items"][str(item_id)] = payload
            data["next_id"] = max(int(data["next_id"]), item_id)

        self._update(namespace, _updater)

    def delete(self, namespace: str, item_id: int) -> bool:
        def _updater(data: dict[str, Any]) -> bool:
            return data["items"].pop(str(item_id), None) is not None

        return bool(self._update(namespace, _updater))

    def list(self, namespace: str) -> list[dict[str, Any]]:
        items = self.get_envelope(namespace)["data"]["items"]
        return [items[key] for key in sorted(items, key=int)]

    def next_id(self, namespace: str) -> int:
        def _updater(data: dict[str, Any]) -> int:
            data["next_id"] = int(data["next_id"]) + 1
            return data["next_id"]

        return int(self._update(namespace, _updater))
