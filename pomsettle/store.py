"""
Persistence Tiers

A Store is a versioned key-value map with optimistic compare-and-swap. Two
tiers implement it:

    EphemeralStore   in memory; scoped to one process or one call
    PersistentStore  JSON file rewritten atomically; survives restart

Commitments and settlement records depend only on put_if_absent and
compare_and_swap, so two concurrent callers can never both win the same
(subnet, block) slot.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import json
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from pomsettle.observability import Component, get_logger

logger = get_logger("store", Component.STORE)


class StoreError(Exception):
    """Persistence failure."""
    pass


@dataclass(frozen=True)
class VersionedValue:
    """A value with its monotonically assigned version."""
    value: Any
    version: int
    updated_at: str

    def to_dict(self) -> Dict[str, Any]:
        return {"value": self.value, "version": self.version, "updated_at": self.updated_at}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VersionedValue":
        return cls(value=data["value"], version=int(data["version"]), updated_at=data.get("updated_at", ""))


class Store(ABC):
    """
    Thread-safe versioned key-value store.

    Values must be JSON-serializable so that both tiers behave identically.
    """

    persistent: bool = False

    def __init__(self):
        self._data: Dict[str, VersionedValue] = {}
        self._lock = threading.RLock()
        self._version = 0

    @abstractmethod
    def _flush(self) -> None:
        """Persist the current map; called with the lock held after every write."""

    def _next(self, value: Any) -> VersionedValue:
        self._version += 1
        return VersionedValue(
            value=value,
            version=self._version,
            updated_at=datetime.now(timezone.utc).isoformat(),
        )

    def get(self, key: str) -> Optional[VersionedValue]:
        with self._lock:
            return self._data.get(key)

    def get_value(self, key: str, default: Any = None) -> Any:
        entry = self.get(key)
        return entry.value if entry is not None else default

    def put(self, key: str, value: Any) -> VersionedValue:
        """Unconditional write."""
        with self._lock:
            entry = self._next(value)
            self._data[key] = entry
            self._flush()
            return entry

    def put_if_absent(self, key: str, value: Any) -> Tuple[bool, VersionedValue]:
        """
        Write only if the key does not exist.

        Returns (created, new value or the existing one).
        """
        with self._lock:
            current = self._data.get(key)
            if current is not None:
                return (False, current)
            return (True, self.put(key, value))

    def compare_and_swap(
        self,
        key: str,
        expected_version: int,
        new_value: Any,
    ) -> Tuple[bool, Optional[VersionedValue]]:
        """
        Atomically update value if its version matches.

        expected_version 0 means the key must not exist yet. Returns
        (success, new value or current value).
        """
        with self._lock:
            current = self._data.get(key)
            current_version = current.version if current is not None else 0
            if current_version != expected_version:
                return (False, current)
            return (True, self.put(key, new_value))

    def delete(self, key: str) -> bool:
        with self._lock:
            if key not in self._data:
                return False
            del self._data[key]
            self._flush()
            return True

    def keys(self, prefix: str = "") -> List[str]:
        with self._lock:
            return sorted(k for k in self._data if k.startswith(prefix))

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)


class EphemeralStore(Store):
    """In-memory store; contents vanish with the process."""

    persistent = False

    def _flush(self) -> None:
        pass


class PersistentStore(Store):
    """
    File-backed store.

    The whole map is rewritten to a temporary file and renamed over the
    target on every write, so a crash leaves either the old or the new
    snapshot on disk, never a torn one.
    """

    persistent = True

    def __init__(self, path: Union[str, Path]):
        super().__init__()
        self.path = Path(path)
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            return
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8") or "{}")
        except json.JSONDecodeError as e:
            raise StoreError(f"Corrupt store file {self.path}: {e}") from e

        entries = raw.get("entries", {})
        self._data = {k: VersionedValue.from_dict(v) for k, v in entries.items()}
        self._version = max(
            int(raw.get("version", 0)),
            max((v.version for v in self._data.values()), default=0),
        )
        logger.info("Loaded persistent store", path=str(self.path), entries=len(self._data))

    def _flush(self) -> None:
        payload = {
            "version": self._version,
            "entries": {k: v.to_dict() for k, v in sorted(self._data.items())},
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=".store-", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, sort_keys=True, separators=(",", ":"))
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.path)
        except OSError as e:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise StoreError(f"Failed to write store {self.path}: {e}") from e
