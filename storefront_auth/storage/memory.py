from __future__ import annotations

import json
import os
import tempfile
import threading
from pathlib import Path
from typing import Dict, Optional

from storefront_auth.logging import get_logger
from storefront_auth.storage.errors import StorageError

logger = get_logger(__name__)


class MemoryKeyValueStore:
    """In-process key-value store with optional JSON file durability.

    When ``fs_root`` is given, every write is flushed to
    ``<fs_root>/state/kv_store.json`` and reads pick up changes made by other
    processes sharing the same root. Values are opaque strings.
    """

    def __init__(self, fs_root: str | Path | None = None) -> None:
        self._data: Dict[str, str] = {}
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        self._loaded_mtime: Optional[float] = None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "kv_store.json"

    def _load_state(self) -> bool:
        path = self._state_path()
        # try/except rather than exists() to avoid a TOCTOU race with writers
        try:
            mtime = path.stat().st_mtime
            if self._loaded_mtime is not None and mtime == self._loaded_mtime:
                return True
            data = json.loads(path.read_text())
        except FileNotFoundError:
            self._data = {}
            self._loaded_mtime = None
            return False
        except json.JSONDecodeError as exc:
            logger.warning("kv_state_corrupt", path=str(path), error=str(exc))
            self._data = {}
            self._loaded_mtime = None
            return False
        self._data = {str(k): str(v) for k, v in data.get("entries", {}).items()}
        self._loaded_mtime = mtime
        return True

    def _commit(self, data: Dict[str, str]) -> None:
        """Persist ``data`` and only then make it the in-memory state."""
        if self.fs_root is not None:
            self._persist_state(data)
        self._data = data

    def _persist_state(self, data: Dict[str, str]) -> None:
        path = self._state_path()
        payload = json.dumps({"entries": data}, indent=2)
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(path.parent), prefix=".kv_store_", suffix=".tmp"
            )
            try:
                os.write(fd, payload.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.replace(tmp_path, path)
            self._loaded_mtime = path.stat().st_mtime
        except OSError as exc:
            if tmp_path is not None:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
            raise StorageError(
                f"failed to persist key-value state: {exc}", {"path": str(path)}
            ) from exc

    def _sync_from_disk(self) -> None:
        if self.fs_root is not None:
            self._load_state()

    async def get(self, key: str) -> Optional[str]:
        with self._data_lock:
            self._sync_from_disk()
            return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        with self._data_lock:
            self._sync_from_disk()
            self._commit({**self._data, key: value})

    async def set_many(self, values: Dict[str, str]) -> None:
        with self._data_lock:
            self._sync_from_disk()
            self._commit({**self._data, **values})

    async def delete(self, *keys: str) -> None:
        with self._data_lock:
            self._sync_from_disk()
            if any(key in self._data for key in keys):
                self._commit({k: v for k, v in self._data.items() if k not in keys})

    async def close(self) -> None:
        return None
