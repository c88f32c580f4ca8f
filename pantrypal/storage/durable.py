from __future__ import annotations

import json
import os
import tempfile
import threading
from pathlib import Path
from typing import Optional, Protocol

from pantrypal.logging import get_logger
from pantrypal.storage.errors import StoreUnavailable

logger = get_logger(__name__)


class DurableStore(Protocol):
    """Client-side key/value store that survives a full client restart."""

    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...


class MemoryDurableStore:
    """Process-local store, used by tests and short-lived clients."""

    def __init__(self, initial: Optional[dict[str, str]] = None) -> None:
        self._values: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._values.get(key)

    def set(self, key: str, value: str) -> None:
        self._values[key] = value

    def delete(self, key: str) -> None:
        self._values.pop(key, None)


class FileDurableStore:
    """JSON file backed store with atomic replacement on every write.

    The file is created with 0600 permissions because it holds bearer
    tokens.
    """

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def _load(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        if self.path.is_symlink():
            raise StoreUnavailable(f"refusing to read symlinked store {self.path}")
        try:
            data = json.loads(self.path.read_text(encoding="utf-8") or "{}")
        except json.JSONDecodeError:
            logger.warning("durable_store_corrupt", path=str(self.path))
            return {}
        except OSError as exc:
            raise StoreUnavailable(f"cannot read {self.path}: {exc}") from exc
        if not isinstance(data, dict):
            logger.warning("durable_store_corrupt", path=str(self.path))
            return {}
        return {str(k): v for k, v in data.items() if isinstance(v, str)}

    def _dump(self, values: dict[str, str]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                dir=str(self.path.parent), prefix=".session_", suffix=".tmp"
            )
        except OSError as exc:
            raise StoreUnavailable(f"cannot write {self.path}: {exc}") from exc
        try:
            try:
                os.write(fd, json.dumps(values).encode("utf-8"))
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.replace(tmp_path, self.path)
        except OSError as exc:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise StoreUnavailable(f"cannot write {self.path}: {exc}") from exc

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._load().get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            values = self._load()
            values[key] = value
            self._dump(values)

    def delete(self, key: str) -> None:
        with self._lock:
            values = self._load()
            if key in values:
                del values[key]
                self._dump(values)


__all__ = ["DurableStore", "MemoryDurableStore", "FileDurableStore"]
