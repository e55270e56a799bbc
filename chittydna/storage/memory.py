"""In-memory storage. Used by tests and throwaway sessions."""

import threading
from typing import Dict, List, Optional, Set


class MemoryStorage:
    """StoragePort backed by a dict. Nothing touches disk."""

    def __init__(self):
        self._data: Dict[str, bytes] = {}
        self._private: Set[str] = set()
        self._lock = threading.Lock()

    def read_bytes(self, key: str) -> Optional[bytes]:
        with self._lock:
            return self._data.get(key)

    def write_bytes(self, key: str, data: bytes, private: bool = False) -> None:
        with self._lock:
            self._data[key] = bytes(data)
            if private:
                self._private.add(key)
            else:
                self._private.discard(key)

    def append_line(self, key: str, line: str) -> None:
        encoded = (line.rstrip("\n") + "\n").encode("utf-8")
        with self._lock:
            self._data[key] = self._data.get(key, b"") + encoded

    def read_lines(self, key: str) -> List[str]:
        data = self.read_bytes(key)
        if data is None:
            return []
        return [line for line in data.decode("utf-8", errors="replace").splitlines() if line.strip()]

    def exists(self, key: str) -> bool:
        with self._lock:
            return key in self._data

    def delete(self, key: str) -> bool:
        with self._lock:
            self._private.discard(key)
            return self._data.pop(key, None) is not None

    def delete_prefix(self, prefix: str) -> int:
        with self._lock:
            doomed = [k for k in self._data if k.startswith(prefix)]
            for key in doomed:
                del self._data[key]
                self._private.discard(key)
            return len(doomed)

    def list_keys(self, prefix: str = "") -> List[str]:
        with self._lock:
            return sorted(k for k in self._data if k.startswith(prefix))

    def is_private(self, key: str) -> bool:
        with self._lock:
            return key in self._private
