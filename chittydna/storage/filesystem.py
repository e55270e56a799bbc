"""Filesystem storage for chittydna.

Maps relative keys ("dna/vault.enc") onto files under a root directory.
Whole-value writes go through a temp file and ``os.replace`` so readers
never observe a half-written value.
"""

import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import List, Optional, Union

from chittydna.protocols import StorageError

logger = logging.getLogger(__name__)


class FileStorage:
    """StoragePort backed by a directory tree."""

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root).expanduser()
        self._lock = threading.Lock()

    def _path(self, key: str) -> Path:
        if not key or key.startswith("/") or ".." in Path(key).parts:
            raise ValueError(f"Invalid storage key: {key!r}")
        return self.root / key

    def read_bytes(self, key: str) -> Optional[bytes]:
        path = self._path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StorageError(f"Failed to read {key}: {e}") from e

    def write_bytes(self, key: str, data: bytes, private: bool = False) -> None:
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(data)
                    f.flush()
                    os.fsync(f.fileno())
                if private:
                    os.chmod(tmp_name, 0o600)
                os.replace(tmp_name, path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except OSError as e:
            raise StorageError(f"Failed to write {key}: {e}") from e

    def append_line(self, key: str, line: str) -> None:
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with self._lock, open(path, "a", encoding="utf-8") as f:
                f.write(line.rstrip("\n") + "\n")
        except OSError as e:
            raise StorageError(f"Failed to append to {key}: {e}") from e

    def read_lines(self, key: str) -> List[str]:
        data = self.read_bytes(key)
        if data is None:
            return []
        return [line for line in data.decode("utf-8", errors="replace").splitlines() if line.strip()]

    def exists(self, key: str) -> bool:
        return self._path(key).exists()

    def delete(self, key: str) -> bool:
        path = self._path(key)
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageError(f"Failed to delete {key}: {e}") from e

    def delete_prefix(self, prefix: str) -> int:
        removed = 0
        for key in self.list_keys(prefix):
            if self.delete(key):
                removed += 1
        return removed

    def list_keys(self, prefix: str = "") -> List[str]:
        if not self.root.exists():
            return []
        keys = []
        for path in self.root.rglob("*"):
            if not path.is_file() or path.name.endswith(".tmp"):
                continue
            key = path.relative_to(self.root).as_posix()
            if key.startswith(prefix):
                keys.append(key)
        return sorted(keys)

    def mode(self, key: str) -> int:
        """Permission bits of the stored file."""
        return self._path(key).stat().st_mode & 0o777
