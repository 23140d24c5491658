"""Durable JSON documents with locked read-modify-write.

Both persisted stores (the task plan and the worktree state) are plain JSON
files mutated by short-lived processes. Every mutation goes through
:meth:`JsonDocument.transaction`, which holds an exclusive ``FileLock`` on
``<document>.lock`` from the read until the atomic replace has finished, so
two agents finishing at the same moment cannot lose each other's update.
"""

from __future__ import annotations

import json
import os
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from filelock import FileLock, Timeout

from phaselauncher.core.console import get_logger
from phaselauncher.core.result import DocumentFormatError, StoreLockTimeoutError

logger = get_logger(__name__)


def atomic_write_json(path: Path, data: Any) -> None:
    """Write JSON to a temp file, fsync it, then rename it over ``path``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_name(f".{path.name}.{os.getpid()}.tmp")
    try:
        with temp_path.open("w", encoding="utf-8") as fh:
            json.dump(data, fh, indent=2, ensure_ascii=False)
            fh.write("\n")
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(temp_path, path)
    finally:
        if temp_path.exists():
            temp_path.unlink()


class JsonDocument:
    """A JSON file guarded by a sibling lock file.

    Args:
        path: Location of the document.
        default: Factory for the content of a missing document. When None,
            reading a missing document raises ``missing_error()``.
        missing_error: Factory for the exception raised on a missing document.
        lock_timeout: Seconds to wait for the lock.
    """

    def __init__(
        self,
        path: Path,
        *,
        default: Callable[[], dict[str, Any]] | None = None,
        missing_error: Callable[[Path], Exception] | None = None,
        lock_timeout: float = 30.0,
    ) -> None:
        self._path = path
        self._default = default
        self._missing_error = missing_error
        self._lock_timeout = lock_timeout

    @property
    def path(self) -> Path:
        return self._path

    @property
    def lock_path(self) -> Path:
        return self._path.with_name(self._path.name + ".lock")

    def exists(self) -> bool:
        return self._path.exists()

    def read(self) -> dict[str, Any]:
        """Read the document without taking the lock."""
        if not self._path.exists():
            if self._default is not None:
                return self._default()
            if self._missing_error is not None:
                raise self._missing_error(self._path)
            raise FileNotFoundError(self._path)

        raw = self._path.read_text(encoding="utf-8")
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise DocumentFormatError(
                f"Malformed JSON in {self._path}: {exc}", context={"path": str(self._path)}
            ) from exc
        if not isinstance(data, dict):
            raise DocumentFormatError(
                "Document root must be an object", context={"path": str(self._path)}
            )
        return data

    def write(self, data: dict[str, Any]) -> None:
        with self.locked():
            atomic_write_json(self._path, data)

    @contextmanager
    def locked(self) -> Iterator[None]:
        """Hold the document's exclusive lock."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        lock = FileLock(str(self.lock_path), timeout=self._lock_timeout)
        try:
            lock.acquire()
        except Timeout as exc:
            raise StoreLockTimeoutError(
                "Timed out waiting for store lock",
                context={"lock": str(self.lock_path), "timeout": self._lock_timeout},
            ) from exc
        try:
            yield
        finally:
            lock.release()

    @contextmanager
    def transaction(self) -> Iterator[dict[str, Any]]:
        """Read, let the caller mutate, then persist - all under the lock.

        The document is written only if the block exits without an exception.
        """
        with self.locked():
            data = self.read()
            yield data
            atomic_write_json(self._path, data)
            logger.debug("Persisted %s", self._path)


__all__ = ["JsonDocument", "atomic_write_json"]
