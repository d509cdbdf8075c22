"""
WAYPOINT STORAGE - The Session Filing Cabinet

Every persisted document is a JSON file under one data directory.
Callers address documents by logical relative paths
("<projectId>/<featureId>/plan.json"); this module owns the mechanics.

Guarantees:
- Atomic writes: encode to a sibling temp file, then os.replace()
- Single-generation backup: the previous version is copied to <name>.bak
- Advisory locks: O_EXCL lockfiles, broken when older than the stale timeout,
  acquisition retried with exponential backoff (tenacity)
- Path containment: a relative path can never resolve outside the data dir

File I/O runs in a worker thread so the event loop is never blocked.
"""
import asyncio
import logging
import os
import secrets
import shutil
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, List, Optional, Type, TypeVar

import msgspec
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


# =============================================================================
# EXCEPTIONS
# =============================================================================

class StorageError(Exception):
    """Base exception for storage failures."""
    pass


class PathTraversalError(StorageError):
    """A relative path resolved outside the data directory."""
    pass


class CorruptDocumentError(StorageError):
    """A document exists but cannot be decoded into the expected shape."""
    pass


class LockAcquisitionError(StorageError):
    """The advisory lock stayed held through every retry."""
    pass


class _LockHeld(Exception):
    pass


# =============================================================================
# FILE STORAGE
# =============================================================================

class FileStorage:
    """JSON document store rooted at a single directory."""

    def __init__(
        self,
        base_dir: Path,
        lock_stale_s: float = 10.0,
        lock_retries: int = 5,
        lock_min_wait_s: float = 0.1,
        lock_max_wait_s: float = 1.0,
    ):
        self.base_dir = Path(base_dir).resolve()
        self.lock_stale_s = lock_stale_s
        self.lock_retries = lock_retries
        self.lock_min_wait_s = lock_min_wait_s
        self.lock_max_wait_s = lock_max_wait_s

    # =========================================================================
    # PATHS
    # =========================================================================

    def resolve(self, relative_path: str) -> Path:
        """
        Resolve a logical path against the data directory.

        Raises:
            PathTraversalError: If the result escapes the data directory
        """
        full = (self.base_dir / relative_path).resolve()
        if full != self.base_dir and self.base_dir not in full.parents:
            raise PathTraversalError(f"Path traversal detected: {relative_path}")
        return full

    # =========================================================================
    # READ / WRITE
    # =========================================================================

    async def read_json(self, relative_path: str) -> Optional[Any]:
        """Read a document as builtins. Returns None when it does not exist."""
        path = self.resolve(relative_path)
        return await asyncio.to_thread(self._read_sync, path)

    async def read_struct(self, relative_path: str, type_: Type[T]) -> Optional[T]:
        """
        Read a document and convert it into a typed struct.

        Returns:
            The struct, or None when the document does not exist

        Raises:
            CorruptDocumentError: If the document does not match type_
        """
        data = await self.read_json(relative_path)
        if data is None:
            return None
        try:
            return msgspec.convert(data, type=type_)
        except msgspec.ValidationError as e:
            raise CorruptDocumentError(f"{relative_path}: {e}") from e

    async def write_json(self, relative_path: str, data: Any) -> None:
        """Atomically write a document (struct or builtins), keeping one backup."""
        path = self.resolve(relative_path)
        await asyncio.to_thread(self._write_sync, path, data)

    async def exists(self, relative_path: str) -> bool:
        return await asyncio.to_thread(self.resolve(relative_path).exists)

    async def delete(self, relative_path: str) -> None:
        path = self.resolve(relative_path)
        await asyncio.to_thread(self._delete_sync, path)

    async def list(self, relative_path: str) -> List[str]:
        """List file names (not directories) in a directory. Missing dir lists empty."""
        path = self.resolve(relative_path)
        return await asyncio.to_thread(self._list_sync, path)

    async def ensure_dir(self, relative_path: str) -> None:
        path = self.resolve(relative_path)
        await asyncio.to_thread(path.mkdir, parents=True, exist_ok=True)

    @staticmethod
    def _delete_sync(path: Path) -> None:
        if path.is_dir():
            shutil.rmtree(path)
        elif path.exists():
            path.unlink()

    @staticmethod
    def _list_sync(path: Path) -> List[str]:
        if not path.is_dir():
            return []
        return sorted(p.name for p in path.iterdir() if p.is_file())

    def _read_sync(self, path: Path) -> Optional[Any]:
        try:
            raw = path.read_bytes()
        except FileNotFoundError:
            return None
        try:
            return msgspec.json.decode(raw)
        except msgspec.DecodeError as e:
            raise CorruptDocumentError(f"{path.name}: {e}") from e

    def _write_sync(self, path: Path, data: Any) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)

        if path.exists():
            shutil.copy2(path, path.with_name(path.name + ".bak"))

        tmp = path.with_name(f"{path.name}.tmp.{int(time.time() * 1000)}.{secrets.token_hex(4)}")
        try:
            tmp.write_bytes(msgspec.json.format(msgspec.json.encode(data), indent=2))
            os.replace(tmp, path)
        except (OSError, TypeError, msgspec.EncodeError) as e:
            if tmp.exists():
                tmp.unlink()
            raise StorageError(f"Failed to write {path.name}: {e}") from e

    # =========================================================================
    # ADVISORY LOCK
    # =========================================================================

    @asynccontextmanager
    async def with_lock(self, relative_path: str) -> AsyncIterator[None]:
        """
        Hold the advisory lock for a document across a read-modify-write.

        Usage:
            async with storage.with_lock(path):
                doc = await storage.read_json(path)
                ...
                await storage.write_json(path, doc)

        Raises:
            LockAcquisitionError: If the lock is still held after all retries
        """
        lock_path = self.resolve(relative_path + ".lock")
        lock_path.parent.mkdir(parents=True, exist_ok=True)

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.lock_retries + 1),
                wait=wait_exponential(
                    multiplier=self.lock_min_wait_s,
                    min=self.lock_min_wait_s,
                    max=self.lock_max_wait_s,
                ),
                retry=retry_if_exception_type(_LockHeld),
                reraise=True,
            ):
                with attempt:
                    self._try_lock(lock_path)
        except _LockHeld as e:
            raise LockAcquisitionError(f"Lock held: {relative_path}") from e

        try:
            yield
        finally:
            try:
                lock_path.unlink()
            except FileNotFoundError:
                logger.warning(f"Lock for {relative_path} vanished before release")

    def _try_lock(self, lock_path: Path) -> None:
        try:
            fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            if self._is_stale(lock_path):
                logger.warning(f"Breaking stale lock: {lock_path.name}")
                try:
                    lock_path.unlink()
                except FileNotFoundError:
                    pass
            raise _LockHeld(str(lock_path))
        with os.fdopen(fd, "w") as f:
            f.write(str(os.getpid()))

    def _is_stale(self, lock_path: Path) -> bool:
        try:
            age = time.time() - lock_path.stat().st_mtime
        except FileNotFoundError:
            return False
        return age > self.lock_stale_s
