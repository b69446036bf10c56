"""Content-addressed build cache.

This module handles:
- Lookup and atomic storage of cache entries keyed by content hash
- Single-flight computation: concurrent requests for one key share a
  single producer run, in process (leader/waiter) and across processes
  (file lock per key)
- Listing and pruning entries for an external retention policy

Layout under the cache directory:

    entries/<xx>/<hex>/entry.json   metadata
    entries/<xx>/<hex>/payload/     cached files
    .staging/                       producer scratch space
    .locks/                         per-key lock files
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from variant_release.locks import file_lock

logger = logging.getLogger(__name__)

ENTRY_METADATA = "entry.json"
PAYLOAD_DIR = "payload"

Producer = Callable[[Path], None]


class CacheError(Exception):
    """Raised when a cache operation fails."""

    def __init__(self, message: str, key: str | None = None, code: str = "cache_error") -> None:
        super().__init__(message)
        self.key = key
        self.code = code


class CacheTimeoutError(CacheError, TimeoutError):
    """Raised when waiting for another producer of the same key times out."""

    def __init__(self, key: str, timeout: float | None) -> None:
        super().__init__(
            f"Timed out after {timeout}s waiting for cache key {key[:32]}",
            key=key,
            code="cache_wait_timeout",
        )
        self.timeout = timeout


@dataclass
class CacheEntry:
    """A stored cache entry.

    Attributes:
        key: Cache key (sha256:...).
        path: Directory holding the cached payload files.
        size_bytes: Total payload size.
        files: Relative payload file paths.
        created_at: When the entry was stored.
        last_used_at: Last lookup time.
    """

    key: str
    path: Path
    size_bytes: int
    files: list[str] = field(default_factory=list)
    created_at: datetime | None = None
    last_used_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert metadata to a JSON-serializable dictionary."""
        return {
            "key": self.key,
            "size_bytes": self.size_bytes,
            "files": self.files,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "last_used_at": self.last_used_at.isoformat() if self.last_used_at else None,
        }


class _Flight:
    """An in-progress computation other threads can wait on."""

    def __init__(self) -> None:
        self.done = threading.Event()
        self.entry: CacheEntry | None = None
        self.error: BaseException | None = None


def _key_digest(key: str) -> str:
    algorithm, _, digest = key.partition(":")
    if algorithm != "sha256" or len(digest) != 64:
        raise CacheError(f"Malformed cache key: {key}", key=key, code="malformed_key")
    return digest


def _parse_time(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _scan_payload(payload_dir: Path) -> tuple[list[str], int]:
    files: list[str] = []
    total = 0
    for path in sorted(payload_dir.rglob("*")):
        if path.is_file():
            files.append(path.relative_to(payload_dir).as_posix())
            total += path.stat().st_size
    return files, total


class CacheManager:
    """Keyed, content-addressed cache shared by concurrent build jobs."""

    def __init__(self, cache_dir: Path, lock_timeout: float | None = None) -> None:
        self.cache_dir = cache_dir
        self.entries_dir = cache_dir / "entries"
        self.staging_dir = cache_dir / ".staging"
        self.lock_dir = cache_dir / ".locks"
        self.lock_timeout = lock_timeout
        self._lock = threading.Lock()
        self._inflight: dict[str, _Flight] = {}

    def entry_dir(self, key: str) -> Path:
        """Return the directory of an entry."""
        digest = _key_digest(key)
        return self.entries_dir / digest[:2] / digest

    def _read_metadata(self, entry_dir: Path) -> CacheEntry | None:
        metadata_path = entry_dir / ENTRY_METADATA
        payload = entry_dir / PAYLOAD_DIR
        if not metadata_path.is_file() or not payload.is_dir():
            return None
        try:
            data = json.loads(metadata_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable cache metadata %s: %s", metadata_path, e)
            return None
        return CacheEntry(
            key=data["key"],
            path=payload,
            size_bytes=data.get("size_bytes", 0),
            files=data.get("files", []),
            created_at=_parse_time(data.get("created_at")),
            last_used_at=_parse_time(data.get("last_used_at")),
        )

    def _write_metadata(self, entry_dir: Path, entry: CacheEntry) -> None:
        tmp = entry_dir / f".{ENTRY_METADATA}.{os.getpid()}.{threading.get_ident()}.tmp"
        tmp.write_text(json.dumps(entry.to_dict(), indent=2, sort_keys=True), encoding="utf-8")
        os.replace(tmp, entry_dir / ENTRY_METADATA)

    def lookup(self, key: str) -> CacheEntry | None:
        """Look up an entry and record its use.

        Args:
            key: Cache key.

        Returns:
            CacheEntry on hit, None on miss.
        """
        entry_dir = self.entry_dir(key)
        entry = self._read_metadata(entry_dir)
        if entry is None:
            return None

        entry.last_used_at = datetime.now(timezone.utc)
        try:
            self._write_metadata(entry_dir, entry)
        except OSError as e:
            logger.debug("Could not update last-used time for %s: %s", key[:32], e)
        return entry

    def store(self, key: str, source_dir: Path, move: bool = False) -> CacheEntry:
        """Store a directory of files under a key.

        The payload is staged next to the entries and renamed into place,
        so readers never observe a partial entry. If the key already
        exists, the existing entry wins.

        Args:
            key: Cache key.
            source_dir: Directory whose files become the payload.
            move: Move source_dir instead of copying it.

        Returns:
            The stored (or already present) CacheEntry.
        """
        entry_dir = self.entry_dir(key)
        existing = self._read_metadata(entry_dir)
        if existing is not None:
            return existing

        self.staging_dir.mkdir(parents=True, exist_ok=True)
        staged = Path(tempfile.mkdtemp(prefix="entry_", dir=self.staging_dir))
        try:
            payload = staged / PAYLOAD_DIR
            if move:
                shutil.move(str(source_dir), str(payload))
            else:
                shutil.copytree(source_dir, payload)

            files, size_bytes = _scan_payload(payload)
            now = datetime.now(timezone.utc)
            entry = CacheEntry(
                key=key,
                path=entry_dir / PAYLOAD_DIR,
                size_bytes=size_bytes,
                files=files,
                created_at=now,
                last_used_at=now,
            )
            self._write_metadata(staged, entry)

            entry_dir.parent.mkdir(parents=True, exist_ok=True)
            try:
                os.rename(staged, entry_dir)
            except OSError:
                # Lost a race against an identical store
                current = self._read_metadata(entry_dir)
                if current is None:
                    raise
                logger.debug("Cache entry %s already stored", key[:32])
                return current
        finally:
            if staged.exists():
                shutil.rmtree(staged, ignore_errors=True)

        logger.info("Stored cache entry %s (%d files, %d bytes)", key[:32], len(files), size_bytes)
        return entry

    def get_or_compute(
        self,
        key: str,
        producer: Producer,
        timeout: float | None = None,
    ) -> tuple[CacheEntry, bool]:
        """Return the entry for a key, computing it at most once.

        The producer receives an empty staging directory and must write
        the payload files into it. Concurrent callers for the same key
        wait for the first caller's result instead of running the
        producer again.

        Args:
            key: Cache key.
            producer: Callable filling a directory with the payload.
            timeout: Maximum seconds to wait for another producer.

        Returns:
            Tuple of (CacheEntry, is_cache_hit).

        Raises:
            CacheTimeoutError: If waiting for another producer times out.
            CacheError: If the shared computation failed.
            Exception: Whatever the producer raises, for the leader.
        """
        entry = self.lookup(key)
        if entry is not None:
            logger.info("Cache hit for key %s", key[:32])
            return entry, True

        with self._lock:
            flight = self._inflight.get(key)
            leader = flight is None
            if flight is None:
                flight = _Flight()
                self._inflight[key] = flight

        if not leader:
            logger.info("Waiting for in-flight computation of key %s", key[:32])
            if not flight.done.wait(timeout):
                raise CacheTimeoutError(key, timeout)
            if flight.error is not None:
                raise CacheError(
                    f"Shared computation for key {key[:32]} failed: {flight.error}",
                    key=key,
                    code="shared_computation_failed",
                ) from flight.error
            if flight.entry is None:
                raise CacheError(
                    f"Shared computation for key {key[:32]} was abandoned",
                    key=key,
                    code="shared_computation_failed",
                )
            return flight.entry, True

        try:
            entry, hit = self._compute(key, producer, timeout)
            flight.entry = entry
            return entry, hit
        except Exception as e:
            flight.error = e
            raise
        finally:
            with self._lock:
                self._inflight.pop(key, None)
            flight.done.set()

    def _compute(
        self, key: str, producer: Producer, timeout: float | None
    ) -> tuple[CacheEntry, bool]:
        lock_timeout = timeout if timeout is not None else self.lock_timeout
        locked = False
        try:
            with file_lock(self.lock_dir, key, timeout=lock_timeout, prefix="cache"):
                locked = True
                # Another process may have produced the entry meanwhile
                entry = self.lookup(key)
                if entry is not None:
                    logger.info("Cache hit for key %s after lock wait", key[:32])
                    return entry, True

                self.staging_dir.mkdir(parents=True, exist_ok=True)
                work = Path(tempfile.mkdtemp(prefix="produce_", dir=self.staging_dir))
                try:
                    logger.info("Cache miss for key %s, computing", key[:32])
                    producer(work)
                    return self.store(key, work, move=True), False
                finally:
                    if work.exists():
                        shutil.rmtree(work, ignore_errors=True)
        except TimeoutError as e:
            # Producer timeouts propagate unchanged
            if locked or isinstance(e, CacheTimeoutError):
                raise
            raise CacheTimeoutError(key, lock_timeout) from e

    def entries(self) -> list[CacheEntry]:
        """List all stored entries."""
        result: list[CacheEntry] = []
        if not self.entries_dir.exists():
            return result
        for entry_dir in sorted(self.entries_dir.glob("*/*")):
            entry = self._read_metadata(entry_dir)
            if entry is not None:
                result.append(entry)
        return result

    def size_bytes(self) -> int:
        """Return the total payload size of all entries."""
        return sum(e.size_bytes for e in self.entries())

    def remove(self, key: str) -> bool:
        """Remove an entry.

        Returns:
            True if an entry was removed.
        """
        entry_dir = self.entry_dir(key)
        if not entry_dir.exists():
            return False
        # Rename first so concurrent lookups see a miss, not a partial entry
        self.staging_dir.mkdir(parents=True, exist_ok=True)
        doomed = Path(tempfile.mkdtemp(prefix="evict_", dir=self.staging_dir))
        os.rename(entry_dir, doomed / "entry")
        shutil.rmtree(doomed, ignore_errors=True)
        return True

    def prune(
        self,
        max_age: timedelta | None = None,
        max_bytes: int | None = None,
    ) -> list[str]:
        """Evict entries by age and total size.

        Entries unused for longer than max_age are removed first; then the
        least recently used entries are removed until the cache fits in
        max_bytes.

        Args:
            max_age: Maximum time since last use.
            max_bytes: Maximum total payload size.

        Returns:
            Keys of removed entries.
        """
        removed: list[str] = []
        entries = self.entries()
        now = datetime.now(timezone.utc)
        epoch = datetime.min.replace(tzinfo=timezone.utc)

        if max_age is not None:
            keep: list[CacheEntry] = []
            for entry in entries:
                last_used = entry.last_used_at or entry.created_at or epoch
                if now - last_used > max_age:
                    if self.remove(entry.key):
                        removed.append(entry.key)
                else:
                    keep.append(entry)
            entries = keep

        if max_bytes is not None:
            entries.sort(key=lambda e: e.last_used_at or e.created_at or epoch)
            total = sum(e.size_bytes for e in entries)
            for entry in entries:
                if total <= max_bytes:
                    break
                if self.remove(entry.key):
                    removed.append(entry.key)
                    total -= entry.size_bytes

        if removed:
            logger.info("Pruned %d cache entries", len(removed))
        return removed


__all__ = [
    "ENTRY_METADATA",
    "PAYLOAD_DIR",
    "CacheEntry",
    "CacheError",
    "CacheManager",
    "CacheTimeoutError",
    "Producer",
]
