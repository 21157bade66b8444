"""Persistent file-based cache that survives restarts.

One JSON file per key under the cache directory, holding
``{data, timestamp, ttl, version}``. Filenames are the SHA-256 of the key, so
distinct keys never share a file. Before every write the total size is checked
against a ceiling; when it is exceeded the oldest files (by mtime) are deleted
in one batch.

This tier is best-effort: I/O failures are logged and read as misses or no-ops.
"""

from __future__ import annotations

import hashlib
import logging
import math
import os
import tempfile
import time
from pathlib import Path
from typing import Any, Callable

from pydantic import ValidationError
from pydantic_core import PydanticSerializationError

from presethub.config import Settings
from presethub.exceptions import CacheIOError, ParseError
from presethub.models.content import PersistedEntry

logger = logging.getLogger(__name__)

CACHE_VERSION = "1.0"


class PersistentCache:
    """Size-bounded key/value store on the local filesystem with per-entry TTL."""

    def __init__(
        self,
        cache_dir: str | Path,
        max_size_mb: float = 100,
        default_ttl: float = 3600,
        eviction_fraction: float = 0.2,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._cache_dir = Path(cache_dir)
        self._max_size_bytes = int(max_size_mb * 1024 * 1024)
        self._default_ttl = default_ttl
        self._eviction_fraction = eviction_fraction
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings) -> PersistentCache:
        return cls(
            settings.persistent_cache_dir,
            max_size_mb=settings.max_cache_size_mb,
            default_ttl=settings.default_cache_ttl_seconds,
            eviction_fraction=settings.cache_eviction_fraction,
        )

    @property
    def cache_dir(self) -> Path:
        return self._cache_dir

    def path_for(self, key: str) -> Path:
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
        return self._cache_dir / f"{digest}.json"

    # ── Public API ──

    async def get(self, key: str, ttl: float | None = None) -> Any | None:
        """Return cached data for ``key`` or None if missing, expired or unreadable.

        The TTL stored with the entry always decides expiry. ``ttl`` only
        applies to files written without one.
        """
        path = self.path_for(key)
        try:
            entry = self._read_entry(path)
        except CacheIOError as e:
            logger.warning("Persistent cache read failed for %s: %s", key, e)
            return None
        except ParseError as e:
            logger.warning("Discarding corrupted cache entry for %s: %s", key, e)
            self._unlink(path)
            return None

        if entry is None:
            return None

        effective_ttl = entry.ttl
        if effective_ttl is None:
            effective_ttl = ttl if ttl is not None else self._default_ttl

        if self._clock() - entry.timestamp >= effective_ttl:
            logger.debug("Persistent cache entry expired: %s", key)
            self._unlink(path)
            return None
        return entry.data

    async def set(self, key: str, data: Any, ttl: float | None = None) -> bool:
        """Write ``data`` under ``key``. Returns False if the write failed."""
        entry = PersistedEntry(
            data=data,
            timestamp=self._clock(),
            ttl=ttl if ttl is not None else self._default_ttl,
            version=CACHE_VERSION,
        )
        try:
            payload = entry.model_dump_json()
        except PydanticSerializationError as e:
            logger.error("Cannot serialize cache entry for %s: %s", key, e)
            return False

        try:
            self._ensure_dir()
            self._evict_if_needed()
            self._write_atomic(self.path_for(key), payload)
        except CacheIOError as e:
            logger.error("Failed to write persistent cache for %s: %s", key, e)
            return False
        return True

    async def delete(self, key: str) -> bool:
        return self._unlink(self.path_for(key))

    async def clear(self) -> int:
        """Delete every cache file. Returns count removed."""
        count = 0
        for path, _ in self._scan():
            if self._unlink(path):
                count += 1
        return count

    async def evict(self) -> int:
        """Run the size check now. Returns count of files removed."""
        return self._evict_if_needed()

    async def stats(self) -> dict:
        files = self._scan()
        total_size = sum(st.st_size for _, st in files)
        mtimes = [st.st_mtime for _, st in files]
        return {
            "entries": len(files),
            "total_size_mb": round(total_size / 1024 / 1024, 2),
            "total_size_bytes": total_size,
            "oldest_entry": min(mtimes) if mtimes else None,
            "newest_entry": max(mtimes) if mtimes else None,
        }

    # ── Filesystem helpers ──

    def _ensure_dir(self) -> None:
        try:
            self._cache_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise CacheIOError(f"Cannot create cache directory {self._cache_dir}: {e}") from e

    def _read_entry(self, path: Path) -> PersistedEntry | None:
        try:
            content = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as e:
            raise CacheIOError(f"Cannot read {path.name}: {e}") from e

        try:
            return PersistedEntry.model_validate_json(content)
        except ValidationError as e:
            raise ParseError(f"{path.name}: {e.error_count()} validation error(s)") from e

    def _write_atomic(self, path: Path, payload: str) -> None:
        tmp_name = None
        try:
            with tempfile.NamedTemporaryFile(
                "w", encoding="utf-8", dir=self._cache_dir, suffix=".tmp", delete=False
            ) as tmp:
                tmp_name = tmp.name
                tmp.write(payload)
            os.replace(tmp_name, path)
        except OSError as e:
            if tmp_name is not None:
                Path(tmp_name).unlink(missing_ok=True)
            raise CacheIOError(f"Cannot write {path.name}: {e}") from e

    def _unlink(self, path: Path) -> bool:
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.warning("Failed to delete cache file %s: %s", path.name, e)
            return False

    def _scan(self) -> list[tuple[Path, os.stat_result]]:
        """List cache files with their stat results. Missing directory -> []."""
        files = []
        try:
            candidates = list(self._cache_dir.glob("*.json"))
        except OSError as e:
            logger.warning("Cannot list cache directory %s: %s", self._cache_dir, e)
            return []
        for path in candidates:
            try:
                files.append((path, path.stat()))
            except OSError:
                # Deleted between listing and stat
                continue
        return files

    def _evict_if_needed(self) -> int:
        files = self._scan()
        total_size = sum(st.st_size for _, st in files)
        if total_size <= self._max_size_bytes:
            return 0

        logger.info(
            "Persistent cache size (%.2fMB) exceeds limit (%.2fMB), cleaning up...",
            total_size / 1024 / 1024,
            self._max_size_bytes / 1024 / 1024,
        )
        files.sort(key=lambda item: item[1].st_mtime)
        to_delete = math.ceil(len(files) * self._eviction_fraction)
        removed = 0
        for path, _ in files[:to_delete]:
            if self._unlink(path):
                removed += 1
        logger.info("Persistent cache evicted %d old entries", removed)
        return removed
