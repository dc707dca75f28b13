"""On-disk cache for remotely fetched templates.

Each entry lives in its own directory under the cache root::

    <root>/<key>/
        .cache-meta.json    timestamp, ttl, source and manifest
        template/           the staged template tree

Entries are written into a temporary sibling directory and swapped in with
``os.replace`` so a reader never observes a half-written entry.  Concurrent
coroutines touching the same key are serialised with a per-key
``asyncio.Lock``, one set per event loop.  Every failure is reported as a
warning: the cache never fails a pipeline run.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import os
import re
import shutil
import threading
import time
import uuid
import weakref
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field, ValidationError

from templateflow.models import GitHubSource, TemplateMetadata, UrlSource
from templateflow.utils import print_warning, write_json_file

CACHE_META_FILENAME = ".cache-meta.json"
_TEMPLATE_DIRNAME = "template"
_TMP_PREFIX = ".tmp-"


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class CacheEntryMeta(BaseModel):
    """Contents of an entry's ``.cache-meta.json``."""

    timestamp: float = Field(..., description="Unix time the entry was written")
    ttl: int = Field(..., ge=0, description="Lifetime in seconds at write time")
    source: dict[str, Any]
    metadata: TemplateMetadata


class CachedTemplate(BaseModel):
    """A live cache entry ready to be restored."""

    key: str
    path: str = Field(..., description="Directory holding the cached template tree")
    metadata: TemplateMetadata


class CacheStats(BaseModel):
    hits: int = 0
    misses: int = 0
    entries: int = 0
    size: int = Field(default=0, description="Total bytes on disk")

    @property
    def hit_ratio(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def is_cacheable(source: Any) -> bool:
    """Only remote sources are worth caching."""
    if isinstance(source, GitHubSource):
        return True
    if isinstance(source, UrlSource):
        return source.location.lower().startswith(("http://", "https://"))
    return False


def cache_key(source: Any) -> str:
    """Stable directory name for *source*.

    The readable prefix is for humans browsing the cache; the hash suffix
    keeps keys distinct after sanitising.
    """
    identity = json.dumps(source.model_dump(), sort_keys=True)
    digest = hashlib.sha256(identity.encode("utf-8")).hexdigest()[:12]
    readable = re.sub(r"[^A-Za-z0-9._-]+", "_", f"{source.type}_{source.location}").strip("_.")
    return f"{readable[:64]}-{digest}"


def _dir_size(path: Path) -> int:
    total = 0
    for item in path.rglob("*"):
        if item.is_file() and not item.is_symlink():
            total += item.stat().st_size
    return total


# ---------------------------------------------------------------------------
# TemplateCache
# ---------------------------------------------------------------------------


class TemplateCache:
    """TTL cache of template trees keyed by normalised source identity.

    Args:
        directory: Cache root.  Created on first write.
        ttl: Default entry lifetime in seconds.
    """

    def __init__(self, directory: str | Path, ttl: int = 3600) -> None:
        self.directory = Path(directory)
        self.ttl = ttl
        self._hits = 0
        self._misses = 0
        self._locks: weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, dict[str, asyncio.Lock]] = (
            weakref.WeakKeyDictionary()
        )
        self._locks_guard = threading.Lock()

    def _lock_for(self, key: str) -> asyncio.Lock:
        # asyncio locks bind to the loop that first waits on them
        loop = asyncio.get_running_loop()
        with self._locks_guard:
            locks = self._locks.get(loop)
            if locks is None:
                locks = self._locks[loop] = {}
            lock = locks.get(key)
            if lock is None:
                lock = locks[key] = asyncio.Lock()
            return lock

    def _entry_dir(self, key: str) -> Path:
        return self.directory / key

    # -- Reads -------------------------------------------------------------

    def _read_meta(self, entry: Path) -> Optional[CacheEntryMeta]:
        meta_file = entry / CACHE_META_FILENAME
        if not meta_file.is_file():
            return None
        return CacheEntryMeta.model_validate_json(meta_file.read_text(encoding="utf-8"))

    def _is_live(self, meta: CacheEntryMeta, ttl: Optional[int]) -> bool:
        lifetime = meta.ttl if ttl is None else ttl
        return (time.time() - meta.timestamp) < lifetime

    async def get(self, source: Any, ttl: Optional[int] = None) -> Optional[CachedTemplate]:
        """Return the live entry for *source*, or ``None`` on a miss.

        *ttl* overrides the lifetime recorded in the entry.
        """
        key = cache_key(source)
        async with self._lock_for(key):
            entry = self._entry_dir(key)
            try:
                meta = await asyncio.to_thread(self._read_meta, entry)
            except (OSError, ValueError, ValidationError) as exc:
                print_warning(f"Ignoring unreadable cache entry {key}: {exc}")
                meta = None

            template_dir = entry / _TEMPLATE_DIRNAME
            if meta is None or not self._is_live(meta, ttl) or not template_dir.is_dir():
                self._misses += 1
                return None

            self._hits += 1
            return CachedTemplate(key=key, path=str(template_dir), metadata=meta.metadata)

    async def has(self, source: Any, ttl: Optional[int] = None) -> bool:
        key = cache_key(source)
        try:
            meta = await asyncio.to_thread(self._read_meta, self._entry_dir(key))
        except (OSError, ValueError, ValidationError):
            return False
        return meta is not None and self._is_live(meta, ttl)

    async def restore(self, entry: CachedTemplate, target_dir: str | Path) -> Optional[Path]:
        """Copy a cached tree into *target_dir*; ``None`` if the copy failed."""
        target = Path(target_dir)
        async with self._lock_for(entry.key):
            try:
                await asyncio.to_thread(
                    shutil.copytree, entry.path, target, dirs_exist_ok=True,
                )
            except OSError as exc:
                print_warning(f"Failed to restore cached template {entry.key}: {exc}")
                return None
        return target

    # -- Writes ------------------------------------------------------------

    def _write_entry(self, key: str, source: Any, template_path: Path, metadata: TemplateMetadata) -> Path:
        self.directory.mkdir(parents=True, exist_ok=True)
        staging = self.directory / f"{_TMP_PREFIX}{key}-{uuid.uuid4().hex[:8]}"
        try:
            shutil.copytree(
                template_path,
                staging / _TEMPLATE_DIRNAME,
                ignore=shutil.ignore_patterns(CACHE_META_FILENAME),
            )
            meta = CacheEntryMeta(
                timestamp=time.time(),
                ttl=self.ttl,
                source=source.model_dump(),
                metadata=metadata,
            )
            write_json_file(meta.model_dump(mode="json", by_alias=True), staging / CACHE_META_FILENAME)

            entry = self._entry_dir(key)
            if entry.exists():
                retired = self.directory / f"{_TMP_PREFIX}{key}-old-{uuid.uuid4().hex[:8]}"
                os.replace(entry, retired)
                shutil.rmtree(retired, ignore_errors=True)
            os.replace(staging, entry)
            return entry
        finally:
            if staging.exists():
                shutil.rmtree(staging, ignore_errors=True)

    async def set(self, source: Any, template_path: str | Path, metadata: TemplateMetadata) -> bool:
        """Store the tree at *template_path* for *source*.  Returns ``True`` on success."""
        key = cache_key(source)
        async with self._lock_for(key):
            try:
                await asyncio.to_thread(self._write_entry, key, source, Path(template_path), metadata)
            except (OSError, shutil.Error) as exc:
                print_warning(f"Failed to cache template {key}: {exc}")
                return False
        return True

    async def remove(self, source: Any) -> bool:
        key = cache_key(source)
        async with self._lock_for(key):
            entry = self._entry_dir(key)
            if not entry.exists():
                return False
            try:
                await asyncio.to_thread(shutil.rmtree, entry)
            except OSError as exc:
                print_warning(f"Failed to remove cache entry {key}: {exc}")
                return False
        return True

    async def clear(self) -> int:
        """Delete every entry.  Returns how many were removed."""

        def _clear() -> int:
            if not self.directory.is_dir():
                return 0
            removed = 0
            for entry in self.directory.iterdir():
                if entry.is_dir():
                    shutil.rmtree(entry, ignore_errors=True)
                    removed += 0 if entry.name.startswith(_TMP_PREFIX) else 1
            return removed

        try:
            removed = await asyncio.to_thread(_clear)
        except OSError as exc:
            print_warning(f"Failed to clear template cache: {exc}")
            return 0
        self._hits = 0
        self._misses = 0
        return removed

    async def cleanup(self) -> int:
        """Delete expired or unreadable entries.  Returns how many were removed."""

        def _cleanup() -> int:
            if not self.directory.is_dir():
                return 0
            removed = 0
            for entry in self.directory.iterdir():
                if not entry.is_dir() or entry.name.startswith(_TMP_PREFIX):
                    continue
                try:
                    meta = self._read_meta(entry)
                except (OSError, ValueError, ValidationError):
                    meta = None
                if meta is None or not self._is_live(meta, None):
                    shutil.rmtree(entry, ignore_errors=True)
                    removed += 1
            return removed

        try:
            return await asyncio.to_thread(_cleanup)
        except OSError as exc:
            print_warning(f"Failed to clean up template cache: {exc}")
            return 0

    async def stats(self) -> CacheStats:
        def _scan() -> tuple[int, int]:
            if not self.directory.is_dir():
                return 0, 0
            entries = [
                e for e in self.directory.iterdir()
                if e.is_dir() and not e.name.startswith(_TMP_PREFIX)
            ]
            return len(entries), sum(_dir_size(e) for e in entries)

        try:
            entries, size = await asyncio.to_thread(_scan)
        except OSError:
            entries, size = 0, 0
        return CacheStats(hits=self._hits, misses=self._misses, entries=entries, size=size)


# ---------------------------------------------------------------------------
# Shared instances
# ---------------------------------------------------------------------------

_shared_caches: dict[str, TemplateCache] = {}
_shared_guard = threading.Lock()


def get_shared_cache(directory: str | Path, ttl: int = 3600) -> TemplateCache:
    """Process-wide cache for *directory*, so concurrent pipelines share locks."""
    resolved = str(Path(directory).expanduser().resolve())
    with _shared_guard:
        cache = _shared_caches.get(resolved)
        if cache is None:
            cache = _shared_caches[resolved] = TemplateCache(resolved, ttl)
        return cache
