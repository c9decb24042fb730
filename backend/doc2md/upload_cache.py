"""Short-lived staging area for uploaded files.

Entries live until deleted by the client or until their expiry timer fires,
whichever comes first. Tasks only read entries; only the cache deletes them.
"""
import logging
import os
import tempfile
import threading
import uuid
from pathlib import Path, PurePath
from typing import Optional, Protocol

from doc2md import config
from doc2md.conversion.models import CacheEntry, CacheMetadata
from doc2md.errors import CacheEntryExpired
from doc2md.scheduler import Scheduler, TimerHandle

logger = logging.getLogger("doc2md.cache")


class ObjectStore(Protocol):
    def put(self, key: str, data: bytes) -> str: ...

    def get(self, locator: str) -> bytes: ...

    def delete(self, locator: str) -> None: ...


class LocalObjectStore:
    """Stores blobs as files in one directory; the locator is the file name."""

    def __init__(self, root: Path = config.UPLOAD_DIR):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, locator: str) -> Path:
        # Locators are generated by put(); never let one escape the root
        return self.root / PurePath(locator).name

    def put(self, key: str, data: bytes) -> str:
        dest = self._path(key)
        fd, tmp_name = tempfile.mkstemp(dir=self.root, prefix=".upload-")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp_name, dest)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        return dest.name

    def get(self, locator: str) -> bytes:
        return self._path(locator).read_bytes()

    def delete(self, locator: str) -> None:
        self._path(locator).unlink(missing_ok=True)


class UploadCache:
    def __init__(
        self,
        store: ObjectStore,
        scheduler: Scheduler,
        ttl_seconds: float = config.UPLOAD_CACHE_TTL_SECONDS,
    ):
        self.store = store
        self.scheduler = scheduler
        self.ttl_seconds = ttl_seconds
        self._entries: dict[str, CacheEntry] = {}
        self._timers: dict[str, TimerHandle] = {}
        self._lock = threading.Lock()

    def put(self, data: bytes, metadata: CacheMetadata) -> CacheEntry:
        entry_id = str(uuid.uuid4())
        suffix = PurePath(metadata.filename or "").suffix.lower()
        locator = self.store.put(f"{entry_id}{suffix}", data)
        now = self.scheduler.now()
        entry = CacheEntry(
            entry_id=entry_id,
            locator=locator,
            metadata=metadata,
            created_at=now,
            expires_at=now + self.ttl_seconds,
        )
        with self._lock:
            self._entries[entry_id] = entry
            self._timers[entry_id] = self.scheduler.call_later(self.ttl_seconds, lambda: self._expire(entry_id))
        logger.info(
            "Cached upload %s: %s (%.2f MB, expires in %ss)",
            entry_id,
            metadata.filename,
            metadata.size / 1024 / 1024,
            self.ttl_seconds,
        )
        return entry

    def entry(self, entry_id: str) -> CacheEntry:
        with self._lock:
            entry = self._entries.get(entry_id)
        if entry is None or self.scheduler.now() >= entry.expires_at:
            raise CacheEntryExpired(entry_id)
        return entry

    def get(self, entry_id: str) -> bytes:
        entry = self.entry(entry_id)
        try:
            return self.store.get(entry.locator)
        except FileNotFoundError as e:
            # Deleted or expired between lookup and read
            raise CacheEntryExpired(entry_id, entry.metadata.filename) from e

    def delete(self, entry_id: str) -> bool:
        """Remove an entry now. Returns False when it was already gone."""
        entry, timer = self._detach(entry_id)
        if entry is None:
            return False
        if timer is not None:
            timer.cancel()
        self.store.delete(entry.locator)
        logger.info("Deleted cached upload %s", entry_id)
        return True

    def _expire(self, entry_id: str) -> None:
        entry, _ = self._detach(entry_id)
        if entry is None:
            return
        self.store.delete(entry.locator)
        logger.info("Cache entry expired: %s (%s)", entry_id, entry.metadata.filename)

    def _detach(self, entry_id: str) -> tuple[Optional[CacheEntry], Optional[TimerHandle]]:
        # Index removal happens before the bytes are unlinked
        with self._lock:
            return self._entries.pop(entry_id, None), self._timers.pop(entry_id, None)

    def clear(self) -> None:
        with self._lock:
            ids = list(self._entries)
        for entry_id in ids:
            self.delete(entry_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, entry_id: str) -> bool:
        with self._lock:
            return entry_id in self._entries
