"""TTL and size bounded key store with on-disk snapshots.

Two instances run in the bridge: one for inbound chat message ids (the chat
platform may redeliver events) and one for outbound notification
fingerprints (a flapping session state must not flood the channel).
"""

import asyncio
import json
import logging
import time
from collections import OrderedDict
from pathlib import Path
from typing import Callable, Optional

from .models import IdempotencyEntry

logger = logging.getLogger(__name__)


class IdempotencyCache:
    """Remembers processed keys for ``ttl`` seconds, at most ``max_size`` of them."""

    def __init__(
        self,
        name: str,
        ttl: float = 3600,
        max_size: int = 1000,
        cleanup_interval: float = 300,
        storage_file: Optional[str] = None,
        save_debounce: float = 1.0,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            name: Label used in logs and stats ("inbound", "outbound")
            ttl: Seconds a key stays processed, measured from first insertion
            max_size: Maximum number of retained keys
            cleanup_interval: Seconds between background expiry passes
            storage_file: Snapshot path (None = memory only)
            save_debounce: Seconds to coalesce snapshot writes
            clock: Wall-clock source (seconds); snapshots outlive the process
        """
        if max_size < 1:
            raise ValueError("max_size must be at least 1")

        self.name = name
        self.ttl = ttl
        self.max_size = max_size
        self.cleanup_interval = cleanup_interval
        self.storage_file = Path(storage_file).expanduser() if storage_file else None
        self.save_debounce = save_debounce
        self._clock = clock

        # key -> first_seen; insertion order is first_seen order
        self._entries: "OrderedDict[str, float]" = OrderedDict()
        self._cleanup_task: Optional[asyncio.Task] = None
        self._save_task: Optional[asyncio.Task] = None
        self._running = False
        self._destroyed = False

        self.hits = 0
        self.misses = 0
        self.evictions = 0
        self.expired_removed = 0

        self._load_snapshot()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.is_processed(key)

    def _is_expired(self, first_seen: float, now: float) -> bool:
        return now - first_seen >= self.ttl

    def is_processed(self, key: str) -> bool:
        """True if ``key`` was marked within the last ``ttl`` seconds."""
        first_seen = self._entries.get(key)
        if first_seen is None:
            self.misses += 1
            return False

        if self._is_expired(first_seen, self._clock()):
            # Drop eagerly; the cleanup pass would remove it anyway
            del self._entries[key]
            self.expired_removed += 1
            self.misses += 1
            return False

        self.hits += 1
        return True

    def mark_processed(self, key: str) -> None:
        """Record ``key``. Re-marking an unexpired key does not renew it.

        After ``destroy()`` the final snapshot is written; later marks are dropped.
        """
        if self._destroyed:
            logger.warning(f"[{self.name}] Cache destroyed, not recording {key}")
            return

        now = self._clock()
        first_seen = self._entries.get(key)
        if first_seen is not None:
            if not self._is_expired(first_seen, now):
                return
            del self._entries[key]
            self.expired_removed += 1

        while len(self._entries) >= self.max_size:
            evicted_key, _ = self._entries.popitem(last=False)
            self.evictions += 1
            logger.debug(f"[{self.name}] Evicted oldest key {evicted_key}")

        self._entries[key] = now
        self._schedule_save()

    def entries(self) -> list[IdempotencyEntry]:
        return [IdempotencyEntry(key=k, first_seen=v) for k, v in self._entries.items()]

    def cleanup(self) -> int:
        """Remove expired entries. Returns the number removed."""
        now = self._clock()
        removed = 0
        # Oldest first; stop at the first entry still inside its TTL
        while self._entries:
            key, first_seen = next(iter(self._entries.items()))
            if not self._is_expired(first_seen, now):
                break
            del self._entries[key]
            removed += 1

        if removed:
            self.expired_removed += removed
            logger.debug(f"[{self.name}] Cleanup removed {removed} expired keys")
            self._schedule_save()
        return removed

    def stats(self) -> dict:
        return {
            "name": self.name,
            "size": len(self._entries),
            "max_size": self.max_size,
            "ttl_seconds": self.ttl,
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "expired_removed": self.expired_removed,
            "storage_file": str(self.storage_file) if self.storage_file else None,
        }

    async def start(self):
        """Start the periodic cleanup task."""
        if self._running:
            return
        self._running = True
        self._destroyed = False
        self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        logger.info(
            f"[{self.name}] Idempotency cache started "
            f"({len(self._entries)} entries, ttl={self.ttl}s, max={self.max_size})"
        )

    async def destroy(self):
        """Stop background work and write a final snapshot."""
        self._running = False
        self._destroyed = True

        for task in (self._cleanup_task, self._save_task):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._cleanup_task = None
        self._save_task = None

        self._save_snapshot()
        logger.info(f"[{self.name}] Idempotency cache destroyed ({len(self._entries)} entries flushed)")

    async def _cleanup_loop(self):
        while self._running:
            await asyncio.sleep(self.cleanup_interval)
            try:
                self.cleanup()
            except Exception as e:
                logger.error(f"[{self.name}] Cleanup failed: {e}")

    def _schedule_save(self):
        if not self.storage_file:
            return
        if not self._running:
            self._save_snapshot()
            return
        if self._save_task and not self._save_task.done():
            return  # A save is already pending and will include this change
        self._save_task = asyncio.create_task(self._debounced_save())

    async def _debounced_save(self):
        await asyncio.sleep(self.save_debounce)
        self._save_snapshot()

    def _load_snapshot(self):
        if not self.storage_file or not self.storage_file.exists():
            return

        try:
            with open(self.storage_file) as f:
                data = json.load(f)
            raw_entries = data.get("entries", [])
            entries = sorted(
                (IdempotencyEntry.from_dict(item) for item in raw_entries),
                key=lambda e: e.first_seen,
            )
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
            logger.warning(f"[{self.name}] Ignoring unreadable snapshot {self.storage_file}: {e}")
            return

        now = self._clock()
        expired = 0
        for entry in entries:
            if self._is_expired(entry.first_seen, now):
                expired += 1
                continue
            self._entries[entry.key] = entry.first_seen

        # Snapshot may come from a run with a larger max_size
        while len(self._entries) > self.max_size:
            self._entries.popitem(last=False)
            self.evictions += 1

        logger.info(
            f"[{self.name}] Loaded {len(self._entries)} keys from {self.storage_file} "
            f"(pruned {expired} expired)"
        )

    def _save_snapshot(self) -> bool:
        """Write all entries atomically (temp file + rename)."""
        if not self.storage_file:
            return False

        temp_file = self.storage_file.with_suffix(self.storage_file.suffix + ".tmp")
        try:
            self.storage_file.parent.mkdir(parents=True, exist_ok=True)
            data = {
                "name": self.name,
                "saved_at": self._clock(),
                "entries": [entry.to_dict() for entry in self.entries()],
            }
            with open(temp_file, "w") as f:
                json.dump(data, f)
            temp_file.replace(self.storage_file)
            return True

        except OSError as e:
            logger.error(f"[{self.name}] Failed to save snapshot to {self.storage_file}: {e}")
            if temp_file.exists():
                temp_file.unlink(missing_ok=True)
            return False
