from __future__ import annotations

import logging
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

from fylvur.models import CacheEntry, FileIdentity, PreviewArtifact, PreviewKey

logger = logging.getLogger(__name__)

SPOOL_PATTERNS = ("*.ts", "*.ts.partial")


class PreviewCache:
    """Bounded in-process store of produced previews.

    Evicts least-recently-accessed entries first (ties: oldest artifact).
    Also tracks the latest identity seen per (host, path) so that a changed
    remote file invalidates its older previews. No method awaits, so on one
    event loop every call is atomic with respect to the job table.
    """

    def __init__(
        self,
        max_bytes: int | None = None,
        max_entries: int | None = None,
        *,
        spool_dir: str | Path | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_bytes is None and max_entries is None:
            raise ValueError("PreviewCache needs max_bytes, max_entries, or both")
        self.max_bytes = max_bytes
        self.max_entries = max_entries
        self.spool_dir = Path(spool_dir).expanduser() if spool_dir else None
        self._clock = clock
        self._entries: dict[PreviewKey, CacheEntry] = {}
        self._latest: dict[tuple[str, str], FileIdentity] = {}
        self._resident_bytes = 0
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: PreviewKey) -> bool:
        return key in self._entries

    @property
    def resident_bytes(self) -> int:
        return self._resident_bytes

    def get(self, key: PreviewKey) -> PreviewArtifact | None:
        entry = self._entries.get(key)
        if entry is None or not self.is_current(key.identity) or not entry.artifact.source.same_content(key.identity):
            if entry is not None:
                self._remove(key)
            self.misses += 1
            return None

        entry.last_access = self._clock()
        self.hits += 1
        logger.debug("Cache hit for %s (%s)", key.identity.path, key.quality.kind.value)
        return entry.artifact

    def put(self, key: PreviewKey, artifact: PreviewArtifact) -> bool:
        """Insert or replace; returns False when the artifact can never fit the byte budget."""

        if self.max_bytes is not None and artifact.size > self.max_bytes:
            logger.info(
                "Preview for %s is %d bytes, larger than the %d byte cache budget; not cached",
                key.identity.path,
                artifact.size,
                self.max_bytes,
            )
            return False

        if key in self._entries:
            self._remove(key, discard_file=self._entries[key].artifact.path != artifact.path)

        self._entries[key] = CacheEntry(key=key, artifact=artifact, last_access=self._clock(), cost=artifact.size)
        self._resident_bytes += artifact.size
        self._evict()
        return True

    def observe(self, identity: FileIdentity) -> bool:
        """Record the newest identity for its location; returns True if an older one was invalidated."""

        previous = self._latest.get(identity.location)
        self._latest[identity.location] = identity
        if previous is None or previous.same_content(identity):
            return False

        removed = self.invalidate(previous)
        logger.info(
            "Remote file %s:%s changed; dropped %d cached preview(s)",
            identity.host,
            identity.path,
            removed,
        )
        return True

    def owns(self, path: Path) -> bool:
        return any(entry.artifact.path == path for entry in self._entries.values())

    def is_current(self, identity: FileIdentity) -> bool:
        latest = self._latest.get(identity.location)
        return latest is None or latest.same_content(identity)

    def invalidate(self, identity: FileIdentity) -> int:
        stale = [key for key, entry in self._entries.items() if entry.artifact.source.same_content(identity)]
        for key in stale:
            self._remove(key)
        return len(stale)

    def clear(self) -> None:
        for key in list(self._entries):
            self._remove(key)

    def purge_spool(self) -> int:
        """Delete spool files no cache entry owns, e.g. proxies discarded as stale."""

        if self.spool_dir is None or not self.spool_dir.exists():
            return 0
        owned = {entry.artifact.path for entry in self._entries.values() if entry.artifact.path is not None}
        removed = 0
        for pattern in SPOOL_PATTERNS:
            for path in self.spool_dir.glob(pattern):
                if path not in owned:
                    path.unlink(missing_ok=True)
                    removed += 1
        return removed

    def stats(self) -> dict[str, Any]:
        return {
            "entries": len(self._entries),
            "resident_bytes": self._resident_bytes,
            "max_bytes": self.max_bytes,
            "max_entries": self.max_entries,
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
        }

    def _over_budget(self) -> bool:
        if self.max_bytes is not None and self._resident_bytes > self.max_bytes:
            return True
        return self.max_entries is not None and len(self._entries) > self.max_entries

    def _evict(self) -> None:
        while self._over_budget() and self._entries:
            victim = min(
                self._entries.values(),
                key=lambda entry: (entry.last_access, entry.artifact.created_at),
            )
            logger.debug("Evicting %s (%d bytes)", victim.key.identity.path, victim.cost)
            self._remove(victim.key)
            self.evictions += 1

    def _remove(self, key: PreviewKey, *, discard_file: bool = True) -> None:
        entry = self._entries.pop(key)
        self._resident_bytes -= entry.cost
        if discard_file and entry.artifact.path is not None:
            entry.artifact.path.unlink(missing_ok=True)
