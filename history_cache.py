#!/usr/bin/env python3
"""
Two-tier cache for history payloads.

Disk tier: raw payload text keyed by (revision, normalised path), one file
per entry, persistent across runs. Entries are immutable once written, so
concurrent writers of the same key are harmless.

Memory tier: parsed values for the commit currently being attributed. The
attribution loop clears it at every commit boundary.
"""

import hashlib
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Hashable, Optional, Tuple

from history_source import (
    BlameSnapshot,
    HistorySource,
    build_snapshot,
    normalize_path,
)

logger = logging.getLogger(__name__)


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0

    def merge(self, other: "CacheStats") -> "CacheStats":
        self.hits += other.hits
        self.misses += other.misses
        return self

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


class DiskCache:
    """Persistent payload store for one namespace (blame, content, diff)"""

    def __init__(self, root, namespace: str):
        self.root = Path(root) / namespace
        self.namespace = namespace

    def entry_path(self, revision: int, path: str) -> Path:
        digest = hashlib.sha1(normalize_path(path).encode("utf-8")).hexdigest()
        return self.root / f"r{revision}" / f"{digest}.txt"

    def get(self, revision: int, path: str) -> Optional[str]:
        entry = self.entry_path(revision, path)
        try:
            return entry.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def put(self, revision: int, path: str, text: str):
        entry = self.entry_path(revision, path)
        entry.parent.mkdir(parents=True, exist_ok=True)
        # Write-then-rename so readers never see a partial entry
        fd, tmp = tempfile.mkstemp(dir=entry.parent, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(text)
            os.replace(tmp, entry)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def __contains__(self, key: Tuple[int, str]) -> bool:
        revision, path = key
        return self.entry_path(revision, path).exists()


class CommitScope:
    """
    Process-memory tier scoped to one commit.
    Owned by a single thread; clear() after each commit's transitions.
    """

    def __init__(self):
        self._values: Dict[Hashable, Any] = {}
        self.evictions = 0

    def get(self, key: Hashable) -> Optional[Any]:
        return self._values.get(key)

    def put(self, key: Hashable, value: Any):
        self._values[key] = value

    def clear(self):
        self.evictions += len(self._values)
        self._values.clear()

    def __len__(self) -> int:
        return len(self._values)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._values


class TwoTierCache:
    """
    Memory tier over disk tier. Reads return parsed values; a disk hit
    is parsed once and kept in memory for the rest of the commit.
    """

    def __init__(
        self,
        disk: DiskCache,
        scope: CommitScope,
        parser: Callable[[str], Any] = lambda text: text,
    ):
        self.disk = disk
        self.scope = scope
        self.parser = parser
        self.stats = CacheStats()

    def _key(self, revision: int, path: str) -> Tuple[str, int, str]:
        return (self.disk.namespace, revision, normalize_path(path))

    def get(self, revision: int, path: str) -> Optional[Any]:
        key = self._key(revision, path)
        if key in self.scope:
            self.stats.hits += 1
            return self.scope.get(key)

        text = self.disk.get(revision, path)
        if text is None:
            self.stats.misses += 1
            return None

        self.stats.hits += 1
        value = self.parser(text)
        self.scope.put(key, value)
        return value

    def put(self, revision: int, path: str, text: str) -> Any:
        self.disk.put(revision, path, text)
        value = self.parser(text)
        self.scope.put(self._key(revision, path), value)
        return value


class SnapshotLoader:
    """
    Builds blame snapshots from cached or freshly fetched payloads.

    A path that does not exist at a revision is cached as an empty payload
    and comes back as an empty snapshot.
    """

    def __init__(self, source: HistorySource, cache_dir, scope: CommitScope):
        self.source = source
        self.scope = scope
        self.blame = TwoTierCache(
            DiskCache(cache_dir, "blame"), scope, source.parse_blame
        )
        self.content = TwoTierCache(DiskCache(cache_dir, "content"), scope)

    @property
    def stats(self) -> CacheStats:
        return CacheStats().merge(self.blame.stats).merge(self.content.stats)

    def _fetch(self, tier: TwoTierCache, fetch, path: str, revision: int):
        value = tier.get(revision, path)
        if value is not None:
            return value
        logger.debug("Cache miss: %s %s@%d", tier.disk.namespace, path, revision)
        text = fetch(path, revision)
        return tier.put(revision, path, text if text is not None else "")

    def load(self, path: Optional[str], revision: int) -> BlameSnapshot:
        path = normalize_path(path)
        if not path or revision < 1:
            return BlameSnapshot(path=path, revision=revision)

        key = ("snapshot", revision, path)
        snapshot = self.scope.get(key)
        if snapshot is not None:
            return snapshot

        entries = self._fetch(self.blame, self.source.blame, path, revision)
        text = self._fetch(self.content, self.source.content, path, revision)
        snapshot = build_snapshot(path, revision, entries, text)
        self.scope.put(key, snapshot)
        return snapshot


def warm_entry(
    source: HistorySource, cache_dir, kind: str, path: str, revision: int
) -> CacheStats:
    """
    Ensure one payload is on disk. Used by prefetch workers, which share the
    disk tier but never the memory tier.
    """
    disk = DiskCache(cache_dir, kind)
    stats = CacheStats()
    if (revision, path) in disk:
        stats.hits += 1
        return stats

    stats.misses += 1
    if kind == "blame":
        text = source.blame(path, revision)
        # Parse once so malformed payloads fail the batch, not the pass
        source.parse_blame(text)
    elif kind == "content":
        text = source.content(path, revision)
    elif kind == "diff":
        text = source.diff(revision)
        source.parse_diff(text)
    else:
        raise ValueError(f"Unknown cache namespace: {kind}")
    disk.put(revision, path, text if text is not None else "")
    return stats
