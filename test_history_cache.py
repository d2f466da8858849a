import os

import pytest

from history_cache import (
    CacheStats,
    CommitScope,
    DiskCache,
    SnapshotLoader,
    TwoTierCache,
    warm_entry,
)
from history_source import PayloadParseError, SourceUnavailableError


# ============================================================================
# DISK TIER
# ============================================================================


class TestDiskCache:
    def test_miss_returns_none(self, cache_dir):
        assert DiskCache(cache_dir, "blame").get(3, "a.py") is None

    def test_put_creates_directories(self, cache_dir):
        disk = DiskCache(cache_dir, "blame")
        disk.put(3, "src/a.py", "payload")

        assert disk.get(3, "src/a.py") == "payload"
        assert (3, "src/a.py") in disk
        assert disk.entry_path(3, "src/a.py").parent.is_dir()

    def test_paths_are_deterministic_and_normalized(self, cache_dir):
        disk = DiskCache(cache_dir, "content")
        assert disk.entry_path(5, "/src/./a.py") == disk.entry_path(5, "src/a.py")
        assert disk.entry_path(5, "a.py") != disk.entry_path(6, "a.py")
        assert DiskCache(cache_dir, "blame").entry_path(5, "a.py") != disk.entry_path(
            5, "a.py"
        )

    def test_empty_payload_is_a_hit(self, cache_dir):
        disk = DiskCache(cache_dir, "blame")
        disk.put(1, "gone.py", "")
        assert disk.get(1, "gone.py") == ""

    def test_no_temp_files_left(self, cache_dir):
        disk = DiskCache(cache_dir, "diff")
        disk.put(1, "", "x")
        disk.put(1, "", "x")
        assert os.listdir(disk.entry_path(1, "").parent) == [disk.entry_path(1, "").name]


# ============================================================================
# MEMORY TIER
# ============================================================================


class TestTwoTierCache:
    def test_memory_then_disk_then_miss(self, cache_dir):
        scope = CommitScope()
        cache = TwoTierCache(DiskCache(cache_dir, "content"), scope, str.upper)

        assert cache.get(1, "a.py") is None
        assert cache.put(1, "a.py", "abc") == "ABC"
        assert cache.get(1, "a.py") == "ABC"
        assert cache.stats == CacheStats(hits=1, misses=1)

        scope.clear()
        assert len(scope) == 0
        assert cache.get(1, "a.py") == "ABC"
        assert len(scope) == 1
        assert cache.stats.hits == 2

    def test_disk_is_raw_text(self, cache_dir):
        cache = TwoTierCache(DiskCache(cache_dir, "content"), CommitScope(), str.upper)
        cache.put(2, "a.py", "abc")
        assert cache.disk.get(2, "a.py") == "abc"

    def test_clear_counts_evictions(self):
        scope = CommitScope()
        scope.put("a", 1)
        scope.put("b", 2)
        scope.clear()
        scope.clear()
        assert scope.evictions == 2
        assert "a" not in scope


def test_cache_stats_merge():
    total = CacheStats(1, 2).merge(CacheStats(3, 4))
    assert total == CacheStats(4, 6)
    assert total.hit_rate == pytest.approx(0.4)
    assert CacheStats().hit_rate == 0.0


# ============================================================================
# SNAPSHOTS
# ============================================================================


class TestSnapshotLoader:
    def test_load_builds_snapshot(self, sample_history, cache_dir):
        loader = SnapshotLoader(sample_history, cache_dir, CommitScope())
        snapshot = loader.load("app.py", 2)

        assert [l.content for l in snapshot.lines] == [
            "import os",
            "x = 10",
            "y = 2",
            "print(x + y)",
            "z = 3",
        ]
        assert snapshot.by_author == {"alice": 3, "bob": 2}
        assert snapshot.by_revision == {1: 3, 2: 2}
        assert [l.line_number for l in snapshot.lines] == [1, 2, 3, 4, 5]

    def test_snapshot_memoized_within_commit(self, sample_history, cache_dir):
        loader = SnapshotLoader(sample_history, cache_dir, CommitScope())
        first = loader.load("app.py", 1)
        assert loader.load("app.py", 1) is first
        assert sample_history.calls["blame"] == 1

    def test_second_commit_reads_disk(self, sample_history, cache_dir):
        scope = CommitScope()
        loader = SnapshotLoader(sample_history, cache_dir, scope)
        loader.load("app.py", 1)
        scope.clear()
        loader.load("app.py", 1)
        assert sample_history.calls["blame"] == 1
        assert sample_history.calls["content"] == 1

    def test_not_found_is_empty_and_cached(self, sample_history, cache_dir):
        loader = SnapshotLoader(sample_history, cache_dir, CommitScope())
        assert len(loader.load("lib.py", 4)) == 0
        assert loader.blame.disk.get(4, "lib.py") == ""

        fresh = SnapshotLoader(sample_history, cache_dir, CommitScope())
        assert len(fresh.load("lib.py", 4)) == 0
        assert sample_history.calls["blame"] == 1

    def test_revision_zero_needs_no_fetch(self, sample_history, cache_dir):
        loader = SnapshotLoader(sample_history, cache_dir, CommitScope())
        assert loader.load("app.py", 0).lines == []
        assert loader.load(None, 3).lines == []
        assert sample_history.calls["blame"] == 0

    def test_source_failure_propagates(self, sample_history, cache_dir):
        sample_history.fail_on.add(("blame", "app.py", 2))
        loader = SnapshotLoader(sample_history, cache_dir, CommitScope())
        with pytest.raises(SourceUnavailableError):
            loader.load("app.py", 2)
        assert (2, "app.py") not in loader.blame.disk


# ============================================================================
# PREFETCH WARM-UP
# ============================================================================


class TestWarmEntry:
    def test_miss_then_hit(self, sample_history, cache_dir):
        assert warm_entry(sample_history, cache_dir, "blame", "app.py", 1) == CacheStats(0, 1)
        assert warm_entry(sample_history, cache_dir, "blame", "app.py", 1) == CacheStats(1, 0)
        assert sample_history.calls["blame"] == 1

    def test_diff_entry(self, sample_history, cache_dir):
        warm_entry(sample_history, cache_dir, "diff", "", 2)
        text = DiskCache(cache_dir, "diff").get(2, "")
        assert text.startswith("Index: app.py")

    def test_missing_payload_stored_empty(self, sample_history, cache_dir):
        warm_entry(sample_history, cache_dir, "content", "nope.py", 1)
        assert DiskCache(cache_dir, "content").get(1, "nope.py") == ""

    def test_unknown_kind(self, sample_history, cache_dir):
        with pytest.raises(ValueError):
            warm_entry(sample_history, cache_dir, "log", "", 1)

    def test_malformed_payload_is_not_stored(self, cache_dir, monkeypatch, sample_history):
        monkeypatch.setattr(sample_history, "diff", lambda revision: "Index: a\n@@ -1,2 +1,2 @@\n?bad\n")
        with pytest.raises(PayloadParseError):
            warm_entry(sample_history, cache_dir, "diff", "", 2)
        assert (2, "") not in DiskCache(cache_dir, "diff")
