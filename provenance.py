#!/usr/bin/env python3
"""
Line Provenance Analyzer

Exact per-line birth/death attribution across a Subversion revision range:
- which lines born in range survive at the end revision
- which were removed by their own author (self-cancellation) and which by
  someone else (cross-author revert)
- repeated edits of the same region by one author, and A/B/A ping-pong edits

Pipeline:
1. load and filter the commit log
2. parallel prefetch of every diff, blame and content payload the pass needs
3. strictly sequential attribution pass, ascending by revision
4. edit-friction pass over every commit's hunks
5. JSON export

Version: 1.0.0
"""

import cProfile
import io
import json
import logging
import os
import pstats
import sys
import time
from collections import Counter, defaultdict
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

import click
import psutil
import yaml
from colorama import Fore, Style, init as colorama_init
from tqdm import tqdm

from blame_matcher import MatchResult, compare_blame, normalize_author
from history_cache import (
    CacheStats,
    CommitScope,
    DiskCache,
    SnapshotLoader,
    TwoTierCache,
    warm_entry,
)
from history_source import (
    BlameLine,
    Commit,
    FileDiff,
    HistorySource,
    PathAction,
    PathFilter,
    SvnHistorySource,
    is_under,
    normalize_path,
)
from hunk_tracker import EditFrictionDetector
from work_scheduler import run_bounded

colorama_init(autoreset=True)

logger = logging.getLogger(__name__)

VERSION = "1.0.0"
SCHEMA_VERSION = "1.0.0"

UNKNOWN_AUTHOR = "(unknown)"


# ============================================================================
# PERFORMANCE
# ============================================================================


class MemoryMonitor:
    """Track resident memory and enforce an optional limit"""

    def __init__(self, limit_mb: Optional[float] = None):
        self.limit_mb = limit_mb
        self.peak_mb = 0.0

    def check_memory(self) -> float:
        memory_mb = psutil.Process(os.getpid()).memory_info().rss / 1024 / 1024
        self.peak_mb = max(self.peak_mb, memory_mb)
        if self.limit_mb and memory_mb > self.limit_mb:
            raise MemoryError(
                f"Memory limit exceeded: {memory_mb:.1f}MB > {self.limit_mb}MB"
            )
        return memory_mb

    def get_peak(self) -> float:
        return self.peak_mb


class ProfilingContext:
    """cProfile the enclosed block and print the top functions"""

    def __init__(self, enabled: bool = False, output_path: Optional[str] = None):
        self.enabled = enabled
        self.output_path = output_path
        self.profiler = None

    def __enter__(self):
        if self.enabled:
            self.profiler = cProfile.Profile()
            self.profiler.enable()
        return self

    def __exit__(self, *args):
        if not (self.enabled and self.profiler):
            return
        self.profiler.disable()
        if self.output_path:
            self.profiler.dump_stats(self.output_path)

        s = io.StringIO()
        stats = pstats.Stats(self.profiler, stream=s)
        stats.strip_dirs().sort_stats("cumulative").print_stats(20)
        print(f"\n{'=' * 70}")
        print("PERFORMANCE PROFILE (Top 20 functions by cumulative time)")
        print(f"{'=' * 70}")
        print(s.getvalue())


@dataclass
class PerformanceMetrics:
    commits_processed: int = 0
    transitions_processed: int = 0
    full_matches: int = 0
    fast_path_skips: int = 0
    fast_path_born_only: int = 0
    fast_path_killed_only: int = 0
    binary_skips: int = 0
    prefetch_tasks: int = 0
    prefetch_hits: int = 0
    prefetch_misses: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    memory_peak_mb: float = 0.0
    total_time: float = 0.0
    stage_times: Dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        cache_total = self.cache_hits + self.cache_misses
        hit_rate = (self.cache_hits / cache_total * 100) if cache_total else 0
        return {
            "commits_processed": self.commits_processed,
            "transitions_processed": self.transitions_processed,
            "full_matches": self.full_matches,
            "fast_paths": {
                "skipped": self.fast_path_skips,
                "born_only": self.fast_path_born_only,
                "killed_only": self.fast_path_killed_only,
                "binary": self.binary_skips,
            },
            "prefetch": {
                "tasks": self.prefetch_tasks,
                "hits": self.prefetch_hits,
                "misses": self.prefetch_misses,
            },
            "cache_statistics": {
                "hits": self.cache_hits,
                "misses": self.cache_misses,
                "hit_rate_percent": round(hit_rate, 1),
            },
            "memory_peak_mb": round(self.memory_peak_mb, 2),
            "total_time_seconds": round(self.total_time, 2),
            "stage_times": {k: round(v, 2) for k, v in self.stage_times.items()},
        }


# ============================================================================
# CONFIGURATION
# ============================================================================

CONFIG_NAMES = [
    ".line-provenance.yaml",
    ".line-provenance.yml",
    ".line-provenance.json",
]

PRESETS = {
    "standard": {"workers": 4},
    "serial": {"workers": 1},
    "parallel": {"workers": os.cpu_count() or 1},
}


def load_config_file(config_path: str) -> Dict[str, Any]:
    """Load configuration from a YAML or JSON file"""
    if not os.path.exists(config_path):
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    file_ext = os.path.splitext(config_path)[1].lower()
    with open(config_path, "r", encoding="utf-8") as f:
        if file_ext in [".yaml", ".yml"]:
            return yaml.safe_load(f) or {}
        if file_ext == ".json":
            return json.load(f)
    raise ValueError(f"Unsupported config file format: {file_ext}")


def find_config_file(search_dir: Optional[str] = None) -> Optional[str]:
    search_dir = search_dir or os.getcwd()
    for config_name in CONFIG_NAMES:
        config_path = os.path.join(search_dir, config_name)
        if os.path.exists(config_path):
            return config_path
    return None


class ConfigResolver:
    """Resolve settings with precedence: CLI > config file > preset > defaults"""

    def __init__(
        self,
        cli_args: Dict[str, Any],
        config_path: Optional[str] = None,
        preset_name: Optional[str] = None,
        search_dir: Optional[str] = None,
    ):
        self.cli = {k: v for k, v in cli_args.items() if v is not None and v != ()}
        self.config = {}

        if config_path:
            self.config = load_config_file(config_path)
        else:
            auto_path = find_config_file(search_dir)
            if auto_path:
                try:
                    self.config = load_config_file(auto_path)
                    logger.info("Auto-discovered configuration: %s", auto_path)
                except (OSError, ValueError, yaml.YAMLError) as e:
                    print(
                        f"Warning: Found config file but failed to load: {e}",
                        file=sys.stderr,
                    )

        self.config = {k.replace("-", "_"): v for k, v in self.config.items()}
        self.preset = PRESETS.get(preset_name or self.config.get("preset"), {})

    def get(self, key: str, default: Any = None) -> Any:
        if key in self.cli:
            return self.cli[key]
        if key in self.config:
            return self.config[key]
        if key in self.preset:
            return self.preset[key]
        return default


# ============================================================================
# PROGRESS REPORTING
# ============================================================================


class ProgressReporter:
    """Coloured stage/progress output on the terminal"""

    def __init__(
        self, quiet: bool = False, verbose: bool = False, use_colors: bool = True
    ):
        self.quiet = quiet
        self.verbose = verbose
        self.use_colors = use_colors
        self.start_time = time.time()
        self.stage_times = {}

    def _colorize(self, text: str, color: str) -> str:
        if self.use_colors:
            return f"{color}{text}{Style.RESET_ALL}"
        return text

    def stage_start(self, stage_name: str, message: str = ""):
        self.stage_times[stage_name] = time.time()
        if self.quiet:
            return
        separator = self._colorize("=" * 70, Fore.CYAN)
        print(f"\n{separator}")
        print(self._colorize(f"🔄 {stage_name}", Fore.BLUE + Style.BRIGHT))
        if message:
            print(f"   {message}")
        print(separator)

    def stage_complete(self, stage_name: str, stats: Optional[Dict] = None) -> float:
        elapsed = time.time() - self.stage_times.get(stage_name, time.time())
        if self.quiet:
            return elapsed
        print(
            self._colorize(
                f"✅ {stage_name} complete ({elapsed:.2f}s)", Fore.GREEN + Style.BRIGHT
            )
        )
        if stats and self.verbose:
            for key, value in stats.items():
                print(f"   {key}: {value}")
        return elapsed

    def create_progress_bar(
        self, total: int, desc: str = "Processing", unit: str = " commits"
    ) -> Optional[tqdm]:
        if self.quiet or total <= 0:
            return None
        return tqdm(
            total=total,
            desc=self._colorize(desc, Fore.CYAN),
            unit=unit,
            ncols=100,
            bar_format="{l_bar}{bar}| {n_fmt}/{total_fmt} [{elapsed}<{remaining}, {rate_fmt}]",
        )

    def info(self, message: str):
        if not self.quiet:
            print(f"{self._colorize('ℹ️  ', Fore.BLUE)}{message}")

    def warning(self, message: str):
        if not self.quiet:
            print(f"{self._colorize('⚠️  ', Fore.YELLOW + Style.BRIGHT)}{message}")

    def error(self, message: str):
        print(
            self._colorize(f"❌ ERROR: {message}", Fore.RED + Style.BRIGHT),
            file=sys.stderr,
        )

    def success(self, message: str):
        if not self.quiet:
            print(self._colorize(f"✨ {message}", Fore.GREEN + Style.BRIGHT))

    def summary(self, stats: Dict[str, Any]):
        if self.quiet:
            return
        separator = self._colorize("=" * 70, Fore.CYAN)
        print(f"\n{separator}")
        print(self._colorize("📊 PROVENANCE SUMMARY", Fore.MAGENTA + Style.BRIGHT))
        print(separator)
        for key, value in stats.items():
            print(f"   {key}: {value}")
        elapsed = time.time() - self.start_time
        print(f"\n{self._colorize(f'⏱️  Total time: {elapsed:.2f}s', Fore.YELLOW)}")
        print(f"{separator}\n")


# ============================================================================
# TRANSITIONS
# ============================================================================


@dataclass(frozen=True)
class Transition:
    """One logical file state pair compared for a commit"""

    before: Optional[str]
    after: Optional[str]

    def __post_init__(self):
        if self.before is None and self.after is None:
            raise ValueError("Transition needs at least one side")

    @property
    def is_rename(self) -> bool:
        return self.before is not None and self.after is not None and self.before != self.after

    @property
    def is_creation(self) -> bool:
        return self.before is None

    @property
    def is_deletion(self) -> bool:
        return self.after is None

    @property
    def file_key(self) -> str:
        return self.after if self.after is not None else self.before


def build_transitions(commit: Commit, touched_paths: Iterable[str] = ()) -> List[Transition]:
    """
    Derive the (before, after) file pairs a commit changes.

    Delete + add-with-copy-from inside one commit is a rename, including
    files under a renamed directory. touched_paths are the files the
    commit's diff names; together with non-directory changed paths they
    form the commit's resolved file list. Pure: metadata only.
    """
    files = commit.file_paths
    dirs = [cp for cp in commit.changed_paths if cp.is_directory]
    changed = {cp.path for cp in files}
    touched = list(dict.fromkeys(normalize_path(p) for p in touched_paths if p))

    deleted_dirs = [cp.path for cp in dirs if cp.action == PathAction.DELETE]
    added_dirs = [
        cp.path for cp in dirs if cp.action in (PathAction.ADD, PathAction.REPLACE)
    ]
    deleted = [cp.path for cp in files if cp.action == PathAction.DELETE]
    deleted += [
        p
        for p in touched
        if p not in changed
        and any(is_under(p, d) for d in deleted_dirs)
        and not any(is_under(p, d) for d in added_dirs)
    ]
    deleted_set = set(deleted)

    pairs: Dict[Tuple[Optional[str], Optional[str]], None] = {}
    consumed = set()
    covered = set()

    def emit(before, after):
        pairs.setdefault((before, after), None)
        if after is not None:
            covered.add(after)
        if before is not None and after is None:
            covered.add(before)

    for cp in files:
        if (
            cp.action in (PathAction.ADD, PathAction.REPLACE)
            and cp.copy_from_path in deleted_set
        ):
            emit(cp.copy_from_path, cp.path)
            consumed.add(cp.copy_from_path)

    dir_renames = {
        cp.path: cp.copy_from_path
        for cp in dirs
        if cp.action in (PathAction.ADD, PathAction.REPLACE)
        and cp.copy_from_path in deleted_dirs
    }
    for new_dir, old_dir in dir_renames.items():
        for path in touched:
            if path in covered or path in consumed or path in changed:
                continue
            if is_under(path, new_dir):
                old = old_dir + path[len(new_dir) :]
                emit(old, path)
                consumed.add(old)
            elif is_under(path, old_dir):
                emit(path, new_dir + path[len(old_dir) :])
                consumed.add(path)

    for path in deleted:
        if path not in consumed:
            emit(path, None)

    for cp in files:
        if cp.path in covered or cp.action == PathAction.DELETE:
            continue
        if cp.action == PathAction.ADD:
            emit(None, cp.path)
        else:
            emit(cp.path, cp.path)

    for path in touched:
        if path in covered or path in consumed:
            continue
        if any(is_under(path, d) for d in added_dirs):
            emit(None, path)
        else:
            emit(path, path)

    return [Transition(before, after) for before, after in pairs]


# Transition handling modes shared by the planner and the attribution pass
SKIP = "skip"
SKIP_BINARY = "binary"
BORN_ONLY = "born_only"
KILLED_ONLY = "killed_only"
FULL = "full"


def diff_for_transition(
    transition: Transition, diffs: Mapping[str, FileDiff]
) -> Optional[FileDiff]:
    # A renamed file's edits are reported under its new name
    if transition.after is not None:
        return diffs.get(transition.after)
    return diffs.get(transition.before)


def classify_transition(transition: Transition, file_diff: Optional[FileDiff]) -> str:
    if file_diff is None:
        return SKIP
    if file_diff.is_binary:
        return SKIP_BINARY
    # A move diffs the new path against nothing, so its hunks say nothing about kills
    if transition.is_rename:
        return FULL
    if not file_diff.added_lines and not file_diff.deleted_lines:
        return SKIP
    if file_diff.added_lines and not file_diff.deleted_lines:
        return BORN_ONLY
    if file_diff.deleted_lines and not file_diff.added_lines and transition.is_deletion:
        return KILLED_ONLY
    return FULL


def snapshot_sides(
    transition: Transition, mode: str, revision: int
) -> List[Tuple[str, int]]:
    """(path, revision) snapshots a transition needs under a given mode"""
    sides = []
    if mode in (FULL, KILLED_ONLY) and transition.before is not None:
        sides.append((transition.before, revision - 1))
    if mode in (FULL, BORN_ONLY) and transition.after is not None:
        sides.append((transition.after, revision))
    return sides


# ============================================================================
# PREFETCH
# ============================================================================


@dataclass(frozen=True)
class FetchTask:
    kind: str
    path: str
    revision: int


def plan_prefetch(
    commits: Iterable[Commit],
    diffs_for: Callable[[int], Mapping[str, FileDiff]],
) -> List[FetchTask]:
    """
    Every blame/content fetch the attribution pass will make, de-duplicated,
    in first-needed order.
    """
    tasks: Dict[FetchTask, None] = {}
    for commit in commits:
        diffs = diffs_for(commit.revision)
        for transition in build_transitions(commit, diffs.keys()):
            mode = classify_transition(transition, diff_for_transition(transition, diffs))
            for path, revision in snapshot_sides(transition, mode, commit.revision):
                if revision < 1:
                    continue
                tasks.setdefault(FetchTask("blame", path, revision), None)
                tasks.setdefault(FetchTask("content", path, revision), None)
    return list(tasks)


def prefetch_worker(task: FetchTask, session: Mapping[str, Any]) -> CacheStats:
    return warm_entry(
        session["source"], session["cache_dir"], task.kind, task.path, task.revision
    )


# ============================================================================
# ATTRIBUTION STATE
# ============================================================================


@dataclass
class AttributionCounters:
    born: int = 0
    dead: int = 0
    self_dead: int = 0
    other_dead: int = 0
    survived: int = 0
    internal_moves: int = 0
    repeated_hunks: int = 0
    ping_pongs: int = 0
    cross_author_modified: int = 0

    def absorb(self, other: "AttributionCounters"):
        for name, value in asdict(other).items():
            setattr(self, name, getattr(self, name) + value)


class AttributionState:
    """
    Per-author and per-file tallies for one run.
    Mutated only by the sequential attribution pass.
    """

    def __init__(self, start: int, end: int):
        self.start = start
        self.end = end
        self.authors: Dict[str, AttributionCounters] = defaultdict(AttributionCounters)
        self.files: Dict[str, AttributionCounters] = defaultdict(AttributionCounters)
        self.file_author_survived: Dict[str, Counter] = defaultdict(Counter)
        # Surviving lines per origin revision
        self.revision_survived = Counter()
        # (revision, committing author) -> lines of other authors removed
        self.cross_author_kills: Dict[Tuple[int, str], int] = {}

    def in_range(self, revision: Optional[int]) -> bool:
        return revision is not None and self.start <= revision <= self.end

    def record_born(self, author: Optional[str], path: str, revision: int):
        author = author or UNKNOWN_AUTHOR
        for counters in (self.authors[author], self.files[path]):
            counters.born += 1
            counters.survived += 1
        self.file_author_survived[path][author] += 1
        self.revision_survived[revision] += 1

    def record_killed(
        self,
        origin_author: Optional[str],
        committer: str,
        path: str,
        origin_revision: int,
        revision: int,
    ):
        origin_author = origin_author or UNKNOWN_AUTHOR
        origin, fc = self.authors[origin_author], self.files[path]
        for counters in (origin, fc):
            counters.dead += 1
            counters.survived -= 1
        self.file_author_survived[path][origin_author] -= 1
        self.revision_survived[origin_revision] -= 1

        if normalize_author(origin_author) == normalize_author(committer):
            origin.self_dead += 1
            fc.self_dead += 1
        else:
            origin.other_dead += 1
            fc.other_dead += 1
            self.authors[committer].cross_author_modified += 1
            fc.cross_author_modified += 1
            key = (revision, committer)
            self.cross_author_kills[key] = self.cross_author_kills.get(key, 0) + 1

    def record_moves(self, committer: str, path: str, count: int):
        if count:
            self.authors[committer].internal_moves += count
            self.files[path].internal_moves += count

    def record_friction(self, detector: EditFrictionDetector):
        for author, count in detector.repeated_by_author.items():
            self.authors[author].repeated_hunks += count
        for author, count in detector.ping_pong_by_author.items():
            self.authors[author].ping_pongs += count
        for path, count in detector.repeated_by_file.items():
            self.files[path].repeated_hunks += count
        for path, count in detector.ping_pong_by_file.items():
            self.files[path].ping_pongs += count

    def rename_file(self, old_path: str, new_path: str):
        """Carry a file's tallies over to its new path"""
        if old_path == new_path:
            return
        if old_path in self.files:
            self.files[new_path].absorb(self.files.pop(old_path))
        if old_path in self.file_author_survived:
            self.file_author_survived[new_path].update(
                self.file_author_survived.pop(old_path)
            )

    def replacement_survival(self) -> Dict[str, int]:
        """
        Lines still alive that were born in revisions where the committing
        author removed someone else's code.
        """
        revisions = defaultdict(set)
        for revision, author in self.cross_author_kills:
            revisions[author].add(revision)
        return {
            author: sum(self.revision_survived[r] for r in sorted(revs))
            for author, revs in sorted(revisions.items())
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "revision_range": {"start": self.start, "end": self.end},
            "authors": {a: asdict(c) for a, c in sorted(self.authors.items())},
            "files": {
                path: {
                    **asdict(c),
                    "survived_by_author": {
                        a: n
                        for a, n in sorted(self.file_author_survived[path].items())
                        if n
                    },
                }
                for path, c in sorted(self.files.items())
            },
            "cross_author_kills": [
                {"revision": rev, "author": author, "lines": lines}
                for (rev, author), lines in sorted(self.cross_author_kills.items())
            ],
            "replacement_survival": self.replacement_survival(),
        }


# ============================================================================
# ATTRIBUTION AGGREGATOR
# ============================================================================


class ProvenanceAnalyzer:
    """
    Drives the whole run: log, prefetch, sequential attribution, friction.
    """

    def __init__(
        self,
        source: HistorySource,
        cache_dir: str,
        start: int = 1,
        end: Optional[int] = None,
        path_filter: Optional[PathFilter] = None,
        workers: int = 1,
        reporter: Optional[ProgressReporter] = None,
        memory_limit_mb: Optional[float] = None,
        friction_window: Optional[int] = None,
    ):
        self.source = source
        self.cache_dir = os.path.abspath(cache_dir)
        self.start = max(1, start)
        self.end = end
        self.path_filter = path_filter or PathFilter()
        self.workers = max(1, min(workers, os.cpu_count() or 1))
        self.reporter = reporter or ProgressReporter(quiet=True)
        self.memory_monitor = MemoryMonitor(limit_mb=memory_limit_mb)
        self.metrics = PerformanceMetrics()

        self.scope = CommitScope()
        self.snapshots = SnapshotLoader(source, self.cache_dir, self.scope)
        self.diff_cache = TwoTierCache(
            DiskCache(self.cache_dir, "diff"), self.scope, self._parse_diff
        )
        self.detector = EditFrictionDetector(max_history=friction_window)
        self.commits: List[Commit] = []
        self.state: Optional[AttributionState] = None

    def _parse_diff(self, text: str) -> Dict[str, FileDiff]:
        return self.path_filter.filter_diffs(self.source.parse_diff(text))

    def load_commits(self) -> List[Commit]:
        commits = self.source.log(self.start, self.end)
        self.commits = [
            self.path_filter.apply(c)
            for c in commits
            if c.revision >= self.start and (self.end is None or c.revision <= self.end)
        ]
        self.commits.sort(key=lambda c: c.revision)
        end = self.end
        if end is None:
            end = self.commits[-1].revision if self.commits else self.start
        self.state = AttributionState(self.start, end)
        logger.info("Loaded %d commits in r%d:r%d", len(self.commits), self.start, end)
        return self.commits

    def diffs_for(self, revision: int) -> Dict[str, FileDiff]:
        diffs = self.diff_cache.get(revision, "")
        if diffs is None:
            text = self.source.diff(revision)
            diffs = self.diff_cache.put(revision, "", text if text is not None else "")
        return diffs

    def _run_batch(self, tasks: List[FetchTask], desc: str) -> CacheStats:
        progress_bar = self.reporter.create_progress_bar(
            total=len(tasks), desc=desc, unit=" fetches"
        )
        try:
            results = run_bounded(
                tasks,
                prefetch_worker,
                max_parallel=self.workers,
                session={"source": self.source, "cache_dir": self.cache_dir},
                on_done=(lambda _: progress_bar.update(1)) if progress_bar else None,
            )
        finally:
            if progress_bar:
                progress_bar.close()
        stats = CacheStats()
        for result in results:
            stats.merge(result)
        return stats

    def prefetch(self) -> CacheStats:
        """Warm the disk cache for every payload the sequential pass reads"""
        self.reporter.stage_start(
            "Prefetch", f"Warming cache with {self.workers} worker(s)..."
        )
        diff_tasks = [FetchTask("diff", "", c.revision) for c in self.commits]
        stats = self._run_batch(diff_tasks, "Fetching diffs")

        def planner_diffs(revision):
            diffs = self.diffs_for(revision)
            self.scope.clear()
            return diffs

        tasks = plan_prefetch(self.commits, planner_diffs)
        stats.merge(self._run_batch(tasks, "Fetching blame"))

        self.metrics.prefetch_tasks = len(diff_tasks) + len(tasks)
        self.metrics.prefetch_hits = stats.hits
        self.metrics.prefetch_misses = stats.misses
        self.metrics.stage_times["prefetch"] = self.reporter.stage_complete(
            "Prefetch",
            {
                "Fetch tasks": f"{self.metrics.prefetch_tasks:,}",
                "Already cached": f"{stats.hits:,}",
                "Fetched": f"{stats.misses:,}",
            },
        )
        return stats

    def _lines(self, path: Optional[str], revision: int) -> List[BlameLine]:
        if path is None:
            return []
        return self.snapshots.load(path, revision).lines

    def match_transition(
        self, commit: Commit, transition: Transition, mode: str
    ) -> MatchResult:
        """Born/killed classification for one transition, fast path or full match"""
        if mode == BORN_ONLY:
            self.metrics.fast_path_born_only += 1
            after = self._lines(transition.after, commit.revision)
            return MatchResult(
                born=[line for line in after if line.revision == commit.revision]
            )
        if mode == KILLED_ONLY:
            self.metrics.fast_path_killed_only += 1
            return MatchResult(killed=list(self._lines(transition.before, commit.revision - 1)))

        self.metrics.full_matches += 1
        return compare_blame(
            self._lines(transition.before, commit.revision - 1),
            self._lines(transition.after, commit.revision),
        )

    def attribute_commit(self, commit: Commit):
        state = self.state
        diffs = self.diffs_for(commit.revision)

        for transition in build_transitions(commit, diffs.keys()):
            self.metrics.transitions_processed += 1
            if transition.is_rename:
                state.rename_file(transition.before, transition.after)

            mode = classify_transition(transition, diff_for_transition(transition, diffs))
            if mode == SKIP_BINARY:
                self.metrics.binary_skips += 1
                continue
            if mode == SKIP:
                self.metrics.fast_path_skips += 1
                continue

            result = self.match_transition(commit, transition, mode)
            path = transition.file_key

            for line in result.born:
                if line.revision == commit.revision and state.in_range(line.revision):
                    state.record_born(line.author or commit.author, path, line.revision)
            for line in result.killed:
                if state.in_range(line.revision):
                    state.record_killed(
                        line.author, commit.author, path, line.revision, commit.revision
                    )
            state.record_moves(commit.author, path, len(result.moved))

        self.scope.clear()
        self.metrics.commits_processed += 1

    def attribute(self) -> AttributionState:
        """The sequential pass; commits must never interleave"""
        self.reporter.stage_start("Attribution", "Reconciling blame snapshots...")
        progress_bar = self.reporter.create_progress_bar(
            total=len(self.commits), desc="Attributing commits"
        )
        for index, commit in enumerate(self.commits, 1):
            self.attribute_commit(commit)
            if progress_bar:
                progress_bar.update(1)
            if index % 500 == 0:
                memory_mb = self.memory_monitor.check_memory()
                logger.debug("r%d: %.1f MB resident", commit.revision, memory_mb)
        if progress_bar:
            progress_bar.close()

        stats = self.snapshots.stats.merge(self.diff_cache.stats)
        self.metrics.cache_hits = stats.hits
        self.metrics.cache_misses = stats.misses
        self.metrics.stage_times["attribution"] = self.reporter.stage_complete(
            "Attribution",
            {
                "Commits": f"{self.metrics.commits_processed:,}",
                "Transitions": f"{self.metrics.transitions_processed:,}",
                "Full matches": f"{self.metrics.full_matches:,}",
            },
        )
        return self.state

    def detect_friction(self):
        """Repeated-edit and ping-pong counts over every commit's hunks"""
        self.reporter.stage_start("Edit Friction", "Tracking canonical hunk ranges...")
        for commit in self.commits:
            diffs = self.diffs_for(commit.revision)
            for transition in build_transitions(commit, diffs.keys()):
                if transition.is_rename:
                    self.detector.rename(transition.before, transition.after)
                if transition.is_deletion:
                    self.detector.forget(transition.before)
                    continue
                file_diff = diff_for_transition(transition, diffs)
                if file_diff is None or file_diff.is_binary:
                    continue
                self.detector.observe(
                    commit.revision, commit.author, transition.file_key, file_diff.hunks
                )
            self.scope.clear()
        self.state.record_friction(self.detector)
        self.metrics.stage_times["friction"] = self.reporter.stage_complete(
            "Edit Friction"
        )

    def analyze(self, prefetch: bool = True) -> AttributionState:
        start_time = time.time()
        self.reporter.stage_start("History", f"Reading log from {self.source.name}...")
        self.load_commits()
        self.reporter.stage_complete("History", {"Commits": f"{len(self.commits):,}"})
        if not self.commits:
            upper = "HEAD" if self.end is None else f"r{self.end}"
            self.reporter.warning(f"No commits found in r{self.start}:{upper}")

        if prefetch:
            self.prefetch()
        self.attribute()
        self.detect_friction()

        self.memory_monitor.check_memory()
        self.metrics.memory_peak_mb = self.memory_monitor.get_peak()
        self.metrics.total_time = time.time() - start_time
        return self.state

    def export_results(self, output_path: str) -> Dict[str, Any]:
        data = {
            "schema_version": SCHEMA_VERSION,
            "generated_at": datetime.now(timezone.utc).isoformat(),
            "repository": getattr(self.source, "url", self.source.name),
            "commits_analyzed": len(self.commits),
            **self.state.to_dict(),
            "metrics": self.metrics.to_dict(),
        }
        os.makedirs(os.path.dirname(os.path.abspath(output_path)), exist_ok=True)
        with open(output_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        return data


# ============================================================================
# CLI INTERFACE
# ============================================================================


def parse_revision_range(value: Optional[str]) -> Tuple[int, Optional[int]]:
    """'START:END', 'START:HEAD' or 'START' to (start, end or None)"""
    if not value:
        return 1, None
    start_text, _, end_text = value.partition(":")
    try:
        start = int(start_text) if start_text else 1
        end = None if end_text in ("", "HEAD", "head") else int(end_text)
    except ValueError:
        raise click.BadParameter(f"Invalid revision range: {value}") from None
    if end is not None and end < start:
        raise click.BadParameter(f"Range end r{end} precedes start r{start}")
    return start, end


def configure_logging(verbose: bool):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


@click.command(context_settings=dict(help_option_names=["-h", "--help"]))
@click.argument("repo_url", required=False)
@click.option("-r", "--revisions", help="Revision range START:END (default 1:HEAD)")
@click.option(
    "-o",
    "--output",
    type=click.Path(file_okay=False),
    help="Output directory (default: provenance_output_TIMESTAMP)",
)
@click.option(
    "--config",
    type=click.Path(exists=True, dir_okay=False),
    help="Configuration file path (.yaml or .json)",
)
@click.option(
    "--preset",
    type=click.Choice(sorted(PRESETS)),
    help="Use predefined worker configuration",
)
@click.option("--cache-dir", type=click.Path(file_okay=False), help="Payload cache directory")
@click.option("-j", "--workers", type=int, help="Parallel prefetch workers")
@click.option("--include", multiple=True, help="Glob of paths to analyze (repeatable)")
@click.option("--exclude", multiple=True, help="Glob of paths to skip (repeatable)")
@click.option("--friction-window", type=int, help="Edit ranges kept per file")
@click.option("--no-prefetch", is_flag=True, default=None, help="Skip the parallel warm-up")
# Source
@click.option("--svn-binary", help="svn client executable")
@click.option("--username", help="Repository username")
@click.option("--password", help="Repository password")
@click.option("--timeout", type=float, help="Per-command timeout in seconds")
# Performance
@click.option("--memory-limit", type=float, help="Memory limit in MB")
@click.option("--profile", is_flag=True, default=None, help="Enable performance profiling")
@click.option("--profile-output", help="Profile output file")
# Output control
@click.option("-q", "--quiet", is_flag=True, default=None, help="Suppress progress output")
@click.option("-v", "--verbose", is_flag=True, default=None, help="Show debug logging")
@click.option("--no-color", is_flag=True, default=None, help="Disable colored output")
@click.option("--dry-run", is_flag=True, default=None, help="Show the resolved settings and exit")
@click.version_option(version=VERSION)
def main(repo_url, config, preset, **kwargs):
    """
    Line Provenance Analyzer - who wrote each line, and who removed it.

    REPO_URL is a Subversion repository (or subdirectory) URL.
    """
    resolver = ConfigResolver(kwargs, config, preset)
    repo_url = repo_url or resolver.get("repo_url")
    if not repo_url:
        ctx = click.get_current_context()
        click.echo(ctx.get_help())
        ctx.exit(2)

    quiet = resolver.get("quiet", False)
    verbose = resolver.get("verbose", False)
    reporter = ProgressReporter(
        quiet=quiet, verbose=verbose, use_colors=not resolver.get("no_color", False)
    )
    configure_logging(verbose)

    start, end = parse_revision_range(resolver.get("revisions"))
    workers = int(resolver.get("workers", PRESETS["standard"]["workers"]))
    cache_dir = resolver.get("cache_dir", ".provenance_cache")
    include = list(resolver.get("include", []))
    exclude = list(resolver.get("exclude", []))
    friction_window = resolver.get("friction_window")
    memory_limit = resolver.get("memory_limit")
    profile = resolver.get("profile", False)
    profile_output_file = resolver.get("profile_output", "profile_stats.prof")

    if resolver.get("dry_run", False):
        reporter.info("DRY RUN MODE - No analysis will be performed")
        reporter.info(f"Repository: {repo_url}")
        reporter.info(f"Revisions: r{start}:{'HEAD' if end is None else f'r{end}'}")
        reporter.info(f"Cache directory: {cache_dir}")
        reporter.info(f"Prefetch workers: {workers}")
        if include:
            reporter.info(f"Include: {', '.join(include)}")
        if exclude:
            reporter.info(f"Exclude: {', '.join(exclude)}")
        if memory_limit:
            reporter.info(f"Memory limit: {memory_limit} MB")
        if profile:
            reporter.info(f"Profiling enabled (output: {profile_output_file})")
        return

    output_dir = resolver.get("output") or (
        f"provenance_output_{datetime.now().strftime('%Y%m%d_%H%M%S')}"
    )
    os.makedirs(output_dir, exist_ok=True)
    reporter.info(f"Output directory: {output_dir}")
    profile_path = os.path.join(output_dir, profile_output_file) if profile else None

    try:
        with ProfilingContext(enabled=profile, output_path=profile_path):
            source = SvnHistorySource(
                repo_url,
                svn_binary=resolver.get("svn_binary", "svn"),
                username=resolver.get("username"),
                password=resolver.get("password"),
                timeout=resolver.get("timeout"),
            )
            analyzer = ProvenanceAnalyzer(
                source,
                cache_dir,
                start=start,
                end=end,
                path_filter=PathFilter(include, exclude),
                workers=workers,
                reporter=reporter,
                memory_limit_mb=memory_limit,
                friction_window=friction_window,
            )
            state = analyzer.analyze(prefetch=not resolver.get("no_prefetch", False))
            output_path = os.path.join(output_dir, "provenance.json")
            analyzer.export_results(output_path)

        totals = AttributionCounters()
        for counters in state.authors.values():
            totals.absorb(counters)
        reporter.summary(
            {
                "Repository": repo_url,
                "Revisions": f"r{state.start}:r{state.end}",
                "Commits analyzed": f"{len(analyzer.commits):,}",
                "Authors": f"{len(state.authors):,}",
                "Lines born": f"{totals.born:,}",
                "Lines surviving": f"{totals.survived:,}",
                "Self-cancelled": f"{totals.self_dead:,}",
                "Removed by others": f"{totals.other_dead:,}",
                "Ping-pong edits": f"{totals.ping_pongs:,}",
            }
        )
        reporter.success(f"Analysis complete! Results saved to: {output_path}")

    except Exception as e:
        reporter.error(f"Analysis failed: {str(e)}")
        if verbose:
            import traceback

            traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    main()
