#!/usr/bin/env python3
"""
Canonical Hunk Offset Tracker

Each commit's hunk coordinates are relative to the file as it was right
before that commit. Recording the line-count shift of every earlier hunk
lets any later "old" line number be translated back into one stable
coordinate space per file, so edit ranges from different commits can be
compared for overlap.
"""

from collections import Counter
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from blame_matcher import normalize_author
from history_source import Hunk


@dataclass(frozen=True)
class OffsetEvent:
    threshold: int
    delta: int


def record_shift(events: List[OffsetEvent], threshold: int, delta: int):
    if delta:
        events.append(OffsetEvent(threshold, delta))


def canonical_line(events: Iterable[OffsetEvent], raw_line: int) -> int:
    """Undo every recorded shift at or below raw_line"""
    return raw_line - sum(e.delta for e in events if e.threshold <= raw_line)


def shift_threshold(hunk: Hunk) -> int:
    if hunk.old_count == 0:
        return hunk.old_start
    return hunk.old_start + hunk.old_count


def is_file_creation(hunk: Hunk) -> bool:
    """@@ -0,0 +1,N @@ builds the file from nothing; its lines define the canonical space"""
    return hunk.old_start == 0 and hunk.old_count == 0


def hunk_span(hunk: Hunk) -> Tuple[int, int]:
    """Raw old-side line span touched by a hunk; insertions occupy one line"""
    if hunk.old_count == 0:
        return hunk.old_start, hunk.old_start
    return hunk.old_start, hunk.old_start + hunk.old_count - 1


@dataclass(frozen=True)
class EditRange:
    revision: int
    author: str
    lo: int
    hi: int

    def overlaps(self, other: "EditRange") -> bool:
        return self.lo <= other.hi and other.lo <= self.hi


class EditFrictionDetector:
    """
    Repeated-edit and ping-pong detection over canonical edit ranges.

    Feed (revision, author, path, hunks) in ascending revision order.
    A repeated edit is a hunk overlapping an earlier range of the same
    author. A ping-pong is a hunk by A overlapping an earlier range by
    B != A which itself overlaps, together with the new hunk, an even
    earlier range by A.
    """

    def __init__(self, max_history: Optional[int] = None):
        self.max_history = max_history
        self.offsets: Dict[str, List[OffsetEvent]] = {}
        self.history: Dict[str, List[EditRange]] = {}
        self.repeated_by_author = Counter()
        self.ping_pong_by_author = Counter()
        self.repeated_by_file = Counter()
        self.ping_pong_by_file = Counter()

    def canonical_range(self, path: str, hunk: Hunk) -> Tuple[int, int]:
        events = self.offsets.get(path, [])
        raw_lo, raw_hi = hunk_span(hunk)
        lo, hi = canonical_line(events, raw_lo), canonical_line(events, raw_hi)
        return (lo, hi) if lo <= hi else (hi, lo)

    def _closes_ping_pong(self, earlier: List[EditRange], new: EditRange) -> bool:
        for middle in earlier:
            if middle.author == new.author or not middle.overlaps(new):
                continue
            for first in earlier:
                if (
                    first.author == new.author
                    and first.revision < middle.revision
                    and first.overlaps(middle)
                    and first.overlaps(new)
                ):
                    return True
        return False

    def observe(
        self, revision: int, author: str, path: str, hunks: List[Hunk]
    ) -> Tuple[int, int]:
        """
        Map one commit's hunks for one file, count friction, then apply the
        commit's shifts in a single batch.

        Returns:
            (repeated edits, ping-pongs) found in this commit for this file
        """
        hunks = [h for h in hunks if not is_file_creation(h)]
        if not hunks:
            return 0, 0

        who = normalize_author(author)
        history = self.history.setdefault(path, [])
        earlier = [r for r in history if r.revision < revision]

        # All hunks map through the pre-commit offsets
        ranges = [
            EditRange(revision, who, *self.canonical_range(path, hunk)) for hunk in hunks
        ]

        repeated = ping_pong = 0
        for new in ranges:
            if any(r.author == who and r.overlaps(new) for r in earlier):
                repeated += 1
            if self._closes_ping_pong(earlier, new):
                ping_pong += 1

        history.extend(ranges)
        if self.max_history and len(history) > self.max_history:
            del history[: len(history) - self.max_history]

        events = self.offsets.setdefault(path, [])
        for hunk in hunks:
            record_shift(events, shift_threshold(hunk), hunk.line_delta)

        if repeated:
            self.repeated_by_author[author] += repeated
            self.repeated_by_file[path] += repeated
        if ping_pong:
            self.ping_pong_by_author[author] += ping_pong
            self.ping_pong_by_file[path] += ping_pong
        return repeated, ping_pong

    def rename(self, old_path: str, new_path: str):
        """Carry a file's offsets and range history to its new path"""
        if old_path == new_path:
            return
        for table in (self.offsets, self.history):
            if old_path in table:
                table.setdefault(new_path, [])[:0] = table.pop(old_path)
        for counter in (self.repeated_by_file, self.ping_pong_by_file):
            if old_path in counter:
                counter[new_path] += counter.pop(old_path)

    def forget(self, path: str):
        self.offsets.pop(path, None)
        self.history.pop(path, None)
