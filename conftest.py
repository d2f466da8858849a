import difflib
import threading
from collections import Counter

import pytest

from history_source import (
    BlameLine,
    ChangedPath,
    Commit,
    HistorySource,
    PathAction,
    SourceUnavailableError,
)
from provenance import ProgressReporter


class StaticHistorySource(HistorySource):
    """
    In-memory repository history. Each commit() call records a revision;
    blame is carried line by line with difflib, and diffs are emitted in
    `svn diff` layout so the real parser reads them.

    Blame payloads are "revision<TAB>author" per line.
    """

    name = "static"

    def __init__(self, first_revision: int = 1):
        self.revision = first_revision - 1
        self.commits = []
        self.files = {}
        self.snapshots = {}
        self.diff_texts = {}
        self.calls = Counter()
        self.fail_on = set()
        self._lock = threading.Lock()

    # -- building history -------------------------------------------------

    def _carry(self, old, new_contents, revision, author):
        old_contents = [entry[0] for entry in old]
        carried = []
        matcher = difflib.SequenceMatcher(None, old_contents, new_contents, autojunk=False)
        for tag, i1, i2, j1, j2 in matcher.get_opcodes():
            if tag == "equal":
                carried.extend(old[i1:i2])
            else:
                carried.extend((text, revision, author) for text in new_contents[j1:j2])
        return carried

    def _diff(self, path, old_contents, new_contents, revision, binary=False):
        header = f"Index: {path}\n{'=' * 67}\n"
        if binary:
            return header + (
                "Cannot display: file marked as a binary type.\n"
                "svn:mime-type = application/octet-stream\n"
            )
        if old_contents == new_contents:
            return ""
        body = difflib.unified_diff(
            old_contents,
            new_contents,
            fromfile=f"{path}\t(revision {revision - 1})",
            tofile=f"{path}\t(revision {revision})",
            lineterm="",
            n=3,
        )
        return header + "\n".join(body) + "\n"

    def commit(
        self,
        author,
        files=None,
        deletes=(),
        renames=None,
        copies=None,
        binary=(),
        message="",
        moves_as_adds=False,
    ):
        """
        Record one revision.

        files: path -> full list of lines after the commit
        deletes: paths removed
        renames: old path -> new path (content may also change via files)
        copies: source path -> new path (source stays)
        binary: paths touched as binary files
        moves_as_adds: diff renamed paths as full adds, the way svn lays out moves
        """
        self.revision += 1
        rev = self.revision
        changed = []
        parts = []

        for old, new in (renames or {}).items():
            lines = self.files.pop(old)
            parts.append(self._diff(old, [e[0] for e in lines], [], rev))
            changed.append(ChangedPath(old, PathAction.DELETE))
            changed.append(ChangedPath(new, PathAction.ADD, old, rev - 1))
            self.files[new] = lines
            if moves_as_adds and new not in (files or {}):
                parts.append(self._diff(new, [], [e[0] for e in lines], rev))

        for source, new in (copies or {}).items():
            self.files[new] = list(self.files[source])
            changed.append(ChangedPath(new, PathAction.ADD, source, rev - 1))

        for path in deletes:
            lines = self.files.pop(path)
            parts.append(self._diff(path, [e[0] for e in lines], [], rev))
            changed.append(ChangedPath(path, PathAction.DELETE))

        renamed_to = set((renames or {}).values())
        for path, contents in (files or {}).items():
            old = self.files.get(path, [])
            if path not in self.files:
                changed.append(ChangedPath(path, PathAction.ADD))
            elif path not in renamed_to:
                changed.append(ChangedPath(path, PathAction.MODIFY))
            self.files[path] = self._carry(old, list(contents), rev, author)
            base = [] if moves_as_adds and path in renamed_to else [e[0] for e in old]
            parts.append(self._diff(path, base, list(contents), rev))

        for path in binary:
            if path not in self.files:
                changed.append(ChangedPath(path, PathAction.ADD))
                self.files[path] = []
            else:
                changed.append(ChangedPath(path, PathAction.MODIFY))
            parts.append(self._diff(path, [], [], rev, binary=True))

        for path, lines in self.files.items():
            self.snapshots[(path, rev)] = list(lines)
        self.diff_texts[rev] = "".join(parts)
        self.commits.append(
            Commit(
                revision=rev,
                author=author,
                timestamp=1_700_000_000 + rev * 3600,
                message=message,
                changed_paths=tuple(changed),
            )
        )
        return rev

    def snapshot_lines(self, path, revision):
        return [
            BlameLine(i + 1, text, origin, who)
            for i, (text, origin, who) in enumerate(self.snapshots.get((path, revision), []))
        ]

    # -- HistorySource contract ---------------------------------------------

    def _record(self, kind, path, revision):
        with self._lock:
            self.calls[kind] += 1
        if (kind, path, revision) in self.fail_on:
            raise SourceUnavailableError(f"{kind} {path}@{revision} unreachable")

    def log(self, start, end):
        self._record("log", "", start)
        return [
            c for c in self.commits
            if c.revision >= start and (end is None or c.revision <= end)
        ]

    def diff(self, revision):
        self._record("diff", "", revision)
        return self.diff_texts.get(revision)

    def blame(self, path, revision):
        self._record("blame", path, revision)
        lines = self.snapshots.get((path, revision))
        if lines is None:
            return None
        return "".join(f"{origin}\t{who}\n" for _, origin, who in lines)

    def content(self, path, revision):
        self._record("content", path, revision)
        lines = self.snapshots.get((path, revision))
        if lines is None:
            return None
        return "".join(f"{text}\n" for text, _, _ in lines)

    def parse_blame(self, text):
        entries = []
        for line in (text or "").splitlines():
            origin, _, who = line.partition("\t")
            entries.append((int(origin) if origin != "None" else None, who or None))
        return entries


@pytest.fixture
def quiet_reporter():
    return ProgressReporter(quiet=True)


@pytest.fixture
def history():
    """Empty in-memory history starting at revision 1"""
    return StaticHistorySource()


@pytest.fixture
def history_factory():
    return StaticHistorySource


@pytest.fixture
def cache_dir(tmp_path):
    path = tmp_path / "cache"
    path.mkdir()
    return str(path)


@pytest.fixture
def sample_history():
    """
    Four revisions, two authors:
    r1 alice creates app.py (4 lines) and lib.py (2 lines)
    r2 bob rewrites line 2 of app.py and appends one line
    r3 alice renames lib.py to util.py unchanged
    r4 alice deletes bob's appended line and adds her own
    """
    source = StaticHistorySource()
    source.commit(
        "alice",
        files={
            "app.py": ["import os", "x = 1", "y = 2", "print(x + y)"],
            "lib.py": ["def helper():", "    return 1"],
        },
    )
    source.commit(
        "bob",
        files={"app.py": ["import os", "x = 10", "y = 2", "print(x + y)", "z = 3"]},
    )
    source.commit("alice", renames={"lib.py": "util.py"})
    source.commit(
        "alice",
        files={"app.py": ["import os", "x = 10", "y = 2", "print(x + y)", "w = 4"]},
    )
    return source


@pytest.fixture
def blame_line():
    def make(line_number, content, revision=1, author="alice"):
        return BlameLine(line_number, content, revision, author)

    return make
