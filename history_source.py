#!/usr/bin/env python3
"""
History Source - revision metadata, blame and diff payloads

Data model shared by every stage of the provenance pipeline, the error
taxonomy, and the adapter that talks to a Subversion server through the
`svn` command line client (XML output mode).

The adapter only hands out raw payload text; parsing is separate so the
cache can store raw text on disk and parsed values in memory.
"""

import hashlib
import logging
import posixpath
import re
import subprocess
import threading
import xml.etree.ElementTree as ET
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from fnmatch import fnmatch
from typing import Dict, List, Optional, Sequence, Tuple
from urllib.parse import quote

logger = logging.getLogger(__name__)

# Unchanged lines on each side of a hunk that feed its context hash
CONTEXT_LINES = 3


# ============================================================================
# ERRORS
# ============================================================================


class ProvenanceError(Exception):
    """Base class for all provenance pipeline failures"""


class SourceUnavailableError(ProvenanceError):
    """The history source could not be reached or the command failed"""

    def __init__(self, message: str, returncode: Optional[int] = None):
        super().__init__(message)
        self.returncode = returncode


class PayloadParseError(ProvenanceError):
    """A log, blame or diff payload could not be parsed"""


# ============================================================================
# DATA MODEL
# ============================================================================


class PathAction(str, Enum):
    ADD = "A"
    MODIFY = "M"
    DELETE = "D"
    REPLACE = "R"


@dataclass(frozen=True)
class ChangedPath:
    path: str
    action: PathAction
    copy_from_path: Optional[str] = None
    copy_from_revision: Optional[int] = None
    is_directory: bool = False


@dataclass(frozen=True)
class Commit:
    revision: int
    author: str
    timestamp: int
    message: str = ""
    changed_paths: Tuple[ChangedPath, ...] = ()

    @property
    def file_paths(self) -> List[ChangedPath]:
        return [cp for cp in self.changed_paths if not cp.is_directory]


@dataclass(frozen=True)
class BlameLine:
    line_number: int
    content: str
    revision: Optional[int]
    author: Optional[str]


@dataclass
class BlameSnapshot:
    """
    Per-line attribution of one file at one revision.
    An empty snapshot stands for a path that did not exist at that revision.
    """

    path: str
    revision: int
    lines: List[BlameLine] = field(default_factory=list)

    @property
    def by_revision(self) -> Counter:
        return Counter(line.revision for line in self.lines)

    @property
    def by_author(self) -> Counter:
        return Counter(line.author for line in self.lines)

    def __len__(self) -> int:
        return len(self.lines)


@dataclass(frozen=True)
class Hunk:
    old_start: int
    old_count: int
    new_start: int
    new_count: int
    context_hash: str = ""

    @property
    def line_delta(self) -> int:
        return self.new_count - self.old_count


@dataclass
class FileDiff:
    path: str
    added_lines: int = 0
    deleted_lines: int = 0
    hunks: List[Hunk] = field(default_factory=list)
    is_binary: bool = False
    added_line_hashes: List[str] = field(default_factory=list)
    deleted_line_hashes: List[str] = field(default_factory=list)


# ============================================================================
# PATH HELPERS
# ============================================================================


def normalize_path(path: Optional[str]) -> str:
    """Repository-relative, forward-slash path with no leading slash"""
    if not path:
        return ""
    path = path.replace("\\", "/").strip()
    path = posixpath.normpath(path).lstrip("/")
    return "" if path == "." else path


def is_under(path: str, directory: str) -> bool:
    return bool(directory) and path.startswith(directory.rstrip("/") + "/")


class PathFilter:
    """
    Include/exclude glob rules applied to commits and diffs before analysis.
    An empty include list admits every path.
    """

    def __init__(self, include: Sequence[str] = (), exclude: Sequence[str] = ()):
        self.include = [p for p in include if p]
        self.exclude = [p for p in exclude if p]

    def matches(self, path: str) -> bool:
        path = normalize_path(path)
        if self.include and not any(fnmatch(path, p) for p in self.include):
            return False
        return not any(fnmatch(path, p) for p in self.exclude)

    def apply(self, commit: Commit) -> Commit:
        if not self.include and not self.exclude:
            return commit
        kept = tuple(
            cp
            for cp in commit.changed_paths
            if cp.is_directory or self.matches(cp.path)
        )
        return replace(commit, changed_paths=kept)

    def filter_diffs(self, diffs: Dict[str, FileDiff]) -> Dict[str, FileDiff]:
        return {path: d for path, d in diffs.items() if self.matches(path)}


# ============================================================================
# PAYLOAD PARSING
# ============================================================================


def split_content_lines(text: Optional[str]) -> List[str]:
    """Split file content on LF only, the way blame numbers lines"""
    if not text:
        return []
    lines = text.split("\n")
    if lines[-1] == "":
        lines.pop()
    return lines


def line_hash(path: str, text: str) -> str:
    """Whitespace-normalised content hash scoped by file path"""
    normalized = " ".join(text.split())
    return hashlib.sha1(f"{path}\x00{normalized}".encode("utf-8")).hexdigest()


def _context_hash(leading: List[str], trailing: List[str]) -> str:
    parts = [" ".join(t.split()) for t in leading[-CONTEXT_LINES:]]
    parts.append("\x00")
    parts.extend(" ".join(t.split()) for t in trailing[:CONTEXT_LINES])
    return hashlib.sha1("\n".join(parts).encode("utf-8")).hexdigest()[:16]


_HUNK_HEADER = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@")


def parse_unified_diff(text: Optional[str]) -> Dict[str, FileDiff]:
    """
    Read an `svn diff` payload into per-file statistics and hunks.

    Property-change sections are skipped. Files Subversion refuses to
    display are flagged binary.
    """
    diffs: Dict[str, FileDiff] = {}
    if not text:
        return diffs

    current: Optional[FileDiff] = None
    in_properties = False
    header: Optional[Tuple[int, int, int, int]] = None
    old_left = new_left = 0
    body: List[Tuple[str, str]] = []

    def close_hunk():
        nonlocal header, body
        if header is None:
            return
        if old_left or new_left:
            raise PayloadParseError(f"Truncated hunk in {current.path}")
        changed = [i for i, (tag, _) in enumerate(body) if tag != " "]
        if changed:
            leading = [t for tag, t in body[: changed[0]]]
            trailing = [t for tag, t in body[changed[-1] + 1 :]]
        else:
            leading, trailing = [t for _, t in body], []
        current.hunks.append(Hunk(*header, _context_hash(leading, trailing)))
        header = None
        body = []

    for raw in text.split("\n"):
        line = raw.rstrip("\r")

        if header is not None and (old_left or new_left):
            tag, content = (line[:1], line[1:]) if line else (" ", "")
            if tag == "\\":
                continue
            if tag == "+":
                new_left -= 1
                current.added_lines += 1
                current.added_line_hashes.append(line_hash(current.path, content))
            elif tag == "-":
                old_left -= 1
                current.deleted_lines += 1
                current.deleted_line_hashes.append(line_hash(current.path, content))
            elif tag == " ":
                old_left -= 1
                new_left -= 1
            else:
                raise PayloadParseError(
                    f"Unexpected diff line in {current.path}: {line[:60]!r}"
                )
            if old_left < 0 or new_left < 0:
                raise PayloadParseError(f"Hunk overflows its header in {current.path}")
            body.append((tag, content))
            if not old_left and not new_left:
                close_hunk()
            continue

        if line.startswith("Index: "):
            close_hunk()
            path = normalize_path(line[len("Index: ") :])
            current = diffs.setdefault(path, FileDiff(path=path))
            in_properties = False
            continue
        if current is None:
            continue
        if line.startswith("Property changes on: "):
            close_hunk()
            in_properties = True
            continue
        if in_properties:
            continue
        if line.startswith("Cannot display: file marked as a binary type"):
            current.is_binary = True
            continue

        match = _HUNK_HEADER.match(line)
        if match:
            close_hunk()
            old_start, old_count, new_start, new_count = match.groups()
            header = (
                int(old_start),
                int(old_count) if old_count is not None else 1,
                int(new_start),
                int(new_count) if new_count is not None else 1,
            )
            old_left, new_left = header[1], header[3]
            if not old_left and not new_left:
                close_hunk()

    close_hunk()
    return diffs


def _parse_revision(value: Optional[str]) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except ValueError as e:
        raise PayloadParseError(f"Invalid revision number: {value!r}") from e


def parse_svn_blame(text: Optional[str]) -> List[Tuple[Optional[int], Optional[str]]]:
    """
    Parse `svn blame --xml` into (revision, author) per line.
    Lines Subversion cannot attribute have no <commit> element.
    """
    if not text or not text.strip():
        return []
    try:
        root = ET.fromstring(text)
    except ET.ParseError as e:
        raise PayloadParseError(f"Malformed blame payload: {e}") from e

    entries = []
    for entry in root.iter("entry"):
        commit = entry.find("commit")
        if commit is None:
            entries.append((None, None))
            continue
        author = commit.findtext("author")
        entries.append((_parse_revision(commit.get("revision")), author))
    return entries


def _parse_svn_date(value: Optional[str]) -> int:
    if not value:
        return 0
    try:
        dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError as e:
        raise PayloadParseError(f"Invalid commit date: {value!r}") from e
    return int(dt.timestamp())


def parse_svn_log(text: Optional[str]) -> List[Commit]:
    """Parse `svn log --xml -v` into commits ordered by revision"""
    if not text or not text.strip():
        return []
    try:
        root = ET.fromstring(text)
    except ET.ParseError as e:
        raise PayloadParseError(f"Malformed log payload: {e}") from e

    commits = []
    for entry in root.iter("logentry"):
        revision = _parse_revision(entry.get("revision"))
        if revision is None:
            raise PayloadParseError("Log entry without revision")

        changed = []
        for node in entry.iter("path"):
            action = node.get("action", "M")
            try:
                path_action = PathAction(action)
            except ValueError as e:
                raise PayloadParseError(
                    f"r{revision}: unknown path action {action!r}"
                ) from e
            copy_from = node.get("copyfrom-path")
            changed.append(
                ChangedPath(
                    path=normalize_path(node.text),
                    action=path_action,
                    copy_from_path=normalize_path(copy_from) if copy_from else None,
                    copy_from_revision=_parse_revision(node.get("copyfrom-rev")),
                    is_directory=node.get("kind") == "dir",
                )
            )

        commits.append(
            Commit(
                revision=revision,
                author=entry.findtext("author") or "",
                timestamp=_parse_svn_date(entry.findtext("date")),
                message=entry.findtext("msg") or "",
                changed_paths=tuple(changed),
            )
        )

    commits.sort(key=lambda c: c.revision)
    return commits


def build_snapshot(
    path: str,
    revision: int,
    blame_entries: List[Tuple[Optional[int], Optional[str]]],
    content: Optional[str],
) -> BlameSnapshot:
    """Zip blame attribution with file content into one snapshot"""
    texts = split_content_lines(content)
    if len(texts) != len(blame_entries):
        logger.warning(
            "%s@%d: blame has %d lines but content has %d",
            path,
            revision,
            len(blame_entries),
            len(texts),
        )
    lines = [
        BlameLine(
            line_number=i + 1,
            content=texts[i] if i < len(texts) else "",
            revision=rev,
            author=author,
        )
        for i, (rev, author) in enumerate(blame_entries)
    ]
    return BlameSnapshot(path=path, revision=revision, lines=lines)


# ============================================================================
# HISTORY SOURCE CONTRACT
# ============================================================================


class HistorySource(ABC):
    """
    Supplies revision metadata and raw payloads.

    Fetch methods return None when the path/revision does not exist; every
    other failure raises SourceUnavailableError.
    """

    name = "history"

    @abstractmethod
    def log(self, start: int, end: Optional[int]) -> List[Commit]:
        """Commits in [start, end] (end None: up to HEAD), ascending by revision"""

    @abstractmethod
    def diff(self, revision: int) -> Optional[str]:
        """Raw diff payload of one revision"""

    @abstractmethod
    def blame(self, path: str, revision: int) -> Optional[str]:
        """Raw blame payload of a file at a revision"""

    @abstractmethod
    def content(self, path: str, revision: int) -> Optional[str]:
        """Raw file content at a revision"""

    def parse_diff(self, text: Optional[str]) -> Dict[str, FileDiff]:
        return parse_unified_diff(text)

    def parse_blame(
        self, text: Optional[str]
    ) -> List[Tuple[Optional[int], Optional[str]]]:
        return parse_svn_blame(text)


# ============================================================================
# SUBVERSION ADAPTER
# ============================================================================

# Subversion error codes meaning "no such path at that revision"
NOT_FOUND_CODES = frozenset({"160013", "160016", "195012", "200009"})
_SVN_ERROR_CODE = re.compile(r"\b[EW](\d{6})\b")


class SvnHistorySource(HistorySource):
    """History source backed by the `svn` command line client"""

    name = "svn"

    def __init__(
        self,
        url: str,
        svn_binary: str = "svn",
        username: Optional[str] = None,
        password: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.url = url.rstrip("/")
        self.svn_binary = svn_binary
        self.username = username
        self.password = password
        self.timeout = timeout
        self._root_url: Optional[str] = None
        self._url_prefix: Optional[str] = None
        self._root_lock = threading.Lock()

    def _run(self, args: List[str]) -> Optional[str]:
        cmd = [self.svn_binary, "--non-interactive"]
        if self.username:
            cmd += ["--username", self.username]
        if self.password:
            cmd += ["--password", self.password]
        cmd += args
        logger.debug("Running: %s", " ".join(args))

        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise SourceUnavailableError(f"svn {args[0]} timed out") from e
        except OSError as e:
            raise SourceUnavailableError(f"Cannot run {self.svn_binary}: {e}") from e

        if result.returncode != 0:
            codes = set(_SVN_ERROR_CODE.findall(result.stderr))
            if codes & NOT_FOUND_CODES:
                logger.debug("Not found: %s (%s)", args[-1], ", ".join(sorted(codes)))
                return None
            raise SourceUnavailableError(
                f"svn {args[0]} failed: {result.stderr.strip()}", result.returncode
            )
        return result.stdout

    def _resolve_root(self):
        # Prefetch threads may race here; the prefix is published before the root
        if self._root_url is not None:
            return
        with self._root_lock:
            if self._root_url is None:
                self._fetch_root()

    def _fetch_root(self):
        text = self._run(["info", "--xml", self.url])
        if text is None:
            raise SourceUnavailableError(f"Repository not found: {self.url}")
        try:
            info = ET.fromstring(text)
        except ET.ParseError as e:
            raise PayloadParseError(f"Malformed info payload: {e}") from e
        root = info.findtext("entry/repository/root")
        url = info.findtext("entry/url") or self.url
        if not root:
            raise PayloadParseError("svn info did not report a repository root")
        root = root.rstrip("/")
        self._url_prefix = normalize_path(url[len(root) :])
        self._root_url = root

    def _target(self, path: str, revision: int) -> str:
        self._resolve_root()
        return f"{self._root_url}/{quote(normalize_path(path), safe='/')}@{revision}"

    def log(self, start: int, end: Optional[int]) -> List[Commit]:
        upper = "HEAD" if end is None else str(end)
        text = self._run(["log", "--xml", "-v", "-r", f"{start}:{upper}", self.url])
        return parse_svn_log(text)

    def diff(self, revision: int) -> Optional[str]:
        return self._run(["diff", "--internal-diff", "-c", str(revision), self.url])

    def parse_diff(self, text: Optional[str]) -> Dict[str, FileDiff]:
        # svn diff names files relative to the target URL
        self._resolve_root()
        diffs = {}
        for path, d in parse_unified_diff(text).items():
            full = normalize_path(f"{self._url_prefix}/{path}")
            d.path = full
            diffs[full] = d
        return diffs

    def blame(self, path: str, revision: int) -> Optional[str]:
        return self._run(["blame", "--xml", self._target(path, revision)])

    def content(self, path: str, revision: int) -> Optional[str]:
        return self._run(["cat", self._target(path, revision)])
