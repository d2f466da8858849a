#!/usr/bin/env python3
"""
Blame Diff Matcher - reconcile a file's blame before and after a commit.

Stages, cheapest first:
1. common prefix/suffix on identity key (revision, author, content)
2. LCS over the interior on identity key
3. identity-key join over leftovers (moved lines)
4. LCS over leftovers on content only (reattributed lines)
5. whatever is left is killed (before side) or born (after side)

Identity matches always win over content matches: the goal is to keep a
line's attribution history, not to minimise edit distance.
"""

from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Callable, Hashable, List, Optional, Sequence, Tuple

from history_source import BlameLine

# Direction table codes for LCS backtracking
_DIAG, _UP, _LEFT = 1, 2, 3

Pair = Tuple[BlameLine, BlameLine]


@dataclass
class MatchResult:
    killed: List[BlameLine] = field(default_factory=list)
    born: List[BlameLine] = field(default_factory=list)
    matched: List[Pair] = field(default_factory=list)
    moved: List[Pair] = field(default_factory=list)
    reattributed: List[Pair] = field(default_factory=list)

    @property
    def unchanged(self) -> bool:
        return not (self.killed or self.born or self.moved or self.reattributed)


def normalize_author(author: Optional[str]) -> str:
    return (author or "").strip().lower()


def content_key(line: BlameLine) -> str:
    return line.content.rstrip("\r\n")


def identity_key(line: BlameLine) -> Tuple[Optional[int], str, str]:
    return (line.revision, normalize_author(line.author), content_key(line))


def lcs_pairs(a: Sequence[Hashable], b: Sequence[Hashable]) -> List[Tuple[int, int]]:
    """
    Longest common subsequence of two key sequences as (i, j) index pairs.

    Scores are kept in two rolling rows; only a one-byte direction per cell
    is retained for the backtrack.
    """
    n, m = len(a), len(b)
    if not n or not m:
        return []

    width = m + 1
    directions = bytearray((n + 1) * width)
    prev = [0] * width
    for i in range(1, n + 1):
        cur = [0] * width
        ai = a[i - 1]
        row = i * width
        for j in range(1, m + 1):
            if ai == b[j - 1]:
                cur[j] = prev[j - 1] + 1
                directions[row + j] = _DIAG
            elif prev[j] >= cur[j - 1]:
                cur[j] = prev[j]
                directions[row + j] = _UP
            else:
                cur[j] = cur[j - 1]
                directions[row + j] = _LEFT
        prev = cur

    pairs = []
    i, j = n, m
    while i and j:
        step = directions[i * width + j]
        if step == _DIAG:
            pairs.append((i - 1, j - 1))
            i -= 1
            j -= 1
        elif step == _UP:
            i -= 1
        else:
            j -= 1
    pairs.reverse()
    return pairs


def _lcs_over(
    prev_idx: List[int],
    cur_idx: List[int],
    previous: Sequence[BlameLine],
    current: Sequence[BlameLine],
    key: Callable[[BlameLine], Hashable],
) -> List[Tuple[int, int]]:
    """LCS restricted to the given indices, skipping keys absent on the other side"""
    prev_keys = {key(previous[i]) for i in prev_idx}
    cur_keys = {key(current[j]) for j in cur_idx}
    common = prev_keys & cur_keys
    if not common:
        return []
    a_idx = [i for i in prev_idx if key(previous[i]) in common]
    b_idx = [j for j in cur_idx if key(current[j]) in common]
    a = [key(previous[i]) for i in a_idx]
    b = [key(current[j]) for j in b_idx]
    return [(a_idx[i], b_idx[j]) for i, j in lcs_pairs(a, b)]


def compare_blame(
    previous: Sequence[BlameLine], current: Sequence[BlameLine]
) -> MatchResult:
    """Classify every line of two blame sequences as matched/moved/reattributed/killed/born"""
    result = MatchResult()
    n, m = len(previous), len(current)

    # 1. common prefix and suffix
    start = 0
    while start < n and start < m and identity_key(previous[start]) == identity_key(
        current[start]
    ):
        result.matched.append((previous[start], current[start]))
        start += 1

    end_prev, end_cur = n, m
    suffix = []
    while (
        end_prev > start
        and end_cur > start
        and identity_key(previous[end_prev - 1]) == identity_key(current[end_cur - 1])
    ):
        end_prev -= 1
        end_cur -= 1
        suffix.append((previous[end_prev], current[end_cur]))

    prev_left = list(range(start, end_prev))
    cur_left = list(range(start, end_cur))

    # 2. identity LCS over the interior
    if prev_left and cur_left:
        pairs = _lcs_over(prev_left, cur_left, previous, current, identity_key)
        result.matched.extend((previous[i], current[j]) for i, j in pairs)
        taken_prev = {i for i, _ in pairs}
        taken_cur = {j for _, j in pairs}
        prev_left = [i for i in prev_left if i not in taken_prev]
        cur_left = [j for j in cur_left if j not in taken_cur]
    result.matched.extend(reversed(suffix))

    # 3. identity join: same line, new position
    if prev_left and cur_left:
        available = defaultdict(deque)
        for j in cur_left:
            available[identity_key(current[j])].append(j)
        taken_cur = set()
        still_prev = []
        for i in prev_left:
            slots = available.get(identity_key(previous[i]))
            if slots:
                j = slots.popleft()
                taken_cur.add(j)
                result.moved.append((previous[i], current[j]))
            else:
                still_prev.append(i)
        prev_left = still_prev
        cur_left = [j for j in cur_left if j not in taken_cur]

    # 4. content-only LCS: same text, different attribution
    if prev_left and cur_left:
        pairs = _lcs_over(prev_left, cur_left, previous, current, content_key)
        result.reattributed.extend((previous[i], current[j]) for i, j in pairs)
        taken_prev = {i for i, _ in pairs}
        taken_cur = {j for _, j in pairs}
        prev_left = [i for i in prev_left if i not in taken_prev]
        cur_left = [j for j in cur_left if j not in taken_cur]

    # 5. leftovers
    result.killed = [previous[i] for i in prev_left]
    result.born = [current[j] for j in cur_left]
    return result
