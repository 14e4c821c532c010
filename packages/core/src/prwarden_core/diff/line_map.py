"""Unified-diff line index and commentable-line resolution.

GitHub only accepts an anchored review comment on a line that appears on the
new side of the pull request diff. The model reviewing the change does not
always pick such a line, so every finding goes through ``resolve_line``
before it is posted: an exact hit is kept, a near miss is moved to the closest
added line, anything else becomes a general remark in the summary comment.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

DEFAULT_WINDOW = 10

_HUNK_HEADER_RE = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@")


class LineKind(Enum):
    ADDED = "added"
    DELETED = "deleted"
    CONTEXT = "context"


@dataclass(frozen=True)
class DiffLine:
    kind: LineKind
    content: str
    old_line: int | None = None
    new_line: int | None = None


@dataclass(frozen=True)
class Hunk:
    old_start: int
    new_start: int
    lines: tuple[DiffLine, ...] = ()


@dataclass(frozen=True)
class DiffLineIndex:
    commentable_lines: frozenset[int] = frozenset()
    hunks: tuple[Hunk, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.commentable_lines


def build_index(patch: str | None) -> DiffLineIndex:
    """Parse a unified-diff patch into a DiffLineIndex.

    Content lines that arrive before any usable ``@@`` header have no counters
    to advance and are skipped. Truncated patches therefore produce a partial
    index instead of an error.
    """
    if not patch:
        return DiffLineIndex()

    hunks: list[Hunk] = []
    commentable: set[int] = set()
    current: list[DiffLine] | None = None
    old_start = new_start = 0
    old_line = new_line = 0

    def close() -> None:
        if current is not None:
            hunks.append(Hunk(old_start=old_start, new_start=new_start, lines=tuple(current)))

    for line in patch.splitlines():
        if line.startswith("@@"):
            close()
            match = _HUNK_HEADER_RE.match(line)
            if match is None:
                current = None
                continue
            old_start, new_start = int(match.group(1)), int(match.group(3))
            old_line, new_line = old_start - 1, new_start - 1
            current = []
            continue

        if line.startswith("diff --git"):
            close()
            current = None
            continue

        if current is None:
            continue

        if line.startswith("+"):
            new_line += 1
            current.append(DiffLine(LineKind.ADDED, line[1:], new_line=new_line))
            commentable.add(new_line)
        elif line.startswith("-"):
            old_line += 1
            current.append(DiffLine(LineKind.DELETED, line[1:], old_line=old_line))
        elif line.startswith(" ") or line == "":
            # Some tools strip the leading space from blank context lines.
            old_line += 1
            new_line += 1
            current.append(DiffLine(LineKind.CONTEXT, line[1:], old_line=old_line, new_line=new_line))
        # "\ No newline at end of file" and truncation markers carry no line.

    close()
    return DiffLineIndex(commentable_lines=frozenset(commentable), hunks=tuple(hunks))


def resolve_line(
    index: DiffLineIndex,
    target_line: int,
    window: int = DEFAULT_WINDOW,
    prefer_after: bool = True,
) -> int | None:
    """Return the commentable line to use for ``target_line``, or None.

    An exact match wins. Otherwise the closest commentable line no more than
    ``window`` lines away is chosen; on a tie the line after the target wins
    unless ``prefer_after`` is False.
    """
    if target_line < 1 or not index.commentable_lines:
        return None
    if target_line in index.commentable_lines:
        return target_line

    best: tuple[int, int, int] | None = None
    for candidate in index.commentable_lines:
        distance = abs(candidate - target_line)
        if distance > window:
            continue
        after = candidate > target_line
        rank = (distance, 0 if after == prefer_after else 1, candidate)
        if best is None or rank < best:
            best = rank
    return best[2] if best is not None else None


def line_content(index: DiffLineIndex, target_line: int) -> str:
    """Return the source content of a specific new-file line number from the index."""
    for hunk in index.hunks:
        for line in hunk.lines:
            if line.new_line == target_line:
                return line.content
    return ""
