"""Unified diff parsing, fuzzy application and creation."""

from __future__ import annotations

import difflib
import re
from dataclasses import dataclass, field

NO_NEWLINE_MARKER = "\\ No newline at end of file"

_HUNK_RE = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@")


class PatchApplyError(ValueError):
    """Raised when a patch cannot be parsed or does not match the content."""


@dataclass
class Hunk:
    old_start: int
    new_start: int
    lines: list[str] = field(default_factory=list)  # each line keeps its " ", "-" or "+" prefix
    old_no_eol: bool = False
    new_no_eol: bool = False

    @property
    def old_count(self) -> int:
        return sum(1 for line in self.lines if line[0] in " -")

    @property
    def new_count(self) -> int:
        return sum(1 for line in self.lines if line[0] in " +")

    def header(self) -> str:
        return f"@@ -{self.old_start},{self.old_count} +{self.new_start},{self.new_count} @@"


def parse_patch(text: str) -> list[Hunk]:
    """Parse a single-file unified diff into hunks.

    File headers are skipped and the line counts in ``@@`` headers are
    ignored in favour of the hunk bodies, which models often miscount.
    Blank lines inside a hunk are read as blank context lines.
    """
    lines = text.replace("\r\n", "\n").split("\n")
    hunks: list[Hunk] = []
    current: Hunk | None = None
    pending_blank = 0

    for index, line in enumerate(lines):
        match = _HUNK_RE.match(line)
        if match:
            current = Hunk(old_start=int(match.group(1)), new_start=int(match.group(3)))
            hunks.append(current)
            pending_blank = 0
            continue
        if current is None:
            continue
        if line.startswith(("diff ", "Index: ", "====")) or (
            line.startswith("--- ") and index + 1 < len(lines) and lines[index + 1].startswith("+++ ")
        ):
            current = None
            continue
        if line == "":
            pending_blank += 1
            continue
        if line.startswith("\\"):
            last = current.lines[-1][0] if current.lines else " "
            if last in " -":
                current.old_no_eol = True
            if last in " +":
                current.new_no_eol = True
            continue
        if line[0] not in " -+":
            raise PatchApplyError(f"Unknown line {index + 1} in patch: {line!r}")
        current.lines.extend([" "] * pending_blank)
        pending_blank = 0
        current.lines.append(line)

    return [hunk for hunk in hunks if hunk.lines]


def _split(content: str) -> tuple[list[str], bool, str]:
    eol = "\r\n" if "\r\n" in content else "\n"
    normalized = content.replace("\r\n", "\n")
    if not normalized:
        return [], False, eol
    trailing = normalized.endswith("\n")
    lines = normalized.split("\n")
    if trailing:
        lines.pop()
    return lines, trailing, eol


def _mismatches(lines: list[str], hunk: Hunk, position: int, limit: int) -> int:
    misses = 0
    index = position
    for line in hunk.lines:
        if line[0] == "+":
            continue
        if lines[index] != line[1:]:
            misses += 1
            if misses > limit:
                return misses
        index += 1
    return misses


def _scan(lines: list[str], hunk: Hunk, expected: int, limit: int, min_line: int, max_line: int) -> int | None:
    distance = 0
    while True:
        below = expected + distance
        above = expected - distance
        if below > max_line and above < min_line:
            return None
        for candidate in (below, above) if distance else (below,):
            if min_line <= candidate <= max_line:
                if _mismatches(lines, hunk, candidate, limit) <= limit:
                    return candidate
        distance += 1


def _find_position(lines: list[str], hunk: Hunk, expected: int, fuzz_factor: int, min_line: int) -> int | None:
    """Search outward from ``expected`` for a position the hunk fits.

    An exact fit anywhere in the window wins over a fuzzy one. At least one
    context or removed line must match for a fuzzy fit to count.
    """
    old_count = hunk.old_count
    max_line = len(lines) - old_count
    if max_line < min_line:
        return None
    expected = min(max(expected, min_line), max_line)
    position = _scan(lines, hunk, expected, 0, min_line, max_line)
    limit = min(fuzz_factor, old_count - 1)
    if position is None and limit > 0:
        position = _scan(lines, hunk, expected, limit, min_line, max_line)
    return position


def apply_patch(content: str, patch: str | list[Hunk], fuzz_factor: int = 0) -> str:
    """Apply a unified diff to ``content`` and return the new content.

    ``fuzz_factor`` is how many context or removed lines per hunk may differ
    from the file. Context lines keep the file's text. Raises
    ``PatchApplyError`` when a hunk fits nowhere.
    """
    hunks = parse_patch(patch) if isinstance(patch, str) else patch
    if not hunks:
        raise PatchApplyError("Patch contains no hunks")

    lines, trailing, eol = _split(content)
    offset = 0
    min_line = 0

    for hunk in hunks:
        old_count = hunk.old_count
        base = hunk.old_start if old_count == 0 else hunk.old_start - 1
        position = _find_position(lines, hunk, base + offset, fuzz_factor, min_line)
        if position is None:
            raise PatchApplyError(f"Hunk {hunk.header()} does not match the current content")

        replacement: list[str] = []
        index = position
        for line in hunk.lines:
            if line[0] == " ":
                replacement.append(lines[index])
                index += 1
            elif line[0] == "-":
                index += 1
            else:
                replacement.append(line[1:])

        touches_end = position + old_count == len(lines)
        was_empty = not lines
        lines[position : position + old_count] = replacement

        if was_empty:
            trailing = not hunk.new_no_eol
        elif touches_end:
            if hunk.new_no_eol:
                trailing = False
            elif hunk.old_no_eol:
                trailing = True

        offset = position - base + len(replacement) - old_count
        min_line = position + len(replacement)

    if not lines:
        return ""
    return eol.join(lines) + (eol if trailing else "")


_LINE_RE = re.compile(r"[^\n]*\n|[^\n]+")


def _keep_ends(text: str) -> list[str]:
    return _LINE_RE.findall(text)


def create_patch(file_name: str, old: str, new: str, context: int = 3) -> str:
    """Build a unified diff turning ``old`` into ``new``."""
    out: list[str] = []
    for line in difflib.unified_diff(
        _keep_ends(old),
        _keep_ends(new),
        fromfile=file_name,
        tofile=file_name,
        n=context,
    ):
        if line.endswith("\n"):
            out.append(line)
        else:
            out.append(line + "\n")
            out.append(NO_NEWLINE_MARKER + "\n")
    return "".join(out)


def reverse_hunks(hunks: list[Hunk]) -> list[Hunk]:
    """Invert hunks so applying them undoes the original patch."""
    swap = {"+": "-", "-": "+", " ": " "}
    return [
        Hunk(
            old_start=hunk.new_start,
            new_start=hunk.old_start,
            lines=[swap[line[0]] + line[1:] for line in hunk.lines],
            old_no_eol=hunk.new_no_eol,
            new_no_eol=hunk.old_no_eol,
        )
        for hunk in hunks
    ]
