"""Unified diff parser.

Turns git-style (and plain ``diff -u``) output into a list of DiffFile
records with hunks. Parsing never aborts: unknown header lines are ignored,
unknown prefixes inside a hunk become context, and a broken file block does
not stop the blocks after it.
"""

import re
from typing import Literal, Optional

from pydantic import BaseModel, Field

# ---------------------------------------------------------------------------
# Models (Pydantic v2)
# ---------------------------------------------------------------------------

LineType = Literal["add", "del", "ctx"]


class DiffLine(BaseModel):
    """One line of a hunk, with its prefix character removed."""

    type: LineType
    content: str
    old_line: Optional[int] = Field(default=None, description="Line number in the old file")
    new_line: Optional[int] = Field(default=None, description="Line number in the new file")


class Hunk(BaseModel):
    old_start: int
    new_start: int
    context: str = ""
    lines: list[DiffLine] = Field(default_factory=list)


class DiffFile(BaseModel):
    """A single file section of a diff. is_binary implies no hunks."""

    old_path: Optional[str] = None
    new_path: Optional[str] = None
    is_new: bool = False
    is_deleted: bool = False
    is_binary: bool = False
    hunks: list[Hunk] = Field(default_factory=list)

    @property
    def display_path(self) -> str:
        return self.new_path or self.old_path or ""

    def flat_lines(self) -> list[DiffLine]:
        """All hunk lines in order; position i is display line i + 1."""
        return [line for hunk in self.hunks for line in hunk.lines]


# ---------------------------------------------------------------------------
# Line patterns
# ---------------------------------------------------------------------------

DEV_NULL = "/dev/null"

_RE_HUNK = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@(.*)$")
_RE_BINARY = re.compile(r"^Binary files (.+) and (.+) differ$")

_PREFIX_TYPES: dict[str, LineType] = {" ": "ctx", "-": "del", "+": "add"}


def _strip_path(raw: str, prefix: str) -> Optional[str]:
    """Normalise a path from a ---/+++/Binary line; /dev/null means absent."""
    path = raw.split("\t", 1)[0].rstrip()
    if len(path) >= 2 and path[0] == '"' and path[-1] == '"':
        path = path[1:-1]
    if path == DEV_NULL:
        return None
    if path.startswith(prefix):
        path = path[len(prefix):]
    return path or None


def _split_git_header(rest: str) -> tuple[Optional[str], Optional[str]]:
    """Split "a/<old> b/<new>" where either path may contain spaces.

    For the usual unrenamed case both halves are equal, which pins the split
    point exactly; otherwise fall back to the first " b/" separator.
    """
    if not rest.startswith("a/"):
        return None, None
    n = len(rest)
    if (n - 5) % 2 == 0 and n > 5:
        half = (n - 5) // 2
        old = rest[2:2 + half]
        sep = rest[2 + half:2 + half + 3]
        new = rest[2 + half + 3:]
        if sep == " b/" and old == new:
            return old, new
    idx = rest.find(" b/")
    if idx == -1:
        return rest[2:] or None, None
    return rest[2:idx] or None, rest[idx + 3:] or None


class _FileBuilder:
    """Mutable state for the file section being parsed."""

    def __init__(self, old_path: Optional[str] = None, new_path: Optional[str] = None):
        self.file = DiffFile(old_path=old_path, new_path=new_path)
        self.hunk: Optional[Hunk] = None
        self.old_remaining = 0
        self.new_remaining = 0
        self.old_no = 0
        self.new_no = 0
        self.saw_old_marker = False
        self.saw_new_marker = False

    @property
    def in_hunk(self) -> bool:
        return self.hunk is not None and (self.old_remaining > 0 or self.new_remaining > 0)

    def open_hunk(self, match: re.Match) -> None:
        old_start = int(match.group(1))
        new_start = int(match.group(3))
        self.hunk = Hunk(old_start=old_start, new_start=new_start, context=match.group(5))
        self.file.hunks.append(self.hunk)
        self.old_remaining = int(match.group(2)) if match.group(2) is not None else 1
        self.new_remaining = int(match.group(4)) if match.group(4) is not None else 1
        self.old_no = old_start
        self.new_no = new_start

    def add_line(self, line: str) -> None:
        line_type = _PREFIX_TYPES.get(line[:1])
        content = line[1:] if line_type is not None else line
        if line_type is None:
            line_type = "ctx"

        entry = DiffLine(type=line_type, content=content)
        if line_type in ("ctx", "del"):
            entry.old_line = self.old_no
            self.old_no += 1
            self.old_remaining -= 1
        if line_type in ("ctx", "add"):
            entry.new_line = self.new_no
            self.new_no += 1
            self.new_remaining -= 1
        self.hunk.lines.append(entry)

    def finish(self) -> DiffFile:
        f = self.file
        if f.is_binary:
            f.hunks = []
        if f.is_new:
            f.old_path = None
        if f.is_deleted:
            f.new_path = None
        if f.old_path is None and f.new_path is not None:
            f.is_new = True
        if f.new_path is None and f.old_path is not None:
            f.is_deleted = True
        return f


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

def parse_diff(text: str) -> list[DiffFile]:
    """Parse unified diff text into DiffFile records.

    Args:
        text: Full diff output, possibly covering many files.

    Returns:
        DiffFile list in input order; empty for empty input.
    """
    files: list[DiffFile] = []
    current: Optional[_FileBuilder] = None

    def close_current() -> None:
        nonlocal current
        if current is not None:
            files.append(current.finish())
            current = None

    lines = text.split("\n")
    if lines and lines[-1] == "":
        lines.pop()

    for raw in lines:
        line = raw[:-1] if raw.endswith("\r") else raw

        if line.startswith("diff --git "):
            close_current()
            old, new = _split_git_header(line[len("diff --git "):])
            current = _FileBuilder(old, new)
            continue

        hunk_match = _RE_HUNK.match(line) if line.startswith("@@ ") else None

        if current is not None and current.in_hunk and hunk_match is None:
            if line.startswith("\\"):
                # "\ No newline at end of file"
                continue
            current.add_line(line)
            continue

        if hunk_match is not None:
            if current is None:
                current = _FileBuilder()
            current.open_hunk(hunk_match)
            continue

        if line.startswith("--- "):
            if current is None or current.file.hunks or current.saw_old_marker:
                # plain "diff -u" output has no "diff --git" boundary lines
                close_current()
                current = _FileBuilder()
            current.file.old_path = _strip_path(line[4:], "a/")
            current.saw_old_marker = True
            continue

        if current is None:
            continue

        if line.startswith("+++ "):
            current.file.new_path = _strip_path(line[4:], "b/")
            current.saw_new_marker = True
        elif line.startswith("new file mode"):
            current.file.is_new = True
        elif line.startswith("deleted file mode"):
            current.file.is_deleted = True
        elif line.startswith("rename from "):
            current.file.old_path = line[len("rename from "):]
        elif line.startswith("rename to "):
            current.file.new_path = line[len("rename to "):]
        elif line.startswith("GIT binary patch"):
            current.file.is_binary = True
        else:
            binary = _RE_BINARY.match(line)
            if binary:
                current.file.is_binary = True
                if not current.saw_old_marker:
                    current.file.old_path = _strip_path(binary.group(1), "a/")
                if not current.saw_new_marker:
                    current.file.new_path = _strip_path(binary.group(2), "b/")

    close_current()
    return files
