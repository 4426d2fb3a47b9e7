"""Load a review target into an in-memory document.

The mode is picked from the file extension (stdin is always a diff), the
bytes are decoded, and the matching parser builds rows or diff files. The
resulting ReviewDocument is what a server instance holds and serves.
"""

import codecs
import logging
import sys
from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, Field

from reviw.tools.csv_parser import delimiter_for_path, parse_csv
from reviw.tools.diff_parser import DiffFile, parse_diff

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

STDIN_MARKER = "-"

Mode = Literal["csv", "tsv", "diff", "text", "markdown"]

MODE_BY_EXTENSION: dict[str, Mode] = {
    ".csv": "csv",
    ".tsv": "tsv",
    ".diff": "diff",
    ".patch": "diff",
    ".md": "markdown",
    ".markdown": "markdown",
}

TABULAR_MODES = ("csv", "tsv")

ENCODING_ALIASES = {
    "utf-8": "utf-8",
    "utf8": "utf-8",
    "shift_jis": "shift_jis",
    "sjis": "shift_jis",
    "windows-31j": "cp932",
    "cp932": "cp932",
    "euc-jp": "euc_jp",
    "iso-8859-1": "latin-1",
    "latin1": "latin-1",
}


class ReviewDocument(BaseModel):
    """A parsed review target.

    Tabular and line-based documents fill ``rows``; diffs fill ``files``.
    """

    path: str
    title: str
    mode: Mode
    rows: list[list[str]] = Field(default_factory=list)
    files: list[DiffFile] = Field(default_factory=list)
    cols: int = 1

    @property
    def is_tabular(self) -> bool:
        return self.mode in TABULAR_MODES


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def mode_for_path(path: str) -> Mode:
    """Return the document mode implied by a target path."""
    if path == STDIN_MARKER:
        return "diff"
    return MODE_BY_EXTENSION.get(Path(path).suffix.lower(), "text")


def normalize_encoding(name: Optional[str]) -> Optional[str]:
    """Map a user-supplied encoding name to a Python codec name, or None."""
    if not name:
        return None
    key = name.strip().lower()
    if key in ENCODING_ALIASES:
        return ENCODING_ALIASES[key]
    try:
        return codecs.lookup(key).name
    except LookupError:
        logger.warning("unknown encoding %r, falling back to utf-8", name)
        return None


def decode_bytes(raw: bytes, encoding: Optional[str] = None) -> str:
    """Decode file bytes with the requested encoding, defaulting to UTF-8.

    A UTF-8 BOM is dropped. Undecodable input is decoded as UTF-8 with
    replacement characters rather than failing the load.
    """
    codec = normalize_encoding(encoding) or "utf-8-sig"
    try:
        return raw.decode(codec)
    except UnicodeDecodeError as exc:
        logger.warning("decode failed (%s): %s, falling back to utf-8", codec, exc)
        return raw.decode("utf-8", errors="replace")


def _split_lines(text: str) -> list[str]:
    lines = text.replace("\r\n", "\n").split("\n")
    if len(lines) > 1 and lines[-1] == "":
        lines.pop()
    return lines


def build_document(path: str, text: str, mode: Optional[Mode] = None) -> ReviewDocument:
    """Parse decoded text into a ReviewDocument for the given target path."""
    mode = mode or mode_for_path(path)
    title = "stdin.diff" if path == STDIN_MARKER else Path(path).name

    if mode in TABULAR_MODES:
        delimiter = "\t" if mode == "tsv" else delimiter_for_path(path)
        rows = parse_csv(text, delimiter)
        cols = max((len(r) for r in rows), default=0)
        return ReviewDocument(path=path, title=title, mode=mode, rows=rows, cols=max(1, cols))

    if mode == "diff":
        return ReviewDocument(path=path, title=title, mode=mode, files=parse_diff(text))

    rows = [[line] for line in _split_lines(text)]
    return ReviewDocument(path=path, title=title, mode=mode, rows=rows, cols=1)


def load_document(path: str, encoding: Optional[str] = None) -> ReviewDocument:
    """Read and parse a review target.

    Args:
        path: Absolute file path, or "-" to read a diff from stdin.
        encoding: Optional encoding name; UTF-8 when omitted.

    Returns:
        The parsed ReviewDocument.

    Raises:
        OSError: If the file cannot be read.
    """
    if path == STDIN_MARKER:
        raw = sys.stdin.buffer.read()
    else:
        raw = Path(path).read_bytes()
    return build_document(path, decode_bytes(raw, encoding))
