"""Comments, the per-target comment store, and the feedback document.

Targets are 1-based: ``{"row": r, "col": c}`` for CSV/TSV cells and
``{"file": i, "line": n}`` for diff and text documents, where ``file`` is
the 0-based index of the DiffFile (always 0 for text) and ``line`` is the
1-based position in that file's rendered lines. At most one comment lives
per target; saving again replaces it.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

import yaml
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator

from reviw.tools.documents import ReviewDocument

logger = logging.getLogger(__name__)

YAML_WIDTH = 120


class InvalidTarget(ValueError):
    """The target does not address anything in the document."""


# ---------------------------------------------------------------------------
# Models (Pydantic v2)
# ---------------------------------------------------------------------------

class TargetKey(BaseModel):
    """Address of a comment: a cell or a line."""

    model_config = ConfigDict(frozen=True)

    row: Optional[int] = Field(default=None, ge=1)
    col: Optional[int] = Field(default=None, ge=1)
    file: Optional[int] = Field(default=None, ge=0)
    line: Optional[int] = Field(default=None, ge=1)

    @model_validator(mode="before")
    @classmethod
    def default_file(cls, data: Any) -> Any:
        """A bare {"line": n} addresses file 0."""
        if isinstance(data, dict) and data.get("line") is not None and data.get("file") is None:
            data = {**data, "file": 0}
        return data

    @model_validator(mode="after")
    def one_form(self) -> "TargetKey":
        """Exactly one of row/col or file/line must be given, completely."""
        is_cell = self.row is not None or self.col is not None
        is_line = self.line is not None
        if is_cell and is_line:
            raise ValueError("target must be either row/col or file/line, not both")
        if is_cell and (self.row is None or self.col is None):
            raise ValueError("cell targets need both row and col")
        if is_cell and self.file is not None:
            raise ValueError("cell targets take no file index")
        if not is_cell and not is_line:
            raise ValueError("target needs row/col or line")
        return self

    @property
    def is_cell(self) -> bool:
        return self.row is not None

    def sort_key(self) -> tuple[int, int, int]:
        if self.is_cell:
            return (0, self.row, self.col)
        return (1, self.file, self.line)


class CommentIn(BaseModel):
    target: TargetKey = Field(validation_alias=AliasChoices("target", "targetKey"))
    text: str


class TargetIn(BaseModel):
    target: TargetKey = Field(validation_alias=AliasChoices("target", "targetKey"))


class ExitRequest(BaseModel):
    comments: list[CommentIn] = Field(default_factory=list)
    summary: Optional[str] = None
    reason: Optional[str] = None


@dataclass
class Comment:
    target: TargetKey
    text: str
    timestamp: str


# ---------------------------------------------------------------------------
# Target resolution
# ---------------------------------------------------------------------------

def resolve_target(document: ReviewDocument, target: TargetKey) -> dict[str, Any]:
    """Describe what ``target`` points at in ``document``.

    Returns:
        The location fields of a feedback entry (row/col/value, or
        path/line/old_line/new_line/value).

    Raises:
        InvalidTarget: If the target is the wrong kind for the document or
            out of range.
    """
    if document.is_tabular:
        if not target.is_cell:
            raise InvalidTarget(f"{document.mode} documents take row/col targets")
        if target.row > len(document.rows) or target.col > document.cols:
            raise InvalidTarget(f"cell ({target.row}, {target.col}) is outside the table")
        cells = document.rows[target.row - 1]
        value = cells[target.col - 1] if target.col <= len(cells) else ""
        return {"row": target.row, "col": target.col, "value": value}

    if target.is_cell:
        raise InvalidTarget(f"{document.mode} documents take line targets")

    if document.mode == "diff":
        if target.file >= len(document.files):
            raise InvalidTarget(f"diff has no file #{target.file}")
        diff_file = document.files[target.file]
        lines = diff_file.flat_lines()
        if target.line > len(lines):
            raise InvalidTarget(f"{diff_file.display_path} has no line {target.line}")
        entry = lines[target.line - 1]
        location: dict[str, Any] = {"path": diff_file.display_path, "line": target.line}
        if entry.old_line is not None:
            location["old_line"] = entry.old_line
        if entry.new_line is not None:
            location["new_line"] = entry.new_line
        location["value"] = entry.content
        return location

    if target.file != 0 or target.line > len(document.rows):
        raise InvalidTarget(f"line {target.line} is outside the document")
    return {"line": target.line, "value": document.rows[target.line - 1][0]}


# ---------------------------------------------------------------------------
# Comment store
# ---------------------------------------------------------------------------

class CommentStore:
    """Live comments keyed by target; one per target."""

    def __init__(self):
        self._comments: dict[TargetKey, Comment] = {}

    def __len__(self) -> int:
        return len(self._comments)

    def save(self, target: TargetKey, text: str) -> Optional[Comment]:
        """Store or replace the comment at ``target``. Blank text deletes it."""
        if not text.strip():
            self.delete(target)
            return None
        comment = Comment(target=target, text=text, timestamp=datetime.now(timezone.utc).isoformat())
        self._comments[target] = comment
        return comment

    def delete(self, target: TargetKey) -> bool:
        return self._comments.pop(target, None) is not None

    def merge(self, comments: list[CommentIn]) -> None:
        """Apply submitted comments in order; later ones win per target."""
        for c in comments:
            self.save(c.target, c.text)

    def all(self) -> list[Comment]:
        return sorted(self._comments.values(), key=lambda c: c.target.sort_key())

    def as_json(self) -> list[dict[str, Any]]:
        return [
            {
                "target": c.target.model_dump(exclude_none=True),
                "text": c.text,
                "timestamp": c.timestamp,
            }
            for c in self.all()
        ]


# ---------------------------------------------------------------------------
# Feedback document
# ---------------------------------------------------------------------------

def build_feedback(
    document: ReviewDocument,
    comments: list[Comment],
    summary: Optional[str] = None,
) -> dict[str, Any]:
    """Build the canonical feedback mapping for one document.

    Comments whose target no longer resolves (e.g. after a reload shortened
    the file) are kept with their raw target so reviewer input is never lost.
    The summary is stripped of surrounding whitespace, and a blank one is left
    out, so the YAML carries what the reviewer typed minus edge padding.
    """
    entries = []
    for c in comments:
        try:
            entry = resolve_target(document, c.target)
        except InvalidTarget as exc:
            logger.warning("comment target no longer resolves: %s", exc)
            entry = c.target.model_dump(exclude_none=True)
        entry["content"] = c.text
        entries.append(entry)

    feedback: dict[str, Any] = {
        "file": document.path,
        "mode": document.mode,
        "comments": entries,
    }
    if summary and summary.strip():
        feedback["summary"] = summary.strip()
    return feedback


def render_feedback(feedback: dict[str, Any]) -> str:
    """Render one feedback mapping as YAML."""
    return yaml.safe_dump(feedback, sort_keys=False, allow_unicode=True, width=YAML_WIDTH)


def render_results(results: list[dict[str, Any]]) -> str:
    """Render the final output: a single document, or ``files:`` for several."""
    if len(results) == 1:
        return render_feedback(results[0])
    return render_feedback({"files": results})
