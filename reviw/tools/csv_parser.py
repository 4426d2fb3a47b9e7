"""CSV/TSV parsing with RFC4180-style quoting.

Quoted fields may hold the delimiter, raw newlines and CRLF sequences; a
doubled quote inside a quoted field is one literal quote. Rows may be ragged.
Nothing here raises on malformed content: an unterminated quote simply runs
to end of input.
"""

from pathlib import Path

TSV_EXTENSIONS = {".tsv"}


def delimiter_for_path(path: str | Path) -> str:
    """Return the field delimiter implied by a file's extension."""
    return "\t" if Path(path).suffix.lower() in TSV_EXTENSIONS else ","


def parse_csv(text: str, delimiter: str = ",") -> list[list[str]]:
    """Parse delimited text into a list of rows.

    Args:
        text: Decoded file contents.
        delimiter: Single-character field separator ("," or "\\t").

    Returns:
        Rows in file order, each a list of field strings. Empty input gives
        an empty list, and a trailing newline adds no empty final row.
    """
    if len(delimiter) != 1:
        raise ValueError(f"delimiter must be a single character, got {delimiter!r}")

    rows: list[list[str]] = []
    row: list[str] = []
    field: list[str] = []
    in_quotes = False
    i = 0
    n = len(text)

    while i < n:
        ch = text[i]
        if in_quotes:
            if ch == '"':
                if i + 1 < n and text[i + 1] == '"':
                    field.append('"')
                    i += 1
                else:
                    in_quotes = False
            else:
                field.append(ch)
        elif ch == '"':
            in_quotes = True
        elif ch == delimiter:
            row.append("".join(field))
            field = []
        elif ch == "\n":
            row.append("".join(field))
            rows.append(row)
            row = []
            field = []
        elif ch == "\r":
            # CR outside quotes only ever belongs to a CRLF row break
            pass
        else:
            field.append(ch)
        i += 1

    row.append("".join(field))
    rows.append(row)

    if rows and all(value == "" for value in rows[-1]):
        rows.pop()

    return rows


def _quote_field(value: str, delimiter: str) -> str:
    if any(c in value for c in (delimiter, '"', "\n", "\r")):
        return '"' + value.replace('"', '""') + '"'
    return value


def serialize_csv(rows: list[list[str]], delimiter: str = ",") -> str:
    """Inverse of parse_csv for rectangular tables.

    Fields are quoted only when they contain the delimiter, a quote or a line
    break. Rows are joined with "\\n" and the output ends with a newline.
    """
    if not rows:
        return ""
    lines = [delimiter.join(_quote_field(v, delimiter) for v in row) for row in rows]
    return "\n".join(lines) + "\n"
