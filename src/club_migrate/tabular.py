"""club_migrate.tabular

Delimited-text decoding for legacy export files.

Exports from spreadsheet tools are messy: quoted cells carry delimiters,
doubled quotes and hard line breaks; line endings vary; trailing blank
lines are common.  The decoder here leans on the csv module's lenient
(non-strict) dialect and never raises on malformed quoting.  The only
failure mode is an unreadable file.
"""

from __future__ import annotations

import csv
import io
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Sequence

# Physical row 1 is the header; the first data row a user sees is row 2.
FIRST_DATA_ROW = 2


@dataclass
class SourceRow:
    """One decoded data row, keyed by trimmed header name in column order."""

    row_number: int
    values: dict[str, str] = field(default_factory=dict)

    def get(self, column: str, default: str = "") -> str:
        return self.values.get(column, default)


def _is_blank(cells: Sequence[str]) -> bool:
    return not cells or (len(cells) == 1 and not cells[0].strip())


def decode_rows(text: str, delimiter: str = ",") -> list[SourceRow]:
    """Decode raw delimited text into SourceRows.

    The header row is consumed, not emitted.  Blank lines are dropped.
    Short rows are padded with empty strings; surplus cells are ignored.
    Headers and cells are trimmed, quoted or not, so encode_rows output
    decodes back unchanged only for cells without outer whitespace.
    """
    if text.startswith("\ufeff"):
        text = text[1:]
    reader = csv.reader(
        io.StringIO(text, newline=""),
        delimiter=delimiter,
        quotechar='"',
        doublequote=True,
        skipinitialspace=False,
        strict=False,
    )

    headers: list[str] | None = None
    rows: list[SourceRow] = []
    for cells in reader:
        if _is_blank(cells):
            continue
        if headers is None:
            headers = [h.strip() for h in cells]
            continue
        values = {
            header: (cells[idx].strip() if idx < len(cells) else "")
            for idx, header in enumerate(headers)
        }
        rows.append(SourceRow(row_number=FIRST_DATA_ROW + len(rows), values=values))
    return rows


def load_rows(path: Path, delimiter: str = ",") -> list[SourceRow]:
    """Read and decode a file.  Raises OSError when the file cannot be read."""
    text = Path(path).read_text(encoding="utf-8-sig", errors="replace")
    return decode_rows(text, delimiter=delimiter)


def encode_rows(
    headers: Sequence[str],
    rows: Iterable[dict[str, str]],
    delimiter: str = ",",
) -> str:
    """Encode dict rows as delimited text with a header line.

    Cells are quoted only when needed (delimiter, quote or line break).
    """
    buf = io.StringIO(newline="")
    writer = csv.DictWriter(
        buf,
        fieldnames=list(headers),
        delimiter=delimiter,
        quoting=csv.QUOTE_MINIMAL,
        lineterminator="\r\n",
        extrasaction="ignore",
    )
    writer.writeheader()
    for row in rows:
        writer.writerow(row)
    return buf.getvalue()
