"""Talkgroup CSV parsing and serialization (trunk-recorder format).

Files are written as::

    Decimal,Hex,Alpha Tag,Mode,Description,Tag,Category
    "100","64","DISPATCH","D","County Dispatch","Law Dispatch","Sheriff"

Hand-edited and RadioReference-exported files vary: comment lines, preamble
rows before the header, different capitalization ("alphaTag", "ALPHA TAG"),
extra columns and reordered columns. The header row is therefore located by
looking for the decimal and alpha-tag columns rather than assumed to be row 0.
"""

from __future__ import annotations

import csv
import io
import logging
from dataclasses import dataclass
from typing import Iterable

from radiomonitor.events import is_decimal_id

logger = logging.getLogger(__name__)

HEADER = ["Decimal", "Hex", "Alpha Tag", "Mode", "Description", "Tag", "Category"]

# Normalized header token -> field name
_COLUMN_NAMES = {
    "decimal": "decimal",
    "dec": "decimal",
    "hex": "hex",
    "alphatag": "alpha_tag",
    "mode": "mode",
    "description": "description",
    "tag": "tag",
    "category": "category",
}


@dataclass
class TalkgroupRow:
    """One parsed data row, before it becomes a registry record."""

    decimal: str
    hex: str = ""
    alpha_tag: str = ""
    mode: str = ""
    description: str = ""
    tag: str = ""
    category: str = ""


class HeaderNotFoundError(ValueError):
    """No row in the file looks like a talkgroup header."""


def normalize_column(name: str) -> str:
    """Reduce a header cell to a comparable token ("Alpha Tag" -> "alphatag")."""
    return "".join(ch for ch in name.strip().lower() if ch.isalnum())


def find_header(rows: list[list[str]]) -> tuple[int, dict[str, int]]:
    """Locate the header row and map field names to column indices.

    Returns:
        (header_row_index, {field_name: column_index})

    Raises:
        HeaderNotFoundError: no row has both a decimal and an alpha tag column
    """
    for index, row in enumerate(rows):
        tokens = [normalize_column(cell) for cell in row]
        if "decimal" in tokens and "alphatag" in tokens:
            columns: dict[str, int] = {}
            for col, token in enumerate(tokens):
                field_name = _COLUMN_NAMES.get(token)
                if field_name is not None and field_name not in columns:
                    columns[field_name] = col
            return index, columns
    raise HeaderNotFoundError("no header with 'Decimal' and 'Alpha Tag' columns")


def _meaningful_rows(text: str) -> list[list[str]]:
    # Parsed as a whole so quoted fields may span lines; blank and comment
    # rows are dropped afterwards
    rows = []
    for row in csv.reader(io.StringIO(text, newline="")):
        if not any(cell.strip() for cell in row):
            continue
        if row[0].lstrip().startswith("#"):
            continue
        rows.append(row)
    return rows


def parse_talkgroups(text: str, source: str = "<string>") -> list[TalkgroupRow]:
    """Parse CSV text into rows.

    Rows without a numeric decimal id are skipped individually.

    Raises:
        HeaderNotFoundError: the text has no recognizable header
    """
    rows = _meaningful_rows(text)
    header_index, columns = find_header(rows)

    def cell(row: list[str], name: str) -> str:
        idx = columns.get(name)
        if idx is not None and idx < len(row):
            return row[idx].strip()
        return ""

    parsed: list[TalkgroupRow] = []
    for line_no, row in enumerate(rows[header_index + 1 :], start=header_index + 2):
        decimal = cell(row, "decimal")
        if not is_decimal_id(decimal):
            logger.debug(f"{source}: skipping row {line_no} without numeric decimal: {row!r}")
            continue
        parsed.append(
            TalkgroupRow(
                decimal=str(int(decimal)),
                hex=cell(row, "hex"),
                alpha_tag=cell(row, "alpha_tag"),
                mode=cell(row, "mode"),
                description=cell(row, "description"),
                tag=cell(row, "tag"),
                category=cell(row, "category"),
            )
        )
    return parsed


def serialize_talkgroups(rows: Iterable[TalkgroupRow]) -> str:
    """Render rows with the fixed header and every data field quoted."""
    buffer = io.StringIO()
    buffer.write(",".join(HEADER) + "\n")
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
    for row in rows:
        writer.writerow([
            row.decimal,
            row.hex,
            row.alpha_tag,
            row.mode,
            row.description,
            row.tag,
            row.category,
        ])
    return buffer.getvalue()
