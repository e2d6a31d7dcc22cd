"""Tests for talkgroup CSV parsing and serialization."""

from __future__ import annotations

import pytest

from radiomonitor.registry.csv_format import (
    HEADER,
    HeaderNotFoundError,
    TalkgroupRow,
    find_header,
    normalize_column,
    parse_talkgroups,
    serialize_talkgroups,
)


def test_normalize_column() -> None:
    assert normalize_column(" Alpha Tag ") == "alphatag"
    assert normalize_column("alpha_tag") == "alphatag"
    assert normalize_column("ALPHATAG") == "alphatag"


def test_find_header_skips_preamble() -> None:
    rows = [["Hamilton County P25"], ["Decimal", "Alpha Tag", "Mode"], ["100", "DISPATCH", "D"]]
    index, columns = find_header(rows)
    assert index == 1
    assert columns == {"decimal": 0, "alpha_tag": 1, "mode": 2}


def test_parse_radioreference_export() -> None:
    text = (
        "# exported from RadioReference\n"
        "\n"
        "DECIMAL,hex,alphaTag,Mode,Description,Tag,Category\n"
        '100,64,DISPATCH,D,"County Dispatch, Main",Law Dispatch,Sheriff\n'
        "# a comment in the middle\n"
        "200,c8,FIRE OPS,D,Fire Operations,Fire-Tac,Fire\n"
    )

    rows = parse_talkgroups(text)

    assert rows == [
        TalkgroupRow("100", "64", "DISPATCH", "D", "County Dispatch, Main", "Law Dispatch", "Sheriff"),
        TalkgroupRow("200", "c8", "FIRE OPS", "D", "Fire Operations", "Fire-Tac", "Fire"),
    ]


def test_parse_reordered_and_extra_columns() -> None:
    text = "Alpha Tag,Notes,Decimal\nEMS,ignored,300\n"

    rows = parse_talkgroups(text)

    assert rows == [TalkgroupRow(decimal="300", alpha_tag="EMS")]


def test_rows_without_numeric_decimal_are_skipped() -> None:
    text = "Decimal,Alpha Tag\nabc,BAD\n,EMPTY\n0042,PADDED\n43,GOOD\n"

    rows = parse_talkgroups(text)

    assert [r.decimal for r in rows] == ["42", "43"]


def test_missing_header_raises() -> None:
    with pytest.raises(HeaderNotFoundError):
        parse_talkgroups("100,DISPATCH\n200,FIRE\n")


def test_serialize_quotes_every_field_but_header() -> None:
    text = serialize_talkgroups([
        TalkgroupRow("100", "64", "DISPATCH", "D", "County Dispatch, Main", "Law Dispatch", "Sheriff"),
    ])

    lines = text.splitlines()
    assert lines[0] == ",".join(HEADER)
    assert lines[1] == '"100","64","DISPATCH","D","County Dispatch, Main","Law Dispatch","Sheriff"'


def test_serialized_file_parses_back() -> None:
    rows = [
        TalkgroupRow("7", "7", 'Say "hi"', "A", "", "Unknown", "Unknown"),
        TalkgroupRow("65535", "ffff", "LAST", "E", "Encrypted", "Law Tac", "Police"),
    ]

    assert parse_talkgroups(serialize_talkgroups(rows)) == rows


def test_quoted_fields_may_span_lines_and_start_with_hash() -> None:
    rows = [
        TalkgroupRow("100", "64", "DISPATCH", "D", "North\n#south", "Law Dispatch", "Police"),
        TalkgroupRow("200", "c8", "FIRE", "D", "Line one\r\nLine two", "Fire Dispatch", "Fire"),
    ]

    assert parse_talkgroups(serialize_talkgroups(rows)) == rows


def test_non_ascii_digit_ids_are_skipped() -> None:
    text = "Decimal,Alpha Tag\n²,ODD\n٣,ARABIC\n7,GOOD\n"

    assert [r.decimal for r in parse_talkgroups(text)] == ["7"]
