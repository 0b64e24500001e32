import pytest
from pydantic import ValidationError

from sheetcalc.formula import (
    column_to_letters,
    format_address,
    letters_to_column,
    parse_address,
    parse_range,
)
from sheetcalc.models import CellAddress


@pytest.mark.parametrize(
    "col,letters",
    [
        (0, "A"),
        (1, "B"),
        (25, "Z"),
        (26, "AA"),
        (27, "AB"),
        (51, "AZ"),
        (52, "BA"),
        (701, "ZZ"),
        (702, "AAA"),
        (18277, "ZZZ"),
    ],
)
def test_column_letters_are_bijective_base26(col, letters):
    assert column_to_letters(col) == letters
    assert letters_to_column(letters) == col


def test_letters_to_column_is_case_insensitive():
    assert letters_to_column("ab") == 27


@pytest.mark.parametrize("bad", ["", "A1", "Ä", "A B"])
def test_letters_to_column_rejects_non_letters(bad):
    with pytest.raises(ValueError):
        letters_to_column(bad)


def test_column_to_letters_rejects_negative():
    with pytest.raises(ValueError):
        column_to_letters(-1)


def test_format_and_parse_ab1():
    assert format_address(CellAddress(row=0, col=27)) == "AB1"
    assert parse_address("AB1") == CellAddress(row=0, col=27)


def test_address_round_trip():
    for row in (0, 1, 9, 99, 1048575):
        for col in (0, 1, 25, 26, 27, 51, 52, 701, 702, 703, 18277, 18278):
            addr = CellAddress(row=row, col=col)
            assert parse_address(format_address(addr)) == addr


def test_parse_address_accepts_lowercase():
    assert parse_address("c10") == CellAddress(row=9, col=2)


@pytest.mark.parametrize("bad", ["", "A", "1", "1A", "A1B", "A-1", "A0", "A 1", "$A$1", "A1:B2", " A1 ", "A1 ", "\tA1"])
def test_parse_address_rejects_other_shapes(bad):
    assert parse_address(bad) is None


def test_cell_address_rejects_negative_indices():
    with pytest.raises(ValidationError):
        CellAddress(row=-1, col=0)


def test_cell_address_is_hashable():
    assert len({CellAddress(row=1, col=2), CellAddress(row=1, col=2)}) == 1


def test_parse_range_keeps_corners_and_normalizes_iteration():
    cell_range = parse_range("B2:A1")
    assert cell_range.start == CellAddress(row=1, col=1)
    assert cell_range.end == CellAddress(row=0, col=0)
    assert [format_address(a) for a in cell_range.addresses()] == ["A1", "B1", "A2", "B2"]


def test_parse_range_reversed_column():
    cell_range = parse_range("A5:A1")
    assert [format_address(a) for a in cell_range.addresses()] == ["A1", "A2", "A3", "A4", "A5"]


def test_parse_range_tolerates_spaces_around_colon():
    assert parse_range("A1 : B2") is not None


@pytest.mark.parametrize("bad", ["A1", "A1:B", "A1:ZZ", "A1:B2:C3", ":A1", ""])
def test_parse_range_rejects_malformed(bad):
    assert parse_range(bad) is None
