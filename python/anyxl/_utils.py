"""A1 coordinate helpers shared by the workbook proxies and the calc engine."""

from __future__ import annotations

import re

_A1_RE = re.compile(r"^\$?([A-Za-z]{1,3})\$?(\d+)$")


def column_letter(index: int) -> str:
    """1-based column index -> letters (1 -> A, 27 -> AA)."""
    if index < 1:
        raise ValueError(f"Column index must be >= 1, got {index}")
    letters = ""
    n = index
    while n > 0:
        n, rem = divmod(n - 1, 26)
        letters = chr(65 + rem) + letters
    return letters


def column_index(letters: str) -> int:
    """Column letters -> 1-based index (A -> 1, AA -> 27)."""
    result = 0
    for ch in letters.upper():
        if not "A" <= ch <= "Z":
            raise ValueError(f"Invalid column letters: {letters!r}")
        result = result * 26 + (ord(ch) - 64)
    return result


def a1_to_rowcol(ref: str) -> tuple[int, int]:
    """``"B3"`` -> ``(3, 2)`` (1-based row, column). ``$`` markers are ignored."""
    m = _A1_RE.match(ref.strip())
    if not m:
        raise ValueError(f"Invalid A1 reference: {ref!r}")
    return int(m.group(2)), column_index(m.group(1))


def rowcol_to_a1(row: int, col: int) -> str:
    """``(3, 2)`` -> ``"B3"`` (1-based row, column)."""
    return f"{column_letter(col)}{row}"


def normalize_address(ref: str) -> str:
    """Upper-case an A1 address and strip absolute markers (``$a$1`` -> ``A1``)."""
    row, col = a1_to_rowcol(ref)
    return rowcol_to_a1(row, col)


def qualify(sheet: str, address: str) -> str:
    """Canonical node id: ``Sheet1!A1``."""
    return f"{sheet}!{normalize_address(address)}"


def split_qualified(ref: str, default_sheet: str | None = None) -> tuple[str, str]:
    """``"Sheet1!A1"`` -> ``("Sheet1", "A1")``; quoted sheet names are unquoted."""
    if "!" in ref:
        sheet, address = ref.rsplit("!", 1)
        if len(sheet) >= 2 and sheet[0] == "'" and sheet[-1] == "'":
            sheet = sheet[1:-1].replace("''", "'")
        return sheet, address
    if default_sheet is None:
        raise ValueError(f"Reference {ref!r} has no sheet qualifier")
    return default_sheet, ref
