"""Worksheet proxy: an openpyxl worksheet plus the computed-value layer.

openpyxl keeps a formula cell's text as its value (``"=A1*2"``), so the
results of evaluation live beside it in ``_computed`` keyed by coordinate.
"""

from __future__ import annotations

import csv
import io
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from openpyxl.utils.cell import range_boundaries
from openpyxl.worksheet.formula import ArrayFormula

from anyxl._cell import CellStyle, CellValue, display_text, public_value, type_tag
from anyxl._utils import qualify, rowcol_to_a1

if TYPE_CHECKING:
    from openpyxl.worksheet.worksheet import Worksheet as OpenpyxlWorksheet

    from anyxl._workbook import Workbook


def formula_text(value: Any) -> str | None:
    """Formula stored in an openpyxl cell value (with ``=``), else None."""
    if isinstance(value, ArrayFormula):
        text = value.text or ""
        return text if text.startswith("=") else f"={text}"
    if isinstance(value, str) and value.startswith("=") and len(value) > 1:
        return value
    return None


@dataclass(frozen=True)
class SheetDescriptor:
    """Name and used range of one worksheet."""

    name: str
    range: str | None
    row_count: int
    column_count: int


class Worksheet:
    """Proxy for a single worksheet in a Workbook."""

    __slots__ = ("_workbook", "_ws", "_computed")

    def __init__(self, workbook: Workbook, ws: OpenpyxlWorksheet) -> None:
        self._workbook = workbook
        self._ws = ws
        # coordinate -> last computed value of a formula cell
        self._computed: dict[str, Any] = {}

    @property
    def title(self) -> str:
        return self._ws.title

    @property
    def openpyxl_worksheet(self) -> OpenpyxlWorksheet:
        return self._ws

    # ------------------------------------------------------------------
    # Iteration
    # ------------------------------------------------------------------

    def _iter_stored(self) -> Iterator[Any]:
        """Non-empty openpyxl cells, row-major over the used bounding box."""
        ws = self._ws
        for row in ws.iter_rows(
            min_row=ws.min_row,
            max_row=ws.max_row,
            min_col=ws.min_column,
            max_col=ws.max_column,
        ):
            for cell in row:
                if cell.value is not None:
                    yield cell

    def iter_formulas(self) -> Iterator[tuple[str, str]]:
        """``(coordinate, formula)`` for every formula cell."""
        for cell in self._iter_stored():
            formula = formula_text(cell.value)
            if formula is not None:
                yield cell.coordinate, formula

    def iter_values(self) -> Iterator[tuple[str, Any]]:
        """``(coordinate, value)`` for every non-empty cell.

        Formula cells report their computed value, when one is known.
        """
        for cell in self._iter_stored():
            if formula_text(cell.value) is not None:
                if cell.coordinate in self._computed:
                    yield cell.coordinate, self._computed[cell.coordinate]
            else:
                yield cell.coordinate, cell.value

    def set_computed(self, coordinate: str, value: Any) -> None:
        self._computed[coordinate] = value

    def computed(self, coordinate: str) -> Any:
        return self._computed.get(coordinate)

    def _effective(self, cell: Any) -> Any:
        if formula_text(cell.value) is not None:
            return public_value(self._computed.get(cell.coordinate))
        return cell.value

    # ------------------------------------------------------------------
    # Single cells (1-based row / column)
    # ------------------------------------------------------------------

    def _has_cell(self, row: int, col: int) -> bool:
        ws = self._ws
        return ws.min_row <= row <= ws.max_row and ws.min_column <= col <= ws.max_column

    def get(self, row: int, col: int) -> CellValue | None:
        """Snapshot of the cell at *row*/*col*, or None if it is empty."""
        if not self._has_cell(row, col):
            return None
        cell = self._ws.cell(row=row, column=col)
        if cell.value is None:
            return None
        formula = formula_text(cell.value)
        value = self._effective(cell)
        return CellValue(
            address=qualify(self.title, cell.coordinate),
            value=value,
            raw=display_text(value),
            type=type_tag(value),
            formula=formula[1:] if formula is not None else None,
        )

    def set(
        self,
        row: int,
        col: int,
        value: Any,
        formula: str | None = None,
        style: CellStyle | None = None,
    ) -> None:
        """Store *value* (or *formula*, keeping *value* as its cached result)."""
        cell = self._ws.cell(row=row, column=col)
        self._computed.pop(cell.coordinate, None)
        if formula is not None:
            text = formula.strip()
            cell.value = text if text.startswith("=") else f"={text}"
            if value is not None:
                self._computed[cell.coordinate] = value
        else:
            cell.value = value
        if style is not None:
            style.apply(cell)

    def write_rows(
        self,
        rows: Iterable[Iterable[Any]],
        start_row: int = 1,
        start_col: int = 1,
    ) -> None:
        """Write a 2D grid of values starting at (start_row, start_col).

        ``None`` entries leave the target cell untouched.
        """
        for ri, row in enumerate(rows):
            for ci, val in enumerate(row):
                if val is not None:
                    self.set(start_row + ri, start_col + ci, val)

    # ------------------------------------------------------------------
    # Bulk reads
    # ------------------------------------------------------------------

    def used_range(self) -> tuple[int, int, int, int] | None:
        """``(min_row, min_col, max_row, max_col)`` of non-empty cells."""
        bounds: tuple[int, int, int, int] | None = None
        for cell in self._iter_stored():
            r, c = cell.row, cell.column
            if bounds is None:
                bounds = (r, c, r, c)
            else:
                bounds = (
                    min(bounds[0], r), min(bounds[1], c),
                    max(bounds[2], r), max(bounds[3], c),
                )
        return bounds

    def describe(self) -> SheetDescriptor:
        bounds = self.used_range()
        if bounds is None:
            return SheetDescriptor(self.title, None, 0, 0)
        r1, c1, r2, c2 = bounds
        return SheetDescriptor(
            name=self.title,
            range=f"{rowcol_to_a1(r1, c1)}:{rowcol_to_a1(r2, c2)}",
            row_count=r2 - r1 + 1,
            column_count=c2 - c1 + 1,
        )

    def rows(self, range_ref: str | None = None) -> list[list[Any]]:
        """Effective values of *range_ref* (default: the used range), by row."""
        if range_ref is not None:
            c1, r1, c2, r2 = range_boundaries(range_ref.replace("$", ""))
        else:
            bounds = self.used_range()
            if bounds is None:
                return []
            r1, c1, r2, c2 = bounds
        return [
            [self._effective(cell) for cell in row]
            for row in self._ws.iter_rows(min_row=r1, max_row=r2, min_col=c1, max_col=c2)
        ]

    def records(self, header_row: int = 1, range_ref: str | None = None) -> list[dict[str, Any]]:
        """Rows below the header as dicts keyed by header text.

        Blank rows are skipped before the header is located; blank headers
        become ``column_N``.
        """
        rows = [r for r in self.rows(range_ref) if any(v is not None for v in r)]
        header_idx = max(0, header_row - 1)
        header = rows[header_idx] if header_idx < len(rows) else []
        keys = [
            str(h) if h is not None and str(h).strip() else f"column_{i + 1}"
            for i, h in enumerate(header)
        ]
        return [
            {key: (row[i] if i < len(row) else None) for i, key in enumerate(keys)}
            for row in rows[header_idx + 1:]
        ]

    def to_csv(self) -> str:
        """Used range as CSV text, formula cells rendered by computed value."""
        buf = io.StringIO()
        writer = csv.writer(buf, lineterminator="\n")
        for row in self.rows():
            writer.writerow([display_text(v) for v in row])
        return buf.getvalue().rstrip("\n")

    def __repr__(self) -> str:
        return f"<Worksheet {self.title!r}>"
