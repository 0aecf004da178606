"""Workbook: an open spreadsheet session over an openpyxl document.

New workbook (``Workbook()``): one empty sheet named ``Sheet1``.
Loaded workbook (``Workbook._from_bytes(data)``): opened via openpyxl, with
the cached results of formula cells seeded from a ``data_only`` read.
"""

from __future__ import annotations

import csv
import io
import logging
import os
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

import openpyxl

from anyxl._cell import CellStyle, CellValue
from anyxl._source import FileMetadata, extension_of, replace_extension
from anyxl._worksheet import SheetDescriptor, Worksheet
from anyxl.assets import AssetResolver, ChartAsset, ImageAsset, MacroModule
from anyxl.calc import (
    CircularReference,
    EvaluationReport,
    ExcelError,
    FormulaResult,
    FormulaSummary,
    FunctionRegistry,
    WorkbookAnalyzer,
)
from anyxl.errors import (
    CellAddressError,
    SheetError,
    SheetNotFoundError,
    UnsupportedSourceError,
)

logger = logging.getLogger(__name__)

DEFAULT_SHEET_NAME = "Sheet1"

_ERROR_CODES = ("#NULL!", "#DIV/0!", "#VALUE!", "#REF!", "#NAME?", "#NUM!", "#N/A")


@dataclass(frozen=True)
class WorkbookProperties:
    """Document properties stored in the workbook package."""

    title: str | None
    subject: str | None
    author: str | None
    manager: str | None
    company: str | None
    category: str | None
    keywords: str | None
    comments: str | None
    last_author: str | None
    sheet_count: int
    created_at: datetime | None
    modified_at: datetime | None


@dataclass(frozen=True)
class ConvertedDocument:
    """Result of :meth:`Workbook.convert`."""

    type: str
    metadata: FileMetadata
    content: str

    def write(self, path: str | os.PathLike[str]) -> None:
        Path(path).write_text(self.content, encoding="utf-8")


def _csv_value(text: str) -> Any:
    """Type a CSV field the way a spreadsheet import would."""
    if text == "":
        return None
    upper = text.upper()
    if upper in ("TRUE", "FALSE"):
        return upper == "TRUE"
    try:
        return int(text)
    except ValueError:
        pass
    try:
        return float(text)
    except ValueError:
        return text


def _validate_position(row: Any, col: Any) -> None:
    if (
        not isinstance(row, int) or isinstance(row, bool)
        or not isinstance(col, int) or isinstance(col, bool)
        or row < 1 or col < 1
    ):
        raise CellAddressError("Row and column must be 1-based positive integers.")


class Workbook:
    """An open workbook: cells, sheets, formula analysis and asset discovery.

    A handle is single-writer: evaluation mutates computed values in place,
    so do not evaluate or write to the same handle concurrently.
    """

    def __init__(self, *, registry: FunctionRegistry | None = None) -> None:
        """Create a new, empty workbook with a single ``Sheet1``."""
        wb = openpyxl.Workbook()
        wb.active.title = DEFAULT_SHEET_NAME
        self._setup(wb, None, FileMetadata(name="workbook.xlsx", size=0), registry)

    def _setup(
        self,
        wb: openpyxl.Workbook,
        source: bytes | None,
        metadata: FileMetadata,
        registry: FunctionRegistry | None,
        header_row: int = 1,
    ) -> None:
        self._wb = wb
        self._source = source
        self.metadata = metadata
        self._header_row = header_row
        self._sheets: dict[str, Worksheet] = {ws.title: Worksheet(self, ws) for ws in wb.worksheets}
        self._analyzer = WorkbookAnalyzer(self, registry)
        self._assets = AssetResolver(self._package_bytes)

    @classmethod
    def _from_bytes(
        cls,
        data: bytes,
        metadata: FileMetadata,
        *,
        keep_vba: bool = False,
        registry: FunctionRegistry | None = None,
        header_row: int = 1,
    ) -> Workbook:
        """Open an .xlsx/.xlsm payload."""
        wb = openpyxl.load_workbook(io.BytesIO(data), keep_vba=keep_vba)
        self = object.__new__(cls)
        self._setup(wb, data, metadata, registry, header_row)
        self._seed_computed(data)
        return self

    def _seed_computed(self, data: bytes) -> None:
        """Copy the cached results of formula cells from the saved file."""
        cached = openpyxl.load_workbook(io.BytesIO(data), data_only=True)
        try:
            for name, ws in self._sheets.items():
                if name not in cached.sheetnames:
                    continue
                values = cached[name]
                for coordinate, _ in ws.iter_formulas():
                    value = values[coordinate].value
                    if value is None:
                        continue
                    if isinstance(value, str) and value in _ERROR_CODES:
                        value = ExcelError.of(value)
                    ws.set_computed(coordinate, value)
        finally:
            cached.close()

    def _package_bytes(self) -> bytes:
        if self._source is not None:
            return self._source
        return self.to_bytes()

    # ------------------------------------------------------------------
    # Sheet access
    # ------------------------------------------------------------------

    @property
    def sheetnames(self) -> list[str]:
        return list(self._wb.sheetnames)

    @property
    def registry(self) -> FunctionRegistry:
        return self._analyzer.registry

    @property
    def openpyxl_workbook(self) -> openpyxl.Workbook:
        return self._wb

    def __getitem__(self, name: str) -> Worksheet:
        if name not in self._sheets:
            raise SheetNotFoundError(name)
        return self._sheets[name]

    def __contains__(self, name: str) -> bool:
        return name in self._sheets

    def __iter__(self):  # type: ignore[no-untyped-def]
        return iter(self.sheetnames)

    def sheet(self, sheet: str | int = 0) -> Worksheet:
        """Look a sheet up by name or 0-based index.

        An index past the end falls back to the first sheet.
        """
        if isinstance(sheet, int) and not isinstance(sheet, bool):
            names = self.sheetnames
            if not names:
                raise SheetNotFoundError(str(sheet))
            name = names[sheet] if 0 <= sheet < len(names) else names[0]
            return self._sheets[name]
        return self[sheet]

    def get_sheets(self) -> list[SheetDescriptor]:
        return [self._sheets[name].describe() for name in self.sheetnames]

    @property
    def worksheets(self) -> list[SheetDescriptor]:
        return self.get_sheets()

    def get_sheet_names(self) -> list[str]:
        return self.sheetnames

    # ------------------------------------------------------------------
    # Sheet operations
    # ------------------------------------------------------------------

    def _new_sheet_name(self, name: str, replacing: str | None = None) -> str:
        if not isinstance(name, str) or not name.strip():
            raise SheetError("Sheet name cannot be empty.")
        sheet_name = name.strip()
        # Sheet names are unique regardless of case
        taken = {n.lower() for n in self._sheets if n != replacing}
        if sheet_name.lower() in taken:
            raise SheetError(f'Sheet "{sheet_name}" already exists.')
        return sheet_name

    def add_sheet(self, name: str) -> Worksheet:
        """Append an empty sheet."""
        sheet_name = self._new_sheet_name(name)
        try:
            ws = self._wb.create_sheet(title=sheet_name)
        except ValueError as exc:
            raise SheetError(str(exc)) from exc
        proxy = Worksheet(self, ws)
        self._sheets[ws.title] = proxy
        return proxy

    def add_sheet_from_csv(self, name: str, csv_text: str) -> Worksheet:
        """Append a sheet holding the parsed rows of *csv_text*."""
        sheet_name = self._new_sheet_name(name)
        try:
            rows = [[_csv_value(field) for field in row] for row in csv.reader(io.StringIO(csv_text))]
        except csv.Error as exc:
            raise UnsupportedSourceError("Unable to parse CSV content.") from exc
        proxy = self.add_sheet(sheet_name)
        proxy.write_rows(rows)
        return proxy

    def delete_sheet(self, name: str) -> None:
        proxy = self[name]
        if len(self._sheets) == 1:
            raise SheetError("A workbook must keep at least one sheet.")
        self._wb.remove(proxy.openpyxl_worksheet)
        del self._sheets[proxy.title]

    def rename_sheet(self, old: str, new: str) -> None:
        """Rename a sheet.  Formulas elsewhere that name it are not rewritten."""
        proxy = self[old]
        if new == old:
            return
        new_name = self._new_sheet_name(new, replacing=old)
        try:
            proxy.openpyxl_worksheet.title = new_name
        except ValueError as exc:
            raise SheetError(str(exc)) from exc
        new_name = proxy.title
        self._sheets = {
            (new_name if key == old else key): value for key, value in self._sheets.items()
        }

    # ------------------------------------------------------------------
    # Cells (1-based row / column)
    # ------------------------------------------------------------------

    def get_cell(self, sheet: str | int, row: int, col: int) -> CellValue | None:
        """Snapshot of one cell, or None when it is empty."""
        ws = self.sheet(sheet)
        _validate_position(row, col)
        return ws.get(row, col)

    def set_cell(
        self,
        sheet: str | int,
        row: int,
        col: int,
        value: Any,
        *,
        formula: str | None = None,
        style: CellStyle | dict[str, Any] | None = None,
    ) -> None:
        """Write a value, or a formula with an optional cached result.

        A string value starting with ``=`` is stored as a formula.
        """
        ws = self.sheet(sheet)
        _validate_position(row, col)
        if isinstance(style, dict):
            style = CellStyle(**style)
        ws.set(row, col, value, formula=formula, style=style)

    def write_rows(
        self,
        sheet: str | int,
        rows: list[list[Any]],
        start_row: int = 1,
        start_col: int = 1,
    ) -> None:
        ws = self.sheet(sheet)
        _validate_position(start_row, start_col)
        ws.write_rows(rows, start_row, start_col)

    # ------------------------------------------------------------------
    # Reading / conversion
    # ------------------------------------------------------------------

    def read_sheet(
        self,
        sheet: str | int = 0,
        *,
        header_row: int | None = None,
        range: str | None = None,  # noqa: A002
    ) -> list[dict[str, Any]]:
        """Rows below the header row as dicts keyed by header text."""
        ws = self.sheet(sheet)
        return ws.records(header_row if header_row is not None else self._header_row, range)

    def to_json(self) -> dict[str, list[dict[str, Any]]]:
        return {name: self.read_sheet(name) for name in self.sheetnames}

    def to_csv(self, sheet: str | int = 0) -> str:
        return self.sheet(sheet).to_csv()

    def convert(self, to_type: str) -> ConvertedDocument:
        """Convert the whole workbook; only ``"csv"`` is available."""
        if to_type != "csv":
            raise UnsupportedSourceError(
                f'Conversion from Excel to "{to_type}" is not implemented yet.'
            )
        blocks = [f"# {name}\n{self.to_csv(name)}".strip() for name in self.sheetnames]
        meta = FileMetadata(
            name=replace_extension(self.metadata.name, "csv"),
            size=self.metadata.size,
            type="csv",
            created_at=self.metadata.created_at,
            modified_at=self.metadata.modified_at,
        )
        return ConvertedDocument(type="csv", metadata=meta, content="\n\n".join(blocks))

    def get_metadata(self) -> WorkbookProperties:
        props = self._wb.properties
        return WorkbookProperties(
            title=props.title,
            subject=props.subject,
            author=props.creator,
            manager=None,
            company=None,
            category=props.category,
            keywords=props.keywords,
            comments=props.description,
            last_author=props.lastModifiedBy,
            sheet_count=len(self._wb.sheetnames),
            created_at=props.created,
            modified_at=props.modified,
        )

    # ------------------------------------------------------------------
    # Formula analysis
    # ------------------------------------------------------------------

    def evaluate_all(self, ignore_circular: bool = False) -> EvaluationReport:
        """Recalculate every formula in place.  See :class:`WorkbookAnalyzer`."""
        return self._analyzer.evaluate_all(ignore_circular=ignore_circular)

    def evaluate_cell(self, sheet: str | int, row: int, col: int) -> FormulaResult:
        """Recalculate, then read one cell.  Never raises."""
        return self._analyzer.evaluate_cell(sheet, row, col)

    def find_circular_references(self) -> list[CircularReference]:
        return self._analyzer.find_circular_references()

    def get_formula_summary(self) -> FormulaSummary:
        return self._analyzer.get_formula_summary()

    # ------------------------------------------------------------------
    # Assets
    # ------------------------------------------------------------------

    async def get_charts(self) -> list[ChartAsset]:
        return await self._assets.get_charts()

    async def get_images(self) -> list[ImageAsset]:
        return await self._assets.get_images()

    async def list_macros(self) -> list[MacroModule]:
        return await self._assets.list_macros()

    # ------------------------------------------------------------------
    # Saving
    # ------------------------------------------------------------------

    def to_bytes(self) -> bytes:
        buf = io.BytesIO()
        self._wb.save(buf)
        return buf.getvalue()

    def save(self, filename: str | os.PathLike[str]) -> None:
        """Save to disk; the extension picks the format (.xlsx or .xlsm)."""
        ext = extension_of(filename)
        if ext in ("xls", "xlsb"):
            raise UnsupportedSourceError(
                f'Cannot write ".{ext}": binary workbook formats are not supported.'
            )
        self._wb.save(str(filename))
        logger.debug("Saved workbook to %s", filename)

    # ------------------------------------------------------------------
    # Context manager + cleanup
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Release the package held for asset discovery."""
        self._assets.close()
        self._wb.close()

    def __enter__(self) -> Workbook:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"<Workbook {self.metadata.name!r} sheets={self.sheetnames}>"
