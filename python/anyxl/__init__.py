"""anyxl - Spreadsheet handles with formula analysis and asset discovery.

Usage::

    import anyxl

    wb = anyxl.open("report.xlsx")
    wb.set_cell("Sheet1", 1, 1, 21)
    wb.set_cell("Sheet1", 1, 2, None, formula="=DOUBLE(A1)")

    anyxl.register_custom_formula("DOUBLE", lambda x: x * 2)
    report = wb.evaluate_all()
    print(wb.get_cell("Sheet1", 1, 2).value)   # 42
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any

from anyxl._cell import CellStyle, CellValue
from anyxl._source import FileMetadata, Source, check_readable, detect, load_source
from anyxl._workbook import ConvertedDocument, Workbook, WorkbookProperties
from anyxl._worksheet import SheetDescriptor, Worksheet
from anyxl.calc import FunctionRegistry, default_registry
from anyxl.errors import (
    AnyxlError,
    CellAddressError,
    CircularReferenceError,
    FormulaEvaluationError,
    InvalidFormulaError,
    SheetError,
    SheetNotFoundError,
    UnsupportedSourceError,
)

__version__ = "0.1.0"

__all__ = [
    "__version__",
    "AnyxlError",
    "CellAddressError",
    "CellStyle",
    "CellValue",
    "CircularReferenceError",
    "ConvertedDocument",
    "FileMetadata",
    "FormulaEvaluationError",
    "FunctionRegistry",
    "InvalidFormulaError",
    "SheetDescriptor",
    "SheetError",
    "SheetNotFoundError",
    "UnsupportedSourceError",
    "Workbook",
    "WorkbookProperties",
    "Worksheet",
    "configure_formula_localization",
    "detect",
    "open",
    "register_custom_formula",
    "register_custom_formulas",
]

_HANDLED_TYPE = "excel"


def open(  # noqa: A001
    source: Source,
    *,
    type: str | None = None,  # noqa: A002
    metadata: dict[str, Any] | None = None,
    header_row: int = 1,
    registry: FunctionRegistry | None = None,
) -> Workbook:
    """Open a workbook from a path or an in-memory payload.

    Parameters
    ----------
    type : str, optional
        Force the handler type instead of detecting it; only ``"excel"``
        is available.
    metadata : dict, optional
        Overrides for the detected :class:`FileMetadata` fields.
    header_row : int
        Default header row used by :meth:`Workbook.read_sheet`.
    registry : FunctionRegistry, optional
        Functions available to formulas.  Defaults to the process-wide
        registry the ``register_*`` helpers write to.
    """
    if type is not None and type != _HANDLED_TYPE:
        raise UnsupportedSourceError(f'No handler registered for type "{type}".')
    if type is None and not detect(source):
        raise UnsupportedSourceError("No handler registered for the provided source.")

    loaded = load_source(source, metadata)
    check_readable(loaded)
    keep_vba = loaded.extension == "xlsm" or (
        loaded.extension is None and b"xl/vbaProject.bin" in loaded.data
    )
    return Workbook._from_bytes(  # noqa: SLF001
        loaded.data,
        loaded.metadata,
        keep_vba=keep_vba,
        registry=registry,
        header_row=header_row,
    )


def register_custom_formula(name: str, implementation: Callable[..., Any]) -> None:
    """Register a function for every workbook using the shared registry.

    The shared registry is process-wide: a name registered here is visible
    to every handle opened without an explicit ``registry``.
    """
    default_registry().register(name, implementation)


def register_custom_formulas(formulas: Mapping[str, Callable[..., Any]]) -> None:
    default_registry().register_many(formulas)


def configure_formula_localization(localization: Mapping[str, str]) -> None:
    """Map localized function names (``SOMME``) to canonical ones (``SUM``)."""
    default_registry().localize(localization)
