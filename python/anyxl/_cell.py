"""Cell records returned by the workbook handle, and style application."""

from __future__ import annotations

import datetime as _dt
from dataclasses import dataclass
from typing import Any

from openpyxl.styles import Alignment, Font, PatternFill

from anyxl.calc._functions import ExcelError

_ERROR_CODES = frozenset(
    {"#NULL!", "#DIV/0!", "#VALUE!", "#REF!", "#NAME?", "#NUM!", "#N/A"}
)

# Type tags, as stored in the sheet XML: number, string, boolean, error,
# date and the empty ("stub") cell.
TYPE_NUMBER = "n"
TYPE_STRING = "s"
TYPE_BOOL = "b"
TYPE_ERROR = "e"
TYPE_DATE = "d"
TYPE_EMPTY = "z"


def type_tag(value: Any) -> str:
    """Map a Python cell value to its one-letter type tag."""
    if value is None:
        return TYPE_EMPTY
    if isinstance(value, bool):
        return TYPE_BOOL
    if isinstance(value, (int, float)):
        return TYPE_NUMBER
    if isinstance(value, ExcelError):
        return TYPE_ERROR
    if isinstance(value, (_dt.datetime, _dt.date, _dt.time, _dt.timedelta)):
        return TYPE_DATE
    if isinstance(value, str) and value in _ERROR_CODES:
        return TYPE_ERROR
    return TYPE_STRING


def display_text(value: Any) -> str:
    """Formatted text of a value, the way it is written to CSV."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (_dt.datetime, _dt.date, _dt.time)):
        return value.isoformat()
    return str(value)


def public_value(value: Any) -> Any:
    """Engine values as handed to callers (error objects become their code)."""
    if isinstance(value, ExcelError):
        return str(value)
    return value


@dataclass(frozen=True)
class CellValue:
    """Snapshot of one stored cell.

    ``address`` is the qualified ``Sheet1!C3`` form.  For formula cells
    ``value`` is the last computed value and ``formula`` the text without
    the leading ``=``.
    """

    address: str
    value: Any
    raw: str | None
    type: str
    formula: str | None = None

    @property
    def coordinate(self) -> str:
        return self.address.rsplit("!", 1)[-1]


def _hex_color(color: str | None) -> str | None:
    if color is None:
        return None
    return color.lstrip("#").upper()


@dataclass(frozen=True)
class CellStyle:
    """Subset of cell formatting accepted by ``Workbook.set_cell``.

    Unset fields keep whatever the cell already has.
    """

    bold: bool | None = None
    italic: bool | None = None
    underline: bool | None = None
    font_size: float | None = None
    font_color: str | None = None
    fill_color: str | None = None
    number_format: str | None = None
    horizontal: str | None = None
    vertical: str | None = None
    wrap_text: bool | None = None

    def apply(self, cell: Any) -> None:
        """Write this style onto an openpyxl cell."""
        font = cell.font
        if any(
            v is not None
            for v in (self.bold, self.italic, self.underline, self.font_size, self.font_color)
        ):
            cell.font = Font(
                name=font.name,
                size=self.font_size if self.font_size is not None else font.size,
                bold=self.bold if self.bold is not None else font.bold,
                italic=self.italic if self.italic is not None else font.italic,
                underline=(
                    ("single" if self.underline else None)
                    if self.underline is not None
                    else font.underline
                ),
                color=_hex_color(self.font_color) if self.font_color else font.color,
            )
        if self.fill_color is not None:
            color = _hex_color(self.fill_color)
            cell.fill = PatternFill(fill_type="solid", start_color=color, end_color=color)
        if self.number_format is not None:
            cell.number_format = self.number_format
        if any(v is not None for v in (self.horizontal, self.vertical, self.wrap_text)):
            current = cell.alignment
            cell.alignment = Alignment(
                horizontal=self.horizontal if self.horizontal is not None else current.horizontal,
                vertical=self.vertical if self.vertical is not None else current.vertical,
                wrap_text=self.wrap_text if self.wrap_text is not None else current.wrap_text,
            )
