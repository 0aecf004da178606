"""Read-only descriptors for assets embedded in a workbook package."""

from __future__ import annotations

from dataclasses import dataclass, field

DEFAULT_VBA_PROJECT = "VBAProject"


@dataclass(frozen=True)
class ChartAsset:
    """A chart anchored on a worksheet drawing.

    ``chart_type`` is the plot element name without its ``Chart`` suffix
    (``bar``, ``line``, ``pie``...).  ``part`` is the chart's path inside
    the package.
    """

    sheet: str
    name: str | None
    chart_type: str | None
    range: str | None
    series: tuple[str, ...] = ()
    part: str | None = None


@dataclass(frozen=True)
class ImageAsset:
    """A picture anchored on a worksheet drawing."""

    sheet: str
    name: str | None
    range: str | None
    media_type: str
    part: str | None = None


@dataclass(frozen=True)
class MacroModule:
    """A VBA module name found in the project binary.

    ``sheet`` is set for document modules that belong to a worksheet.
    """

    name: str
    project: str = DEFAULT_VBA_PROJECT
    sheet: str | None = field(default=None)
