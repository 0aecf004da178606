"""AssetResolver: charts, images and VBA modules found in a workbook package.

Discovery walks sheet -> drawing -> chart/image through relationship files.
Everything here is advisory: unreadable parts are logged at DEBUG and
skipped, never raised to the caller.
"""

from __future__ import annotations

import asyncio
import logging
import posixpath
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar
from xml.etree import ElementTree as ET

from anyxl._utils import rowcol_to_a1
from anyxl.assets._package import (
    NS,
    PACKAGE_ERRORS,
    REL_NS,
    VBA_PART,
    OoxmlPackage,
    SheetPart,
    local_name,
)
from anyxl.assets._types import ChartAsset, ImageAsset, MacroModule

logger = logging.getLogger(__name__)

T = TypeVar("T")

_ANCHOR_TAGS = ("twoCellAnchor", "oneCellAnchor", "absoluteAnchor")

_MEDIA_TYPES = {
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "gif": "image/gif",
    "bmp": "image/bmp",
    "svg": "image/svg+xml",
}
DEFAULT_MEDIA_TYPE = "application/octet-stream"

_MODULE_NAME_RE = re.compile(
    r"(?<![A-Za-z0-9_])(Module\d+|Class\d+|UserForm\d+|ThisWorkbook|Sheet\d+)(?![A-Za-z0-9_])"
)
PLACEHOLDER_MODULE = "Module1"
UNKNOWN_MODULE = "Unknown"


def media_type(part: str) -> str:
    ext = posixpath.splitext(part)[1].lstrip(".").lower()
    return _MEDIA_TYPES.get(ext, DEFAULT_MEDIA_TYPE)


def scan_vba_modules(data: bytes) -> list[MacroModule]:
    """Module names recognisable in a ``vbaProject.bin`` payload.

    Names are looked for in the raw bytes and again with NUL bytes removed,
    which exposes UTF-16 encoded names.
    """
    text = data.decode("latin-1")
    names: list[str] = []
    for view in (text, text.replace("\x00", "")):
        for m in _MODULE_NAME_RE.finditer(view):
            if m.group(1) not in names:
                names.append(m.group(1))
    if not names:
        return [MacroModule(PLACEHOLDER_MODULE)]
    return [
        MacroModule(name, sheet=name if name.startswith("Sheet") else None)
        for name in names
    ]


@dataclass(frozen=True)
class _Anchor:
    name: str | None
    chart_part: str | None
    image_part: str | None
    range: str | None


def _marker(anchor: ET.Element, tag: str) -> str | None:
    marker = anchor.find(f"xdr:{tag}", NS)
    if marker is None:
        return None
    col = marker.findtext("xdr:col", default="", namespaces=NS)
    row = marker.findtext("xdr:row", default="", namespaces=NS)
    if not col.strip().isdigit() or not row.strip().isdigit():
        return None
    return rowcol_to_a1(int(row) + 1, int(col) + 1)


def _anchor_range(anchor: ET.Element) -> str | None:
    start = _marker(anchor, "from")
    if start is None:
        return None
    end = _marker(anchor, "to")
    return f"{start}:{end}" if end is not None else start


class AssetResolver:
    """Lazy, memoized asset discovery for one workbook handle.

    *payload* returns the workbook's package bytes; it is called at most
    once, on the first query.  Each query is kept as a shared task for the
    lifetime of the resolver, so concurrent and later callers await the
    same work.
    """

    def __init__(self, payload: Callable[[], bytes]) -> None:
        self._payload = payload
        self._package: OoxmlPackage | None = None
        self._package_task: asyncio.Future[OoxmlPackage | None] | None = None
        self._anchors: dict[str, list[_Anchor]] = {}
        self._chart_info: dict[str, tuple[str | None, tuple[str, ...]]] = {}
        self._queries: dict[str, asyncio.Future[list[Any]]] = {}

    # ------------------------------------------------------------------
    # Package
    # ------------------------------------------------------------------

    def _open_package(self) -> OoxmlPackage | None:
        try:
            data = self._payload()
        except Exception as exc:
            logger.debug("Workbook payload unavailable for asset discovery: %s", exc)
            return None
        self._package = OoxmlPackage.open(data)
        return self._package

    async def _get_package(self) -> OoxmlPackage | None:
        if self._package_task is None:
            self._package_task = asyncio.ensure_future(asyncio.to_thread(self._open_package))
        # Shielded so one cancelled caller does not cancel the shared load
        return await asyncio.shield(self._package_task)

    async def _memoized(self, key: str, query: Callable[[], Awaitable[list[T]]]) -> list[T]:
        task = self._queries.get(key)
        if task is None:
            task = asyncio.ensure_future(query())
            self._queries[key] = task
        return list(await asyncio.shield(task))

    @staticmethod
    def _sheets(package: OoxmlPackage) -> list[SheetPart]:
        try:
            return package.sheets()
        except PACKAGE_ERRORS as exc:
            logger.debug("Worksheet list unavailable: %s", exc)
            return []

    async def _per_sheet(
        self, func: Callable[[OoxmlPackage, SheetPart], list[T]]
    ) -> list[T]:
        package = await self._get_package()
        if package is None:
            return []
        sheets = await asyncio.to_thread(self._sheets, package)
        batches = await asyncio.gather(
            *(asyncio.to_thread(self._safe, func, package, sheet) for sheet in sheets)
        )
        return [item for batch in batches for item in batch]

    @staticmethod
    def _safe(
        func: Callable[[OoxmlPackage, SheetPart], list[T]],
        package: OoxmlPackage,
        sheet: SheetPart,
    ) -> list[T]:
        try:
            return func(package, sheet)
        except PACKAGE_ERRORS as exc:
            logger.debug("Skipping assets of sheet %r: %s", sheet.name, exc)
            return []

    # ------------------------------------------------------------------
    # Drawings
    # ------------------------------------------------------------------

    def _sheet_anchors(self, package: OoxmlPackage, sheet: SheetPart) -> list[_Anchor]:
        cached = self._anchors.get(sheet.part)
        if cached is not None:
            return cached

        anchors: list[_Anchor] = []
        sheet_rels = package.relationships(sheet.part)
        root = package.xml(sheet.part)
        for drawing in root.findall("m:drawing", NS):
            drawing_part = sheet_rels.get(drawing.attrib.get(f"{{{REL_NS}}}id", ""))
            if drawing_part is None or not package.has(drawing_part):
                continue
            anchors.extend(self._drawing_anchors(package, drawing_part))

        self._anchors[sheet.part] = anchors
        return anchors

    @staticmethod
    def _drawing_anchors(package: OoxmlPackage, drawing_part: str) -> list[_Anchor]:
        rels = package.relationships(drawing_part)
        root = package.xml(drawing_part)
        anchors: list[_Anchor] = []
        for element in root:
            if local_name(element.tag) not in _ANCHOR_TAGS:
                continue
            c_nv_pr = element.find(".//xdr:cNvPr", NS)
            chart = element.find(".//c:chart", NS)
            blip = element.find(".//a:blip", NS)
            chart_rid = chart.attrib.get(f"{{{REL_NS}}}id") if chart is not None else None
            image_rid = blip.attrib.get(f"{{{REL_NS}}}embed") if blip is not None else None
            anchors.append(
                _Anchor(
                    name=c_nv_pr.attrib.get("name") if c_nv_pr is not None else None,
                    chart_part=rels.get(chart_rid) if chart_rid else None,
                    image_part=rels.get(image_rid) if image_rid else None,
                    range=_anchor_range(element),
                )
            )
        return anchors

    # ------------------------------------------------------------------
    # Charts
    # ------------------------------------------------------------------

    def _chart_details(
        self, package: OoxmlPackage, part: str
    ) -> tuple[str | None, tuple[str, ...]]:
        cached = self._chart_info.get(part)
        if cached is not None:
            return cached

        root = package.xml(part)
        chart_type: str | None = None
        series: list[str] = []
        if local_name(root.tag) == "chartSpace":
            plot_area = root.find("c:chart/c:plotArea", NS)
            for child in plot_area if plot_area is not None else ():
                name = local_name(child.tag)
                if name.endswith("Chart"):
                    chart_type = name[: -len("Chart")]
                    for idx, ser in enumerate(child.findall("c:ser", NS), start=1):
                        label = ser.findtext("c:tx//c:v", namespaces=NS) or ser.findtext(
                            "c:tx//c:f", namespaces=NS
                        )
                        series.append(label or f"Series {idx}")
                    break
        else:
            chart_type = local_name(root.tag)

        info = (chart_type, tuple(series))
        self._chart_info[part] = info
        return info

    def _sheet_charts(self, package: OoxmlPackage, sheet: SheetPart) -> list[ChartAsset]:
        charts: list[ChartAsset] = []
        for anchor in self._sheet_anchors(package, sheet):
            if anchor.chart_part is None:
                continue
            chart_type: str | None = None
            series: tuple[str, ...] = ()
            if package.has(anchor.chart_part):
                try:
                    chart_type, series = self._chart_details(package, anchor.chart_part)
                except PACKAGE_ERRORS as exc:
                    logger.debug("Unreadable chart part %s: %s", anchor.chart_part, exc)
            charts.append(
                ChartAsset(
                    sheet=sheet.name,
                    name=anchor.name,
                    chart_type=chart_type,
                    range=anchor.range,
                    series=series,
                    part=anchor.chart_part,
                )
            )
        return charts

    async def get_charts(self) -> list[ChartAsset]:
        return await self._memoized("charts", lambda: self._per_sheet(self._sheet_charts))

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------

    def _sheet_images(self, package: OoxmlPackage, sheet: SheetPart) -> list[ImageAsset]:
        return [
            ImageAsset(
                sheet=sheet.name,
                name=anchor.name,
                range=anchor.range,
                media_type=media_type(anchor.image_part),
                part=anchor.image_part,
            )
            for anchor in self._sheet_anchors(package, sheet)
            if anchor.image_part is not None
        ]

    async def get_images(self) -> list[ImageAsset]:
        return await self._memoized("images", lambda: self._per_sheet(self._sheet_images))

    # ------------------------------------------------------------------
    # Macros
    # ------------------------------------------------------------------

    @staticmethod
    def _read_macros(package: OoxmlPackage) -> list[MacroModule]:
        if not package.has(VBA_PART):
            return []
        try:
            return scan_vba_modules(package.read(VBA_PART))
        except PACKAGE_ERRORS as exc:
            logger.debug("VBA project could not be scanned: %s", exc)
            return [MacroModule(UNKNOWN_MODULE)]

    async def _macros(self) -> list[MacroModule]:
        package = await self._get_package()
        if package is None:
            return []
        return await asyncio.to_thread(self._read_macros, package)

    async def list_macros(self) -> list[MacroModule]:
        return await self._memoized("macros", self._macros)

    def close(self) -> None:
        if self._package is not None:
            self._package.close()
        self._package = None
