"""Zip package access: parts, relationship files and target resolution."""

from __future__ import annotations

import io
import logging
import posixpath
import re
import zlib
from dataclasses import dataclass
from xml.etree import ElementTree as ET
from zipfile import BadZipFile, ZipFile

logger = logging.getLogger(__name__)

MAIN_NS = "http://schemas.openxmlformats.org/spreadsheetml/2006/main"
REL_NS = "http://schemas.openxmlformats.org/officeDocument/2006/relationships"
PACKAGE_REL_NS = "http://schemas.openxmlformats.org/package/2006/relationships"
DRAWING_NS = "http://schemas.openxmlformats.org/drawingml/2006/spreadsheetDrawing"
DRAWINGML_NS = "http://schemas.openxmlformats.org/drawingml/2006/main"
CHART_NS = "http://schemas.openxmlformats.org/drawingml/2006/chart"

NS = {
    "m": MAIN_NS,
    "r": REL_NS,
    "xdr": DRAWING_NS,
    "a": DRAWINGML_NS,
    "c": CHART_NS,
}

WORKBOOK_PART = "xl/workbook.xml"
VBA_PART = "xl/vbaProject.bin"

_SHEET_PART_RE = re.compile(r"^xl/worksheets/(sheet(\d+))\.xml$")

# What reading a damaged or truncated archive member can raise
PACKAGE_ERRORS = (KeyError, ValueError, EOFError, OSError, BadZipFile, zlib.error, ET.ParseError)


def local_name(tag: str) -> str:
    """``{ns}barChart`` -> ``barChart``."""
    return tag.rsplit("}", 1)[-1]


def rels_path(part: str) -> str:
    """Relationship file of *part*: ``xl/worksheets/_rels/sheet1.xml.rels``."""
    parent, _, file_name = part.rpartition("/")
    return f"{parent}/_rels/{file_name}.rels" if parent else f"_rels/{file_name}.rels"


def resolve_target(source_part: str, target: str) -> str:
    """Resolve a relationship target against the part that declares it.

    Absolute targets (``/xl/media/image1.png``) are package-rooted; relative
    ones (``../drawings/drawing1.xml``) are taken from the source part's
    folder.  ``.`` and ``..`` segments are collapsed.
    """
    if target.startswith("/"):
        return posixpath.normpath(target.lstrip("/"))
    base = posixpath.dirname(source_part)
    return posixpath.normpath(posixpath.join(base, target))


@dataclass(frozen=True)
class SheetPart:
    name: str
    part: str


class OoxmlPackage:
    """An opened workbook package.

    Relationship maps are parsed once per part and kept for the package's
    lifetime.
    """

    __slots__ = ("_zip", "_names", "_rels")

    def __init__(self, data: bytes) -> None:
        self._zip = ZipFile(io.BytesIO(data))
        self._names = set(self._zip.namelist())
        self._rels: dict[str, dict[str, str]] = {}

    @classmethod
    def open(cls, data: bytes) -> OoxmlPackage | None:
        """Open *data* as a package, or None when it is not a zip archive."""
        try:
            return cls(data)
        except PACKAGE_ERRORS as exc:
            logger.debug("Workbook package could not be opened: %s", exc)
            return None

    def close(self) -> None:
        self._zip.close()

    def has(self, part: str) -> bool:
        return part in self._names

    def read(self, part: str) -> bytes:
        return self._zip.read(part)

    def xml(self, part: str) -> ET.Element:
        return ET.fromstring(self._zip.read(part))

    def relationships(self, part: str) -> dict[str, str]:
        """``rId -> resolved part path`` for the relationships of *part*."""
        cached = self._rels.get(part)
        if cached is not None:
            return cached
        rels: dict[str, str] = {}
        path = rels_path(part)
        if path in self._names:
            root = self.xml(path)
            for rel in root.findall(f"{{{PACKAGE_REL_NS}}}Relationship"):
                rel_id = rel.attrib.get("Id")
                target = rel.attrib.get("Target")
                if not rel_id or not target or rel.attrib.get("TargetMode") == "External":
                    continue
                rels[rel_id] = resolve_target(part, target)
        self._rels[part] = rels
        return rels

    def sheets(self) -> list[SheetPart]:
        """Worksheets in workbook order.

        Falls back to the ``xl/worksheets/sheetN.xml`` parts themselves,
        named ``sheetN``, when the workbook part cannot be read.
        """
        try:
            root = self.xml(WORKBOOK_PART)
            rels = self.relationships(WORKBOOK_PART)
            sheets: list[SheetPart] = []
            for sheet in root.findall("m:sheets/m:sheet", NS):
                target = rels.get(sheet.attrib.get(f"{{{REL_NS}}}id", ""))
                if target and target in self._names:
                    sheets.append(SheetPart(sheet.attrib.get("name", target), target))
            if sheets:
                return sheets
        except PACKAGE_ERRORS as exc:
            logger.debug("Falling back to worksheet part scan: %s", exc)

        found: list[tuple[int, SheetPart]] = []
        for name in self._names:
            m = _SHEET_PART_RE.match(name)
            if m:
                found.append((int(m.group(2)), SheetPart(m.group(1), name)))
        return [sp for _, sp in sorted(found)]
