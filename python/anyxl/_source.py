"""Source detection and loading for workbook files."""

from __future__ import annotations

import os
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Union

from anyxl.errors import UnsupportedSourceError

EXCEL_EXTENSIONS = ("xls", "xlsx", "xlsm", "xlsb")
XLS_SIGNATURE = b"\xd0\xcf\x11\xe0"
XLSX_SIGNATURE = b"PK\x03\x04"

# Formats openpyxl can read and write
OOXML_EXTENSIONS = ("xlsx", "xlsm")

Source = Union[str, os.PathLike, bytes, bytearray, memoryview]


@dataclass(frozen=True)
class FileMetadata:
    """Facts about where a workbook came from."""

    name: str
    size: int
    type: str = "excel"
    created_at: datetime | None = None
    modified_at: datetime | None = None


@dataclass(frozen=True)
class LoadedSource:
    data: bytes
    metadata: FileMetadata
    extension: str | None


def extension_of(path: str | os.PathLike) -> str:
    return Path(path).suffix.lstrip(".").lower()


def _is_path(source: Any) -> bool:
    return isinstance(source, (str, os.PathLike))


def detect(source: Source) -> bool:
    """True when *source* looks like an Excel workbook.

    Paths are judged by extension alone; byte payloads by their zip or OLE
    signature.
    """
    if _is_path(source):
        return extension_of(source) in EXCEL_EXTENSIONS
    if isinstance(source, (bytes, bytearray, memoryview)):
        head = bytes(source[:4])
        return head in (XLS_SIGNATURE, XLSX_SIGNATURE)
    return False


def _stat_time(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


def load_source(source: Source, metadata: dict[str, Any] | None = None) -> LoadedSource:
    """Read *source* into memory and describe it.

    Fields in *metadata* override the detected ones.
    """
    if _is_path(source):
        path = Path(source)
        data = path.read_bytes()
        stat = path.stat()
        # st_birthtime only exists on some platforms
        created = getattr(stat, "st_birthtime", stat.st_ctime)
        info = FileMetadata(
            name=path.name,
            size=stat.st_size,
            created_at=_stat_time(created),
            modified_at=_stat_time(stat.st_mtime),
        )
        extension: str | None = extension_of(path)
    elif isinstance(source, (bytes, bytearray, memoryview)):
        data = bytes(source)
        info = FileMetadata(name="buffer.xlsx", size=len(data))
        extension = None
    else:
        raise UnsupportedSourceError("Unsupported source provided to Excel handler.")

    if metadata:
        info = replace(info, **metadata)
    return LoadedSource(data=data, metadata=info, extension=extension)


def check_readable(loaded: LoadedSource) -> None:
    """Reject payloads openpyxl cannot parse (legacy binary formats)."""
    if loaded.data[:4] == XLS_SIGNATURE or loaded.extension in ("xls", "xlsb"):
        raise UnsupportedSourceError(
            f'Cannot open "{loaded.metadata.name}": only .xlsx and .xlsm workbooks are supported.'
        )
    if loaded.data[:4] != XLSX_SIGNATURE:
        raise UnsupportedSourceError(
            f'Cannot open "{loaded.metadata.name}": not a zip-based workbook.'
        )


def replace_extension(filename: str, new_ext: str) -> str:
    if not filename:
        return f"workbook.{new_ext}"
    return f"{Path(filename).stem}.{new_ext}" if Path(filename).suffix else f"{filename}.{new_ext}"
