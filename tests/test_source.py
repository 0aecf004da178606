"""Tests for source detection and anyxl.open."""

from __future__ import annotations

from pathlib import Path

import pytest

import anyxl
from anyxl._source import XLS_SIGNATURE, detect, load_source, replace_extension
from anyxl.errors import UnsupportedSourceError


@pytest.fixture
def xlsx_bytes() -> bytes:
    wb = anyxl.Workbook()
    wb.set_cell("Sheet1", 1, 1, "hello")
    return wb.to_bytes()


class TestDetect:
    @pytest.mark.parametrize("name", ["a.xlsx", "a.XLSM", "dir/a.xls", "a.xlsb"])
    def test_workbook_extensions(self, name: str) -> None:
        assert detect(name)

    @pytest.mark.parametrize("name", ["a.csv", "a.xlsx.bak", "noext"])
    def test_other_extensions(self, name: str) -> None:
        assert not detect(name)

    def test_path_object(self) -> None:
        assert detect(Path("report.xlsx"))

    def test_zip_signature(self, xlsx_bytes: bytes) -> None:
        assert detect(xlsx_bytes)
        assert detect(bytearray(xlsx_bytes))

    def test_ole_signature(self) -> None:
        assert detect(XLS_SIGNATURE + b"\x00" * 16)

    def test_other_bytes(self) -> None:
        assert not detect(b"%PDF-1.7")
        assert not detect(b"")

    def test_other_types(self) -> None:
        assert not detect(12345)  # type: ignore[arg-type]


class TestLoadSource:
    def test_bytes_default_name(self, xlsx_bytes: bytes) -> None:
        loaded = load_source(xlsx_bytes)
        assert loaded.metadata.name == "buffer.xlsx"
        assert loaded.metadata.size == len(xlsx_bytes)
        assert loaded.metadata.type == "excel"
        assert loaded.extension is None

    def test_path_stat(self, xlsx_bytes: bytes, tmp_path: Path) -> None:
        path = tmp_path / "q3.xlsx"
        path.write_bytes(xlsx_bytes)
        loaded = load_source(str(path))
        assert loaded.metadata.name == "q3.xlsx"
        assert loaded.metadata.size == len(xlsx_bytes)
        assert loaded.metadata.modified_at is not None
        assert loaded.metadata.modified_at.tzinfo is not None
        assert loaded.extension == "xlsx"

    def test_metadata_override(self, xlsx_bytes: bytes) -> None:
        loaded = load_source(xlsx_bytes, {"name": "upload.xlsx"})
        assert loaded.metadata.name == "upload.xlsx"
        assert loaded.metadata.size == len(xlsx_bytes)

    def test_unsupported_source(self) -> None:
        with pytest.raises(UnsupportedSourceError, match="Unsupported source provided to Excel handler."):
            load_source(3.14)  # type: ignore[arg-type]


class TestReplaceExtension:
    def test_replaces_suffix(self) -> None:
        assert replace_extension("report.xlsx", "csv") == "report.csv"

    def test_appends_when_missing(self) -> None:
        assert replace_extension("report", "csv") == "report.csv"

    def test_empty_name(self) -> None:
        assert replace_extension("", "csv") == "workbook.csv"


class TestOpen:
    def test_open_bytes(self, xlsx_bytes: bytes) -> None:
        wb = anyxl.open(xlsx_bytes)
        assert wb.metadata.name == "buffer.xlsx"
        assert wb.get_cell("Sheet1", 1, 1).value == "hello"

    def test_open_path(self, xlsx_bytes: bytes, tmp_path: Path) -> None:
        path = tmp_path / "book.xlsx"
        path.write_bytes(xlsx_bytes)
        with anyxl.open(path) as wb:
            assert wb.metadata.name == "book.xlsx"
            assert wb.sheetnames == ["Sheet1"]

    def test_metadata_override(self, xlsx_bytes: bytes) -> None:
        wb = anyxl.open(xlsx_bytes, metadata={"name": "q3.xlsx"})
        assert wb.metadata.name == "q3.xlsx"
        assert wb.convert("csv").metadata.name == "q3.csv"

    def test_header_row_default(self) -> None:
        src = anyxl.Workbook()
        src.write_rows("Sheet1", [["title"], ["k"], ["v"]])
        wb = anyxl.open(src.to_bytes(), header_row=2)
        assert wb.read_sheet() == [{"k": "v"}]

    def test_explicit_registry(self, xlsx_bytes: bytes) -> None:
        reg = anyxl.FunctionRegistry()
        assert anyxl.open(xlsx_bytes, registry=reg).registry is reg

    def test_forced_type_mismatch(self, xlsx_bytes: bytes) -> None:
        with pytest.raises(UnsupportedSourceError, match='No handler registered for type "pdf".'):
            anyxl.open(xlsx_bytes, type="pdf")

    def test_forced_type_bad_source(self) -> None:
        with pytest.raises(UnsupportedSourceError, match="Unsupported source provided"):
            anyxl.open(12345, type="excel")  # type: ignore[arg-type]

    def test_undetected_source(self) -> None:
        with pytest.raises(UnsupportedSourceError, match="No handler registered for the provided source."):
            anyxl.open(b"name,qty\nwidget,3\n")

    def test_legacy_binary_rejected(self) -> None:
        with pytest.raises(UnsupportedSourceError, match="only .xlsx and .xlsm"):
            anyxl.open(XLS_SIGNATURE + b"\x00" * 512)

    def test_xlsb_path_rejected(self, xlsx_bytes: bytes, tmp_path: Path) -> None:
        path = tmp_path / "book.xlsb"
        path.write_bytes(xlsx_bytes)
        with pytest.raises(UnsupportedSourceError):
            anyxl.open(path)

    def test_non_zip_payload_rejected(self, tmp_path: Path) -> None:
        path = tmp_path / "notes.xlsx"
        path.write_text("plain text", encoding="utf-8")
        with pytest.raises(UnsupportedSourceError, match="not a zip-based workbook"):
            anyxl.open(path)


class TestSharedRegistry:
    def test_register_custom_formula(self) -> None:
        anyxl.register_custom_formula("TRIPLE_SHARED", lambda x: x * 3)
        wb = anyxl.Workbook()
        wb.set_cell("Sheet1", 1, 1, 4)
        wb.set_cell("Sheet1", 1, 2, "=TRIPLE_SHARED(A1)")
        wb.evaluate_all()
        assert wb.get_cell("Sheet1", 1, 2).value == 12

    def test_register_custom_formulas_validates(self) -> None:
        with pytest.raises(anyxl.InvalidFormulaError):
            anyxl.register_custom_formulas({"OK_SHARED": len, "": len})
        assert not anyxl.Workbook().registry.has("OK_SHARED")

    def test_configure_localization(self) -> None:
        anyxl.configure_formula_localization({"SUMME": "SUM"})
        wb = anyxl.Workbook()
        wb.write_rows("Sheet1", [[1, 2, "=SUMME(A1:B1)"]])
        wb.evaluate_all()
        assert wb.get_cell("Sheet1", 1, 3).value == 3
