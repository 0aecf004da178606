"""Tests for WorkbookAnalyzer through the public Workbook surface."""

from __future__ import annotations

import logging
from datetime import datetime

import pytest

import anyxl
from anyxl.calc import CircularReference, FunctionRegistry
from anyxl.errors import CircularReferenceError, FormulaEvaluationError


@pytest.fixture
def registry() -> FunctionRegistry:
    reg = FunctionRegistry()
    reg.register("DOUBLE", lambda x: x * 2)
    return reg


def _sales(registry: FunctionRegistry | None = None) -> anyxl.Workbook:
    wb = anyxl.Workbook(registry=registry)
    wb.set_cell("Sheet1", 2, 1, 10)
    wb.set_cell("Sheet1", 2, 2, 2)
    wb.set_cell("Sheet1", 3, 1, 5)
    wb.set_cell("Sheet1", 3, 2, 4)
    wb.set_cell("Sheet1", 2, 3, None, formula="=A2*B2")
    wb.set_cell("Sheet1", 3, 3, None, formula="=A3*B3")
    wb.set_cell("Sheet1", 4, 3, None, formula="=SUM(C2:C3)")
    return wb


class TestNoFormulas:
    def test_empty_workbook(self) -> None:
        wb = anyxl.Workbook()
        wb.set_cell("Sheet1", 1, 1, "plain")
        assert wb.find_circular_references() == []
        summary = wb.get_formula_summary()
        assert summary.total_formulas == 0
        assert summary.sheets_with_formulas == 0
        assert summary.circular_references == 0

    def test_evaluate_all_on_empty_workbook(self) -> None:
        report = anyxl.Workbook().evaluate_all()
        assert report.evaluated == []
        assert report.circular == []


class TestCircularReferences:
    def test_self_reference(self) -> None:
        wb = anyxl.Workbook()
        wb.set_cell("Sheet1", 1, 1, "=A1")
        cycles = wb.find_circular_references()
        assert cycles == [CircularReference(("Sheet1!A1", "Sheet1!A1"))]

    def test_two_cell_cycle(self) -> None:
        wb = anyxl.Workbook()
        wb.set_cell("Sheet1", 2, 4, "=D3")
        wb.set_cell("Sheet1", 3, 4, "=D2")
        cycles = wb.find_circular_references()
        assert len(cycles) == 1
        assert "Sheet1!D2" in cycles[0]
        assert "Sheet1!D3" in cycles[0]
        assert str(cycles[0]) == "Sheet1!D2 -> Sheet1!D3 -> Sheet1!D2"

    def test_sheet_name_matches_any_case(self) -> None:
        wb = anyxl.Workbook()
        wb.set_cell("Sheet1", 1, 1, "=sheet1!A1")
        cycles = wb.find_circular_references()
        assert cycles == [CircularReference(("Sheet1!A1", "Sheet1!A1"))]

    def test_find_does_not_evaluate(self) -> None:
        wb = _sales()
        wb.find_circular_references()
        assert wb.get_cell("Sheet1", 2, 3).value is None


class TestEvaluateAll:
    def test_computes_dependency_chain(self) -> None:
        wb = _sales()
        report = wb.evaluate_all()
        assert wb.get_cell("Sheet1", 2, 3).value == 20
        assert wb.get_cell("Sheet1", 3, 3).value == 20
        assert wb.get_cell("Sheet1", 4, 3).value == 40
        assert report.circular == []
        assert report.evaluated == ["Sheet1!C2", "Sheet1!C3", "Sheet1!C4"]

    def test_sheet_name_matches_any_case(self) -> None:
        wb = anyxl.Workbook()
        wb.add_sheet("Rates")
        wb.set_cell("Sheet1", 1, 1, 5)
        wb.set_cell("Rates", 1, 1, 3)
        wb.set_cell("Sheet1", 1, 2, "=sheet1!A1*2")
        wb.set_cell("Sheet1", 1, 3, "=SUM(RATES!A1:A2)+B1")
        wb.evaluate_all()
        assert wb.get_cell("Sheet1", 1, 2).value == 10
        assert wb.get_cell("Sheet1", 1, 3).value == 13

    def test_reevaluates_after_write(self) -> None:
        wb = _sales()
        wb.evaluate_all()
        wb.set_cell("Sheet1", 2, 1, 100)
        wb.evaluate_all()
        assert wb.get_cell("Sheet1", 4, 3).value == 220

    def test_strict_cycle_raises_with_report(self) -> None:
        wb = _sales()
        wb.set_cell("Sheet1", 2, 4, "=D3")
        wb.set_cell("Sheet1", 3, 4, "=D2")
        with pytest.raises(CircularReferenceError) as info:
            wb.evaluate_all()
        assert info.value.cells == ["Sheet1!D2", "Sheet1!D3"]
        assert info.value.report is not None
        assert len(info.value.report.circular) == 1
        # Cells outside the cycle were still computed
        assert wb.get_cell("Sheet1", 4, 3).value == 40

    def test_ignore_circular_returns_report(self, caplog: pytest.LogCaptureFixture) -> None:
        wb = _sales()
        wb.set_cell("Sheet1", 2, 4, "=D3")
        wb.set_cell("Sheet1", 3, 4, "=D2")
        with caplog.at_level(logging.WARNING, logger="anyxl.calc._analysis"):
            report = wb.evaluate_all(ignore_circular=True)
        assert report.circular_cells == {"Sheet1!D2", "Sheet1!D3"}
        assert report.skipped == ["Sheet1!D2", "Sheet1!D3"]
        assert "circular reference" in caplog.text
        assert wb.get_formula_summary().last_evaluated_at is not None

    def test_custom_function(self, registry: FunctionRegistry) -> None:
        wb = _sales(registry)
        wb.set_cell("Sheet1", 2, 5, None, formula="=DOUBLE(A2)")
        wb.evaluate_all()
        assert wb.get_cell("Sheet1", 2, 5).value == 20

    def test_custom_function_failure_carries_report(self) -> None:
        reg = FunctionRegistry()
        reg.register("FAILS", lambda *args: 1 / 0)
        wb = anyxl.Workbook(registry=reg)
        wb.set_cell("Sheet1", 1, 1, "=FAILS()")
        with pytest.raises(FormulaEvaluationError) as info:
            wb.evaluate_all()
        assert info.value.report is not None
        assert info.value.report.errors[0].address == "Sheet1!A1"

    def test_sets_last_evaluated_at(self) -> None:
        wb = _sales()
        assert wb.get_formula_summary().last_evaluated_at is None
        wb.evaluate_all()
        stamp = wb.get_formula_summary().last_evaluated_at
        assert isinstance(stamp, datetime)
        assert stamp.tzinfo is not None

    def test_failed_run_keeps_previous_timestamp(self) -> None:
        wb = anyxl.Workbook()
        wb.set_cell("Sheet1", 1, 1, "=A1")
        with pytest.raises(CircularReferenceError):
            wb.evaluate_all()
        assert wb.get_formula_summary().last_evaluated_at is None


class TestEvaluateCell:
    def test_returns_computed_value(self) -> None:
        wb = _sales()
        result = wb.evaluate_cell("Sheet1", 4, 3)
        assert result.address == "Sheet1!C4"
        assert result.value == 40
        assert result.type == "n"
        assert result.formula == "SUM(C2:C3)"
        assert result.error is None

    def test_accepts_sheet_index(self) -> None:
        result = _sales().evaluate_cell(0, 2, 3)
        assert result.address == "Sheet1!C2"
        assert result.value == 20

    def test_cell_on_cycle_reports_error(self) -> None:
        wb = anyxl.Workbook()
        wb.set_cell("Sheet1", 1, 1, "=A1")
        result = wb.evaluate_cell("Sheet1", 1, 1)
        assert result.value is None
        assert result.type == "e"
        assert result.error == "Circular reference detected"

    def test_cell_downstream_of_cycle(self) -> None:
        wb = anyxl.Workbook()
        wb.set_cell("Sheet1", 1, 1, "=A2")
        wb.set_cell("Sheet1", 2, 1, "=A1")
        wb.set_cell("Sheet1", 3, 1, "=A1+1")
        result = wb.evaluate_cell("Sheet1", 3, 1)
        assert result.value is None
        assert result.type == "e"
        assert result.formula == "A1+1"
        assert result.error == "Depends on a circular reference"

    def test_empty_cell(self) -> None:
        result = anyxl.Workbook().evaluate_cell("Sheet1", 5, 5)
        assert result.address == "Sheet1!E5"
        assert result.value is None
        assert result.type == "z"

    def test_never_raises(self) -> None:
        reg = FunctionRegistry()
        reg.register("FAILS", lambda *args: 1 / 0)
        wb = anyxl.Workbook(registry=reg)
        wb.set_cell("Sheet1", 1, 1, 7)
        wb.set_cell("Sheet1", 1, 2, "=FAILS(A1)")
        result = wb.evaluate_cell("Sheet1", 1, 1)
        assert result.value == 7
        assert result.error is not None
        assert "FAILS" in result.error

    def test_unknown_sheet_reports_error(self) -> None:
        result = anyxl.Workbook().evaluate_cell("Missing", 1, 1)
        assert result.error == 'Sheet "Missing" not found.'

    def test_invalid_position_reports_error(self) -> None:
        result = anyxl.Workbook().evaluate_cell("Sheet1", 0, 1)
        assert result.error is not None


class TestFormulaSummary:
    def test_counts(self, registry: FunctionRegistry) -> None:
        wb = _sales(registry)
        wb.add_sheet("Other")
        wb.set_cell("Other", 1, 1, "=DOUBLE(Sheet1!A2)")
        summary = wb.get_formula_summary()
        assert summary.total_formulas == 4
        assert summary.sheets_with_formulas == 2
        assert summary.circular_references == 0
        assert "DOUBLE" in summary.custom_formulas
        assert summary.functions_used == ("DOUBLE", "SUM")

    def test_counts_cycles(self) -> None:
        wb = anyxl.Workbook()
        wb.set_cell("Sheet1", 1, 1, "=A1")
        wb.set_cell("Sheet1", 2, 1, "=A3")
        wb.set_cell("Sheet1", 3, 1, "=A2")
        assert wb.get_formula_summary().circular_references == 2

    def test_idempotent(self, registry: FunctionRegistry) -> None:
        wb = _sales(registry)
        assert wb.get_formula_summary() == wb.get_formula_summary()

    def test_localized_names_are_canonical(self) -> None:
        reg = FunctionRegistry()
        reg.localize({"SOMME": "SUM"})
        wb = anyxl.Workbook(registry=reg)
        wb.set_cell("Sheet1", 1, 1, "=SOMME(B1:B2)")
        assert wb.get_formula_summary().functions_used == ("SUM",)
