"""Tests for anyxl.calc dependency graph, ordering and cycle enumeration."""

from __future__ import annotations

import pytest

import anyxl
from anyxl.calc._graph import DependencyGraph


class TestAddFormula:
    def test_simple_dependency(self) -> None:
        g = DependencyGraph()
        g.add_formula("Sheet1!B1", "=Sheet1!A1+1", "Sheet1")
        assert "Sheet1!A1" in g.dependencies["Sheet1!B1"]
        assert "Sheet1!B1" in g.dependents["Sheet1!A1"]

    def test_range_dependency(self) -> None:
        g = DependencyGraph()
        g.add_formula("Sheet1!A4", "=SUM(A1:A3)", "Sheet1")
        assert g.dependencies["Sheet1!A4"] == {"Sheet1!A1", "Sheet1!A2", "Sheet1!A3"}

    def test_cross_sheet_dependency(self) -> None:
        g = DependencyGraph()
        g.add_formula("Summary!B1", "=Data!A1+Data!A2", "Summary")
        assert g.dependencies["Summary!B1"] == {"Data!A1", "Data!A2"}

    def test_missing_cells_kept_as_leaves(self) -> None:
        g = DependencyGraph()
        g.add_formula("Sheet1!A1", "=Sheet1!Z99*2", "Sheet1")
        assert g.dependencies["Sheet1!A1"] == {"Sheet1!Z99"}
        assert g.nodes == ["Sheet1!A1"]

    def test_sheets(self) -> None:
        g = DependencyGraph()
        g.add_formula("Data!B1", "=A1", "Data")
        g.add_formula("Summary!B1", "=Data!B1", "Summary")
        g.add_formula("Summary!B2", "=B1", "Summary")
        assert g.sheets() == {"Data", "Summary"}


class TestTopologicalOrder:
    def test_empty(self) -> None:
        assert DependencyGraph().topological_order() == []

    def test_linear_chain(self) -> None:
        g = DependencyGraph()
        g.add_formula("Sheet1!C1", "=Sheet1!B1*2", "Sheet1")
        g.add_formula("Sheet1!B1", "=Sheet1!A1+1", "Sheet1")
        order = g.topological_order()
        assert order.index("Sheet1!B1") < order.index("Sheet1!C1")

    def test_diamond(self) -> None:
        """A1 feeds B1 and C1, both feed D1."""
        g = DependencyGraph()
        g.add_formula("Sheet1!B1", "=Sheet1!A1+1", "Sheet1")
        g.add_formula("Sheet1!C1", "=Sheet1!A1*2", "Sheet1")
        g.add_formula("Sheet1!D1", "=Sheet1!B1+Sheet1!C1", "Sheet1")
        order = g.topological_order()
        assert order[-1] == "Sheet1!D1"

    def test_circular_detection(self) -> None:
        g = DependencyGraph()
        g.add_formula("Sheet1!A1", "=Sheet1!B1+1", "Sheet1")
        g.add_formula("Sheet1!B1", "=Sheet1!A1+1", "Sheet1")
        with pytest.raises(ValueError, match="Circular reference"):
            g.topological_order()

    def test_partial_order_blocks_downstream_of_cycle(self) -> None:
        g = DependencyGraph()
        g.add_formula("Sheet1!A1", "=Sheet1!B1", "Sheet1")
        g.add_formula("Sheet1!B1", "=Sheet1!A1", "Sheet1")
        g.add_formula("Sheet1!C1", "=Sheet1!A1+1", "Sheet1")
        g.add_formula("Sheet1!D1", "=Sheet1!X1+1", "Sheet1")
        order, blocked = g.partial_order()
        assert order == ["Sheet1!D1"]
        assert blocked == {"Sheet1!A1", "Sheet1!B1", "Sheet1!C1"}


class TestFindCycles:
    def test_no_cycles(self) -> None:
        g = DependencyGraph()
        g.add_formula("Sheet1!B1", "=A1+1", "Sheet1")
        g.add_formula("Sheet1!C1", "=B1+1", "Sheet1")
        assert g.find_cycles() == []

    def test_self_reference(self) -> None:
        g = DependencyGraph()
        g.add_formula("Sheet1!A1", "=A1", "Sheet1")
        assert g.find_cycles() == [["Sheet1!A1", "Sheet1!A1"]]

    def test_two_cell_cycle(self) -> None:
        g = DependencyGraph()
        g.add_formula("Sheet1!D2", "=D3", "Sheet1")
        g.add_formula("Sheet1!D3", "=D2", "Sheet1")
        assert g.find_cycles() == [["Sheet1!D2", "Sheet1!D3", "Sheet1!D2"]]

    def test_path_starts_at_reentered_node(self) -> None:
        """A tail leading into a loop is not part of the reported path."""
        g = DependencyGraph()
        g.add_formula("Sheet1!A1", "=B1", "Sheet1")
        g.add_formula("Sheet1!B1", "=C1", "Sheet1")
        g.add_formula("Sheet1!C1", "=B1", "Sheet1")
        assert g.find_cycles() == [["Sheet1!B1", "Sheet1!C1", "Sheet1!B1"]]

    def test_cross_sheet_cycle(self) -> None:
        g = DependencyGraph()
        g.add_formula("Data!A1", "=Summary!A1", "Data")
        g.add_formula("Summary!A1", "=Data!A1*2", "Summary")
        cycles = g.find_cycles()
        assert len(cycles) == 1
        assert set(cycles[0]) == {"Data!A1", "Summary!A1"}

    def test_independent_cycles(self) -> None:
        g = DependencyGraph()
        g.add_formula("Sheet1!A1", "=B1", "Sheet1")
        g.add_formula("Sheet1!B1", "=A1", "Sheet1")
        g.add_formula("Sheet1!X1", "=X1", "Sheet1")
        cycles = g.find_cycles()
        assert cycles == [
            ["Sheet1!A1", "Sheet1!B1", "Sheet1!A1"],
            ["Sheet1!X1", "Sheet1!X1"],
        ]

    def test_one_record_per_reentry(self) -> None:
        """A1 reads B1 and C1, both of which read A1."""
        g = DependencyGraph()
        g.add_formula("Sheet1!A1", "=B1+C1", "Sheet1")
        g.add_formula("Sheet1!B1", "=A1", "Sheet1")
        g.add_formula("Sheet1!C1", "=A1", "Sheet1")
        assert g.find_cycles() == [
            ["Sheet1!A1", "Sheet1!B1", "Sheet1!A1"],
            ["Sheet1!A1", "Sheet1!C1", "Sheet1!A1"],
        ]

    def test_paths_are_closed(self) -> None:
        g = DependencyGraph()
        g.add_formula("Sheet1!A1", "=B1", "Sheet1")
        g.add_formula("Sheet1!B1", "=C1", "Sheet1")
        g.add_formula("Sheet1!C1", "=A1", "Sheet1")
        for path in g.find_cycles():
            assert path[0] == path[-1]

    def test_deep_chain_does_not_recurse(self) -> None:
        g = DependencyGraph()
        depth = 5000
        for i in range(1, depth):
            g.add_formula(f"Sheet1!A{i}", f"=A{i + 1}", "Sheet1")
        g.add_formula(f"Sheet1!A{depth}", "=A1", "Sheet1")
        cycles = g.find_cycles()
        assert len(cycles) == 1
        assert len(cycles[0]) == depth + 1


class TestFromWorkbook:
    def test_scans_every_sheet(self) -> None:
        wb = anyxl.Workbook()
        wb.set_cell("Sheet1", 1, 1, 5)
        wb.set_cell("Sheet1", 1, 2, "=A1*2")
        wb.add_sheet("Other")
        wb.set_cell("Other", 1, 1, "=Sheet1!B1+1")
        g = DependencyGraph.from_workbook(wb)
        assert g.nodes == ["Sheet1!B1", "Other!A1"]
        assert g.dependencies["Other!A1"] == {"Sheet1!B1"}

    def test_sheet_names_use_actual_title(self) -> None:
        wb = anyxl.Workbook()
        wb.add_sheet("Other")
        wb.set_cell("Sheet1", 1, 1, "=other!B2+'OTHER'!C3:C4")
        g = DependencyGraph.from_workbook(wb)
        assert g.dependencies["Sheet1!A1"] == {"Other!B2", "Other!C3", "Other!C4"}

    def test_unknown_sheet_kept_as_written(self) -> None:
        g = DependencyGraph({"sheet1": "Sheet1"})
        g.add_formula("Sheet1!A1", "=Missing!A1+sheet1!B1", "Sheet1")
        assert g.dependencies["Sheet1!A1"] == {"Missing!A1", "Sheet1!B1"}

    def test_does_not_mutate_workbook(self) -> None:
        wb = anyxl.Workbook()
        wb.set_cell("Sheet1", 1, 1, "=B1")
        before = wb.get_cell("Sheet1", 1, 1)
        DependencyGraph.from_workbook(wb)
        assert wb.get_cell("Sheet1", 1, 1) == before
