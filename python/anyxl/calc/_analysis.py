"""WorkbookAnalyzer: runs the engine and explains what happened.

The engine only knows that *some* cells could not be ordered.  The analyzer
turns that into explicit cycle paths, keeps track of when the workbook was
last evaluated successfully, and answers single-cell queries without ever
raising.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from anyxl._utils import qualify, rowcol_to_a1
from anyxl.calc._functions import FunctionRegistry, default_registry
from anyxl.calc._graph import DependencyGraph
from anyxl.calc._parser import parse_functions
from anyxl.calc._evaluator import WorkbookEvaluator
from anyxl.calc._protocol import (
    CircularReference,
    EvaluationIssue,
    EvaluationReport,
    FormulaResult,
    FormulaSummary,
)
from anyxl.errors import CircularReferenceError, FormulaEvaluationError

if TYPE_CHECKING:
    from anyxl._workbook import Workbook

logger = logging.getLogger(__name__)

CIRCULAR_CELL_MESSAGE = "Circular reference detected"
CIRCULAR_INPUT_MESSAGE = "Depends on a circular reference"


class WorkbookAnalyzer:
    """Evaluation orchestrator bound to one workbook handle.

    Graphs are rebuilt on every call, so results always reflect the cells
    as they are now.
    """

    __slots__ = ("_workbook", "_registry", "_last_evaluated_at")

    def __init__(self, workbook: Workbook, registry: FunctionRegistry | None = None) -> None:
        self._workbook = workbook
        self._registry = registry if registry is not None else default_registry()
        self._last_evaluated_at: datetime | None = None

    @property
    def registry(self) -> FunctionRegistry:
        return self._registry

    @property
    def last_evaluated_at(self) -> datetime | None:
        return self._last_evaluated_at

    # ------------------------------------------------------------------
    # Cycles
    # ------------------------------------------------------------------

    def _graph(self) -> DependencyGraph:
        return DependencyGraph.from_workbook(self._workbook)

    @staticmethod
    def _cycles(graph: DependencyGraph) -> list[CircularReference]:
        return [CircularReference(tuple(path)) for path in graph.find_cycles()]

    def find_circular_references(self) -> list[CircularReference]:
        """Every cycle in the current formulas.  Does not evaluate."""
        return self._cycles(self._graph())

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def evaluate_all(self, ignore_circular: bool = False) -> EvaluationReport:
        """Recalculate every formula cell of the workbook in place.

        Raises :class:`CircularReferenceError` when a cycle exists and
        *ignore_circular* is false, and :class:`FormulaEvaluationError` for
        any other engine failure.  Both carry the report built so far.
        Cells that could be ordered keep their freshly computed values even
        when an error is raised.
        """
        report = EvaluationReport()
        engine = WorkbookEvaluator(self._registry)
        graph: DependencyGraph | None = None

        try:
            engine.evaluate(self._workbook)
        except CircularReferenceError as exc:
            graph = self._graph()
            report.circular = self._cycles(graph)
            report.skipped = list(exc.cells)
            if not ignore_circular:
                raise CircularReferenceError(
                    str(exc), cells=exc.cells, report=report
                ) from exc
            logger.warning(
                "Ignoring %d circular reference(s): %s",
                len(report.circular),
                ", ".join(str(c) for c in report.circular),
            )
        except FormulaEvaluationError as exc:
            report.errors.append(EvaluationIssue(exc.address, str(exc)))
            raise FormulaEvaluationError(
                str(exc), address=exc.address, report=report
            ) from exc

        if graph is None:
            graph = self._graph()
        report.evaluated = graph.nodes

        if not report.circular:
            # The engine may order around a cycle it never reached
            report.circular = self._cycles(graph)
            if report.circular:
                cells = sorted(report.circular_cells)
                if not ignore_circular:
                    raise CircularReferenceError(
                        f"Circular reference detected involving: {', '.join(cells)}",
                        cells=cells,
                        report=report,
                    )
                logger.warning(
                    "Ignoring %d circular reference(s) found after evaluation",
                    len(report.circular),
                )

        self._last_evaluated_at = datetime.now(timezone.utc)
        return report

    def evaluate_cell(self, sheet: str | int, row: int, col: int) -> FormulaResult:
        """Evaluate the workbook and read one cell back.

        ``row`` and ``col`` are 1-based.  Never raises: failures come back
        in ``FormulaResult.error`` with the value the cell held beforehand.
        """
        try:
            ws = self._workbook.sheet(sheet)
            address = qualify(ws.title, rowcol_to_a1(row, col))
            before = self._workbook.get_cell(sheet, row, col)
        except Exception as exc:
            return FormulaResult(address=f"{sheet}!{row}:{col}", value=None, type="z", error=str(exc))

        formula = before.formula if before is not None else None
        try:
            report = self.evaluate_all(ignore_circular=True)
            if address in report.circular_cells:
                return FormulaResult(
                    address=address,
                    value=None,
                    type="e",
                    formula=formula,
                    error=CIRCULAR_CELL_MESSAGE,
                )
            if address in report.skipped:
                return FormulaResult(
                    address=address,
                    value=None,
                    type="e",
                    formula=formula,
                    error=CIRCULAR_INPUT_MESSAGE,
                )
            after = self._workbook.get_cell(sheet, row, col)
        except Exception as exc:
            logger.debug("evaluate_cell(%s) failed: %s", address, exc)
            return FormulaResult(
                address=address,
                value=before.value if before is not None else None,
                type=before.type if before is not None else "z",
                formula=formula,
                error=str(exc),
            )
        if after is None:
            return FormulaResult(address=address, value=None, type="z")
        return FormulaResult(
            address=address, value=after.value, type=after.type, formula=after.formula
        )

    # ------------------------------------------------------------------
    # Summary
    # ------------------------------------------------------------------

    def get_formula_summary(self) -> FormulaSummary:
        """Count formulas and cycles.  Does not evaluate."""
        graph = self._graph()
        functions: set[str] = set()
        for formula in graph.formulas.values():
            for name in parse_functions(formula):
                functions.add(self._registry.canonical_name(name))

        return FormulaSummary(
            total_formulas=len(graph.formulas),
            sheets_with_formulas=len(graph.sheets()),
            circular_references=len(graph.find_cycles()),
            last_evaluated_at=self._last_evaluated_at,
            custom_formulas=tuple(self._registry.custom_names),
            functions_used=tuple(sorted(functions)),
        )
