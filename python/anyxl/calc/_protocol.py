"""Result dataclasses returned by workbook analysis."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass(frozen=True)
class CircularReference:
    """One dependency cycle; ``path[0] == path[-1]``."""

    path: tuple[str, ...]

    @property
    def cells(self) -> frozenset[str]:
        return frozenset(self.path)

    def __contains__(self, cell_ref: object) -> bool:
        return cell_ref in self.path

    def __str__(self) -> str:
        return " -> ".join(self.path)


@dataclass(frozen=True)
class EvaluationIssue:
    """A non-circular evaluation failure."""

    address: str | None
    message: str


@dataclass
class EvaluationReport:
    """Outcome of evaluating a whole workbook."""

    evaluated: list[str] = field(default_factory=list)
    circular: list[CircularReference] = field(default_factory=list)
    errors: list[EvaluationIssue] = field(default_factory=list)
    # formula cells left unevaluated because they sit on or read from a cycle
    skipped: list[str] = field(default_factory=list)

    @property
    def circular_cells(self) -> set[str]:
        """Every cell that sits on some reported cycle."""
        return {cell for cycle in self.circular for cell in cycle.path}


@dataclass(frozen=True)
class FormulaResult:
    """Value of a single cell after evaluation.

    ``error`` is set instead of a value when the cell is on a cycle or the
    evaluation failed; ``value`` then holds the last-known value, if any.
    """

    address: str
    value: Any
    type: str
    formula: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class FormulaSummary:
    """Aggregate counters over a workbook's formulas."""

    total_formulas: int
    sheets_with_formulas: int
    circular_references: int
    last_evaluated_at: datetime | None
    custom_formulas: tuple[str, ...]
    functions_used: tuple[str, ...] = ()
