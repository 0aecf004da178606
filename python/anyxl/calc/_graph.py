"""Dependency graph over formula cells: ordering and cycle enumeration."""

from __future__ import annotations

from collections import deque
from typing import TYPE_CHECKING

from anyxl.calc._parser import all_references

if TYPE_CHECKING:
    from anyxl._workbook import Workbook

_WHITE, _GRAY, _BLACK = 0, 1, 2


class DependencyGraph:
    """Tracks formula cell dependencies.

    All cell references use canonical "SheetName!A1" format.  Nodes are
    formula cells only; an edge target without a formula is a leaf.
    """

    __slots__ = ("dependencies", "dependents", "formulas", "sheet_titles")

    def __init__(self, sheet_titles: dict[str, str] | None = None) -> None:
        # lower-cased sheet name -> actual title
        self.sheet_titles: dict[str, str] = sheet_titles or {}
        # cell -> set of cells it reads from
        self.dependencies: dict[str, set[str]] = {}
        # cell -> set of cells that read from it (reverse edges)
        self.dependents: dict[str, set[str]] = {}
        # cell -> formula string
        self.formulas: dict[str, str] = {}

    def add_formula(self, cell_ref: str, formula: str, current_sheet: str) -> None:
        """Register a formula cell and its dependencies."""
        self.formulas[cell_ref] = formula
        refs = [self.canonical(ref) for ref in all_references(formula, current_sheet)]
        self.dependencies[cell_ref] = set(refs)
        for ref in refs:
            self.dependents.setdefault(ref, set()).add(cell_ref)

    def canonical(self, ref: str) -> str:
        """Spell the sheet of a ``Sheet!A1`` reference as its actual title.

        Sheet names match case-insensitively; unknown sheets are kept as
        written.
        """
        sheet, sep, address = ref.rpartition("!")
        if not sep:
            return ref
        return f"{self.sheet_titles.get(sheet.lower(), sheet)}!{address}"

    @property
    def nodes(self) -> list[str]:
        """Formula cells in insertion (sheet, then row-major) order."""
        return list(self.formulas)

    def sheets(self) -> set[str]:
        """Distinct sheet names owning at least one formula node."""
        return {node.rsplit("!", 1)[0] for node in self.formulas}

    # ------------------------------------------------------------------
    # Ordering
    # ------------------------------------------------------------------

    def partial_order(self) -> tuple[list[str], set[str]]:
        """Kahn's algorithm over formula cells.

        Returns ``(order, blocked)``: *order* lists every formula cell whose
        inputs can all be computed first; *blocked* holds the cells that sit
        on a cycle or depend on one.
        """
        formula_cells = set(self.formulas)
        if not formula_cells:
            return [], set()

        in_degree: dict[str, int] = {
            cell: len(self.dependencies.get(cell, set()) & formula_cells)
            for cell in formula_cells
        }
        # Seed in insertion order so results are deterministic
        queue: deque[str] = deque(c for c in self.formulas if in_degree[c] == 0)

        order: list[str] = []
        while queue:
            cell = queue.popleft()
            order.append(cell)
            for dep in sorted(self.dependents.get(cell, set())):
                if dep in formula_cells:
                    in_degree[dep] -= 1
                    if in_degree[dep] == 0:
                        queue.append(dep)

        return order, formula_cells - set(order)

    def topological_order(self) -> list[str]:
        """Return formula cells in evaluation order.

        Raises ValueError if a circular reference is detected.
        """
        order, blocked = self.partial_order()
        if blocked:
            raise ValueError(f"Circular reference detected involving: {sorted(blocked)}")
        return order

    # ------------------------------------------------------------------
    # Cycle enumeration
    # ------------------------------------------------------------------

    def find_cycles(self) -> list[list[str]]:
        """Enumerate cycles by depth-first search.

        Each time the walk re-enters a node already on the current path, the
        sub-path from that node through the current node is recorded, closed
        by repeating the entry node (``[A, B, A]``; a self reference gives
        ``[A, A]``).  Fully explored nodes are never revisited, so cycles are
        reported once per re-entry event, in discovery order.
        """
        color: dict[str, int] = {}
        cycles: list[list[str]] = []

        for root in self.formulas:
            if color.get(root, _WHITE) != _WHITE:
                continue
            color[root] = _GRAY
            path = [root]
            stack = [iter(sorted(self.dependencies.get(root, set())))]

            while stack:
                descended = False
                for nxt in stack[-1]:
                    state = color.get(nxt, _WHITE)
                    if state == _GRAY:
                        start = path.index(nxt)
                        cycles.append(path[start:] + [nxt])
                    elif state == _WHITE:
                        color[nxt] = _GRAY
                        path.append(nxt)
                        stack.append(iter(sorted(self.dependencies.get(nxt, set()))))
                        descended = True
                        break
                if not descended:
                    stack.pop()
                    color[path.pop()] = _BLACK

        return cycles

    @classmethod
    def from_workbook(cls, workbook: Workbook) -> DependencyGraph:
        """Build a dependency graph by scanning all sheets for formula cells."""
        graph = cls({name.lower(): name for name in workbook.sheetnames})
        for sheet_name in workbook.sheetnames:
            for coordinate, formula in workbook[sheet_name].iter_formulas():
                graph.add_formula(f"{sheet_name}!{coordinate}", formula, sheet_name)
        return graph
