"""WorkbookEvaluator: the calculation engine behind workbook evaluation.

A recursive descent evaluator that handles balanced parentheses, operator
precedence and nested calls like ``=ROUND(SUM(A1:A5)*IF(B1>0,1.1,1.0),2)``.
Functions come from a :class:`FunctionRegistry`, so custom and localized
names resolve the same way builtins do.

When the ``formulas`` library is installed (via ``anyxl[calc]``), formulas
using functions the registry lacks fall back to the library's Excel
implementations; otherwise they evaluate to ``#NAME?``.
"""

from __future__ import annotations

import inspect
import logging
import re
from typing import TYPE_CHECKING, Any

from anyxl._utils import split_qualified
from anyxl.calc._functions import (
    ERROR_TOLERANT,
    ExcelError,
    FunctionRegistry,
    RangeValue,
    default_registry,
    first_error,
)
from anyxl.calc._graph import DependencyGraph
from anyxl.calc._parser import expand_range, range_shape
from anyxl.errors import CircularReferenceError, FormulaEvaluationError

if TYPE_CHECKING:
    from anyxl._workbook import Workbook

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# formulas library availability
# ---------------------------------------------------------------------------

_formulas_available: bool | None = None


def _check_formulas() -> bool:
    global _formulas_available
    if _formulas_available is None:
        try:
            import formulas  # noqa: F401

            _formulas_available = True
        except ImportError:
            _formulas_available = False
    return _formulas_available


class _UnsupportedFunction(Exception):
    """Raised internally when a function name is not in the registry."""


# ---------------------------------------------------------------------------
# Expression parsing helpers
# ---------------------------------------------------------------------------


def _find_matching_paren(expr: str, start: int) -> int:
    """Index of the ``')'`` matching the ``'('`` at *expr[start]*, or -1."""
    depth = 1
    in_string = False
    for i in range(start + 1, len(expr)):
        ch = expr[i]
        if ch == '"':
            in_string = not in_string
        elif not in_string:
            if ch == '(':
                depth += 1
            elif ch == ')':
                depth -= 1
                if depth == 0:
                    return i
    return -1


def _match_function_call(expr: str) -> tuple[str, str] | None:
    """If *expr* is exactly ``FUNC(balanced_args)``, return ``(name, args_str)``.

    ``SUM(A1:A5)*2`` is NOT matched (trailing content after the close-paren).
    """
    m = re.match(r'^([A-Z_][A-Z0-9_.]*)\s*\(', expr, re.IGNORECASE)
    if not m:
        return None
    open_idx = m.end() - 1
    close_idx = _find_matching_paren(expr, open_idx)
    if close_idx >= 0 and close_idx == len(expr) - 1:
        return m.group(1), expr[open_idx + 1:close_idx]
    return None


_PASSES = ("cmp", "concat", "add", "mul", "pow")


def _is_exponent_sign(expr: str, j: int) -> bool:
    """``True`` when ``expr[j]`` is the ``E`` of a literal like ``2.5E-1``."""
    if expr[j] not in ('e', 'E'):
        return False
    k = j - 1
    while k >= 0 and (expr[k].isdigit() or expr[k] == '.'):
        k -= 1
    if k == j - 1:
        return False
    return k < 0 or not (expr[k].isalnum() or expr[k] in ('_', '$', '!'))


def _find_top_level_split(expr: str) -> tuple[str, str, str] | None:
    """Find the rightmost lowest-precedence binary operator at paren depth 0.

    Precedence (lowest to highest): comparison, ``&``, ``+ -``, ``* /``, ``^``.
    Right-to-left scan gives left-to-right associativity.  Quoted sheet
    names and string literals are skipped.
    """
    for pass_type in _PASSES:
        depth = 0
        in_string = False
        in_sheet = False
        i = len(expr) - 1
        while i > 0:
            ch = expr[i]
            if ch == '"' and not in_sheet:
                in_string = not in_string
            elif ch == "'" and not in_string:
                in_sheet = not in_sheet
            if in_string or in_sheet or ch in ('"', "'"):
                i -= 1
                continue
            if ch == ')':
                depth += 1
                i -= 1
                continue
            if ch == '(':
                depth -= 1
                i -= 1
                continue
            if depth != 0:
                i -= 1
                continue

            matched_op: str | None = None
            op_start = i
            if pass_type == "cmp":
                if expr[i - 1:i + 1] in (">=", "<=", "<>"):
                    matched_op = expr[i - 1:i + 1]
                    op_start = i - 1
                elif ch in ('>', '<'):
                    matched_op = ch
                elif ch == '=' and expr[i - 1] not in ('>', '<'):
                    matched_op = ch
            elif pass_type == "concat" and ch == '&':
                matched_op = ch
            elif pass_type == "add" and ch in ('+', '-'):
                matched_op = ch
            elif pass_type == "mul" and ch in ('*', '/'):
                matched_op = ch
            elif pass_type == "pow" and ch == '^':
                matched_op = ch

            if matched_op is not None and op_start > 0:
                # Binary only when preceded by an operand, not another operator
                j = op_start - 1
                while j >= 0 and expr[j] == ' ':
                    j -= 1
                unary = j < 0 or expr[j] in ('(', ',', '+', '-', '*', '/', '^', '&', '>', '<', '=')
                if not unary and not (matched_op in ('+', '-') and _is_exponent_sign(expr, j)):
                    left = expr[:op_start].strip()
                    right = expr[op_start + len(matched_op):].strip()
                    if left and right:
                        return left, matched_op, right
            i -= 1
    return None


def _has_top_level_colon(expr: str) -> bool:
    """``True`` when *expr* contains ``:`` at paren depth 0 (range ref)."""
    depth = 0
    in_string = False
    for ch in expr:
        if ch == '"':
            in_string = not in_string
        elif in_string:
            continue
        elif ch == '(':
            depth += 1
        elif ch == ')':
            depth -= 1
        elif ch == ':' and depth == 0:
            return True
    return False


def _split_top_level_args(args_str: str) -> list[str]:
    """Split on commas at depth 0, respecting strings and quoted sheet names."""
    args: list[str] = []
    depth = 0
    in_string = False
    in_sheet = False
    current: list[str] = []
    for ch in args_str:
        if ch == '"' and not in_sheet:
            in_string = not in_string
        elif ch == "'" and not in_string:
            in_sheet = not in_sheet
        elif not in_string and not in_sheet:
            if ch == '(':
                depth += 1
            elif ch == ')':
                depth -= 1
            elif ch == ',' and depth == 0:
                args.append("".join(current).strip())
                current = []
                continue
        current.append(ch)
    tail = "".join(current).strip()
    if tail or args:
        args.append(tail)
    return args


def _to_number(value: Any) -> float | int | ExcelError:
    """Arithmetic coercion: blank -> 0, bool -> 0/1, numeric text -> float."""
    if value is None:
        return 0
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return ExcelError.VALUE
    return ExcelError.VALUE


def _binary_op(left: Any, op: str, right: Any) -> Any:
    """Evaluate an arithmetic or string binary operation."""
    err = first_error(left, right)
    if err is not None:
        return err
    if op == '&':
        return _concat_text(left) + _concat_text(right)
    lnum, rnum = _to_number(left), _to_number(right)
    err = first_error(lnum, rnum)
    if err is not None:
        return err
    if op == '+':
        return lnum + rnum
    if op == '-':
        return lnum - rnum
    if op == '*':
        return lnum * rnum
    if op == '/':
        return ExcelError.DIV0 if rnum == 0 else lnum / rnum
    if op == '^':
        try:
            return lnum ** rnum
        except (OverflowError, ZeroDivisionError):
            return ExcelError.NUM
    return ExcelError.VALUE


def _concat_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _compare(left: Any, right: Any, op: str) -> Any:
    """Evaluate a comparison; text compares case-insensitively, like Excel."""
    err = first_error(left, right)
    if err is not None:
        return err
    numeric = (int, float)
    if isinstance(left, numeric) and isinstance(right, numeric):
        lv, rv = left, right
    elif left is None and isinstance(right, numeric):
        lv, rv = 0, right
    elif right is None and isinstance(left, numeric):
        lv, rv = left, 0
    else:
        lv = str(left).lower() if left is not None else ""
        rv = str(right).lower() if right is not None else ""
        if isinstance(left, numeric) != isinstance(right, numeric) and op in ('=', '<>'):
            return op == '<>'
        if isinstance(left, numeric) or isinstance(right, numeric):
            # Excel orders numbers before text
            lv, rv = (0, 1) if isinstance(left, numeric) else (1, 0)
    if op == '>':
        return lv > rv
    if op == '<':
        return lv < rv
    if op == '>=':
        return lv >= rv
    if op == '<=':
        return lv <= rv
    if op == '=':
        return lv == rv
    if op == '<>':
        return lv != rv
    return ExcelError.VALUE


# ---------------------------------------------------------------------------
# Evaluator
# ---------------------------------------------------------------------------


class WorkbookEvaluator:
    """Evaluates every formula of an anyxl Workbook in dependency order.

    Usage::

        engine = WorkbookEvaluator(registry)
        results = engine.evaluate(workbook)   # writes computed values back

    ``evaluate`` mutates the workbook: each formula cell's computed value is
    replaced.  Cells on (or downstream of) a cycle are left untouched and a
    :class:`CircularReferenceError` is raised once everything else has been
    computed.  A custom function raising an exception aborts the run with
    :class:`FormulaEvaluationError`.
    """

    def __init__(self, registry: FunctionRegistry | None = None) -> None:
        self._functions = registry if registry is not None else default_registry()
        self._cell_values: dict[str, Any] = {}
        self._graph = DependencyGraph()
        self._current: str | None = None
        self._use_formulas = _check_formulas()
        self._compiled_cache: dict[str, Any] = {}

    @property
    def registry(self) -> FunctionRegistry:
        return self._functions

    def load(self, workbook: Workbook) -> DependencyGraph:
        """Snapshot cell values and build the dependency graph."""
        self._cell_values.clear()
        self._graph = DependencyGraph({name.lower(): name for name in workbook.sheetnames})
        for sheet_name in workbook.sheetnames:
            ws = workbook[sheet_name]
            for coordinate, value in ws.iter_values():
                self._cell_values[f"{sheet_name}!{coordinate}"] = value
            for coordinate, formula in ws.iter_formulas():
                self._graph.add_formula(f"{sheet_name}!{coordinate}", formula, sheet_name)
        return self._graph

    def evaluate(self, workbook: Workbook) -> dict[str, Any]:
        """Evaluate all formulas and write results back into *workbook*.

        Returns a dict of cell_ref -> computed value for evaluated cells.
        """
        graph = self.load(workbook)
        order, blocked = graph.partial_order()
        results: dict[str, Any] = {}

        for cell_ref in order:
            value = self._evaluate_formula(cell_ref, graph.formulas[cell_ref])
            self._cell_values[cell_ref] = value
            results[cell_ref] = value
            sheet, coordinate = split_qualified(cell_ref)
            workbook[sheet].set_computed(coordinate, value)

        if blocked:
            cells = sorted(blocked)
            raise CircularReferenceError(
                f"Circular reference detected involving: {', '.join(cells)}",
                cells=cells,
            )
        return results

    # ------------------------------------------------------------------
    # Formula evaluation (recursive descent)
    # ------------------------------------------------------------------

    def _evaluate_formula(self, cell_ref: str, formula: str) -> Any:
        body = formula.strip()
        if body.startswith('='):
            body = body[1:]
        sheet = cell_ref.rsplit('!', 1)[0]
        self._current = cell_ref
        try:
            return self._eval_expr(body.strip(), sheet)
        except _UnsupportedFunction as exc:
            if self._use_formulas:
                fb = self._formulas_fallback(formula, sheet)
                if fb is not None:
                    return fb
            logger.debug("Unsupported function %s in %s", exc, cell_ref)
            return ExcelError.NAME
        finally:
            self._current = None

    def _eval_expr(self, expr: str, sheet: str) -> Any:
        """Recursively evaluate an expression (no leading ``=``).

        Dispatch order (first match wins): binary split, parenthesized
        sub-expression, function call, unary sign, number, string, boolean,
        error literal, range, cell reference.
        """
        expr = expr.strip()
        if not expr:
            return None

        split = _find_top_level_split(expr)
        if split:
            left_str, op, right_str = split
            left_val = self._scalar(self._eval_expr(left_str, sheet))
            right_val = self._scalar(self._eval_expr(right_str, sheet))
            if op in ('+', '-', '*', '/', '&', '^'):
                return _binary_op(left_val, op, right_val)
            return _compare(left_val, right_val, op)

        if expr.startswith('('):
            close = _find_matching_paren(expr, 0)
            if close == len(expr) - 1:
                return self._eval_expr(expr[1:close], sheet)

        func = _match_function_call(expr)
        if func:
            return self._eval_function(func[0], func[1], sheet)

        if expr.startswith('-'):
            val = _to_number(self._scalar(self._eval_expr(expr[1:], sheet)))
            return val if isinstance(val, ExcelError) else -val
        if expr.startswith('+'):
            return self._eval_expr(expr[1:], sheet)

        if expr[0].isdigit() or expr[0] == '.':
            try:
                num = float(expr)
            except ValueError:
                pass
            else:
                if re.fullmatch(r'\d+', expr):
                    return int(expr)
                return num

        if len(expr) >= 2 and expr[0] == '"' and expr[-1] == '"':
            return expr[1:-1].replace('""', '"')

        upper = expr.upper()
        if upper == 'TRUE':
            return True
        if upper == 'FALSE':
            return False
        if upper.startswith('#'):
            return ExcelError.of(upper)

        if _has_top_level_colon(expr):
            return self._resolve_range(expr, sheet)
        return self._resolve_cell_ref(expr, sheet)

    @staticmethod
    def _scalar(value: Any) -> Any:
        """Collapse a range used in scalar context to its first cell."""
        if isinstance(value, RangeValue):
            return value.values[0] if len(value.values) == 1 else ExcelError.VALUE
        return value

    # ------------------------------------------------------------------
    # Reference resolution
    # ------------------------------------------------------------------

    def _qualify(self, expr: str, sheet: str) -> str:
        ref_sheet, address = split_qualified(expr.strip().replace('$', ''), sheet)
        return self._graph.canonical(f"{ref_sheet}!{address.upper()}")

    def _resolve_cell_ref(self, expr: str, sheet: str) -> Any:
        try:
            ref = self._qualify(expr, sheet)
        except ValueError:
            return ExcelError.NAME
        if not re.fullmatch(r'.+![A-Z]{1,3}\d+', ref):
            return ExcelError.NAME
        return self._cell_values.get(ref)

    def _resolve_range(self, expr: str, sheet: str) -> RangeValue | ExcelError:
        try:
            range_ref = self._qualify(expr, sheet)
            cells = expand_range(range_ref)
            n_rows, n_cols = range_shape(range_ref)
        except ValueError:
            return ExcelError.REF
        return RangeValue(
            values=[self._cell_values.get(c) for c in cells],
            n_rows=n_rows,
            n_cols=n_cols,
        )

    # ------------------------------------------------------------------
    # Function dispatch
    # ------------------------------------------------------------------

    def _eval_function(self, func_name: str, args_str: str, sheet: str) -> Any:
        name = self._functions.canonical_name(func_name)
        func = self._functions.get(name)
        if func is None:
            raise _UnsupportedFunction(name)

        args = [self._eval_expr(arg, sheet) for arg in _split_top_level_args(args_str)]

        if self._functions.is_custom(name):
            flat = [a.as_flat() if isinstance(a, RangeValue) else a for a in args]
            try:
                return func(*flat)
            except FormulaEvaluationError:
                raise
            except Exception as exc:
                raise FormulaEvaluationError(
                    f"Error evaluating {name} in {self._current}: {exc}",
                    address=self._current,
                ) from exc

        if name not in ERROR_TOLERANT:
            err = first_error(*(a for a in args if not isinstance(a, RangeValue)))
            if err is not None:
                return err
        try:
            return func(args)
        except (ValueError, TypeError, ArithmeticError) as exc:
            logger.debug("Error evaluating %s in %s: %s", name, self._current, exc)
            return ExcelError.VALUE

    # ------------------------------------------------------------------
    # formulas library fallback
    # ------------------------------------------------------------------

    def _formulas_fallback(self, formula: str, sheet: str) -> Any:
        """Evaluate a whole formula via the ``formulas`` library.

        Compiles the formula, feeds its cell parameters from the value
        snapshot and returns a plain Python scalar, or None on failure.
        """
        import formulas as fm
        import numpy as np

        compiled = self._compiled_cache.get(formula)
        if compiled is None:
            try:
                parsed = fm.Parser().ast(formula)
                if parsed and len(parsed) > 1:
                    compiled = parsed[1].compile()
                    self._compiled_cache[formula] = compiled
            except Exception:
                logger.debug("formulas: cannot compile %r", formula)
                return None
        if compiled is None:
            return None

        try:
            params = list(inspect.signature(compiled).parameters.keys())
        except (ValueError, TypeError):
            params = []

        args: list[Any] = []
        for param in params:
            if ':' in param:
                rng = self._resolve_range(param, sheet)
                if isinstance(rng, ExcelError):
                    return None
                flat = np.array([v if v is not None else 0 for v in rng.values])
                if rng.n_cols > 1:
                    flat = flat.reshape(rng.n_rows, rng.n_cols)
                args.append(flat)
            else:
                val = self._resolve_cell_ref(param, sheet)
                args.append(np.float64(0) if val is None else val)

        try:
            raw = compiled(*args)
        except Exception as e:
            logger.debug("formulas: error evaluating %r: %s", formula, e)
            return None
        return self._normalize_formulas_result(raw)

    @staticmethod
    def _normalize_formulas_result(raw: Any) -> Any:
        """Convert a ``formulas`` library result to a plain Python value."""
        if hasattr(raw, 'shape') and getattr(raw, 'size', 0) == 1:
            raw = raw.flat[0]
        if hasattr(raw, 'item'):
            try:
                raw = raw.item()
            except (ValueError, TypeError):
                return None
        if isinstance(raw, float) and raw.is_integer():
            return int(raw)
        if isinstance(raw, (int, float, str, bool)):
            return raw
        return None
