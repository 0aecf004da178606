"""anyxl.calc - Formula analysis and evaluation for anyxl workbooks."""

from anyxl.calc._analysis import WorkbookAnalyzer
from anyxl.calc._evaluator import WorkbookEvaluator
from anyxl.calc._functions import ExcelError, FunctionRegistry, RangeValue, default_registry
from anyxl.calc._graph import DependencyGraph
from anyxl.calc._parser import (
    all_references,
    expand_range,
    parse_functions,
    parse_range_references,
    parse_references,
)
from anyxl.calc._protocol import (
    CircularReference,
    EvaluationIssue,
    EvaluationReport,
    FormulaResult,
    FormulaSummary,
)

__all__ = [
    "CircularReference",
    "DependencyGraph",
    "EvaluationIssue",
    "EvaluationReport",
    "ExcelError",
    "FormulaResult",
    "FormulaSummary",
    "FunctionRegistry",
    "RangeValue",
    "WorkbookAnalyzer",
    "WorkbookEvaluator",
    "all_references",
    "default_registry",
    "expand_range",
    "parse_functions",
    "parse_range_references",
    "parse_references",
]
