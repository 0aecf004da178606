"""Builtin function table and the registry for custom and localized functions."""

from __future__ import annotations

import math
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from anyxl.errors import InvalidFormulaError

# ---------------------------------------------------------------------------
# ExcelError: typed error values that propagate through formula chains
# ---------------------------------------------------------------------------


class ExcelError:
    """Excel error value that propagates through formula chains.

    Use ``ExcelError.of(code)`` to get a cached singleton for each error code.
    Errors compare equal to their string code (``ExcelError.NA == "#N/A"``).
    """

    __slots__ = ("code",)
    _cache: dict[str, ExcelError] = {}

    NA: ExcelError
    VALUE: ExcelError
    REF: ExcelError
    DIV0: ExcelError
    NUM: ExcelError
    NAME: ExcelError

    def __init__(self, code: str) -> None:
        self.code = code

    @classmethod
    def of(cls, code: str) -> ExcelError:
        canon = code.upper()
        if canon not in cls._cache:
            cls._cache[canon] = cls(canon)
        return cls._cache[canon]

    def __repr__(self) -> str:
        return self.code

    def __str__(self) -> str:
        return self.code

    def __eq__(self, other: object) -> bool:
        if isinstance(other, ExcelError):
            return self.code == other.code
        if isinstance(other, str):
            return self.code == other.upper()
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self.code)


ExcelError.NA = ExcelError.of("#N/A")
ExcelError.VALUE = ExcelError.of("#VALUE!")
ExcelError.REF = ExcelError.of("#REF!")
ExcelError.DIV0 = ExcelError.of("#DIV/0!")
ExcelError.NUM = ExcelError.of("#NUM!")
ExcelError.NAME = ExcelError.of("#NAME?")


def first_error(*values: Any) -> ExcelError | None:
    """Return the first ExcelError found in *values*, or None."""
    for v in values:
        if isinstance(v, ExcelError):
            return v
    return None


# ---------------------------------------------------------------------------
# RangeValue: shape-aware 2D range container
# ---------------------------------------------------------------------------


@dataclass
class RangeValue:
    """A resolved cell range that keeps its 2D shape."""

    values: list[Any]
    n_rows: int
    n_cols: int

    def get(self, row: int, col: int) -> Any:
        """Value at 1-based (row, col), or None outside the range."""
        if row < 1 or row > self.n_rows or col < 1 or col > self.n_cols:
            return None
        idx = (row - 1) * self.n_cols + (col - 1)
        return self.values[idx] if idx < len(self.values) else None

    def as_flat(self) -> list[Any]:
        return list(self.values)

    def __iter__(self):
        return iter(self.values)

    def __len__(self):
        return len(self.values)


# ---------------------------------------------------------------------------
# Builtin implementations - each takes a list of resolved argument values.
# ValueError/TypeError raised here surface as #VALUE! in the cell.
# ---------------------------------------------------------------------------


def _flatten(values: list[Any]) -> list[Any]:
    flat: list[Any] = []
    for v in values:
        if isinstance(v, (RangeValue, list, tuple)):
            flat.extend(_flatten(list(v)))
        else:
            flat.append(v)
    return flat


def _coerce_numeric(values: list[Any]) -> list[float]:
    """Flatten and coerce to floats, skipping None, text and range errors.

    Booleans count as 1/0, as Excel does for direct arguments.
    """
    result: list[float] = []
    for v in _flatten(values):
        if isinstance(v, bool):
            result.append(float(v))
        elif isinstance(v, (int, float)):
            result.append(float(v))
    return result


def _number(value: Any, func: str) -> float:
    nums = _coerce_numeric([value])
    if not nums:
        raise ValueError(f"{func}: non-numeric argument")
    return nums[0]


def _arity(args: list[Any], func: str, lo: int, hi: int | None = None) -> None:
    hi = lo if hi is None else hi
    if not lo <= len(args) <= hi:
        raise ValueError(f"{func} expects {lo}..{hi} arguments, got {len(args)}")


def _builtin_sum(args: list[Any]) -> float:
    return sum(_coerce_numeric(args))


def _builtin_average(args: list[Any]) -> float | ExcelError:
    nums = _coerce_numeric(args)
    if not nums:
        return ExcelError.DIV0
    return sum(nums) / len(nums)


def _builtin_min(args: list[Any]) -> float:
    nums = _coerce_numeric(args)
    return min(nums) if nums else 0.0


def _builtin_max(args: list[Any]) -> float:
    nums = _coerce_numeric(args)
    return max(nums) if nums else 0.0


def _builtin_count(args: list[Any]) -> int:
    return sum(
        1 for v in _flatten(args)
        if isinstance(v, (int, float)) and not isinstance(v, bool)
    )


def _builtin_counta(args: list[Any]) -> int:
    return sum(1 for v in _flatten(args) if v is not None and v != "")


def _builtin_abs(args: list[Any]) -> float:
    _arity(args, "ABS", 1)
    return abs(_number(args[0], "ABS"))


def _builtin_round(args: list[Any]) -> float:
    _arity(args, "ROUND", 1, 2)
    digits = int(_number(args[1], "ROUND")) if len(args) > 1 else 0
    # Excel rounds half away from zero
    factor = 10 ** digits
    value = _number(args[0], "ROUND") * factor
    return math.copysign(math.floor(abs(value) + 0.5), value) / factor


def _builtin_int(args: list[Any]) -> int:
    _arity(args, "INT", 1)
    return math.floor(_number(args[0], "INT"))


def _builtin_mod(args: list[Any]) -> float | ExcelError:
    _arity(args, "MOD", 2)
    a, b = _number(args[0], "MOD"), _number(args[1], "MOD")
    if b == 0:
        return ExcelError.DIV0
    # Result takes the sign of the divisor
    return a - b * math.floor(a / b)


def _builtin_power(args: list[Any]) -> float | ExcelError:
    _arity(args, "POWER", 2)
    base, exp = _number(args[0], "POWER"), _number(args[1], "POWER")
    if base < 0 and not float(exp).is_integer():
        return ExcelError.NUM
    return base ** exp


def _builtin_sqrt(args: list[Any]) -> float | ExcelError:
    _arity(args, "SQRT", 1)
    value = _number(args[0], "SQRT")
    if value < 0:
        return ExcelError.NUM
    return math.sqrt(value)


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        if value.upper() in ("TRUE", "FALSE"):
            return value.upper() == "TRUE"
        raise ValueError("text is not a logical value")
    return bool(value)


def _builtin_if(args: list[Any]) -> Any:
    _arity(args, "IF", 2, 3)
    if isinstance(args[0], ExcelError):
        return args[0]
    if _truthy(args[0]):
        return args[1]
    return args[2] if len(args) > 2 else False


def _builtin_iferror(args: list[Any]) -> Any:
    _arity(args, "IFERROR", 2)
    return args[1] if isinstance(args[0], ExcelError) else args[0]


def _builtin_and(args: list[Any]) -> bool:
    _arity(args, "AND", 1, 255)
    return all(_truthy(v) for v in _flatten(args) if v is not None)


def _builtin_or(args: list[Any]) -> bool:
    _arity(args, "OR", 1, 255)
    return any(_truthy(v) for v in _flatten(args) if v is not None)


def _builtin_not(args: list[Any]) -> bool:
    _arity(args, "NOT", 1)
    return not _truthy(args[0])


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _builtin_concatenate(args: list[Any]) -> str:
    return "".join(_text(v) for v in _flatten(args))


def _builtin_len(args: list[Any]) -> int:
    _arity(args, "LEN", 1)
    return len(_text(args[0]))


def _builtin_left(args: list[Any]) -> str:
    _arity(args, "LEFT", 1, 2)
    n = int(_number(args[1], "LEFT")) if len(args) > 1 else 1
    return _text(args[0])[:max(n, 0)]


def _builtin_right(args: list[Any]) -> str:
    _arity(args, "RIGHT", 1, 2)
    n = int(_number(args[1], "RIGHT")) if len(args) > 1 else 1
    return _text(args[0])[-n:] if n > 0 else ""


def _builtin_mid(args: list[Any]) -> str | ExcelError:
    _arity(args, "MID", 3)
    start, length = int(_number(args[1], "MID")), int(_number(args[2], "MID"))
    if start < 1 or length < 0:
        return ExcelError.VALUE
    return _text(args[0])[start - 1:start - 1 + length]


def _builtin_upper(args: list[Any]) -> str:
    _arity(args, "UPPER", 1)
    return _text(args[0]).upper()


def _builtin_lower(args: list[Any]) -> str:
    _arity(args, "LOWER", 1)
    return _text(args[0]).lower()


def _builtin_trim(args: list[Any]) -> str:
    _arity(args, "TRIM", 1)
    return " ".join(_text(args[0]).split())


_CRITERIA_OP_RE = re.compile(r"^(>=|<=|<>|>|<|=)(.*)$")


def _match_criteria(criteria: Any, value: Any) -> bool:
    """SUMIF/COUNTIF criteria: numbers, ``">5"``-style operators, plain text."""
    if isinstance(criteria, (int, float)) and not isinstance(criteria, bool):
        return isinstance(value, (int, float)) and float(value) == float(criteria)
    text = _text(criteria)
    m = _CRITERIA_OP_RE.match(text)
    op, operand = (m.group(1), m.group(2)) if m else ("=", text)
    try:
        target: Any = float(operand)
        if not isinstance(value, (int, float)) or isinstance(value, bool):
            return op == "<>"
        actual: Any = float(value)
    except ValueError:
        target = operand.lower()
        actual = _text(value).lower()
    if op == "=":
        return actual == target
    if op == "<>":
        return actual != target
    try:
        if op == ">":
            return actual > target
        if op == "<":
            return actual < target
        if op == ">=":
            return actual >= target
        return actual <= target
    except TypeError:
        return False


def _builtin_sumif(args: list[Any]) -> float:
    _arity(args, "SUMIF", 2, 3)
    checked = _flatten([args[0]])
    summed = _flatten([args[2]]) if len(args) > 2 else checked
    total = 0.0
    for test, value in zip(checked, summed):
        if _match_criteria(args[1], test) and isinstance(value, (int, float)):
            total += float(value)
    return total


def _builtin_countif(args: list[Any]) -> int:
    _arity(args, "COUNTIF", 2)
    return sum(1 for v in _flatten([args[0]]) if _match_criteria(args[1], v))


def _builtin_index(args: list[Any]) -> Any:
    _arity(args, "INDEX", 2, 3)
    rng = args[0]
    row = int(_number(args[1], "INDEX"))
    col = int(_number(args[2], "INDEX")) if len(args) > 2 else 1
    if not isinstance(rng, RangeValue):
        return rng if row in (0, 1) and col in (0, 1) else ExcelError.REF
    if rng.n_rows == 1 and len(args) == 2:
        row, col = 1, row
    if row < 1 or row > rng.n_rows or col < 1 or col > rng.n_cols:
        return ExcelError.REF
    return rng.get(row, col)


def _builtin_match(args: list[Any]) -> int | ExcelError:
    """MATCH with exact (0) or ascending approximate (1, default) lookup."""
    _arity(args, "MATCH", 2, 3)
    needle = args[0]
    haystack = _flatten([args[1]])
    mode = int(_number(args[2], "MATCH")) if len(args) > 2 else 1
    if mode == 0:
        for i, v in enumerate(haystack, start=1):
            if _match_criteria(needle, v) if isinstance(needle, str) else v == needle:
                return i
        return ExcelError.NA
    best: int | None = None
    for i, v in enumerate(haystack, start=1):
        if isinstance(v, (int, float)) and isinstance(needle, (int, float)) and v <= needle:
            best = i
    return best if best is not None else ExcelError.NA


_BUILTINS: dict[str, Callable[[list[Any]], Any]] = {
    "SUM": _builtin_sum,
    "AVERAGE": _builtin_average,
    "MIN": _builtin_min,
    "MAX": _builtin_max,
    "COUNT": _builtin_count,
    "COUNTA": _builtin_counta,
    "ABS": _builtin_abs,
    "ROUND": _builtin_round,
    "INT": _builtin_int,
    "MOD": _builtin_mod,
    "POWER": _builtin_power,
    "SQRT": _builtin_sqrt,
    "IF": _builtin_if,
    "IFERROR": _builtin_iferror,
    "AND": _builtin_and,
    "OR": _builtin_or,
    "NOT": _builtin_not,
    "CONCATENATE": _builtin_concatenate,
    "LEN": _builtin_len,
    "LEFT": _builtin_left,
    "RIGHT": _builtin_right,
    "MID": _builtin_mid,
    "UPPER": _builtin_upper,
    "LOWER": _builtin_lower,
    "TRIM": _builtin_trim,
    "SUMIF": _builtin_sumif,
    "COUNTIF": _builtin_countif,
    "INDEX": _builtin_index,
    "MATCH": _builtin_match,
}

# Functions whose arguments may legitimately be errors
ERROR_TOLERANT = frozenset({"IF", "IFERROR"})


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


def _validate_name(name: Any, what: str = "Formula name") -> str:
    if not isinstance(name, str) or not name.strip():
        raise InvalidFormulaError(f"{what} must be a non-empty string.")
    return name.strip().upper()


class FunctionRegistry:
    """Builtin, custom and localized function names for one calc engine.

    Custom functions are tracked separately from builtins so callers can
    tell user-defined formulas apart.  Localization maps a localized name
    (``SOMME``) to its canonical one (``SUM``).
    """

    def __init__(self) -> None:
        self._functions: dict[str, Callable[..., Any]] = dict(_BUILTINS)
        self._custom: dict[str, Callable[..., Any]] = {}
        self._aliases: dict[str, str] = {}

    def register(self, name: str, func: Callable[..., Any]) -> None:
        """Register a custom function called as ``func(*args)``.

        Range arguments arrive as flat lists.  Re-registering a name replaces
        the previous implementation.
        """
        canonical = _validate_name(name)
        if not callable(func):
            raise InvalidFormulaError(
                f'Implementation for formula "{canonical}" must be callable.'
            )
        self._custom[canonical] = func

    def register_many(self, functions: Mapping[str, Callable[..., Any]]) -> None:
        """Register several custom functions; nothing is registered on error."""
        if not isinstance(functions, Mapping):
            raise InvalidFormulaError("Formulas must be provided as a mapping of name -> callable.")
        validated: dict[str, Callable[..., Any]] = {}
        for name, func in functions.items():
            canonical = _validate_name(name)
            if not callable(func):
                raise InvalidFormulaError(
                    f'Implementation for formula "{canonical}" must be callable.'
                )
            validated[canonical] = func
        self._custom.update(validated)

    def localize(self, dictionary: Mapping[str, str]) -> None:
        """Map localized function names to canonical ones."""
        if not isinstance(dictionary, Mapping):
            raise InvalidFormulaError("Localization must be a mapping of localized -> canonical names.")
        aliases = {
            _validate_name(local, "Localized name"): _validate_name(canonical, "Canonical name")
            for local, canonical in dictionary.items()
        }
        self._aliases.update(aliases)

    def canonical_name(self, name: str) -> str:
        upper = name.upper()
        # Newer functions are stored with a future-function prefix
        for prefix in ("_XLFN.", "_XLWS."):
            if upper.startswith(prefix):
                upper = upper[len(prefix):]
        return self._aliases.get(upper, upper)

    def get(self, name: str) -> Callable[..., Any] | None:
        canonical = self.canonical_name(name)
        return self._custom.get(canonical) or self._functions.get(canonical)

    def has(self, name: str) -> bool:
        return self.get(name) is not None

    def is_custom(self, name: str) -> bool:
        return self.canonical_name(name) in self._custom

    @property
    def custom_names(self) -> list[str]:
        return sorted(self._custom)

    @property
    def localizations(self) -> dict[str, str]:
        return dict(self._aliases)

    @property
    def supported_functions(self) -> frozenset[str]:
        return frozenset(self._functions) | frozenset(self._custom)


_default_registry = FunctionRegistry()


def default_registry() -> FunctionRegistry:
    """The process-wide registry shared by handles opened without one."""
    return _default_registry
