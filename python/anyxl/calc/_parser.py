"""Cell reference resolver: lexical reference extraction from formula text."""

from __future__ import annotations

import re

from anyxl._utils import a1_to_rowcol, rowcol_to_a1

# ---------------------------------------------------------------------------
# Regex patterns for Excel formula reference extraction
# ---------------------------------------------------------------------------

# Sheet qualifier: 'Quoted Name'! (with '' escapes) or BareName!
_SHEET_PREFIX = r"(?:'((?:[^']|'')+)'!|([A-Za-z0-9_.]+)!)"
_CELL_REF = r"\$?([A-Z]{1,3})\$?(\d+)"
# Not glued to an identifier on the left, not a function name on the right
_LEFT = r"(?<![A-Za-z0-9_.$'])"
_RIGHT = r"(?![A-Za-z0-9_(!])"

_SINGLE_REF_RE = re.compile(
    rf"{_LEFT}(?:{_SHEET_PREFIX})?{_CELL_REF}{_RIGHT}",
    re.IGNORECASE,
)

# Range: A1:B5 (sheet prefix applies to both corners)
_RANGE_REF_RE = re.compile(
    rf"{_LEFT}(?:{_SHEET_PREFIX})?{_CELL_REF}\s*:\s*{_CELL_REF}{_RIGHT}",
    re.IGNORECASE,
)

# Function names: SUM(...), VLOOKUP(...)
_FUNC_RE = re.compile(r"(?<![A-Za-z0-9_.])([A-Z_][A-Z0-9_.]*)\s*\(", re.IGNORECASE)


def mask_strings(formula: str) -> str:
    """Blank out double-quoted string literals, keeping character offsets.

    ``""`` inside a literal is an escaped quote.  An unterminated literal
    masks through the end of the formula.
    """
    out: list[str] = []
    in_string = False
    i = 0
    n = len(formula)
    while i < n:
        ch = formula[i]
        if in_string:
            if ch == '"':
                if i + 1 < n and formula[i + 1] == '"':
                    out.append("  ")
                    i += 2
                    continue
                in_string = False
                out.append('"')
            else:
                out.append(" ")
        else:
            if ch == '"':
                in_string = True
            out.append(ch)
        i += 1
    return "".join(out)


def _sheet_name(quoted: str | None, bare: str | None, current_sheet: str) -> str:
    if quoted is not None:
        return quoted.replace("''", "'")
    return bare or current_sheet


# ---------------------------------------------------------------------------
# Reference extraction
# ---------------------------------------------------------------------------


def parse_references(formula: str, current_sheet: str = "Sheet1") -> list[str]:
    """Extract standalone single-cell references from a formula.

    Returns canonical "SheetName!A1" strings (no dollar signs, unquoted).
    Corners of ranges are excluded; see :func:`parse_range_references`.
    """
    clean = mask_strings(formula)
    range_spans = [(m.start(), m.end()) for m in _RANGE_REF_RE.finditer(clean)]

    refs: list[str] = []
    seen: set[str] = set()
    for m in _SINGLE_REF_RE.finditer(clean):
        pos = m.start()
        if any(s <= pos < e for s, e in range_spans):
            continue
        sheet = _sheet_name(m.group(1), m.group(2), current_sheet)
        canonical = f"{sheet}!{m.group(3).upper()}{m.group(4)}"
        if canonical not in seen:
            refs.append(canonical)
            seen.add(canonical)
    return refs


def parse_range_references(formula: str, current_sheet: str = "Sheet1") -> list[str]:
    """Extract range references as canonical "SheetName!A1:B5" strings."""
    clean = mask_strings(formula)
    ranges: list[str] = []
    seen: set[str] = set()
    for m in _RANGE_REF_RE.finditer(clean):
        sheet = _sheet_name(m.group(1), m.group(2), current_sheet)
        canonical = (
            f"{sheet}!{m.group(3).upper()}{m.group(4)}:{m.group(5).upper()}{m.group(6)}"
        )
        if canonical not in seen:
            ranges.append(canonical)
            seen.add(canonical)
    return ranges


def parse_functions(formula: str) -> list[str]:
    """Extract all function names used in a formula, upper-cased."""
    clean = mask_strings(formula)
    funcs: list[str] = []
    seen: set[str] = set()
    for m in _FUNC_RE.finditer(clean):
        name = m.group(1).upper()
        if name not in seen:
            funcs.append(name)
            seen.add(name)
    return funcs


# ---------------------------------------------------------------------------
# Range expansion
# ---------------------------------------------------------------------------


def _split_range(range_ref: str) -> tuple[str | None, tuple[int, int], tuple[int, int]]:
    sheet: str | None = None
    ref_part = range_ref
    if "!" in range_ref:
        sheet, ref_part = range_ref.rsplit("!", 1)
        if len(sheet) >= 2 and sheet[0] == "'" and sheet[-1] == "'":
            sheet = sheet[1:-1].replace("''", "'")

    parts = ref_part.split(":")
    if len(parts) != 2:
        raise ValueError(f"Invalid range: {range_ref!r}")
    return sheet, a1_to_rowcol(parts[0]), a1_to_rowcol(parts[1])


def range_shape(range_ref: str) -> tuple[int, int]:
    """``(n_rows, n_cols)`` covered by a range like ``"Sheet1!A1:C4"``."""
    _, (r1, c1), (r2, c2) = _split_range(range_ref)
    return abs(r2 - r1) + 1, abs(c2 - c1) + 1


def expand_range(range_ref: str) -> list[str]:
    """Expand "A1:B2" into ["A1", "B1", "A2", "B2"] (row-major).

    The range_ref can be with or without sheet prefix; the output keeps
    the same form.
    """
    sheet, (r1, c1), (r2, c2) = _split_range(range_ref)
    r_min, r_max = min(r1, r2), max(r1, r2)
    c_min, c_max = min(c1, c2), max(c1, c2)

    cells: list[str] = []
    for r in range(r_min, r_max + 1):
        for c in range(c_min, c_max + 1):
            ref = rowcol_to_a1(r, c)
            cells.append(f"{sheet}!{ref}" if sheet is not None else ref)
    return cells


# ---------------------------------------------------------------------------
# All-references extraction (combines singles + expanded ranges)
# ---------------------------------------------------------------------------


def all_references(formula: str, current_sheet: str = "Sheet1") -> list[str]:
    """Every cell a formula reads, with ranges fully expanded.

    Pure function of ``(formula, current_sheet)``: the workbook is never
    consulted, so references to empty or missing cells are kept.
    """
    refs: list[str] = []
    seen: set[str] = set()

    for ref in parse_references(formula, current_sheet):
        if ref not in seen:
            refs.append(ref)
            seen.add(ref)

    for rng in parse_range_references(formula, current_sheet):
        for ref in expand_range(rng):
            if ref not in seen:
                refs.append(ref)
                seen.add(ref)

    return refs
