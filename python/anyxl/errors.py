"""Exception types raised by anyxl."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from anyxl.calc._protocol import EvaluationReport


class AnyxlError(Exception):
    """Base class for all anyxl errors."""


class SheetError(AnyxlError, ValueError):
    """Invalid, empty or duplicate sheet name."""


class SheetNotFoundError(SheetError, KeyError):
    """Referenced sheet does not exist in the workbook.

    Attributes:
        sheet: The name that failed to resolve.
    """

    def __init__(self, sheet: str) -> None:
        self.sheet = sheet
        super().__init__(f'Sheet "{sheet}" not found.')

    def __str__(self) -> str:
        # KeyError would otherwise repr() the message.
        return str(self.args[0])


class CellAddressError(AnyxlError, ValueError):
    """Row/column outside the 1-based grid."""


class InvalidFormulaError(AnyxlError, ValueError):
    """Invalid custom formula registration or localization mapping."""


class UnsupportedSourceError(AnyxlError, ValueError):
    """Source cannot be opened, detected or converted."""


class FormulaEvaluationError(AnyxlError):
    """The calculation engine failed for a reason other than circularity.

    Attributes:
        address: Canonical ``Sheet!A1`` of the failing cell, when known.
        report: Partial evaluation report, attached by the orchestrator.
    """

    def __init__(
        self,
        message: str,
        address: str | None = None,
        report: EvaluationReport | None = None,
    ) -> None:
        self.address = address
        self.report = report
        super().__init__(message)


class CircularReferenceError(FormulaEvaluationError):
    """Formulas depend on each other in a loop.

    Attributes:
        cells: Formula cells the engine could not order.
    """

    def __init__(
        self,
        message: str,
        cells: list[str] | None = None,
        report: EvaluationReport | None = None,
    ) -> None:
        self.cells = sorted(cells or [])
        super().__init__(message, report=report)
