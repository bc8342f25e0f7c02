"""
Exceptions raised by the differential expression pipeline.

Every error carries the identifiers (samples, genes or coefficients) needed
to fix the offending input. None of them is recovered from internally.
"""

from typing import Iterable, List, Optional


class DGEError(ValueError):
    """Base class for all pipeline errors."""


class MalformedInputError(DGEError):
    """Input tables are inconsistent or not rectangular."""

    def __init__(self, message: str, identifiers: Optional[Iterable[str]] = None):
        self.identifiers: List[str] = [str(i) for i in identifiers] if identifiers else []
        if self.identifiers:
            message = f"{message}: {_preview(self.identifiers)}"
        super().__init__(message)


class DegenerateDesignError(DGEError):
    """Design matrix is rank deficient or cannot be built."""

    def __init__(self, message: str, coefficients: Optional[Iterable[str]] = None):
        self.coefficients: List[str] = list(coefficients) if coefficients else []
        if self.coefficients:
            message = f"{message}: {', '.join(self.coefficients)}"
        super().__init__(message)


class NumericDegenerateError(DGEError):
    """A computation is undefined for the given data (e.g. all-zero sample)."""

    def __init__(self, message: str, identifiers: Optional[Iterable[str]] = None):
        self.identifiers: List[str] = [str(i) for i in identifiers] if identifiers else []
        if self.identifiers:
            message = f"{message}: {_preview(self.identifiers)}"
        super().__init__(message)


def _preview(items: List[str], limit: int = 10) -> str:
    shown = ", ".join(items[:limit])
    if len(items) > limit:
        shown += f" ... ({len(items) - limit} more)"
    return shown
