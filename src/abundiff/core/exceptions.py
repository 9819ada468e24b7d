"""
Error taxonomy for differential abundance analysis.

Three families of failure are distinguished because they are handled
differently by the pipeline:

    ConfigurationError
        The analysis was described incorrectly: non-nested formulas, a
        covariate term that does not exist, an unknown model or test name.
        Raised during setup, aborts the run.

    DataError
        The inputs are inconsistent: replicate counts disagree across samples
        for one feature, a design sample is absent from the observations, a
        feature is entirely missing. Raised during setup, aborts the run.

    NumericalError
        A single feature could not be fitted or tested (singular weighted
        design, non-positive variance, zero standard error). Caught at the
        feature level and recorded as an undefined result.

Every error carries the offending ``identifier`` (term, sample, feature or
model name) so callers can report it without parsing the message.
"""

from __future__ import annotations

__all__ = [
    'AbundiffError',
    'ConfigurationError',
    'DataError',
    'NumericalError',
]


class AbundiffError(Exception):
    """Base class for all errors raised by abundiff."""

    def __init__(self, message: str, identifier: str | None = None) -> None:
        super().__init__(message)
        self.identifier = identifier


class ConfigurationError(AbundiffError, ValueError):
    """Invalid analysis description (formulas, names, thresholds)."""


class DataError(AbundiffError, ValueError):
    """Inconsistent or incomplete input data."""


class NumericalError(AbundiffError, ArithmeticError):
    """Per-feature numerical failure (singular design, degenerate variance)."""
