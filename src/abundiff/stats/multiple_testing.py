"""
Multiple testing correction over the defined p-values of a test.

Benjamini-Hochberg:
    sort p ascending, q_(i) = min_{j >= i} p_(j) × N / j, capped at 1

N counts defined p-values only; an undefined p-value stays undefined and
does not inflate the correction of the others.
"""

from __future__ import annotations

import logging
from typing import Literal, Sequence

import numpy as np
import pandas as pd
from statsmodels.stats.multitest import multipletests

from abundiff.core.exceptions import ConfigurationError, DataError
from abundiff.stats.testing import TestTable

__all__ = ['CorrectionMethod', 'qvalues', 'MultipleTestingCorrector']

logger = logging.getLogger(__name__)

CorrectionMethod = Literal["BH", "BY", "bonferroni"]

_METHODS = {"BH": "fdr_bh", "BY": "fdr_by", "bonferroni": "bonferroni"}


def qvalues(
    p_values: Sequence[float | None] | pd.Series,
    method: CorrectionMethod = "BH",
) -> pd.Series:
    """
    Adjust p-values, leaving undefined entries undefined.

    Args:
        p_values: Raw p-values; None, NaN or pd.NA mark undefined tests.
        method: "BH", "BY" or "bonferroni".

    Returns:
        Nullable Float64 Series (index preserved for Series input).

    Raises:
        ConfigurationError: Unknown method.
        DataError: A defined p-value outside [0, 1].
    """
    if method not in _METHODS:
        raise ConfigurationError(
            f"Unknown correction method '{method}'. Use one of {list(_METHODS)}",
            identifier=str(method),
        )
    series = p_values if isinstance(p_values, pd.Series) else pd.Series(list(p_values), dtype=object)
    raw = np.array([np.nan if pd.isna(v) else float(v) for v in series], dtype=np.float64)

    valid = ~np.isnan(raw)
    if np.any((raw[valid] < 0) | (raw[valid] > 1)):
        raise DataError("p-values must lie in [0, 1]")

    adjusted = np.full_like(raw, np.nan)
    if np.any(valid):
        _, adjusted[valid], _, _ = multipletests(raw[valid], method=_METHODS[method])

    out = pd.array(adjusted, dtype='Float64')
    out[~valid] = pd.NA
    return pd.Series(out, index=series.index, name='q_value')


class MultipleTestingCorrector:
    """Fills ``q_value`` on every result of a test table."""

    def __init__(self, method: CorrectionMethod = "BH"):
        if method not in _METHODS:
            raise ConfigurationError(
                f"Unknown correction method '{method}'. Use one of {list(_METHODS)}",
                identifier=str(method),
            )
        self.method = method

    def apply(self, table: TestTable) -> TestTable:
        """Correct ``table`` in place and return it."""
        q = qvalues(table.p_values(), self.method)
        for feature_id, value in q.items():
            table.results[feature_id].q_value = None if pd.isna(value) else float(value)
        table.correction = self.method
        logger.info(
            "Applied %s correction to %d of %d p-values in '%s'",
            self.method, table.n_defined, len(table), table.name,
        )
        return table
