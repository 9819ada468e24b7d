"""
Normalization transforms for bootstrapped abundance estimates.

- Size-factor normalization (median of ratios): rescales each sample so that
  the typical feature has the same abundance in every library. The factors
  are estimated once from the point estimates and applied unchanged to the
  bootstrap replicates of the same sample.
- Log transform with pseudocount: ``log(x + pseudocount)``, the scale on
  which models are fitted and technical variance is measured.

The assumption behind median-of-ratios normalization is that most features
do not change between conditions, so the median ratio to a pseudo-reference
sample reflects sequencing depth rather than biology.

References:
    - Anders & Huber (2010) Genome Biology 11:R106 (median of ratios)
"""

from __future__ import annotations

import numpy as np
import pandas as pd

from abundiff.core.exceptions import DataError
from abundiff.core.observations import ObservationMatrix
from abundiff.core.quality import QualityFlag
from abundiff.core.transform import Transform
from abundiff.io.bootstrap import BootstrapSet

__all__ = ['SizeFactorNormalization', 'LogTransform', 'median_of_ratios']


def median_of_ratios(data: np.ndarray) -> np.ndarray:
    """
    Median-of-ratios size factors for a features x samples matrix.

    Only features that are finite and strictly positive in every sample
    contribute to the pseudo-reference (geometric mean across samples).

    Raises:
        DataError: If no feature qualifies.
    """
    with np.errstate(divide='ignore', invalid='ignore'):
        log_data = np.log(data)
    usable = np.all(np.isfinite(log_data), axis=1)
    if not np.any(usable):
        raise DataError(
            "Cannot estimate size factors: no feature is positive in every sample"
        )
    log_geo_means = log_data[usable].mean(axis=1, keepdims=True)
    log_ratios = log_data[usable] - log_geo_means
    return np.exp(np.median(log_ratios, axis=0))


class SizeFactorNormalization(Transform):
    """Divide every sample by its size factor."""

    def __init__(self, size_factors: pd.Series):
        super().__init__(
            name="SizeFactorNormalization",
            params={"n_samples": len(size_factors)},
        )
        if np.any(~np.isfinite(size_factors.values)) or np.any(size_factors.values <= 0):
            raise ValueError("Size factors must be finite and positive")
        self.size_factors = size_factors

    @classmethod
    def from_matrix(cls, matrix: ObservationMatrix) -> SizeFactorNormalization:
        factors = median_of_ratios(matrix.data)
        return cls(pd.Series(factors, index=matrix.sample_ids, name='size_factor'))

    def _factor(self, sample_id: str) -> float:
        try:
            return float(self.size_factors.loc[sample_id])
        except KeyError:
            raise DataError(f"No size factor for sample '{sample_id}'", identifier=sample_id) from None

    def apply(self, matrix: ObservationMatrix) -> ObservationMatrix:
        factors = np.array([self._factor(sid) for sid in matrix.sample_ids])
        return matrix.with_data(matrix.data / factors[np.newaxis, :], QualityFlag.NORMALIZED)

    def apply_bootstraps(self, bootstraps: BootstrapSet) -> BootstrapSet:
        return bootstraps.map_values(lambda sid, values: values / self._factor(sid))


class LogTransform(Transform):
    """Natural log (or ``base``) of abundance plus a pseudocount."""

    def __init__(self, pseudocount: float = 0.5, base: float | None = None):
        super().__init__(
            name="LogTransform",
            params={"pseudocount": pseudocount, "base": base},
        )
        if pseudocount < 0:
            raise ValueError(f"pseudocount must be non-negative, got {pseudocount}")
        self.pseudocount = pseudocount
        self.base = base

    def _log(self, values: np.ndarray) -> np.ndarray:
        out = np.log(values + self.pseudocount)
        if self.base is not None:
            out = out / np.log(self.base)
        return out

    def validate(self, matrix: ObservationMatrix) -> list[str]:
        errors = super().validate(matrix)
        shifted = matrix.data + self.pseudocount
        if np.any(shifted[np.isfinite(shifted)] <= 0):
            errors.append(
                f"Values must exceed -{self.pseudocount} for a log transform"
            )
        return errors

    def apply(self, matrix: ObservationMatrix) -> ObservationMatrix:
        return matrix.with_data(self._log(matrix.data))

    def apply_bootstraps(self, bootstraps: BootstrapSet) -> BootstrapSet:
        return bootstraps.map_values(lambda _, values: self._log(values))
