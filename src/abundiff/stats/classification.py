"""
Threshold-based significance classification of test results.

A result is significant when q <= q_threshold and |effect| >= effect_threshold.
Results without a q-value are neither significant nor insignificant: their
flag is undefined (pd.NA), never False.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any

import pandas as pd

from abundiff.core.exceptions import ConfigurationError
from abundiff.stats.testing import TestTable

__all__ = ['Thresholds', 'ResultClassifier', 'is_significant']


@dataclass(frozen=True)
class Thresholds:
    """q-value ceiling and absolute effect-size floor. No defaults."""

    q_value: float
    effect_size: float

    def __post_init__(self) -> None:
        if not 0.0 <= self.q_value <= 1.0:
            raise ConfigurationError(
                f"q-value threshold must be in [0, 1], got {self.q_value}", identifier='q_value'
            )
        if self.effect_size < 0:
            raise ConfigurationError(
                f"Effect size threshold must be non-negative, got {self.effect_size}",
                identifier='effect_size',
            )


def _missing(value: Any) -> bool:
    if value is None or value is pd.NA:
        return True
    return isinstance(value, float) and math.isnan(value)


def is_significant(
    q: float | None,
    effect: float | None,
    q_threshold: float,
    effect_threshold: float,
) -> bool | None:
    """True/False, or None when the inputs needed for a decision are undefined."""
    if _missing(q):
        return None
    if _missing(effect):
        if effect_threshold > 0:
            return None
        return bool(q <= q_threshold)
    return bool(q <= q_threshold and abs(effect) >= effect_threshold)


class ResultClassifier:
    """
    Flags test results against significance (and optional label) thresholds.

    Attributes:
        significance: Thresholds for ``significance_flag``.
        label_thresholds: Optional second set for ``label_flag`` (e.g. a
            stricter cut used for annotating plots).
    """

    def __init__(self, significance: Thresholds, label: Thresholds | None = None):
        self.significance = significance
        self.label_thresholds = label

    @staticmethod
    def _flags(source: TestTable | pd.DataFrame, thresholds: Thresholds) -> pd.Series:
        if isinstance(source, TestTable):
            index = source.feature_ids
            pairs = list(zip(source.q_values(), source.effect_sizes()))
        else:
            index = pd.Index(source['feature_id']) if 'feature_id' in source.columns else source.index
            pairs = list(zip(source['q_value'], source['effect_size']))
        flags = [
            is_significant(q, e, thresholds.q_value, thresholds.effect_size) for q, e in pairs
        ]
        return pd.Series(
            pd.array([pd.NA if f is None else f for f in flags], dtype='boolean'),
            index=index,
        )

    def classify(self, source: TestTable | pd.DataFrame) -> pd.Series:
        """Nullable boolean significance flag per feature."""
        return self._flags(source, self.significance).rename('significance_flag')

    def label(self, source: TestTable | pd.DataFrame) -> pd.Series:
        """Nullable boolean label flag per feature.

        Raises:
            ConfigurationError: If no label thresholds were configured.
        """
        if self.label_thresholds is None:
            raise ConfigurationError("No label thresholds configured", identifier='label')
        return self._flags(source, self.label_thresholds).rename('label_flag')

    def annotate(self, frame: pd.DataFrame) -> pd.DataFrame:
        """Copy of ``frame`` with flag columns (re)computed from q_value and effect_size."""
        out = frame.copy()
        out['significance_flag'] = self.classify(frame).array
        if self.label_thresholds is not None:
            out['label_flag'] = self.label(frame).array
        return out
