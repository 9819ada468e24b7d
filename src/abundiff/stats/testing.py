"""
Likelihood ratio and Wald tests on fitted measurement-error models.

Both tests account for total variance = biological + technical. The
technical part is the weight of the fit, so a feature whose residuals are no
larger than its bootstrap variance has dispersion 1; excess residual
variation inflates the dispersion and deflates the statistic.

    dispersion φ = max(1, RSS_w / df_residual)      (1 when df_residual = 0)

Likelihood ratio test (nested models):
    D  = (RSS_reduced - RSS_full) / φ_full
       = RSS_full/φ_full × (RSS_reduced/RSS_full - 1)
    df = n_params(full) - n_params(reduced)
    p  = P(χ²_df > D)

Wald test (single coefficient):
    SE = sqrt(φ × [(XᵀWX)⁻¹]_kk)
    z  = β_k / SE
    p  = 2 × P(Z > |z|)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Iterator

import numpy as np
import pandas as pd
from scipy import stats

from abundiff.core.exceptions import ConfigurationError, DataError, NumericalError
from abundiff.stats.design_matrix import DesignMatrix, validate_nested
from abundiff.stats.fitting import FittedModel, ModelFit
from abundiff.utils.parallel import map_chunks

if TYPE_CHECKING:
    from abundiff.analysis import AnalysisContext

__all__ = [
    'TestKind',
    'TestResult',
    'TestTable',
    'HypothesisTester',
    'likelihood_ratio_statistic',
    'wald_statistic',
    'check_lrt_designs',
]

logger = logging.getLogger(__name__)

_FLOAT_FIELDS = (
    'statistic', 'p_value', 'q_value', 'effect_size', 'standard_error_or_rss', 'mean_abundance',
)


class TestKind(Enum):
    __test__ = False

    LRT = "lrt"
    WALD = "wald"


@dataclass
class TestResult:
    """Outcome of one test for one feature. ``None`` marks an undefined value."""

    __test__ = False

    feature_id: str
    statistic: float | None = None
    df: int | None = None
    p_value: float | None = None
    q_value: float | None = None
    effect_size: float | None = None
    standard_error_or_rss: float | None = None
    mean_abundance: float | None = None
    issue: str | None = None

    @property
    def is_defined(self) -> bool:
        return self.p_value is not None


@dataclass
class TestTable:
    """Results of one named test, keyed by feature id in fitting order.

    Attributes:
        name: Test identifier, also the key in the analysis context.
        kind: LRT or Wald.
        results: Per-feature results.
        params: Models and coefficient the test was run on.
        correction: Multiple-testing method applied, if any.
    """

    __test__ = False

    name: str
    kind: TestKind
    results: dict[str, TestResult] = field(default_factory=dict)
    params: dict[str, Any] = field(default_factory=dict)
    correction: str | None = None

    @property
    def feature_ids(self) -> pd.Index:
        return pd.Index(list(self.results), name='feature_id')

    def _column(self, attr: str) -> pd.Series:
        values = [getattr(r, attr) for r in self.results.values()]
        return pd.Series(
            pd.array([pd.NA if v is None else v for v in values], dtype='Float64'),
            index=self.feature_ids,
            name=attr,
        )

    def p_values(self) -> pd.Series:
        return self._column('p_value')

    def q_values(self) -> pd.Series:
        return self._column('q_value')

    def effect_sizes(self) -> pd.Series:
        return self._column('effect_size')

    @property
    def n_defined(self) -> int:
        return sum(r.is_defined for r in self.results.values())

    def to_frame(self) -> pd.DataFrame:
        frame = pd.DataFrame({'feature_id': list(self.results)})
        for col in _FLOAT_FIELDS:
            frame[col] = self._column(col).array
        frame['df'] = pd.array(
            [pd.NA if r.df is None else r.df for r in self.results.values()], dtype='Int64'
        )
        frame['issue'] = [r.issue for r in self.results.values()]
        frame['test_identifier'] = self.name
        return frame

    def __getitem__(self, feature_id: str) -> TestResult:
        return self.results[feature_id]

    def __len__(self) -> int:
        return len(self.results)

    def __iter__(self) -> Iterator[TestResult]:
        return iter(self.results.values())


def check_lrt_designs(full: DesignMatrix, reduced: DesignMatrix) -> None:
    """
    Check that two designs can be compared by a likelihood ratio test.

    Raises:
        ConfigurationError: Non-nested formulas, a full design without more
            columns than the reduced one, or reduced columns outside the span
            of the full design.
        DataError: The designs cover different samples.
    """
    validate_nested(full.formula, reduced.formula)
    if full.n_params <= reduced.n_params:
        raise ConfigurationError(
            f"Model '{full.name}' has {full.n_params} column(s), not more than "
            f"the {reduced.n_params} of '{reduced.name}'",
            identifier=reduced.name,
        )
    if set(full.sample_ids) != set(reduced.sample_ids):
        extra = set(full.sample_ids) ^ set(reduced.sample_ids)
        raise DataError(
            f"Models '{full.name}' and '{reduced.name}' cover different samples",
            identifier=str(sorted(extra)[0]),
        )
    # rows of the reduced design in the full design order
    X_reduced = reduced.X[reduced.sample_ids.get_indexer(full.sample_ids)]
    full_rank = np.linalg.matrix_rank(full.X)
    if np.linalg.matrix_rank(np.hstack([full.X, X_reduced])) > full_rank:
        raise ConfigurationError(
            f"Columns of model '{reduced.name}' are not spanned by model '{full.name}'; "
            f"a term is coded differently in the two designs",
            identifier=reduced.name,
        )


def likelihood_ratio_statistic(full: FittedModel, reduced: FittedModel) -> tuple[float, int, float]:
    """
    Deviance, degrees of freedom and p-value of reduced vs. full.

    Raises:
        ConfigurationError: If the full model does not have more columns.
        NumericalError: If the fits used different observations.
    """
    df = full.n_params - reduced.n_params
    if df <= 0:
        raise ConfigurationError(
            f"Full model must have more coefficients than reduced ({full.n_params} vs {reduced.n_params})"
        )
    if full.n_obs != reduced.n_obs:
        raise NumericalError(
            f"Models were fitted on different observations ({full.n_obs} vs {reduced.n_obs})"
        )
    deviance = max(0.0, (reduced.rss - full.rss) / full.dispersion)
    return deviance, df, float(stats.chi2.sf(deviance, df))


def wald_statistic(fit: FittedModel, index: int) -> tuple[float, float, float, float]:
    """
    Estimate, standard error, z and two-sided p-value for one coefficient.

    Raises:
        NumericalError: If the standard error is zero or not finite.
    """
    estimate = float(fit.coefficients[index])
    var = fit.dispersion * float(fit.cov_unscaled[index, index])
    se = np.sqrt(var) if var > 0 else 0.0
    if not np.isfinite(se) or se <= 0:
        raise NumericalError(f"Standard error of coefficient {index} is {se}; Wald test undefined")
    z = estimate / se
    return estimate, float(se), float(z), float(2 * stats.norm.sf(abs(z)))


def _lrt_chunk(
    chunk: slice,
    feature_ids: pd.Index,
    full_fit: ModelFit,
    reduced_fit: ModelFit,
    effect_index: int | None,
) -> list[TestResult]:
    out = []
    for feature_id in feature_ids[chunk]:
        full = full_fit.get(feature_id)
        reduced = reduced_fit.get(feature_id)
        if full is None or reduced is None:
            issue = full_fit.issue(feature_id) or reduced_fit.issue(feature_id)
            out.append(TestResult(feature_id, issue=issue))
            continue
        result = TestResult(feature_id, mean_abundance=full.mean_observation)
        try:
            result.statistic, result.df, result.p_value = likelihood_ratio_statistic(full, reduced)
        except NumericalError as e:
            result.issue = str(e)
        else:
            result.standard_error_or_rss = full.rss
            if effect_index is not None:
                result.effect_size = float(full.coefficients[effect_index])
        out.append(result)
    return out


def _wald_chunk(
    chunk: slice,
    feature_ids: pd.Index,
    model_fit: ModelFit,
    index: int,
) -> list[TestResult]:
    out = []
    for feature_id in feature_ids[chunk]:
        fit = model_fit.get(feature_id)
        if fit is None:
            out.append(TestResult(feature_id, issue=model_fit.issue(feature_id)))
            continue
        result = TestResult(feature_id, mean_abundance=fit.mean_observation)
        try:
            estimate, se, z, p = wald_statistic(fit, index)
        except NumericalError as e:
            result.issue = str(e)
        else:
            result.effect_size = estimate
            result.standard_error_or_rss = se
            result.statistic = z
            result.p_value = p
        out.append(result)
    return out


class HypothesisTester:
    """Runs LRT and Wald tests over fits stored in an analysis context."""

    def __init__(self, n_jobs: int = 1, batch_size: int = 500):
        self.n_jobs = n_jobs
        self.batch_size = batch_size

    def _log_summary(self, table: TestTable) -> None:
        undefined = len(table) - table.n_defined
        if undefined:
            logger.warning("Test '%s': %d of %d feature(s) undefined", table.name, undefined, len(table))
        logger.info("Test '%s' (%s) computed for %d features", table.name, table.kind.value, table.n_defined)

    def lrt(
        self,
        context: AnalysisContext,
        full: str = "full",
        reduced: str = "reduced",
        name: str | None = None,
        effect_coefficient: str | None = None,
    ) -> TestTable:
        """
        Likelihood ratio test of ``reduced`` against ``full``.

        Args:
            context: Holds both fits; receives the resulting table.
            full: Name of the full model fit.
            reduced: Name of the reduced model fit.
            name: Test name. Defaults to ``"lrt:<full>:<reduced>"``.
            effect_coefficient: Full-model coefficient reported as effect size.

        Raises:
            ConfigurationError: Unknown fit names, non-nested models, unknown
                effect coefficient.
            DataError: The two models were fitted on different samples.
        """
        full_fit = context.get_fit(full)
        reduced_fit = context.get_fit(reduced)
        check_lrt_designs(full_fit.design, reduced_fit.design)
        effect_index = (
            full_fit.design.column_index(effect_coefficient) if effect_coefficient else None
        )

        name = name or f"lrt:{full}:{reduced}"
        feature_ids = full_fit.feature_ids
        results = map_chunks(
            _lrt_chunk, len(feature_ids), feature_ids, full_fit, reduced_fit, effect_index,
            n_jobs=self.n_jobs, batch_size=self.batch_size,
        )
        table = TestTable(
            name=name,
            kind=TestKind.LRT,
            results={r.feature_id: r for r in results},
            params={'full': full, 'reduced': reduced, 'effect_coefficient': effect_coefficient},
        )
        self._log_summary(table)
        context.store_test(table)
        return table

    def wald(
        self,
        context: AnalysisContext,
        coefficient: str,
        model: str = "full",
        name: str | None = None,
    ) -> TestTable:
        """
        Wald test of a single coefficient of ``model``.

        Raises:
            ConfigurationError: Unknown fit name or coefficient.
        """
        model_fit = context.get_fit(model)
        index = model_fit.design.column_index(coefficient)

        name = name or f"wald:{model}:{coefficient}"
        feature_ids = model_fit.feature_ids
        results = map_chunks(
            _wald_chunk, len(feature_ids), feature_ids, model_fit, index,
            n_jobs=self.n_jobs, batch_size=self.batch_size,
        )
        table = TestTable(
            name=name,
            kind=TestKind.WALD,
            results={r.feature_id: r for r in results},
            params={'model': model, 'coefficient': model_fit.design.col_names[index]},
        )
        self._log_summary(table)
        context.store_test(table)
        return table
