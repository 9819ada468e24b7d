"""
Technical variance estimation from bootstrap replicates.

For every feature the bootstrap replicates of each sample give an estimate
of quantification (technical) variance. Those per-sample variances are
pooled, floored, and then shrunk toward a global mean-variance trend with an
empirical Bayes prior, which stabilises features whose bootstrap variance is
poorly determined.

Algorithm:
    1. s²_ij = var(bootstraps of feature i in sample j), ddof=1
    2. s²_i  = pooled over samples, weighted by replicate df (B - 1)
    3. floor: s²_i <= tol  ->  min{s²_k : s²_k > tol}
    4. trend: LOWESS of log s²_i on mean abundance  ->  t_i
    5. prior: fit a scaled F distribution to s²_i / t_i  ->  (d₀, s₀²)
    6. posterior: (d₀ s₀² t_i + d_i s²_i) / (d₀ + d_i)

Steps 5-6 follow limma's fitFDist / squeezeVar, with the prior scale
modulated by the abundance trend.

References:
    - Smyth (2004) Statistical Applications in Genetics and Molecular Biology 3:3
    - Pimentel et al. (2017) Nature Methods 14:687-690 (bootstrap technical variance)
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass

import numpy as np
import pandas as pd
from numpy.typing import NDArray
from scipy.special import digamma, polygamma
from statsmodels.nonparametric.smoothers_lowess import lowess

from abundiff.core.exceptions import DataError, NumericalError
from abundiff.core.observations import ObservationMatrix
from abundiff.io.bootstrap import BootstrapSet
from abundiff.utils.parallel import map_chunks

__all__ = [
    'VarianceEstimate',
    'VarianceEstimator',
    'trigamma_inverse',
    'fit_f_dist',
    'squeeze_var',
]

logger = logging.getLogger(__name__)


# =============================================================================
# Empirical Bayes helpers
# =============================================================================

def trigamma_inverse(x: float, tol: float = 1e-8, max_iter: int = 50) -> float:
    """
    Solve trigamma(y) = x for y.

    Newton iteration on 1/trigamma(y), which is convex and nearly linear,
    starting from y = 0.5 + 1/x (limma's trigammaInverse).

    Args:
        x: Target trigamma value (must be positive)
        tol: Relative convergence tolerance
        max_iter: Maximum Newton iterations

    Returns:
        y such that trigamma(y) ≈ x, or inf for non-positive x
    """
    if x <= 0:
        return np.inf
    if x > 1e7:
        return 1.0 / np.sqrt(x)
    if x < 1e-6:
        return 1.0 / x

    y = 0.5 + 1.0 / x
    for _ in range(max_iter):
        tri = float(polygamma(1, y))
        dif = tri * (1.0 - tri / x) / float(polygamma(2, y))
        y += dif
        if -dif / y < tol:
            break
    else:
        logger.warning("trigamma_inverse did not converge for x=%g", x)
    return float(y)


def fit_f_dist(
    sigma2: NDArray[np.float64],
    df: float | NDArray[np.float64],
) -> tuple[float, float]:
    """
    Estimate prior d₀ and s₀² by the method of moments (limma fitFDist).

    Assumes s²_i ~ s₀² × F(d_i, d₀). Then
        e_i = log(s²_i) - digamma(d_i/2) + log(d_i/2)
        Var(e) - mean(trigamma(d_i/2)) = trigamma(d₀/2)
        s₀² = exp(mean(e) + digamma(d₀/2) - log(d₀/2))

    Args:
        sigma2: Positive variances (or variance ratios to a trend)
        df: Degrees of freedom of each variance (scalar or per-feature)

    Returns:
        (d0, s0_sq). d0 is inf when the observed spread is no larger than
        sampling error alone explains, meaning all features share the prior.
    """
    sigma2 = np.asarray(sigma2, dtype=np.float64)
    df = np.broadcast_to(np.asarray(df, dtype=np.float64), sigma2.shape)
    valid = (sigma2 > 0) & np.isfinite(sigma2) & (df > 0)

    if np.sum(valid) < 3:
        positive = sigma2[valid]
        return np.inf, float(np.exp(np.mean(np.log(positive)))) if len(positive) else 1.0

    df_half = df[valid] / 2.0
    e = np.log(sigma2[valid]) - digamma(df_half) + np.log(df_half)
    emean = float(np.mean(e))
    evar = float(np.var(e, ddof=1) - np.mean(polygamma(1, df_half)))

    if evar <= 0:
        return np.inf, float(np.exp(emean))

    d0 = 2.0 * trigamma_inverse(evar)
    if not np.isfinite(d0) or d0 > 1e10:
        return np.inf, float(np.exp(emean))
    s0_sq = float(np.exp(emean + digamma(d0 / 2.0) - np.log(d0 / 2.0)))
    return float(d0), s0_sq


def squeeze_var(
    sigma2: NDArray[np.float64],
    df: float | NDArray[np.float64],
    d0: float,
    prior: float | NDArray[np.float64],
) -> NDArray[np.float64]:
    """
    Posterior variances (limma squeezeVar).

        s²_post = (d₀ × prior + df × s²) / (d₀ + df)

    An infinite d₀ returns the prior itself.
    """
    if np.isinf(d0):
        return np.broadcast_to(np.asarray(prior, dtype=np.float64), np.shape(sigma2)).copy()
    return (d0 * prior + df * sigma2) / (d0 + df)


# =============================================================================
# Estimator
# =============================================================================

@dataclass
class VarianceEstimate:
    """Per-feature technical variance.

    Attributes:
        feature_ids: Row identifiers.
        raw_variance: Pooled bootstrap variance after flooring.
        smoothed_variance: Posterior variance after shrinkage toward the
            trend; the value used as regression weight (1 / variance).
        trend: Mean-variance trend evaluated at each feature.
        mean_abundance: Mean point estimate used as the trend covariate.
        df: Pooled replicate degrees of freedom per feature.
        prior_df: Estimated prior degrees of freedom d₀ (inf = full shrinkage,
            NaN when shrinkage is disabled).
        prior_scale: Estimated prior scale s₀² relative to the trend.
        floor: Smallest variance above the zero tolerance across features.
        floored: True where the raw variance was raised to ``floor``.
    """

    feature_ids: pd.Index
    raw_variance: NDArray[np.float64]
    smoothed_variance: NDArray[np.float64]
    trend: NDArray[np.float64]
    mean_abundance: NDArray[np.float64]
    df: NDArray[np.float64]
    prior_df: float
    prior_scale: float
    floor: float
    floored: NDArray[np.bool_]

    @property
    def weights(self) -> NDArray[np.float64]:
        return 1.0 / self.smoothed_variance

    def variance_of(self, feature_id: str) -> float:
        pos = self.feature_ids.get_indexer([feature_id])[0]
        if pos < 0:
            raise DataError(f"No variance estimate for feature '{feature_id}'", identifier=feature_id)
        return float(self.smoothed_variance[pos])

    def aligned(self, feature_ids: pd.Index) -> NDArray[np.float64]:
        """Smoothed variances in the order of ``feature_ids``."""
        positions = self.feature_ids.get_indexer(feature_ids)
        if np.any(positions < 0):
            missing = feature_ids[positions < 0][0]
            raise DataError(f"No variance estimate for feature '{missing}'", identifier=str(missing))
        return self.smoothed_variance[positions]

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame({
            'mean_abundance': self.mean_abundance,
            'raw_variance': self.raw_variance,
            'trend': self.trend,
            'smoothed_variance': self.smoothed_variance,
            'df': self.df,
            'floored': self.floored,
        }, index=self.feature_ids)


def _pooled_variance_chunk(
    chunk: slice,
    bootstraps: BootstrapSet,
    sample_ids: list[str],
) -> list[tuple[float, float]]:
    """(pooled variance, pooled df) for each feature in ``chunk``."""
    stacked = bootstraps.stacked(sample_ids, chunk)  # (n_chunk, n_samples, B)
    counts = np.sum(np.isfinite(stacked), axis=2)
    sample_df = np.maximum(counts - 1, 0).astype(np.float64)
    with warnings.catch_warnings():
        warnings.simplefilter('ignore', category=RuntimeWarning)
        per_sample = np.nanvar(stacked, axis=2, ddof=1)
    per_sample = np.where(sample_df > 0, per_sample, 0.0)
    pooled_df = sample_df.sum(axis=1)
    pooled = np.where(
        pooled_df > 0,
        (per_sample * sample_df).sum(axis=1) / np.maximum(pooled_df, 1.0),
        np.nan,
    )
    return list(zip(pooled.tolist(), pooled_df.tolist()))


class VarianceEstimator:
    """
    Derives smoothed technical variances from bootstrap replicates.

    Attributes:
        shrink: Apply empirical Bayes shrinkage toward the trend.
        trend_frac: LOWESS span (fraction of features per local fit).
        trend_delta: LOWESS interpolation distance, as a fraction of the
            mean abundance range. Features within this distance of the last
            local fit are interpolated. 0 fits every feature.
        min_trend_features: Below this many features the trend is constant.
        zero_tolerance: Variances at or below this are floored.
        n_jobs: Worker pool size for per-feature pooling.
        batch_size: Features per worker chunk.
    """

    def __init__(
        self,
        shrink: bool = True,
        trend_frac: float = 2.0 / 3.0,
        trend_delta: float = 0.01,
        min_trend_features: int = 10,
        zero_tolerance: float = 1e-12,
        n_jobs: int = 1,
        batch_size: int = 500,
    ):
        if not 0 < trend_frac <= 1:
            raise ValueError(f"trend_frac must be in (0, 1], got {trend_frac}")
        if trend_delta < 0:
            raise ValueError(f"trend_delta must be >= 0, got {trend_delta}")
        self.shrink = shrink
        self.trend_frac = trend_frac
        self.trend_delta = trend_delta
        self.min_trend_features = min_trend_features
        self.zero_tolerance = zero_tolerance
        self.n_jobs = n_jobs
        self.batch_size = batch_size

    def _validate(self, bootstraps: BootstrapSet, observations: ObservationMatrix) -> BootstrapSet:
        all_missing = observations.all_missing_features()
        if len(all_missing) > 0:
            raise DataError(
                f"Feature '{all_missing[0]}' has no observed value in any sample",
                identifier=str(all_missing[0]),
            )
        for sid in observations.sample_ids:
            if sid not in bootstraps.sample_ids:
                raise DataError(f"Sample '{sid}' has no bootstrap replicates", identifier=str(sid))
        aligned = bootstraps.select_features(observations.feature_ids)
        counts = aligned.validate_counts(list(observations.sample_ids))
        if np.any(counts < 2):
            feature_id = observations.feature_ids[int(np.flatnonzero(counts < 2)[0])]
            raise DataError(
                f"Feature '{feature_id}' has fewer than two bootstrap replicates",
                identifier=str(feature_id),
            )
        return aligned

    def _trend(self, log_var: NDArray[np.float64], mean_abundance: NDArray[np.float64]) -> NDArray[np.float64]:
        constant = np.full_like(log_var, np.mean(log_var))
        if len(log_var) < self.min_trend_features or np.ptp(mean_abundance) == 0:
            return constant
        delta = self.trend_delta * float(np.ptp(mean_abundance))
        fitted = lowess(
            log_var, mean_abundance, frac=self.trend_frac, it=3, delta=delta, return_sorted=False
        )
        if not np.all(np.isfinite(fitted)):
            logger.warning("LOWESS trend produced non-finite values; using constant trend")
            return constant
        return np.asarray(fitted, dtype=np.float64)

    def estimate(self, bootstraps: BootstrapSet, observations: ObservationMatrix) -> VarianceEstimate:
        """
        Estimate one smoothed variance per feature of ``observations``.

        Args:
            bootstraps: Replicates on the same scale as ``observations``.
            observations: Point estimates; defines features, samples and the
                mean abundance for the trend.

        Raises:
            DataError: Missing samples or features, differing replicate
                counts, fewer than two replicates, all-missing features.
            NumericalError: No feature has a nonzero variance, or a
                non-positive variance survives flooring and shrinkage.
        """
        aligned = self._validate(bootstraps, observations)
        sample_ids = list(observations.sample_ids)
        feature_ids = observations.feature_ids

        pooled = map_chunks(
            _pooled_variance_chunk,
            len(feature_ids),
            aligned,
            sample_ids,
            n_jobs=self.n_jobs,
            batch_size=self.batch_size,
        )
        raw = np.array([v for v, _ in pooled], dtype=np.float64)
        df = np.array([d for _, d in pooled], dtype=np.float64)

        nonzero = raw > self.zero_tolerance
        if not np.any(nonzero):
            raise NumericalError("Every feature has zero bootstrap variance; nothing to floor to")
        floor = float(np.min(raw[nonzero]))
        floored = ~nonzero
        if np.any(floored):
            logger.warning(
                "Flooring bootstrap variance of %d feature(s) to %.3g",
                int(floored.sum()), floor,
            )
        raw = np.where(floored, floor, raw)

        mean_abundance = observations.mean_abundance().to_numpy()
        log_trend = self._trend(np.log(raw), mean_abundance)
        trend = np.exp(log_trend)

        if self.shrink:
            d0, s0_sq = fit_f_dist(raw / trend, df)
            smoothed = squeeze_var(raw, df, d0, s0_sq * trend)
            logger.info(
                "Variance shrinkage: prior df=%.3g, prior scale=%.3g over %d features",
                d0, s0_sq, len(raw),
            )
        else:
            d0, s0_sq = np.nan, np.nan
            smoothed = raw.copy()

        bad = ~np.isfinite(smoothed) | (smoothed <= 0)
        if np.any(bad):
            feature_id = feature_ids[int(np.flatnonzero(bad)[0])]
            raise NumericalError(
                f"Non-positive variance for feature '{feature_id}' after flooring",
                identifier=str(feature_id),
            )

        return VarianceEstimate(
            feature_ids=feature_ids,
            raw_variance=raw,
            smoothed_variance=smoothed,
            trend=trend,
            mean_abundance=mean_abundance,
            df=df,
            prior_df=float(d0),
            prior_scale=float(s0_sq),
            floor=floor,
            floored=floored,
        )
