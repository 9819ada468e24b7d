"""
Per-feature measurement-error model fitting.

Each feature is fitted independently with weighted least squares,

    y = Xβ + ε,   Var(ε_j) = v_j,   w_j = 1 / v_j

where v is the smoothed technical variance from the bootstrap replicates.
The fit is computed from the QR decomposition of the whitened design
W^½X, never from the normal equations, so an ill-conditioned design loses
at most half the precision the normal equations would.

    W^½X = QR
    β    = R⁻¹ Qᵀ W^½y
    (XᵀWX)⁻¹ = R⁻¹ R⁻ᵀ

A missing observation removes that sample from that feature's fit only.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import numpy as np
import pandas as pd
from numpy.typing import NDArray
from scipy.linalg import qr, solve_triangular

from abundiff.core.exceptions import NumericalError
from abundiff.core.observations import ObservationMatrix
from abundiff.stats.design_matrix import DesignMatrix
from abundiff.stats.variance import VarianceEstimate
from abundiff.utils.parallel import map_chunks

if TYPE_CHECKING:
    from abundiff.analysis import AnalysisContext

__all__ = ['FittedModel', 'ModelFit', 'ModelFitter', 'fit_feature']

logger = logging.getLogger(__name__)


@dataclass
class FittedModel:
    """Weighted least squares fit of one feature under one design.

    Attributes:
        coefficients: Estimated β, in design column order.
        fitted_values: Xβ per sample (NaN where the observation was missing).
        rss: Weighted residual sum of squares Σ w r².
        df_residual: Finite observations minus columns.
        variance_weight: Technical variance v the weights were derived from.
        cov_unscaled: (XᵀWX)⁻¹ over the finite observations.
        n_obs: Finite observations used.
        mean_observation: Mean of the finite observations.
    """

    coefficients: NDArray[np.float64]
    fitted_values: NDArray[np.float64]
    rss: float
    df_residual: int
    variance_weight: float
    cov_unscaled: NDArray[np.float64]
    n_obs: int
    mean_observation: float

    @property
    def n_params(self) -> int:
        return len(self.coefficients)

    @property
    def dispersion(self) -> float:
        """Residual variance relative to the technical variance, never below 1."""
        if self.df_residual <= 0:
            return 1.0
        return max(1.0, self.rss / self.df_residual)


def fit_feature(
    y: NDArray[np.float64],
    X: NDArray[np.float64],
    variance: float | NDArray[np.float64],
    rank_tolerance: float = 1e-10,
) -> FittedModel:
    """
    Fit one feature by weighted least squares.

    Args:
        y: Observations, one per design row (NaN = missing).
        X: Design matrix (n_samples, n_params).
        variance: Technical variance, scalar or one per sample.
        rank_tolerance: Relative threshold on |R_ii| below which the
            whitened design is treated as rank-deficient.

    Raises:
        NumericalError: Non-positive variance, fewer finite observations
            than columns, or a rank-deficient design.
    """
    y = np.asarray(y, dtype=np.float64)
    variance = np.broadcast_to(np.asarray(variance, dtype=np.float64), y.shape)
    n_params = X.shape[1]

    keep = np.isfinite(y)
    n_obs = int(keep.sum())
    if n_obs < n_params:
        raise NumericalError(
            f"{n_obs} finite observation(s) for {n_params} coefficient(s)"
        )
    if np.any(~np.isfinite(variance[keep])) or np.any(variance[keep] <= 0):
        raise NumericalError("Variance weight must be finite and positive")

    sqrt_w = 1.0 / np.sqrt(variance[keep])
    Xw = X[keep] * sqrt_w[:, np.newaxis]
    yw = y[keep] * sqrt_w

    Q, R = qr(Xw, mode='economic')
    diag = np.abs(np.diag(R))
    if diag.max() == 0 or diag.min() <= rank_tolerance * diag.max():
        raise NumericalError(
            f"Design is rank-deficient on the {n_obs} observed sample(s) "
            f"(min |R_ii| = {diag.min():.3g})"
        )

    beta = solve_triangular(R, Q.T @ yw)
    resid = yw - Xw @ beta
    R_inv = solve_triangular(R, np.eye(n_params))

    fitted = np.full(y.shape, np.nan)
    fitted[keep] = X[keep] @ beta

    return FittedModel(
        coefficients=beta,
        fitted_values=fitted,
        rss=float(resid @ resid),
        df_residual=n_obs - n_params,
        variance_weight=float(np.mean(variance[keep])),
        cov_unscaled=R_inv @ R_inv.T,
        n_obs=n_obs,
        mean_observation=float(np.mean(y[keep])),
    )


@dataclass
class ModelFit:
    """All feature fits of one named model.

    Attributes:
        name: Key under which the fit is stored in the analysis context.
        design: Design matrix every feature was fitted on.
        feature_ids: Features attempted, in observation order.
        fits: Successful fits keyed by feature id.
        failures: Issue message keyed by feature id, for failed fits.
    """

    name: str
    design: DesignMatrix
    feature_ids: pd.Index
    fits: dict[str, FittedModel] = field(default_factory=dict)
    failures: dict[str, str] = field(default_factory=dict)

    def get(self, feature_id: str) -> FittedModel | None:
        return self.fits.get(feature_id)

    def issue(self, feature_id: str) -> str | None:
        if feature_id in self.failures:
            return self.failures[feature_id]
        if feature_id not in self.fits:
            return f"feature not fitted in model '{self.name}'"
        return None

    @property
    def n_failed(self) -> int:
        return len(self.failures)

    def coefficient_frame(self) -> pd.DataFrame:
        """Coefficients (features x design columns); failed fits are NaN rows."""
        rows = np.full((len(self.feature_ids), self.design.n_params), np.nan)
        for i, fid in enumerate(self.feature_ids):
            fit = self.fits.get(fid)
            if fit is not None:
                rows[i] = fit.coefficients
        frame = pd.DataFrame(rows, index=self.feature_ids, columns=list(self.design.col_names))
        frame['dispersion'] = [
            self.fits[fid].dispersion if fid in self.fits else np.nan for fid in self.feature_ids
        ]
        return frame

    def __repr__(self) -> str:
        return (
            f"ModelFit('{self.name}', {len(self.fits)} fitted, "
            f"{len(self.failures)} failed, design {self.design.formula})"
        )


def _fit_chunk(
    chunk: slice,
    data: NDArray[np.float64],
    X: NDArray[np.float64],
    variances: NDArray[np.float64],
    rank_tolerance: float,
) -> list[tuple[FittedModel | None, str | None]]:
    out: list[tuple[FittedModel | None, str | None]] = []
    for i in range(chunk.start, chunk.stop):
        try:
            out.append((fit_feature(data[i], X, variances[i], rank_tolerance), None))
        except NumericalError as e:
            out.append((None, str(e)))
    return out


class ModelFitter:
    """
    Fits one design to every feature of an observation matrix.

    Attributes:
        n_jobs: Worker pool size.
        batch_size: Features per worker chunk.
        rank_tolerance: Passed to ``fit_feature``.
    """

    def __init__(self, n_jobs: int = 1, batch_size: int = 500, rank_tolerance: float = 1e-10):
        self.n_jobs = n_jobs
        self.batch_size = batch_size
        self.rank_tolerance = rank_tolerance

    def fit(
        self,
        context: AnalysisContext | None,
        design: DesignMatrix,
        observations: ObservationMatrix,
        variance: VarianceEstimate,
        name: str | None = None,
    ) -> ModelFit:
        """
        Fit ``design`` to every feature and store the result under ``name``.

        Args:
            context: Analysis context receiving the fit (replacing an entry
                of the same name), or None to only return it.
            design: Design matrix; observations are reordered to its rows.
            observations: Point estimates on the model scale.
            variance: Technical variance per feature.
            name: Storage key. Defaults to ``design.name``.

        Raises:
            DataError: A design sample is absent from the observations, or an
                observed feature has no variance estimate.
        """
        name = name or design.name
        obs = observations.reorder_samples(list(design.sample_ids))
        variances = variance.aligned(obs.feature_ids)

        results = map_chunks(
            _fit_chunk,
            obs.n_features,
            obs.data,
            design.X,
            variances,
            self.rank_tolerance,
            n_jobs=self.n_jobs,
            batch_size=self.batch_size,
        )

        model_fit = ModelFit(name=name, design=design, feature_ids=obs.feature_ids)
        for feature_id, (fitted, issue) in zip(obs.feature_ids, results):
            if fitted is None:
                model_fit.failures[feature_id] = issue
            else:
                model_fit.fits[feature_id] = fitted

        if model_fit.n_failed:
            logger.warning(
                "Model '%s': %d of %d feature fit(s) failed (e.g. %s: %s)",
                name, model_fit.n_failed, obs.n_features,
                next(iter(model_fit.failures)), next(iter(model_fit.failures.values())),
            )
        logger.info("Fitted model '%s' (%s) to %d features", name, design.formula, len(model_fit.fits))

        if context is not None:
            context.store_fit(model_fit)
        return model_fit
