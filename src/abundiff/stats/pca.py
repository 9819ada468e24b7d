"""
Principal component analysis of samples for quality control.

Samples are the observations and features the variables: features with any
missing value are dropped, the remaining matrix is centered (and optionally
scaled to unit variance) per feature, and components come from the SVD.
Component signs are arbitrary.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

import numpy as np
import pandas as pd
from sklearn.decomposition import PCA
from sklearn.preprocessing import StandardScaler

from abundiff.core.exceptions import ConfigurationError, DataError
from abundiff.core.observations import ObservationMatrix

__all__ = ['PCAEngine', 'PCAResult']

logger = logging.getLogger(__name__)


@dataclass
class PCAResult:
    """Sample scores and explained variance for the requested components.

    Attributes:
        scores: Samples x components, columns ``component_<k>`` (1-based).
        percent_variance: Percent of total variance per requested component.
        loadings: Features x components.
        components: Requested 1-based component numbers.
    """

    scores: pd.DataFrame
    percent_variance: pd.Series
    loadings: pd.DataFrame
    components: tuple[int, ...]

    @property
    def n_features_used(self) -> int:
        return len(self.loadings)

    def to_frame(self) -> pd.DataFrame:
        return self.scores.rename_axis('sample_id').reset_index()

    def variance_frame(self) -> pd.DataFrame:
        return pd.DataFrame({
            'component': list(self.components),
            'percent_variance_explained': self.percent_variance.to_numpy(),
        })


class PCAEngine:
    """Runs PCA on an observation matrix.

    Attributes:
        scale: Scale features to unit variance after centering.
    """

    def __init__(self, scale: bool = False):
        self.scale = scale

    def run(
        self,
        matrix: ObservationMatrix,
        components: Sequence[int] = (1, 2),
        sample_ids: Sequence[str] | None = None,
    ) -> PCAResult:
        """
        Project samples onto the requested principal components.

        Raises:
            DataError: Unknown sample, fewer than two samples, or no complete
                (and, when scaling, non-constant) feature.
            ConfigurationError: Component outside 1..min(n_samples, n_features).
        """
        if sample_ids is not None:
            matrix = matrix.reorder_samples(sample_ids)
        if matrix.n_samples < 2:
            raise DataError(f"PCA needs at least two samples, got {matrix.n_samples}")

        complete = matrix.drop_incomplete()
        if complete.n_features == 0:
            raise DataError("No feature is observed in every selected sample")
        X = complete.data.T
        feature_ids = complete.feature_ids

        if self.scale:
            keep = np.std(X, axis=0) > 0
            X, feature_ids = X[:, keep], feature_ids[keep]
            if X.shape[1] == 0:
                raise DataError("Every complete feature is constant; cannot scale")

        components = tuple(int(c) for c in components)
        max_components = min(X.shape)
        for c in components:
            if not 1 <= c <= max_components:
                raise ConfigurationError(
                    f"Component {c} requested but only 1..{max_components} are available "
                    f"({X.shape[0]} samples, {X.shape[1]} features)",
                    identifier=str(c),
                )

        X = StandardScaler(with_mean=True, with_std=self.scale).fit_transform(X)
        pca = PCA(n_components=max(components), svd_solver='full')
        scores = pca.fit_transform(X)

        cols = [c - 1 for c in components]
        names = [f"component_{c}" for c in components]
        logger.info(
            "PCA on %d samples x %d features; variance explained: %s",
            X.shape[0], X.shape[1],
            ", ".join(f"PC{c}={100 * pca.explained_variance_ratio_[c - 1]:.1f}%" for c in components),
        )
        return PCAResult(
            scores=pd.DataFrame(scores[:, cols], index=complete.sample_ids, columns=names),
            percent_variance=pd.Series(
                100.0 * pca.explained_variance_ratio_[cols], index=names, name='percent_variance_explained'
            ),
            loadings=pd.DataFrame(pca.components_[cols].T, index=feature_ids, columns=names),
            components=components,
        )
