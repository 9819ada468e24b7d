"""
Observation matrix: point abundance estimates with sample metadata.

ObservationMatrix couples the features x samples matrix of point estimates
(by default the per-sample mean of bootstrap replicates) with the sample
metadata it was measured on and a per-value QualityFlag matrix.

Engineering Design:
    - Immutable: subsetting, reordering and transforms return new instances
    - Validated: constructor checks shape and index consistency
    - Column order is the sample order used for fitting; design matrices are
      aligned to it by id, never by position alone

Examples:
    >>> data = np.array([[10.0, 12.0], [3.0, np.nan]])
    >>> matrix = ObservationMatrix(
    ...     data=data,
    ...     feature_ids=pd.Index(["tx1", "tx2"]),
    ...     sample_ids=pd.Index(["wt_1", "mut_1"]),
    ...     sample_metadata=pd.DataFrame({'genotype': ['wt', 'mut']},
    ...                                  index=pd.Index(["wt_1", "mut_1"])),
    ... )
    >>> matrix.drop_incomplete().n_features
    1
"""

from __future__ import annotations

from typing import Sequence

import numpy as np
import pandas as pd

from abundiff.core.exceptions import DataError
from abundiff.core.quality import QualityFlag

__all__ = ['ObservationMatrix']


class ObservationMatrix:
    """
    Immutable container for point estimates + sample metadata + quality flags.

    Attributes:
        data: Point estimates (features x samples)
        feature_ids: Row identifiers
        sample_ids: Column identifiers
        sample_metadata: Covariates, index equal to sample_ids
        quality_flags: Per-value QualityFlag bits (same shape as data)

    Shape Invariants:
        - data.shape == (len(feature_ids), len(sample_ids))
        - quality_flags.shape == data.shape
        - sample_metadata.index equals sample_ids
    """

    def __init__(
        self,
        data: np.ndarray,
        feature_ids: pd.Index,
        sample_ids: pd.Index,
        sample_metadata: pd.DataFrame | None = None,
        quality_flags: np.ndarray | None = None,
    ):
        """
        Initialize with validation.

        Args:
            data: Point estimates (features x samples)
            feature_ids: Row identifiers (transcript or gene ids)
            sample_ids: Column identifiers
            sample_metadata: Covariates indexed by sample id. Defaults to an
                empty frame.
            quality_flags: Flags matrix. Defaults to ORIGINAL everywhere, with
                MISSING_ORIGINAL where data is NaN.

        Raises:
            ValueError: If shapes are inconsistent or indices don't match
            TypeError: If data types are incorrect
        """
        if not isinstance(data, np.ndarray):
            raise TypeError(f"data must be np.ndarray, got {type(data)}")
        if not isinstance(feature_ids, pd.Index):
            raise TypeError(f"feature_ids must be pd.Index, got {type(feature_ids)}")
        if not isinstance(sample_ids, pd.Index):
            raise TypeError(f"sample_ids must be pd.Index, got {type(sample_ids)}")

        if data.ndim != 2:
            raise ValueError(f"data must be 2D, got shape {data.shape}")

        n_features, n_samples = data.shape

        if len(feature_ids) != n_features:
            raise ValueError(
                f"feature_ids length ({len(feature_ids)}) must match data rows ({n_features})"
            )
        if len(sample_ids) != n_samples:
            raise ValueError(
                f"sample_ids length ({len(sample_ids)}) must match data columns ({n_samples})"
            )
        if sample_ids.has_duplicates:
            raise ValueError("sample_ids must be unique")

        if sample_metadata is None:
            sample_metadata = pd.DataFrame(index=sample_ids)
        if not isinstance(sample_metadata, pd.DataFrame):
            raise TypeError(f"sample_metadata must be pd.DataFrame, got {type(sample_metadata)}")
        if not sample_metadata.index.equals(sample_ids):
            raise ValueError(
                "sample_metadata.index must match sample_ids exactly. "
                f"Got {len(sample_metadata.index)} metadata rows for {len(sample_ids)} samples."
            )

        if quality_flags is None:
            quality_flags = np.where(
                np.isnan(data), int(QualityFlag.MISSING_ORIGINAL), int(QualityFlag.ORIGINAL)
            ).astype(np.uint32)
        if quality_flags.shape != data.shape:
            raise ValueError(
                f"quality_flags shape {quality_flags.shape} must match data shape {data.shape}"
            )

        self._data = data.astype(np.float64, copy=False)
        self._feature_ids = feature_ids
        self._sample_ids = sample_ids
        self._sample_metadata = sample_metadata
        self._quality_flags = quality_flags

    @property
    def data(self) -> np.ndarray:
        return self._data

    @property
    def feature_ids(self) -> pd.Index:
        return self._feature_ids

    @property
    def sample_ids(self) -> pd.Index:
        return self._sample_ids

    @property
    def sample_metadata(self) -> pd.DataFrame:
        return self._sample_metadata

    @property
    def quality_flags(self) -> np.ndarray:
        return self._quality_flags

    @property
    def shape(self) -> tuple[int, int]:
        return self._data.shape

    @property
    def n_features(self) -> int:
        return self._data.shape[0]

    @property
    def n_samples(self) -> int:
        return self._data.shape[1]

    def with_data(
        self,
        data: np.ndarray,
        add_flags: QualityFlag = QualityFlag.ORIGINAL,
    ) -> ObservationMatrix:
        """New matrix with the same labels, new values and extra flag bits."""
        return ObservationMatrix(
            data=data,
            feature_ids=self._feature_ids,
            sample_ids=self._sample_ids,
            sample_metadata=self._sample_metadata,
            quality_flags=self._quality_flags | np.uint32(add_flags),
        )

    def flag_features(self, mask: np.ndarray, flag: QualityFlag) -> ObservationMatrix:
        """New matrix with ``flag`` set on every value of the masked features."""
        flags = self._quality_flags.copy()
        flags[np.asarray(mask, dtype=bool)] |= np.uint32(flag)
        return ObservationMatrix(
            data=self._data,
            feature_ids=self._feature_ids,
            sample_ids=self._sample_ids,
            sample_metadata=self._sample_metadata,
            quality_flags=flags,
        )

    def select_samples(self, mask: np.ndarray | pd.Series) -> ObservationMatrix:
        """
        Subset by samples (columns) with a boolean mask.

        Raises:
            ValueError: If mask length doesn't match n_samples
        """
        if isinstance(mask, pd.Series):
            mask = mask.values
        mask = np.asarray(mask, dtype=bool)

        if len(mask) != self.n_samples:
            raise ValueError(
                f"mask length ({len(mask)}) must match n_samples ({self.n_samples})"
            )

        return ObservationMatrix(
            data=self._data[:, mask],
            feature_ids=self._feature_ids,
            sample_ids=self._sample_ids[mask],
            sample_metadata=self._sample_metadata.loc[self._sample_ids[mask]],
            quality_flags=self._quality_flags[:, mask],
        )

    def select_features(self, mask: np.ndarray | pd.Series) -> ObservationMatrix:
        """
        Subset by features (rows) with a boolean mask.

        Raises:
            ValueError: If mask length doesn't match n_features
        """
        if isinstance(mask, pd.Series):
            mask = mask.values
        mask = np.asarray(mask, dtype=bool)

        if len(mask) != self.n_features:
            raise ValueError(
                f"mask length ({len(mask)}) must match n_features ({self.n_features})"
            )

        return ObservationMatrix(
            data=self._data[mask, :],
            feature_ids=self._feature_ids[mask],
            sample_ids=self._sample_ids,
            sample_metadata=self._sample_metadata,
            quality_flags=self._quality_flags[mask, :],
        )

    def reorder_samples(self, sample_ids: Sequence[str]) -> ObservationMatrix:
        """
        Matrix whose columns follow ``sample_ids`` exactly.

        Raises:
            DataError: If a requested sample is absent from this matrix.
        """
        positions = self._sample_ids.get_indexer(pd.Index(sample_ids))
        missing = [sid for sid, pos in zip(sample_ids, positions) if pos < 0]
        if missing:
            raise DataError(
                f"Sample '{missing[0]}' is not present in the observation matrix",
                identifier=str(missing[0]),
            )
        return ObservationMatrix(
            data=self._data[:, positions],
            feature_ids=self._feature_ids,
            sample_ids=self._sample_ids[positions],
            sample_metadata=self._sample_metadata.iloc[positions],
            quality_flags=self._quality_flags[:, positions],
        )

    def drop_incomplete(self) -> ObservationMatrix:
        """Matrix without features that have any missing value."""
        return self.select_features(~np.isnan(self._data).any(axis=1))

    def all_missing_features(self) -> pd.Index:
        """Features without a single finite point estimate."""
        return self._feature_ids[np.isnan(self._data).all(axis=1)]

    def mean_abundance(self) -> pd.Series:
        """Per-feature mean over finite values (NaN when all missing)."""
        with np.errstate(invalid='ignore'):
            counts = np.sum(~np.isnan(self._data), axis=1)
            sums = np.nansum(self._data, axis=1)
            means = np.where(counts > 0, sums / np.maximum(counts, 1), np.nan)
        return pd.Series(means, index=self._feature_ids, name='mean_abundance')

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self._data, index=self._feature_ids, columns=self._sample_ids)

    def copy(self, deep: bool = True) -> ObservationMatrix:
        if deep:
            return ObservationMatrix(
                data=self._data.copy(),
                feature_ids=self._feature_ids.copy(),
                sample_ids=self._sample_ids.copy(),
                sample_metadata=self._sample_metadata.copy(),
                quality_flags=self._quality_flags.copy(),
            )
        return ObservationMatrix(
            data=self._data,
            feature_ids=self._feature_ids,
            sample_ids=self._sample_ids,
            sample_metadata=self._sample_metadata,
            quality_flags=self._quality_flags,
        )

    def __repr__(self) -> str:
        if self.n_features == 0 or self.n_samples == 0:
            return f"ObservationMatrix({self.n_features} features × {self.n_samples} samples)"
        return (
            f"ObservationMatrix({self.n_features} features × {self.n_samples} samples)\n"
            f"  Features: {self.feature_ids[0]}...{self.feature_ids[-1]}\n"
            f"  Samples: {self.sample_ids[0]}...{self.sample_ids[-1]}\n"
            f"  Metadata columns: {list(self.sample_metadata.columns)}"
        )
