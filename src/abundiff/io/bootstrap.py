"""
Bootstrap replicate container and loader protocol.

Reading quantifier output from disk belongs to the ingestion layer. This
module only defines the seam: a ``BootstrapLoader`` turns a Sample into a
DataFrame of replicate abundances (features x replicates), and a
``BootstrapSet`` holds those replicates for every sample of a run.

Replicates are stored per sample as a 2D float array. Absent replicates are
NaN, so the replicate count of a feature in a sample is its number of finite
values. The count must be identical across samples for each feature.

Examples:
    >>> frames = {
    ...     'wt_1': pd.DataFrame([[10.0, 11.0, 9.0]], index=['tx1']),
    ...     'mut_1': pd.DataFrame([[20.0, 19.0, 22.0]], index=['tx1']),
    ... }
    >>> boots = BootstrapSet.from_frames(frames)
    >>> boots.n_bootstraps
    3
"""

from __future__ import annotations

import logging
import warnings
from typing import Callable, Mapping, Protocol, Sequence, runtime_checkable

import numpy as np
import pandas as pd

from abundiff.core.exceptions import DataError
from abundiff.core.observations import ObservationMatrix
from abundiff.core.samples import FeatureSet, Sample, SampleRegistry

__all__ = ['BootstrapLoader', 'InMemoryBootstrapLoader', 'BootstrapSet']

logger = logging.getLogger(__name__)


@runtime_checkable
class BootstrapLoader(Protocol):
    """Supplies the bootstrap replicates of one sample."""

    def load(self, sample: Sample) -> pd.DataFrame:
        """Return replicate abundances, index = feature ids, one column per replicate."""
        ...


class InMemoryBootstrapLoader:
    """Loader backed by frames already held in memory, keyed by sample id."""

    def __init__(self, frames: Mapping[str, pd.DataFrame]):
        self._frames = dict(frames)

    def load(self, sample: Sample) -> pd.DataFrame:
        try:
            return self._frames[sample.sample_id]
        except KeyError:
            raise DataError(
                f"No bootstrap data for sample '{sample.sample_id}'",
                identifier=sample.sample_id,
            ) from None


class BootstrapSet:
    """
    Bootstrap replicates for every sample of one analysis run.

    Attributes:
        feature_ids: Row identifiers shared by all samples.
        sample_ids: Samples with replicates, in insertion order.
    """

    def __init__(self, replicates: Mapping[str, np.ndarray], feature_ids: pd.Index):
        for sample_id, values in replicates.items():
            if values.ndim != 2 or values.shape[0] != len(feature_ids):
                raise ValueError(
                    f"Replicates for sample '{sample_id}' must have shape "
                    f"({len(feature_ids)}, B), got {values.shape}"
                )
        self._replicates = {k: np.asarray(v, dtype=np.float64) for k, v in replicates.items()}
        self._feature_ids = feature_ids

    @classmethod
    def from_frames(cls, frames: Mapping[str, pd.DataFrame]) -> BootstrapSet:
        """
        Build from per-sample frames (features x replicates).

        Frames are aligned on the union of their feature ids, in order of
        first appearance; a feature absent from a sample gets no replicates
        there, which surfaces as a count mismatch during validation.
        """
        if not frames:
            raise DataError("No bootstrap data supplied")
        seen: dict[str, None] = {}
        for frame in frames.values():
            seen.update(dict.fromkeys(frame.index.map(str)))
        feature_ids = pd.Index(list(seen), name='feature_id')

        replicates = {}
        for sample_id, frame in frames.items():
            frame = frame.copy()
            frame.index = frame.index.map(str)
            if frame.index.has_duplicates:
                dup = frame.index[frame.index.duplicated()][0]
                raise DataError(
                    f"Feature '{dup}' appears twice in bootstrap data of sample '{sample_id}'",
                    identifier=str(dup),
                )
            replicates[str(sample_id)] = frame.reindex(feature_ids).to_numpy(dtype=np.float64)
        return cls(replicates, feature_ids)

    @classmethod
    def from_loader(cls, registry: SampleRegistry, loader: BootstrapLoader) -> BootstrapSet:
        """Load every sample of ``registry``; completes before any estimation starts."""
        frames = {}
        for sample in registry:
            frames[sample.sample_id] = loader.load(sample)
            logger.debug("Loaded %d bootstrap rows for %s", len(frames[sample.sample_id]), sample.sample_id)
        logger.info("Loaded bootstrap replicates for %d samples", len(frames))
        return cls.from_frames(frames)

    @property
    def feature_ids(self) -> pd.Index:
        return self._feature_ids

    @property
    def sample_ids(self) -> pd.Index:
        return pd.Index(list(self._replicates), name='sample_id')

    def values(self, sample_id: str) -> np.ndarray:
        try:
            return self._replicates[sample_id]
        except KeyError:
            raise DataError(
                f"Sample '{sample_id}' has no bootstrap replicates",
                identifier=sample_id,
            ) from None

    def replicate_counts(self, sample_ids: Sequence[str] | None = None) -> np.ndarray:
        """Finite replicates per feature and sample, shape (n_features, n_samples)."""
        sample_ids = list(self.sample_ids if sample_ids is None else sample_ids)
        return np.column_stack([
            np.sum(np.isfinite(self.values(sid)), axis=1) for sid in sample_ids
        ])

    def validate_counts(self, sample_ids: Sequence[str] | None = None) -> np.ndarray:
        """
        Check replicate counts agree across samples for every feature.

        Returns:
            Per-feature replicate count.

        Raises:
            DataError: Naming the first feature whose counts differ, or whose
                replicates are missing in every sample.
        """
        counts = self.replicate_counts(sample_ids)
        mismatch = np.any(counts != counts[:, [0]], axis=1)
        if np.any(mismatch):
            idx = int(np.flatnonzero(mismatch)[0])
            feature_id = self._feature_ids[idx]
            raise DataError(
                f"Feature '{feature_id}' has differing bootstrap replicate counts "
                f"across samples: {counts[idx].tolist()}",
                identifier=str(feature_id),
            )
        empty = counts[:, 0] == 0
        if np.any(empty):
            feature_id = self._feature_ids[int(np.flatnonzero(empty)[0])]
            raise DataError(
                f"Feature '{feature_id}' has no bootstrap replicates in any sample",
                identifier=str(feature_id),
            )
        return counts[:, 0]

    @property
    def n_bootstraps(self) -> int:
        """Replicate count B, validated to be constant for the run."""
        counts = np.unique(self.validate_counts())
        if len(counts) != 1:
            raise DataError(f"Bootstrap count differs between features: {counts.tolist()}")
        return int(counts[0])

    def stacked(
        self,
        sample_ids: Sequence[str],
        feature_positions: np.ndarray | slice | None = None,
    ) -> np.ndarray:
        """
        Replicates as one array of shape (n_features, n_samples, B_max).

        Samples with fewer replicate columns are NaN-padded.
        """
        rows = slice(None) if feature_positions is None else feature_positions
        blocks = [self.values(sid)[rows] for sid in sample_ids]
        width = max(b.shape[1] for b in blocks)
        out = np.full((blocks[0].shape[0], len(blocks), width), np.nan)
        for j, block in enumerate(blocks):
            out[:, j, :block.shape[1]] = block
        return out

    def point_estimates(
        self,
        sample_ids: Sequence[str] | None = None,
        sample_metadata: pd.DataFrame | None = None,
    ) -> ObservationMatrix:
        """
        Per-sample mean of the replicates as an ObservationMatrix.

        Args:
            sample_ids: Column order. Defaults to insertion order.
            sample_metadata: Covariates; reindexed to ``sample_ids``.
        """
        sample_ids = pd.Index(list(self.sample_ids if sample_ids is None else sample_ids))
        columns = []
        for sid in sample_ids:
            with warnings.catch_warnings():
                warnings.simplefilter('ignore', category=RuntimeWarning)
                columns.append(np.nanmean(self.values(sid), axis=1))
        data = np.column_stack(columns)
        metadata = None
        if sample_metadata is not None:
            missing = sample_ids.difference(sample_metadata.index)
            if len(missing) > 0:
                raise DataError(
                    f"Sample '{missing[0]}' has no metadata",
                    identifier=str(missing[0]),
                )
            metadata = sample_metadata.loc[sample_ids]
        return ObservationMatrix(
            data=data,
            feature_ids=self._feature_ids,
            sample_ids=sample_ids,
            sample_metadata=metadata,
        )

    def map_values(self, func: Callable[[str, np.ndarray], np.ndarray]) -> BootstrapSet:
        """New set with ``func(sample_id, replicates)`` applied per sample."""
        return BootstrapSet(
            {sid: func(sid, values) for sid, values in self._replicates.items()},
            self._feature_ids,
        )

    def select_features(self, feature_ids: Sequence[str]) -> BootstrapSet:
        positions = self._feature_ids.get_indexer(pd.Index(feature_ids))
        if np.any(positions < 0):
            missing = pd.Index(feature_ids)[positions < 0][0]
            raise DataError(f"Feature '{missing}' has no bootstrap replicates", identifier=str(missing))
        return BootstrapSet(
            {sid: values[positions] for sid, values in self._replicates.items()},
            pd.Index(list(feature_ids), name='feature_id'),
        )

    def aggregate(self, features: FeatureSet) -> BootstrapSet:
        """
        Sum replicates within aggregation groups (e.g. transcripts -> genes).

        Replicate ``j`` of a group is the sum of replicate ``j`` over its
        members present in this set. Features without a group are kept
        unchanged under their own id.
        """
        groups = features.groups()
        position = {fid: i for i, fid in enumerate(self._feature_ids)}
        grouped = {fid for members in groups.values() for fid in members}

        new_ids: list[str] = []
        index_lists: list[list[int]] = []
        for group_id, members in groups.items():
            idx = [position[m] for m in members if m in position]
            if idx:
                new_ids.append(group_id)
                index_lists.append(idx)
        for fid in self._feature_ids:
            if fid not in grouped:
                new_ids.append(fid)
                index_lists.append([position[fid]])

        def _sum_groups(_: str, values: np.ndarray) -> np.ndarray:
            out = np.empty((len(index_lists), values.shape[1]))
            for row, idx in enumerate(index_lists):
                block = values[idx]
                summed = np.nansum(block, axis=0)
                summed[np.all(np.isnan(block), axis=0)] = np.nan
                out[row] = summed
            return out

        logger.info(
            "Aggregated %d features into %d groups", len(self._feature_ids), len(new_ids)
        )
        return BootstrapSet(
            {sid: _sum_groups(sid, values) for sid, values in self._replicates.items()},
            pd.Index(new_ids, name='feature_id'),
        )

    def __repr__(self) -> str:
        return f"BootstrapSet({len(self._feature_ids)} features × {len(self._replicates)} samples)"


