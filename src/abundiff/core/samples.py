"""
Sample and feature registries.

The registries are the leaves of the analysis: they are loaded once from the
tables supplied by the ingestion layer and never modified afterwards. Every
other component refers to samples and features by id and takes its ordering
from these objects.

Examples:
    >>> table = pd.DataFrame({
    ...     'sample': ['wt_1', 'wt_2', 'mut_1', 'mut_2'],
    ...     'genotype': ['wt', 'wt', 'mut', 'mut'],
    ...     'temperature': [30, 37, 30, 37],
    ... })
    >>> registry = SampleRegistry.from_table(table, condition_column='genotype')
    >>> registry.conditions
    ['mut', 'wt']
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterator, Mapping, Sequence

import pandas as pd

from abundiff.core.exceptions import ConfigurationError, DataError

__all__ = ['Sample', 'SampleRegistry', 'Feature', 'FeatureSet']

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Sample:
    """One sequenced library.

    Attributes:
        sample_id: Unique sample identifier.
        condition: Condition label used for grouping and QC.
        covariates: Covariate values by name (genotype, temperature, ...).
        bootstrap_path: Handle understood by a BootstrapLoader, if any.
    """

    sample_id: str
    condition: str
    covariates: Mapping[str, Any] = field(default_factory=dict)
    bootstrap_path: str | None = None


class SampleRegistry:
    """
    Ordered, immutable collection of samples.

    Attributes:
        samples: Samples in table order.
        condition_column: Name of the covariate holding the condition label.
    """

    def __init__(self, samples: Sequence[Sample], condition_column: str = 'condition'):
        ids = [s.sample_id for s in samples]
        duplicated = pd.Index(ids)[pd.Index(ids).duplicated()]
        if len(duplicated) > 0:
            raise DataError(
                f"Duplicate sample id in sample table: {duplicated[0]}",
                identifier=str(duplicated[0]),
            )
        self._samples = tuple(samples)
        self._by_id = {s.sample_id: s for s in self._samples}
        self.condition_column = condition_column

    @classmethod
    def from_table(
        cls,
        table: pd.DataFrame,
        id_column: str = 'sample',
        condition_column: str = 'condition',
        path_column: str | None = 'path',
    ) -> SampleRegistry:
        """
        Build a registry from a sample table.

        Every column other than the id and path columns becomes a covariate;
        the condition column is kept among the covariates so that formulas may
        refer to it.

        Raises:
            ConfigurationError: If the id or condition column is absent.
            DataError: If a sample id is duplicated or a condition is missing.
        """
        for column in (id_column, condition_column):
            if column not in table.columns:
                raise ConfigurationError(
                    f"Sample table has no column '{column}'. "
                    f"Available columns: {list(table.columns)}",
                    identifier=column,
                )

        covariate_columns = [
            c for c in table.columns if c not in (id_column, path_column)
        ]
        samples = []
        for row in table.to_dict(orient='records'):
            sample_id = str(row[id_column])
            condition = row[condition_column]
            if pd.isna(condition):
                raise DataError(
                    f"Sample '{sample_id}' has no value for '{condition_column}'",
                    identifier=sample_id,
                )
            path = None
            if path_column is not None and path_column in row and not pd.isna(row[path_column]):
                path = str(row[path_column])
            samples.append(Sample(
                sample_id=sample_id,
                condition=str(condition),
                covariates={c: row[c] for c in covariate_columns},
                bootstrap_path=path,
            ))

        logger.info("Loaded %d samples from sample table", len(samples))
        return cls(samples, condition_column=condition_column)

    @property
    def samples(self) -> tuple[Sample, ...]:
        return self._samples

    @property
    def sample_ids(self) -> pd.Index:
        return pd.Index([s.sample_id for s in self._samples], name='sample_id')

    @property
    def conditions(self) -> list[str]:
        """Sorted unique condition labels."""
        return sorted({s.condition for s in self._samples})

    @property
    def covariates(self) -> pd.DataFrame:
        """Covariate table indexed by sample id, in registry order."""
        return pd.DataFrame(
            [dict(s.covariates) for s in self._samples],
            index=self.sample_ids,
        )

    def condition_labels(self) -> pd.Series:
        return pd.Series(
            [s.condition for s in self._samples],
            index=self.sample_ids,
            name=self.condition_column,
        )

    def get(self, sample_id: str) -> Sample:
        try:
            return self._by_id[sample_id]
        except KeyError:
            raise DataError(f"Unknown sample '{sample_id}'", identifier=sample_id) from None

    def subset(self, sample_ids: Sequence[str]) -> SampleRegistry:
        """Registry restricted to ``sample_ids``, in the order given."""
        return SampleRegistry(
            [self.get(sid) for sid in sample_ids],
            condition_column=self.condition_column,
        )

    def __len__(self) -> int:
        return len(self._samples)

    def __iter__(self) -> Iterator[Sample]:
        return iter(self._samples)

    def __contains__(self, sample_id: object) -> bool:
        return sample_id in self._by_id

    def __repr__(self) -> str:
        return f"SampleRegistry({len(self)} samples, conditions={self.conditions})"


@dataclass(frozen=True)
class Feature:
    """A gene or transcript.

    Attributes:
        feature_id: Identifier used by the quantifier (e.g. transcript id).
        external_name: Human-readable name for reporting.
        group: Aggregation group (e.g. gene id for a transcript), if any.
    """

    feature_id: str
    external_name: str
    group: str | None = None


class FeatureSet:
    """Immutable feature-to-name mapping used for aggregation and reporting."""

    def __init__(self, features: Sequence[Feature]):
        self._features = {f.feature_id: f for f in features}

    @classmethod
    def from_table(
        cls,
        table: pd.DataFrame,
        id_column: str = 'feature_id',
        name_column: str = 'external_name',
        group_column: str | None = None,
    ) -> FeatureSet:
        """
        Build from a mapping table with one row per feature.

        Raises:
            ConfigurationError: If a named column is missing.
            DataError: If a feature id appears more than once.
        """
        required = [id_column, name_column] + ([group_column] if group_column else [])
        for column in required:
            if column not in table.columns:
                raise ConfigurationError(
                    f"Feature table has no column '{column}'",
                    identifier=column,
                )
        dup = table[id_column][table[id_column].duplicated()]
        if len(dup) > 0:
            raise DataError(
                f"Duplicate feature id in feature table: {dup.iloc[0]}",
                identifier=str(dup.iloc[0]),
            )

        features = []
        for row in table.to_dict(orient='records'):
            group = None
            if group_column is not None and not pd.isna(row[group_column]):
                group = str(row[group_column])
            features.append(Feature(
                feature_id=str(row[id_column]),
                external_name=str(row[name_column]),
                group=group,
            ))
        return cls(features)

    @classmethod
    def from_ids(cls, feature_ids: Sequence[str]) -> FeatureSet:
        """Feature set whose external names are the ids themselves."""
        return cls([Feature(str(fid), str(fid)) for fid in feature_ids])

    def external_name(self, feature_id: str) -> str:
        """External name, falling back to the id for unmapped features."""
        feature = self._features.get(feature_id)
        return feature.external_name if feature is not None else feature_id

    def groups(self) -> dict[str, list[str]]:
        """Aggregation groups: group id -> member feature ids (mapping order)."""
        groups: dict[str, list[str]] = {}
        for feature in self._features.values():
            if feature.group is not None:
                groups.setdefault(feature.group, []).append(feature.feature_id)
        return groups

    def __contains__(self, feature_id: object) -> bool:
        return feature_id in self._features

    def __len__(self) -> int:
        return len(self._features)

    def __iter__(self) -> Iterator[Feature]:
        return iter(self._features.values())
