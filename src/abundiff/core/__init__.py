"""
Core data structures for differential abundance analysis.

1. SampleRegistry / FeatureSet: immutable sample and feature registries
2. ObservationMatrix: point estimates with sample metadata and quality flags
3. QualityFlag: bitwise provenance flags
4. Transform: base class for transforms applied to estimates and replicates
5. Exceptions: ConfigurationError, DataError, NumericalError

Normalization transforms live in ``abundiff.core.normalization``.
"""

from abundiff.core.exceptions import AbundiffError, ConfigurationError, DataError, NumericalError
from abundiff.core.observations import ObservationMatrix
from abundiff.core.quality import QualityFlag
from abundiff.core.samples import Feature, FeatureSet, Sample, SampleRegistry
from abundiff.core.transform import Transform, apply_transforms

__all__ = [
    'AbundiffError',
    'ConfigurationError',
    'DataError',
    'NumericalError',
    'ObservationMatrix',
    'QualityFlag',
    'Feature',
    'FeatureSet',
    'Sample',
    'SampleRegistry',
    'Transform',
    'apply_transforms',
]
