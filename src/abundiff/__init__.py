"""
abundiff - Differential abundance from bootstrapped quantification

Tests genes and transcripts for differences in abundance between
experimental conditions, using bootstrap replicates of each sample's
quantification to separate technical from biological variance.
"""

__version__ = "0.1.0"

from abundiff.analysis import AnalysisContext, run_differential_analysis
from abundiff.config import AnalysisConfig, load_config
from abundiff.core.observations import ObservationMatrix
from abundiff.core.samples import FeatureSet, SampleRegistry
from abundiff.io.bootstrap import BootstrapSet

__all__ = [
    "AnalysisContext",
    "run_differential_analysis",
    "AnalysisConfig",
    "load_config",
    "ObservationMatrix",
    "FeatureSet",
    "SampleRegistry",
    "BootstrapSet",
]
