"""
Statistical engine for differential abundance.

Exports:
- Design matrices from typed model formulas
- Technical variance estimation with empirical Bayes shrinkage
- Weighted least squares fits of the measurement-error model
- Likelihood ratio and Wald tests
- Multiple testing correction and significance classification
- PCA for sample quality control
"""

from .design_matrix import (
    INTERCEPT,
    DesignMatrix,
    DesignMatrixBuilder,
    ModelFormula,
    Term,
    validate_nested,
)
from .variance import VarianceEstimate, VarianceEstimator
from .fitting import FittedModel, ModelFit, ModelFitter, fit_feature
from .testing import (
    HypothesisTester,
    TestKind,
    TestResult,
    TestTable,
    check_lrt_designs,
    likelihood_ratio_statistic,
    wald_statistic,
)
from .multiple_testing import MultipleTestingCorrector, qvalues
from .classification import ResultClassifier, Thresholds, is_significant
from .pca import PCAEngine, PCAResult

__all__ = [
    "INTERCEPT",
    "DesignMatrix",
    "DesignMatrixBuilder",
    "ModelFormula",
    "Term",
    "validate_nested",
    "VarianceEstimate",
    "VarianceEstimator",
    "FittedModel",
    "ModelFit",
    "ModelFitter",
    "fit_feature",
    "HypothesisTester",
    "TestKind",
    "TestResult",
    "TestTable",
    "check_lrt_designs",
    "likelihood_ratio_statistic",
    "wald_statistic",
    "MultipleTestingCorrector",
    "qvalues",
    "ResultClassifier",
    "Thresholds",
    "is_significant",
    "PCAEngine",
    "PCAResult",
]
