"""
Analysis context and end-to-end differential abundance pipeline.

The context holds everything produced for one run, keyed by name: model
fits and test tables. Storing a fit or a test under an existing name
replaces the previous entry. Nothing is kept in module-level state, so
several analyses can coexist in one process.

Pipeline:
    1. build every design and resolve every test against it (setup)
    2. (optional) aggregate features into groups
    3. point estimates from bootstrap means, in registry sample order
    4. size-factor normalization and log transform, applied identically to
       point estimates and bootstrap replicates
    5. technical variance per feature from the replicates
    6. fit every configured model
    7. run every configured test, then multiple testing correction
"""

from __future__ import annotations

import logging

import pandas as pd

from abundiff.config import AnalysisConfig
from abundiff.core.exceptions import ConfigurationError
from abundiff.core.normalization import LogTransform, SizeFactorNormalization
from abundiff.core.observations import ObservationMatrix
from abundiff.core.quality import QualityFlag
from abundiff.core.samples import FeatureSet, SampleRegistry
from abundiff.core.transform import Transform, apply_transforms
from abundiff.io.bootstrap import BootstrapSet
from abundiff.stats.classification import ResultClassifier
from abundiff.stats.design_matrix import DesignMatrix, DesignMatrixBuilder
from abundiff.stats.fitting import ModelFit, ModelFitter
from abundiff.stats.multiple_testing import MultipleTestingCorrector
from abundiff.stats.testing import HypothesisTester, TestKind, TestTable, check_lrt_designs
from abundiff.stats.variance import VarianceEstimate, VarianceEstimator

__all__ = ['AnalysisContext', 'RESULT_COLUMNS', 'prepare_designs', 'run_differential_analysis']

logger = logging.getLogger(__name__)

RESULT_COLUMNS = [
    'feature_id',
    'external_name',
    'effect_size',
    'standard_error_or_rss',
    'p_value',
    'q_value',
    'mean_observed_abundance',
    'significance_flag',
    'test_identifier',
]


class AnalysisContext:
    """
    Named fits and tests of one analysis run.

    Attributes:
        registry: Samples of the run.
        features: External names (and groups) for reporting.
        observations: Point estimates on the model scale.
        variance: Technical variance per feature.
        classifier: Default classifier for ``results_table``.
        designs: Design matrix of every stored fit.
        fits: Model fits by name.
        tests: Test tables by name.
    """

    def __init__(
        self,
        registry: SampleRegistry,
        features: FeatureSet | None = None,
        observations: ObservationMatrix | None = None,
        variance: VarianceEstimate | None = None,
        classifier: ResultClassifier | None = None,
    ):
        self.registry = registry
        self.features = features
        self.observations = observations
        self.variance = variance
        self.classifier = classifier
        self.designs: dict[str, DesignMatrix] = {}
        self.fits: dict[str, ModelFit] = {}
        self.tests: dict[str, TestTable] = {}

    def store_fit(self, fit: ModelFit) -> None:
        if fit.name in self.fits:
            logger.info("Replacing model fit '%s'", fit.name)
        self.fits[fit.name] = fit
        self.designs[fit.name] = fit.design

    def get_fit(self, name: str) -> ModelFit:
        try:
            return self.fits[name]
        except KeyError:
            raise ConfigurationError(
                f"No model fit named '{name}'. Available: {sorted(self.fits)}",
                identifier=name,
            ) from None

    def store_test(self, table: TestTable) -> None:
        if table.name in self.tests:
            logger.info("Replacing test table '%s'", table.name)
        self.tests[table.name] = table

    def get_test(self, name: str) -> TestTable:
        try:
            return self.tests[name]
        except KeyError:
            raise ConfigurationError(
                f"No test named '{name}'. Available: {sorted(self.tests)}",
                identifier=name,
            ) from None

    def results_table(
        self,
        test_name: str,
        classifier: ResultClassifier | None = None,
    ) -> pd.DataFrame:
        """
        Result rows of one test, one per feature, in fitting order.

        Undefined values are pd.NA in nullable columns; the significance
        flag is pd.NA when no classifier is available.
        """
        table = self.get_test(test_name)
        frame = table.to_frame().rename(columns={'mean_abundance': 'mean_observed_abundance'})
        if self.features is not None:
            frame['external_name'] = [self.features.external_name(fid) for fid in frame['feature_id']]
        else:
            frame['external_name'] = frame['feature_id']

        classifier = classifier or self.classifier
        if classifier is not None:
            frame['significance_flag'] = classifier.classify(table).array
        else:
            frame['significance_flag'] = pd.array([pd.NA] * len(frame), dtype='boolean')
        return frame[RESULT_COLUMNS]

    def __repr__(self) -> str:
        return (
            f"AnalysisContext({len(self.registry)} samples, "
            f"fits={sorted(self.fits)}, tests={sorted(self.tests)})"
        )


def prepare_designs(config: AnalysisConfig, registry: SampleRegistry) -> dict[str, DesignMatrix]:
    """
    Build every configured design and resolve every test against them.

    Runs before any per-feature work, so that a bad covariate, coefficient
    or model pair in any model or test aborts the run up front.

    Raises:
        ConfigurationError: Unknown covariate or coefficient, bad reference
            level, or an LRT pair that is not a strict submodel.
        DataError: Missing covariate values, or LRT designs on different samples.
    """
    builder = DesignMatrixBuilder(
        registry.covariates,
        reference_levels=config.reference_levels,
        standardize_numeric=config.standardize_numeric,
    )
    sample_ids = list(registry.sample_ids)
    designs = {
        name: builder.build(formula, sample_ids, name=name)
        for name, formula in config.models.items()
    }
    for test in config.tests:
        if test.kind is TestKind.LRT:
            check_lrt_designs(designs[test.full], designs[test.reduced])
            if test.effect_coefficient:
                designs[test.full].column_index(test.effect_coefficient)
        else:
            designs[test.model].column_index(test.coefficient)
    return designs


def run_differential_analysis(
    config: AnalysisConfig,
    registry: SampleRegistry,
    bootstraps: BootstrapSet,
    features: FeatureSet | None = None,
) -> AnalysisContext:
    """
    Run the configured models and tests on bootstrapped abundances.

    Every design is built and every test resolved before the first
    per-feature computation.

    Args:
        config: Models, tests, thresholds and worker settings.
        registry: Samples to analyse; sets the sample order.
        bootstraps: Raw-scale bootstrap replicates for every sample.
        features: External names, and groups when ``config.aggregate``.

    Returns:
        Populated context; use ``results_table`` for the output rows.

    Raises:
        ConfigurationError: Invalid configuration for these samples.
        DataError: Missing or inconsistent input data.
    """
    if config.aggregate and features is None:
        raise ConfigurationError("Aggregation requires a feature set with groups", identifier='aggregate')
    designs = prepare_designs(config, registry)

    if config.aggregate:
        bootstraps = bootstraps.aggregate(features)

    observations = bootstraps.point_estimates(list(registry.sample_ids), registry.covariates)
    if config.aggregate:
        observations = observations.with_data(observations.data, QualityFlag.AGGREGATED)

    transforms: list[Transform] = []
    if config.normalize:
        transforms.append(SizeFactorNormalization.from_matrix(observations))
    if config.log_pseudocount is not None:
        transforms.append(LogTransform(config.log_pseudocount, config.log_base))
    observations, bootstraps = apply_transforms(transforms, observations, bootstraps)

    estimator = VarianceEstimator(
        shrink=config.variance.shrink,
        trend_frac=config.variance.trend_frac,
        trend_delta=config.variance.trend_delta,
        min_trend_features=config.variance.min_trend_features,
        zero_tolerance=config.variance.zero_tolerance,
        n_jobs=config.n_jobs,
        batch_size=config.batch_size,
    )
    variance = estimator.estimate(bootstraps, observations)
    observations = observations.flag_features(variance.floored, QualityFlag.VARIANCE_FLOORED)

    classifier = None
    if config.significance is not None:
        classifier = ResultClassifier(config.significance, config.label)
    context = AnalysisContext(
        registry,
        features=features,
        observations=observations,
        variance=variance,
        classifier=classifier,
    )

    fitter = ModelFitter(n_jobs=config.n_jobs, batch_size=config.batch_size)
    for design in designs.values():
        fitter.fit(context, design, observations, variance)

    tester = HypothesisTester(n_jobs=config.n_jobs, batch_size=config.batch_size)
    corrector = MultipleTestingCorrector(config.correction)
    for test in config.tests:
        if test.kind is TestKind.LRT:
            table = tester.lrt(
                context, test.full, test.reduced,
                name=test.name, effect_coefficient=test.effect_coefficient,
            )
        else:
            table = tester.wald(context, test.coefficient, model=test.model, name=test.name)
        corrector.apply(table)

    logger.info(
        "Differential analysis complete: %d features, %d model(s), %d test(s)",
        observations.n_features, len(context.fits), len(context.tests),
    )
    return context
