"""End-to-end tests for the differential analysis pipeline."""

import numpy as np
import pytest

from conftest import generate_bootstrap_frames, generate_feature_table

from abundiff.analysis import RESULT_COLUMNS, AnalysisContext, run_differential_analysis
from abundiff.config import AnalysisConfig
from abundiff.core.exceptions import ConfigurationError, DataError
from abundiff.core.quality import QualityFlag
from abundiff.core.samples import FeatureSet
from abundiff.io.bootstrap import BootstrapSet
from abundiff.stats.classification import ResultClassifier, Thresholds
from abundiff.stats.design_matrix import DesignMatrixBuilder, ModelFormula
from abundiff.stats.fitting import ModelFitter
from abundiff.stats.multiple_testing import MultipleTestingCorrector
from abundiff.stats.testing import HypothesisTester
from abundiff.stats.variance import VarianceEstimator


def _config(**overrides) -> AnalysisConfig:
    data = {
        'models': {'full': "~ genotype", 'reduced': "~ 1"},
        'reference_levels': {'genotype': 'wt'},
        'normalize': False,
        'log_pseudocount': None,
        'tests': [
            {'name': 'genotype_lrt', 'kind': 'lrt', 'effect_coefficient': 'genotype[T.mut]'},
            {'name': 'genotype_wald', 'kind': 'wald', 'coefficient': 'genotype[T.mut]'},
        ],
        'significance': {'q_value': 0.05, 'effect_size': 1.0},
    }
    data.update(overrides)
    return AnalysisConfig.from_dict(data)


class TestScenarioA:
    """Single shifted feature among nulls, 2 conditions x 3 replicates."""

    def test_shift_detected_and_nulls_quiet(self, registry, shifted_bootstraps, features):
        context = run_differential_analysis(_config(), registry, shifted_bootstraps, features)
        table = context.results_table('genotype_lrt')

        assert list(table.columns) == RESULT_COLUMNS
        shifted = table.set_index('feature_id').loc['tx0000']
        assert shifted['p_value'] < 1e-6
        assert shifted['q_value'] < 0.05
        assert shifted['effect_size'] == pytest.approx(3.0, abs=0.5)
        assert shifted['significance_flag']
        assert shifted['external_name'] == 'GENE0-0000'

        nulls = table[table['feature_id'] != 'tx0000']
        assert nulls['p_value'].min() > 1e-4
        assert shifted['p_value'] < nulls['p_value'].min()
        assert not nulls['significance_flag'].any()

    def test_wald_agrees(self, registry, shifted_bootstraps, features):
        context = run_differential_analysis(_config(), registry, shifted_bootstraps, features)
        wald = context.results_table('genotype_wald').set_index('feature_id')
        assert wald.loc['tx0000', 'p_value'] < 1e-6
        assert wald.drop('tx0000')['p_value'].min() > 1e-4
        assert (wald['test_identifier'] == 'genotype_wald').all()

    def test_raw_scale_with_normalization(self, sample_table, registry):
        frames = generate_bootstrap_frames(
            sample_table, shifts={0: 3.0}, technical_sd=(0.05, 0.1), raw_scale=True
        )
        boots = BootstrapSet.from_frames(frames)
        context = run_differential_analysis(
            _config(normalize=True, log_pseudocount=0.5), registry, boots
        )
        table = context.results_table('genotype_lrt').set_index('feature_id')
        assert table.loc['tx0000', 'p_value'] < 1e-6
        assert table.loc['tx0000', 'effect_size'] == pytest.approx(3.0, abs=0.3)
        # no feature set: external name falls back to id
        assert table.loc['tx0003', 'external_name'] == 'tx0003'
        assert np.all(context.observations.quality_flags & QualityFlag.NORMALIZED)


class TestScenarioB:
    """Zero bootstrap variance on one feature."""

    def test_floored_feature_has_finite_statistics(self, registry, zero_variance_bootstraps):
        context = run_differential_analysis(_config(), registry, zero_variance_bootstraps)
        assert context.variance.floored[5]
        assert np.all(context.observations.quality_flags[5] & QualityFlag.VARIANCE_FLOORED)

        row = context.results_table('genotype_lrt').set_index('feature_id').loc['tx0005']
        assert np.isfinite(row['p_value'])
        assert np.isfinite(row['standard_error_or_rss'])


class TestResultsTable:
    """Tests for the output table contract."""

    def test_no_thresholds_gives_undefined_flags(self, registry, shifted_bootstraps):
        config = _config(significance=None)
        context = run_differential_analysis(config, registry, shifted_bootstraps)
        table = context.results_table('genotype_lrt')
        assert table['significance_flag'].isna().all()
        assert str(table['significance_flag'].dtype) == 'boolean'

    def test_explicit_classifier(self, registry, shifted_bootstraps):
        context = run_differential_analysis(_config(significance=None), registry, shifted_bootstraps)
        classifier = ResultClassifier(Thresholds(q_value=0.05, effect_size=0.0))
        table = context.results_table('genotype_lrt', classifier).set_index('feature_id')
        assert table.loc['tx0000', 'significance_flag']

    def test_unknown_test(self, registry):
        with pytest.raises(ConfigurationError, match="missing"):
            AnalysisContext(registry).results_table('missing')

    def test_failed_fits_stay_undefined(self, registry, shifted_bootstraps):
        context = run_differential_analysis(_config(), registry, shifted_bootstraps)
        # a fit on which every feature fails
        builder = DesignMatrixBuilder(registry.covariates, reference_levels={'genotype': 'wt'})
        with pytest.warns(UserWarning):
            design = builder.build(ModelFormula.parse("~ genotype"), ['wt_1', 'wt_2', 'wt_3'], name="wt")
        ModelFitter().fit(context, design, context.observations, context.variance)
        table = HypothesisTester().wald(context, 'genotype[T.mut]', model='wt', name='broken')
        MultipleTestingCorrector().apply(table)

        frame = context.results_table('broken')
        assert frame['p_value'].isna().all()
        assert frame['q_value'].isna().all()
        assert frame['significance_flag'].isna().all()


class TestPipelineErrors:
    """Setup errors abort before any fitting."""

    @pytest.fixture
    def per_feature_calls(self, monkeypatch):
        calls = []
        estimate, fit = VarianceEstimator.estimate, ModelFitter.fit

        def recording_estimate(self, *args, **kwargs):
            calls.append('variance')
            return estimate(self, *args, **kwargs)

        def recording_fit(self, context, design, *args, **kwargs):
            calls.append(design.name)
            return fit(self, context, design, *args, **kwargs)

        monkeypatch.setattr(VarianceEstimator, 'estimate', recording_estimate)
        monkeypatch.setattr(ModelFitter, 'fit', recording_fit)
        return calls

    def test_bad_term_in_later_model(self, registry, shifted_bootstraps, per_feature_calls):
        models = {'full': "~ genotype", 'reduced': "~ 1", 'by_batch': "~ batch"}
        with pytest.raises(ConfigurationError, match="batch"):
            run_differential_analysis(_config(models=models), registry, shifted_bootstraps)
        assert per_feature_calls == []

    def test_unknown_wald_coefficient(self, registry, shifted_bootstraps, per_feature_calls):
        tests = [{'name': 'ko', 'kind': 'wald', 'coefficient': 'genotype[T.ko]'}]
        with pytest.raises(ConfigurationError, match=r"genotype\[T\.ko\]"):
            run_differential_analysis(_config(tests=tests), registry, shifted_bootstraps)
        assert per_feature_calls == []

    def test_unknown_effect_coefficient(self, registry, shifted_bootstraps, per_feature_calls):
        tests = [{'name': 'lrt', 'kind': 'lrt', 'effect_coefficient': 'temperature'}]
        with pytest.raises(ConfigurationError, match="temperature"):
            run_differential_analysis(_config(tests=tests), registry, shifted_bootstraps)
        assert per_feature_calls == []

    def test_valid_config_runs_after_setup(self, registry, shifted_bootstraps, per_feature_calls):
        run_differential_analysis(_config(), registry, shifted_bootstraps)
        assert per_feature_calls == ['variance', 'full', 'reduced']

    def test_sample_without_bootstraps(self, sample_table, registry):
        frames = generate_bootstrap_frames(sample_table)
        del frames['mut_3']
        with pytest.raises(DataError, match="mut_3"):
            run_differential_analysis(_config(), registry, BootstrapSet.from_frames(frames))

    def test_unknown_covariate_in_formula(self, registry, shifted_bootstraps):
        config = _config(models={'full': "~ batch", 'reduced': "~ 1"})
        with pytest.raises(ConfigurationError, match="batch"):
            run_differential_analysis(config, registry, shifted_bootstraps)

    def test_aggregate_requires_features(self, registry, shifted_bootstraps):
        with pytest.raises(ConfigurationError, match="feature set"):
            run_differential_analysis(_config(aggregate=True), registry, shifted_bootstraps)


class TestAggregation:
    """Transcripts summed into genes before testing."""

    def test_gene_level_results(self, sample_table, registry):
        frames = generate_bootstrap_frames(
            sample_table, n_features=40, technical_sd=(0.05, 0.1), raw_scale=True
        )
        boots = BootstrapSet.from_frames(frames)
        table = generate_feature_table(n_features=40, n_genes=10)
        table['external_name'] = [f"GENE{i % 10}" for i in range(40)]
        features = FeatureSet.from_table(table, group_column='gene_id')

        context = run_differential_analysis(
            _config(aggregate=True, normalize=True, log_pseudocount=0.5), registry, boots, features
        )
        result = context.results_table('genotype_lrt')
        assert len(result) == 10
        assert set(result['feature_id']) == {f"g{i:02d}" for i in range(10)}
        assert np.all(context.observations.quality_flags & QualityFlag.AGGREGATED)
        assert result['p_value'].notna().all()
