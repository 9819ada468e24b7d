"""Tests for weighted least squares model fitting."""

import numpy as np
import pytest

from abundiff.analysis import AnalysisContext
from abundiff.core.exceptions import DataError, NumericalError
from abundiff.stats.design_matrix import DesignMatrixBuilder, ModelFormula
from abundiff.stats.fitting import ModelFitter, fit_feature
from abundiff.stats.variance import VarianceEstimator


@pytest.fixture
def design_X():
    return np.column_stack([np.ones(6), [0, 0, 0, 1, 1, 1], [30, 37, 30, 30, 37, 30]]).astype(float)


class TestFitFeature:
    """Tests for the single-feature QR solver."""

    def test_matches_least_squares(self, design_X):
        rng = np.random.RandomState(0)
        y = design_X @ np.array([5.0, 2.0, 0.1]) + rng.normal(0, 0.3, size=6)
        v = 0.25

        fit = fit_feature(y, design_X, v)
        beta, *_ = np.linalg.lstsq(design_X, y, rcond=None)
        resid = y - design_X @ beta

        np.testing.assert_allclose(fit.coefficients, beta, rtol=1e-8)
        assert fit.rss == pytest.approx(np.sum(resid ** 2) / v)
        np.testing.assert_allclose(
            fit.cov_unscaled, np.linalg.inv(design_X.T @ design_X) * v, rtol=1e-8, atol=1e-12
        )
        assert fit.df_residual == 3
        assert fit.n_obs == 6

    def test_per_sample_weights(self, design_X):
        rng = np.random.RandomState(1)
        y = rng.normal(5, 1, size=6)
        v = np.array([0.1, 0.2, 0.3, 0.1, 0.2, 0.3])
        fit = fit_feature(y, design_X, v)

        W = np.diag(1 / v)
        beta = np.linalg.solve(design_X.T @ W @ design_X, design_X.T @ W @ y)
        np.testing.assert_allclose(fit.coefficients, beta, rtol=1e-8)

    def test_missing_observation_drops_sample(self, design_X):
        y = np.array([1.0, 2.0, np.nan, 4.0, 5.0, 6.0])
        fit = fit_feature(y, design_X, 1.0)
        assert fit.n_obs == 5
        assert fit.df_residual == 2
        assert np.isnan(fit.fitted_values[2])
        assert fit.mean_observation == pytest.approx(np.mean([1.0, 2.0, 4.0, 5.0, 6.0]))

    def test_too_few_observations(self, design_X):
        y = np.array([1.0, np.nan, np.nan, np.nan, np.nan, 2.0])
        with pytest.raises(NumericalError, match="finite observation"):
            fit_feature(y, design_X, 1.0)

    def test_rank_deficient(self, design_X):
        X = np.column_stack([design_X, design_X[:, 1]])
        with pytest.raises(NumericalError, match="rank-deficient"):
            fit_feature(np.arange(6.0), X, 1.0)

    def test_zero_column_after_dropping(self, design_X):
        # only wt samples observed: genotype column is all zero
        y = np.array([1.0, 2.0, 3.0, np.nan, np.nan, np.nan])
        with pytest.raises(NumericalError, match="rank-deficient"):
            fit_feature(y, design_X[:, :2], 1.0)

    def test_non_positive_variance(self, design_X):
        with pytest.raises(NumericalError, match="positive"):
            fit_feature(np.arange(6.0), design_X, 0.0)

    def test_dispersion_floor(self, design_X):
        fit = fit_feature(design_X @ np.array([1.0, 2.0, 0.0]), design_X, 1.0)
        assert fit.rss == pytest.approx(0.0, abs=1e-18)
        assert fit.dispersion == 1.0

    def test_dispersion_excess(self, design_X):
        y = np.array([0.0, 10.0, -10.0, 0.0, 10.0, -10.0])
        fit = fit_feature(y, design_X[:, :2], 1.0)
        assert fit.dispersion == pytest.approx(fit.rss / 4)
        assert fit.dispersion > 1


class TestModelFitter:
    """Tests for fitting a design to every feature."""

    def test_fit_stores_in_context(self, registry, shifted_bootstraps, observations):
        variance = VarianceEstimator().estimate(shifted_bootstraps, observations)
        builder = DesignMatrixBuilder(registry.covariates, reference_levels={'genotype': 'wt'})
        design = builder.build(ModelFormula.parse("~ genotype"), name="full")
        context = AnalysisContext(registry)

        model_fit = ModelFitter().fit(context, design, observations, variance)

        assert context.get_fit("full") is model_fit
        assert len(model_fit.fits) == observations.n_features
        coefs = model_fit.coefficient_frame()
        assert coefs.loc['tx0000', 'genotype[T.mut]'] == pytest.approx(3.0, abs=0.5)
        assert abs(coefs.loc['tx0001', 'genotype[T.mut]']) < 0.3

    def test_refit_replaces_entry(self, registry, shifted_bootstraps, observations):
        variance = VarianceEstimator().estimate(shifted_bootstraps, observations)
        builder = DesignMatrixBuilder(registry.covariates)
        context = AnalysisContext(registry)
        fitter = ModelFitter()
        first = fitter.fit(context, builder.build(ModelFormula.parse("~ genotype")), observations, variance, name="m")
        second = fitter.fit(context, builder.build(ModelFormula.parse("~ 1")), observations, variance, name="m")
        assert first is not second
        assert context.get_fit("m") is second
        assert list(context.fits) == ["m"]

    def test_observations_follow_design_order(self, registry, shifted_bootstraps, observations):
        variance = VarianceEstimator().estimate(shifted_bootstraps, observations)
        builder = DesignMatrixBuilder(registry.covariates, reference_levels={'genotype': 'wt'})
        order = ['mut_3', 'wt_1', 'mut_1', 'wt_2', 'mut_2', 'wt_3']
        shuffled = builder.build(ModelFormula.parse("~ genotype"), sample_ids=order)
        straight = builder.build(ModelFormula.parse("~ genotype"))

        a = ModelFitter().fit(None, shuffled, observations, variance)
        b = ModelFitter().fit(None, straight, observations, variance)
        np.testing.assert_allclose(
            a.get('tx0000').coefficients, b.get('tx0000').coefficients, rtol=1e-10
        )

    def test_design_sample_missing_from_observations(self, registry, shifted_bootstraps, observations):
        variance = VarianceEstimator().estimate(shifted_bootstraps, observations)
        design = DesignMatrixBuilder(registry.covariates).build(ModelFormula.parse("~ genotype"))
        subset = observations.select_samples(np.array([True, True, True, True, True, False]))
        with pytest.raises(DataError, match="mut_3"):
            ModelFitter().fit(None, design, subset, variance)

    def test_rank_deficient_design_records_failures(self, registry, shifted_bootstraps, observations):
        variance = VarianceEstimator().estimate(shifted_bootstraps, observations)
        builder = DesignMatrixBuilder(registry.covariates, reference_levels={'genotype': 'wt'})
        with pytest.warns(UserWarning):
            design = builder.build(ModelFormula.parse("~ genotype"), sample_ids=['wt_1', 'wt_2', 'wt_3'])

        model_fit = ModelFitter().fit(None, design, observations, variance)
        assert model_fit.n_failed == observations.n_features
        assert model_fit.get('tx0000') is None
        assert "rank-deficient" in model_fit.issue('tx0000')
        assert model_fit.coefficient_frame().isna().all().all()

    def test_parallel_matches_sequential(self, registry, shifted_bootstraps, observations):
        variance = VarianceEstimator().estimate(shifted_bootstraps, observations)
        design = DesignMatrixBuilder(registry.covariates).build(ModelFormula.parse("~ genotype + temperature"))
        seq = ModelFitter().fit(None, design, observations, variance)
        par = ModelFitter(n_jobs=2, batch_size=6).fit(None, design, observations, variance)
        np.testing.assert_allclose(
            par.coefficient_frame().to_numpy(), seq.coefficient_frame().to_numpy()
        )
