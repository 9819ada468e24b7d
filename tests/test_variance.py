"""Tests for technical variance estimation and empirical Bayes shrinkage."""

import numpy as np
import pandas as pd
import pytest
from scipy.special import polygamma

from conftest import generate_bootstrap_frames

from abundiff.core.exceptions import DataError, NumericalError
from abundiff.io.bootstrap import BootstrapSet
from abundiff.stats.variance import (
    VarianceEstimator,
    fit_f_dist,
    squeeze_var,
    trigamma_inverse,
)


def _point_estimates(boots, registry):
    return boots.point_estimates(list(registry.sample_ids), registry.covariates)


class TestEmpiricalBayesHelpers:
    """Tests for the limma-style moment estimators."""

    @pytest.mark.parametrize("y", [0.1, 1.0, 5.0, 50.0])
    def test_trigamma_inverse(self, y):
        x = float(polygamma(1, y))
        assert trigamma_inverse(x) == pytest.approx(y, rel=1e-6)

    def test_fit_f_dist_recovers_prior(self):
        rng = np.random.RandomState(7)
        d, d0, s0_sq = 4.0, 10.0, 2.0
        sigma2_true = s0_sq * d0 / rng.chisquare(d0, size=5000)
        s2 = sigma2_true * rng.chisquare(d, size=5000) / d
        est_d0, est_s0 = fit_f_dist(s2, d)
        assert est_d0 == pytest.approx(d0, rel=0.3)
        assert est_s0 == pytest.approx(s0_sq, rel=0.1)

    def test_fit_f_dist_no_excess_spread(self):
        rng = np.random.RandomState(3)
        s2 = rng.chisquare(20, size=2000) / 20
        d0, s0 = fit_f_dist(s2, 20)
        assert np.isinf(d0) or d0 > 100
        assert s0 == pytest.approx(1.0, rel=0.05)

    def test_squeeze_var_infinite_prior(self):
        out = squeeze_var(np.array([1.0, 4.0]), 5.0, np.inf, np.array([2.0, 2.0]))
        np.testing.assert_array_equal(out, [2.0, 2.0])

    def test_squeeze_var_weighted_average(self):
        out = squeeze_var(np.array([1.0]), 3.0, 1.0, 5.0)
        assert out[0] == pytest.approx((1.0 * 5.0 + 3.0 * 1.0) / 4.0)


class TestVarianceEstimator:
    """Tests for VarianceEstimator.estimate."""

    def test_pooled_variance_without_shrinkage(self, shifted_bootstraps, registry):
        obs = _point_estimates(shifted_bootstraps, registry)
        est = VarianceEstimator(shrink=False).estimate(shifted_bootstraps, obs)

        per_sample = [np.var(shifted_bootstraps.values(sid)[0], ddof=1) for sid in registry.sample_ids]
        assert est.raw_variance[0] == pytest.approx(np.mean(per_sample))
        np.testing.assert_array_equal(est.smoothed_variance, est.raw_variance)
        assert est.df[0] == 6 * 29

    def test_shrunk_variance_between_raw_and_prior(self, shifted_bootstraps, registry):
        obs = _point_estimates(shifted_bootstraps, registry)
        est = VarianceEstimator().estimate(shifted_bootstraps, obs)

        prior = est.prior_scale * est.trend
        lo = np.minimum(est.raw_variance, prior)
        hi = np.maximum(est.raw_variance, prior)
        assert np.all(est.smoothed_variance >= lo * (1 - 1e-9))
        assert np.all(est.smoothed_variance <= hi * (1 + 1e-9))
        assert np.all(est.weights > 0)

    def test_variance_matches_simulated_scale(self, shifted_bootstraps, registry):
        obs = _point_estimates(shifted_bootstraps, registry)
        est = VarianceEstimator().estimate(shifted_bootstraps, obs)
        # technical sd drawn from [0.1, 0.2]
        assert np.all(est.smoothed_variance > 0.005)
        assert np.all(est.smoothed_variance < 0.06)

    def test_interpolated_trend_close_to_exact(self, sample_table, registry):
        boots = BootstrapSet.from_frames(
            generate_bootstrap_frames(sample_table, n_features=400, seed=3)
        )
        obs = _point_estimates(boots, registry)
        interpolated = VarianceEstimator().estimate(boots, obs)
        exact = VarianceEstimator(trend_delta=0.0).estimate(boots, obs)
        np.testing.assert_allclose(interpolated.trend, exact.trend, rtol=0.05)

    def test_negative_trend_delta(self):
        with pytest.raises(ValueError, match="trend_delta"):
            VarianceEstimator(trend_delta=-0.1)

    def test_zero_variance_is_floored(self, zero_variance_bootstraps, registry):
        """Scenario B: identical replicates get the smallest nonzero variance."""
        obs = _point_estimates(zero_variance_bootstraps, registry)
        est = VarianceEstimator().estimate(zero_variance_bootstraps, obs)

        assert est.floored[5]
        assert est.floored.sum() == 1
        assert est.raw_variance[5] == est.floor
        assert est.floor == pytest.approx(np.min(np.delete(est.raw_variance, 5)))
        assert np.isfinite(est.smoothed_variance[5]) and est.smoothed_variance[5] > 0

    def test_all_zero_variance(self, sample_table, registry):
        frames = generate_bootstrap_frames(sample_table, n_features=4, technical_sd=(0.0, 0.0))
        boots = BootstrapSet.from_frames(frames)
        with pytest.raises(NumericalError, match="zero bootstrap variance"):
            VarianceEstimator().estimate(boots, _point_estimates(boots, registry))

    def test_constant_trend_for_few_features(self, sample_table, registry):
        boots = BootstrapSet.from_frames(generate_bootstrap_frames(sample_table, n_features=5))
        est = VarianceEstimator(min_trend_features=10).estimate(boots, _point_estimates(boots, registry))
        assert np.allclose(est.trend, est.trend[0])

    def test_differing_replicate_counts(self, sample_table, registry):
        frames = generate_bootstrap_frames(sample_table, n_features=12)
        frames['mut_2'].iloc[4, 0] = np.nan
        boots = BootstrapSet.from_frames(frames)
        with pytest.raises(DataError, match="tx0004"):
            VarianceEstimator().estimate(boots, _point_estimates(boots, registry))

    def test_sample_without_bootstraps(self, shifted_bootstraps, registry):
        obs = _point_estimates(shifted_bootstraps, registry)
        renamed = BootstrapSet(
            {('other' if sid == 'wt_2' else sid): shifted_bootstraps.values(sid)
             for sid in shifted_bootstraps.sample_ids},
            shifted_bootstraps.feature_ids,
        )
        with pytest.raises(DataError, match="wt_2"):
            VarianceEstimator().estimate(renamed, obs)

    def test_all_missing_feature(self, sample_table, registry):
        frames = generate_bootstrap_frames(sample_table, n_features=12)
        for frame in frames.values():
            frame.iloc[2, :] = np.nan
        boots = BootstrapSet.from_frames(frames)
        with pytest.raises(DataError, match="tx0002"):
            VarianceEstimator().estimate(boots, _point_estimates(boots, registry))

    def test_parallel_matches_sequential(self, shifted_bootstraps, registry):
        obs = _point_estimates(shifted_bootstraps, registry)
        seq = VarianceEstimator().estimate(shifted_bootstraps, obs)
        par = VarianceEstimator(n_jobs=2, batch_size=7).estimate(shifted_bootstraps, obs)
        np.testing.assert_allclose(par.smoothed_variance, seq.smoothed_variance)

    def test_frame_and_lookup(self, shifted_bootstraps, registry):
        obs = _point_estimates(shifted_bootstraps, registry)
        est = VarianceEstimator().estimate(shifted_bootstraps, obs)
        frame = est.to_frame()
        assert list(frame.index) == list(obs.feature_ids)
        assert est.variance_of('tx0003') == frame.loc['tx0003', 'smoothed_variance']
        with pytest.raises(DataError):
            est.variance_of('nope')
        with pytest.raises(DataError, match="nope"):
            est.aligned(pd.Index(['tx0001', 'nope']))
