"""
Pytest configuration and shared fixtures.

This module provides synthetic bootstrap generators and shared fixtures for
all test suites. Abundances are generated directly on the log scale unless
stated otherwise, so that expected statistics are easy to reason about.
"""

import numpy as np
import pandas as pd
import pytest

from abundiff.core.samples import FeatureSet, SampleRegistry
from abundiff.io.bootstrap import BootstrapSet


def generate_sample_table(
    conditions: tuple[str, ...] = ("wt", "mut"),
    n_replicates: int = 3,
    temperatures: tuple[int, ...] = (30, 37),
) -> pd.DataFrame:
    """
    Sample table with one row per library.

    Temperatures cycle within each genotype, so that ``~ genotype +
    temperature`` is full rank whenever n_replicates >= 2.
    """
    rows = []
    for genotype in conditions:
        for rep in range(1, n_replicates + 1):
            rows.append({
                'sample': f"{genotype}_{rep}",
                'genotype': genotype,
                'temperature': temperatures[(rep - 1) % len(temperatures)],
                'replicate': rep,
                'path': f"quant/{genotype}_{rep}/abundance.h5",
            })
    return pd.DataFrame(rows)


def generate_bootstrap_frames(
    sample_table: pd.DataFrame,
    n_features: int = 40,
    n_bootstraps: int = 30,
    shifts: dict[int, float] | None = None,
    shifted_condition: str = "mut",
    technical_sd: tuple[float, float] = (0.3, 0.6),
    biological_sd: float = 0.0,
    zero_variance: tuple[int, ...] = (),
    raw_scale: bool = False,
    seed: int = 42,
) -> dict[str, pd.DataFrame]:
    """
    Generate bootstrap replicates for every sample of ``sample_table``.

    Args:
        sample_table: Output of ``generate_sample_table``.
        n_features: Number of features (``tx0000``, ``tx0001``, ...).
        n_bootstraps: Replicates per sample.
        shifts: Feature index -> log-scale shift in ``shifted_condition``.
        shifted_condition: Genotype receiving the shifts.
        technical_sd: Range of per-feature bootstrap standard deviations.
        biological_sd: Per-sample noise added to the true abundance.
        zero_variance: Features whose replicates are all identical.
        raw_scale: Return exp() of the log-scale values.
        seed: Random seed for reproducibility.

    Returns:
        Sample id -> DataFrame (features x replicates).

    Design:
        - Baseline log abundance uniform in [2, 8]
        - Each sample's estimate is truth + N(0, sd²), so estimation error
          has the variance the bootstraps report
        - Replicates are centered on that estimate: their mean is the
          estimate and their spread is sd
    """
    rng = np.random.RandomState(seed)
    shifts = shifts or {}
    feature_ids = [f"tx{i:04d}" for i in range(n_features)]
    baseline = rng.uniform(2.0, 8.0, size=n_features)
    tech_sd = rng.uniform(technical_sd[0], technical_sd[1], size=n_features)
    tech_sd[list(zero_variance)] = 0.0

    shift = np.zeros(n_features)
    for idx, value in shifts.items():
        shift[idx] = value

    frames = {}
    for row in sample_table.itertuples(index=False):
        truth = baseline + rng.normal(0.0, biological_sd, size=n_features)
        if row.genotype == shifted_condition:
            truth = truth + shift
        estimate = truth + rng.normal(size=n_features) * tech_sd
        noise = rng.normal(size=(n_features, n_bootstraps))
        noise -= noise.mean(axis=1, keepdims=True)
        reps = estimate[:, np.newaxis] + noise * tech_sd[:, np.newaxis]
        if raw_scale:
            reps = np.exp(reps)
        frames[row.sample] = pd.DataFrame(
            reps,
            index=feature_ids,
            columns=[f"bs{b}" for b in range(n_bootstraps)],
        )
    return frames


def generate_feature_table(n_features: int = 40, n_genes: int = 10) -> pd.DataFrame:
    """Transcript -> gene mapping with round-robin gene assignment."""
    return pd.DataFrame({
        'feature_id': [f"tx{i:04d}" for i in range(n_features)],
        'external_name': [f"GENE{i % n_genes}-{i:04d}" for i in range(n_features)],
        'gene_id': [f"g{i % n_genes:02d}" for i in range(n_features)],
    })


@pytest.fixture
def sample_table():
    return generate_sample_table()


@pytest.fixture
def registry(sample_table):
    return SampleRegistry.from_table(sample_table, condition_column='genotype')


@pytest.fixture
def features():
    return FeatureSet.from_table(generate_feature_table(), group_column='gene_id')


@pytest.fixture
def shifted_bootstraps(sample_table):
    """Scenario A: tx0000 shifted by +3 in mut, everything else null."""
    return BootstrapSet.from_frames(
        generate_bootstrap_frames(sample_table, shifts={0: 3.0}, technical_sd=(0.1, 0.2))
    )


@pytest.fixture
def zero_variance_bootstraps(sample_table):
    """Scenario B: tx0005 has identical replicates in every sample."""
    return BootstrapSet.from_frames(
        generate_bootstrap_frames(sample_table, zero_variance=(5,))
    )


@pytest.fixture
def observations(shifted_bootstraps, registry):
    return shifted_bootstraps.point_estimates(list(registry.sample_ids), registry.covariates)
