"""
Analysis configuration.

An analysis is described by a YAML or JSON file naming the models to fit,
the tests to run on them, and the thresholds used to classify results:

    models:
      full: "~ genotype + temperature"
      reduced: "~ temperature"
    reference_levels:
      genotype: wt
    tests:
      - name: genotype
        kind: lrt
        full: full
        reduced: reduced
        effect_coefficient: "genotype[T.mut]"
    correction: BH
    significance:
      q_value: 0.05
      effect_size: 1.0

Thresholds have no defaults: if ``significance`` is absent, results carry
an undefined significance flag.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from abundiff.core.exceptions import ConfigurationError
from abundiff.stats.classification import Thresholds
from abundiff.stats.design_matrix import ModelFormula, validate_nested
from abundiff.stats.multiple_testing import CorrectionMethod
from abundiff.stats.testing import TestKind

__all__ = [
    'VarianceConfig',
    'TestConfig',
    'Thresholds',
    'AnalysisConfig',
    'load_config',
]


def _check_keys(data: Mapping[str, Any], allowed: set[str], section: str) -> None:
    unknown = sorted(set(data) - allowed)
    if unknown:
        raise ConfigurationError(
            f"Unknown key(s) in {section}: {unknown}. Allowed: {sorted(allowed)}",
            identifier=unknown[0],
        )


@dataclass
class VarianceConfig:
    """Technical variance estimation settings."""
    shrink: bool = True
    trend_frac: float = 2.0 / 3.0
    trend_delta: float = 0.01
    min_trend_features: int = 10
    zero_tolerance: float = 1e-12


@dataclass
class TestConfig:
    """
    One hypothesis test.

    LRT tests use ``full``/``reduced`` (model names) and optionally
    ``effect_coefficient``; Wald tests use ``model`` and ``coefficient``.
    """
    __test__ = False

    name: str
    kind: TestKind
    full: str = "full"
    reduced: str = "reduced"
    model: str = "full"
    coefficient: Optional[str] = None
    effect_coefficient: Optional[str] = None

    def __post_init__(self) -> None:
        if not isinstance(self.kind, TestKind):
            try:
                self.kind = TestKind(str(self.kind).lower())
            except ValueError:
                raise ConfigurationError(
                    f"Test '{self.name}' has unknown kind '{self.kind}'. "
                    f"Use one of {[k.value for k in TestKind]}",
                    identifier=self.name,
                ) from None
        if self.kind is TestKind.WALD and not self.coefficient:
            raise ConfigurationError(
                f"Wald test '{self.name}' needs a coefficient", identifier=self.name
            )


@dataclass
class AnalysisConfig:
    """
    Complete description of one differential analysis run.

    Attributes:
        models: Model name -> formula.
        tests: Tests to run, in order.
        reference_levels: Reference level per categorical covariate.
        standardize_numeric: Standardize numeric covariates in designs.
        normalize: Apply median-of-ratios size factors.
        log_pseudocount: Pseudocount of the log transform (None = no log).
        log_base: Log base (None = natural log).
        aggregate: Sum features into their FeatureSet groups first.
        variance: Variance estimation settings.
        correction: Multiple testing method.
        significance: Thresholds for the significance flag.
        label: Optional thresholds for a second flag.
        n_jobs: Worker pool size.
        batch_size: Features per worker chunk.
    """
    models: Dict[str, ModelFormula]
    tests: List[TestConfig]
    reference_levels: Dict[str, str] = field(default_factory=dict)
    standardize_numeric: bool = False
    normalize: bool = True
    log_pseudocount: Optional[float] = 0.5
    log_base: Optional[float] = None
    aggregate: bool = False
    variance: VarianceConfig = field(default_factory=VarianceConfig)
    correction: CorrectionMethod = "BH"
    significance: Optional[Thresholds] = None
    label: Optional[Thresholds] = None
    n_jobs: int = 1
    batch_size: int = 500

    def __post_init__(self) -> None:
        if not self.models:
            raise ConfigurationError("At least one model is required", identifier='models')
        if self.n_jobs == 0 or self.batch_size < 1:
            raise ConfigurationError(
                f"Invalid worker settings n_jobs={self.n_jobs}, batch_size={self.batch_size}",
                identifier='n_jobs',
            )
        names = [t.name for t in self.tests]
        for name in names:
            if names.count(name) > 1:
                raise ConfigurationError(f"Test name '{name}' is used twice", identifier=name)
        for test in self.tests:
            referenced = (
                [test.full, test.reduced] if test.kind is TestKind.LRT else [test.model]
            )
            for model in referenced:
                if model not in self.models:
                    raise ConfigurationError(
                        f"Test '{test.name}' refers to unknown model '{model}'", identifier=model
                    )
            if test.kind is TestKind.LRT:
                validate_nested(self.models[test.full], self.models[test.reduced])

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> AnalysisConfig:
        """
        Build from a parsed config mapping.

        Raises:
            ConfigurationError: Missing sections, unknown keys, bad formulas,
                unknown models or test kinds, invalid thresholds.
        """
        _check_keys(data, {f.name for f in fields(cls)}, "analysis config")
        for required in ('models', 'tests'):
            if required not in data:
                raise ConfigurationError(f"Config is missing '{required}'", identifier=required)

        kwargs = dict(data)
        kwargs['models'] = {
            str(name): formula if isinstance(formula, ModelFormula) else ModelFormula.parse(str(formula))
            for name, formula in data['models'].items()
        }

        tests = []
        allowed = {f.name for f in fields(TestConfig)}
        for i, entry in enumerate(data['tests']):
            _check_keys(entry, allowed, f"tests[{i}]")
            if 'name' not in entry or 'kind' not in entry:
                raise ConfigurationError(
                    f"tests[{i}] needs 'name' and 'kind'", identifier=f"tests[{i}]"
                )
            tests.append(TestConfig(**entry))
        kwargs['tests'] = tests

        if 'variance' in data:
            _check_keys(data['variance'], {f.name for f in fields(VarianceConfig)}, "variance")
            kwargs['variance'] = VarianceConfig(**data['variance'])
        for key in ('significance', 'label'):
            if data.get(key) is not None:
                _check_keys(data[key], {'q_value', 'effect_size'}, key)
                try:
                    kwargs[key] = Thresholds(**data[key])
                except TypeError as e:
                    raise ConfigurationError(f"Invalid {key} thresholds: {e}", identifier=key) from e
        kwargs['reference_levels'] = {
            str(k): str(v) for k, v in (data.get('reference_levels') or {}).items()
        }
        return cls(**kwargs)

    @classmethod
    def from_file(cls, config_path: Path) -> AnalysisConfig:
        return cls.from_dict(load_config(Path(config_path)))


def load_config(config_path: Path) -> Dict[str, Any]:
    """
    Load configuration from YAML or JSON file.

    Parameters:
        config_path: Path to config file (.yaml, .yml, or .json)

    Returns:
        Dictionary with configuration values

    Raises:
        FileNotFoundError: If config file doesn't exist
        ConfigurationError: If file format is unsupported or invalid

    Examples:
        >>> config = load_config(Path("analysis.yaml"))
        >>> print(config['models']['full'])
        ~ genotype + temperature
    """
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    suffix = config_path.suffix.lower()

    try:
        with open(config_path, 'r') as f:
            if suffix in ('.yaml', '.yml'):
                config = yaml.safe_load(f)
            elif suffix == '.json':
                config = json.load(f)
            else:
                raise ConfigurationError(
                    f"Unsupported config format: {suffix}. "
                    f"Use .yaml, .yml, or .json",
                    identifier=str(config_path),
                )
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in config file: {e}", identifier=str(config_path)) from e
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Invalid JSON in config file: {e}", identifier=str(config_path)) from e

    if config is None:
        return {}

    if not isinstance(config, dict):
        raise ConfigurationError(
            "Config file must contain a mapping at top level", identifier=str(config_path)
        )

    return config
