"""
Design matrix construction from typed model formulas.

A model formula is an ordered list of covariate terms plus an intercept
flag. It is resolved once against the sample covariate table into a concrete
numeric matrix, one row per sample in the caller's order:

    X = [intercept | term_1 columns | term_2 columns | ...]

Categorical terms are dummy-coded against a reference level (treatment
coding, drop-first); numeric terms enter as a single float column. Dummy
levels are taken from the whole covariate table, not only the selected
samples, so restricting to a subset that lacks a level leaves an all-zero
column instead of silently changing the parameterisation.

Each comparison needs two formulas: "full" (with the term of interest) and
"reduced" (a nested submodel). Nesting is checked structurally, on term
names, before any matrix is built.

Examples:
    >>> builder = DesignMatrixBuilder(registry.covariates, reference_levels={'genotype': 'wt'})
    >>> full, reduced = builder.build_pair(
    ...     ModelFormula.parse("~ genotype + temperature"),
    ...     ModelFormula.parse("~ temperature"),
    ... )
    >>> full.col_names
    ('(Intercept)', 'genotype[T.mut]', 'temperature')
"""

from __future__ import annotations

import logging
import re
import warnings
from dataclasses import dataclass, field
from typing import Literal, Mapping, Sequence

import numpy as np
import pandas as pd
from numpy.typing import NDArray

from abundiff.core.exceptions import ConfigurationError, DataError

__all__ = [
    'INTERCEPT',
    'Term',
    'ModelFormula',
    'DesignMatrix',
    'DesignMatrixBuilder',
    'validate_nested',
]

logger = logging.getLogger(__name__)

INTERCEPT = "(Intercept)"

_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_.]*$")
_CATEGORICAL_RE = re.compile(r"^C\(\s*([A-Za-z_][A-Za-z0-9_.]*)\s*\)$")

TermKind = Literal["auto", "categorical", "numeric"]


@dataclass(frozen=True)
class Term:
    """One covariate in a model formula.

    Attributes:
        name: Covariate column in the sample table.
        kind: "categorical", "numeric", or "auto" (inferred from dtype).
        reference: Reference level for a categorical term. Overrides the
            builder-wide ``reference_levels``.
    """

    name: str
    kind: TermKind = "auto"
    reference: str | None = None


@dataclass(frozen=True)
class ModelFormula:
    """Ordered covariate terms plus an intercept flag."""

    terms: tuple[Term, ...]
    intercept: bool = True

    def __post_init__(self) -> None:
        terms = tuple(Term(t) if isinstance(t, str) else t for t in self.terms)
        object.__setattr__(self, 'terms', terms)
        names = [t.name for t in terms]
        for name in names:
            if names.count(name) > 1:
                raise ConfigurationError(f"Term '{name}' appears twice in formula", identifier=name)

    @property
    def term_names(self) -> tuple[str, ...]:
        return tuple(t.name for t in self.terms)

    @classmethod
    def parse(cls, text: str) -> ModelFormula:
        """
        Parse a right-hand-side formula such as ``"~ genotype + temperature"``.

        Supported syntax: ``+`` between terms, ``C(name)`` to force a
        categorical term, ``0 +`` or ``- 1`` to drop the intercept. Nothing
        is evaluated.

        Raises:
            ConfigurationError: On any other syntax.
        """
        body = text.strip()
        if body.startswith("~"):
            body = body[1:]
        intercept = True
        terms: list[Term] = []
        sign = "+"
        for token in re.split(r"([+-])", body):
            token = token.strip()
            if token in ("+", "-"):
                sign = token
                continue
            if not token:
                continue
            if token in ("0", "1"):
                intercept = (token == "1") == (sign == "+")
            elif sign == "-":
                raise ConfigurationError(
                    f"Cannot remove term '{token}' in formula '{text}'", identifier=token
                )
            elif (match := _CATEGORICAL_RE.match(token)) is not None:
                terms.append(Term(match.group(1), kind="categorical"))
            elif _NAME_RE.match(token):
                terms.append(Term(token))
            else:
                raise ConfigurationError(
                    f"Unsupported term '{token}' in formula '{text}'", identifier=token
                )
            sign = "+"
        return cls(tuple(terms), intercept=intercept)

    def __str__(self) -> str:
        parts = [] if self.intercept else ["0"]
        for t in self.terms:
            parts.append(f"C({t.name})" if t.kind == "categorical" else t.name)
        return "~ " + (" + ".join(parts) if parts else "1")


@dataclass(frozen=True, eq=False)
class DesignMatrix:
    """Numeric design for one named model.

    Attributes:
        name: Model name ("full", "reduced", or user-chosen).
        X: Design matrix (n_samples, n_params).
        col_names: Column names, ``(Intercept)`` first when present.
        term_columns: Term name -> column indices produced by that term.
        sample_ids: Row identifiers, in fitting order.
        formula: Formula the matrix was built from.
    """

    name: str
    X: NDArray[np.float64]
    col_names: tuple[str, ...]
    term_columns: Mapping[str, tuple[int, ...]]
    sample_ids: pd.Index
    formula: ModelFormula
    rank: int = field(default=-1)

    @property
    def n_params(self) -> int:
        return self.X.shape[1]

    @property
    def n_samples(self) -> int:
        return self.X.shape[0]

    @property
    def df_residual(self) -> int:
        return self.n_samples - self.n_params

    @property
    def is_full_rank(self) -> bool:
        return self.rank == self.n_params

    def column_index(self, column: str) -> int:
        """Position of a column, accepting a bare term name for single-column terms."""
        if column in self.col_names:
            return self.col_names.index(column)
        cols = self.term_columns.get(column, ())
        if len(cols) == 1:
            return cols[0]
        raise ConfigurationError(
            f"Model '{self.name}' has no coefficient '{column}'. "
            f"Available: {list(self.col_names)}",
            identifier=column,
        )

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self.X, index=self.sample_ids, columns=list(self.col_names))


def validate_nested(full: ModelFormula, reduced: ModelFormula) -> None:
    """
    Check that ``reduced`` is a strict structural submodel of ``full``.

    Raises:
        ConfigurationError: Naming the first reduced term absent from the full
            formula, ``(Intercept)`` if only the reduced model has one, a term
            declared with different kinds, or two formulas with the same terms.
    """
    full_names = set(full.term_names)
    full_kinds = {t.name: t.kind for t in full.terms}
    for term in reduced.terms:
        if term.name not in full_names:
            raise ConfigurationError(
                f"Reduced formula term '{term.name}' is not in the full formula ({full})",
                identifier=term.name,
            )
        kinds = {term.kind, full_kinds[term.name]}
        if "auto" not in kinds and len(kinds) > 1:
            raise ConfigurationError(
                f"Term '{term.name}' is {term.kind} in the reduced formula but "
                f"{full_kinds[term.name]} in the full formula ({full})",
                identifier=term.name,
            )
    if reduced.intercept and not full.intercept:
        raise ConfigurationError(
            f"Reduced formula has an intercept but the full formula ({full}) does not",
            identifier=INTERCEPT,
        )
    if set(reduced.term_names) == full_names and reduced.intercept == full.intercept:
        raise ConfigurationError(
            f"Reduced formula ({reduced}) is not a strict submodel of ({full})",
            identifier=str(reduced),
        )


class DesignMatrixBuilder:
    """
    Resolves model formulas against a sample covariate table.

    Attributes:
        covariates: Covariate table indexed by sample id.
        reference_levels: Default reference level per categorical covariate.
        standardize_numeric: Center and scale numeric terms (unit variance).
    """

    def __init__(
        self,
        covariates: pd.DataFrame,
        reference_levels: Mapping[str, str] | None = None,
        standardize_numeric: bool = False,
    ):
        self.covariates = covariates
        self.reference_levels = dict(reference_levels or {})
        self.standardize_numeric = standardize_numeric

    def _resolve_kind(self, term: Term, series: pd.Series) -> str:
        if term.kind != "auto":
            return term.kind
        if (
            series.dtype == object
            or isinstance(series.dtype, pd.CategoricalDtype)
            or pd.api.types.is_bool_dtype(series)
            or pd.api.types.is_string_dtype(series)
        ):
            return "categorical"
        return "numeric"

    def _categorical_columns(
        self,
        term: Term,
        values: pd.Series,
        full_coding: bool,
    ) -> tuple[NDArray[np.float64], list[str]]:
        all_levels = sorted(self.covariates[term.name].dropna().astype(str).unique())
        reference = term.reference or self.reference_levels.get(term.name) or all_levels[0]
        if reference not in all_levels:
            raise ConfigurationError(
                f"Reference level '{reference}' not found for term '{term.name}'. "
                f"Levels: {all_levels}",
                identifier=term.name,
            )
        levels = [reference] + [lvl for lvl in all_levels if lvl != reference]
        coded = pd.Categorical(values.astype(str), categories=levels)
        dummies = pd.get_dummies(coded, drop_first=not full_coding, dtype=float)
        if full_coding:
            names = [f"{term.name}[{lvl}]" for lvl in dummies.columns]
        else:
            names = [f"{term.name}[T.{lvl}]" for lvl in dummies.columns]
        return dummies.to_numpy(dtype=np.float64), names

    def _numeric_column(self, term: Term, values: pd.Series) -> NDArray[np.float64]:
        try:
            col = pd.to_numeric(values).to_numpy(dtype=np.float64)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(
                f"Term '{term.name}' is declared numeric but has non-numeric values: {e}",
                identifier=term.name,
            ) from e
        if self.standardize_numeric:
            sigma = np.std(col, ddof=1) if len(col) > 1 else 0.0
            if sigma < 1e-10:
                raise ConfigurationError(
                    f"Covariate '{term.name}' has zero variance and cannot be standardized",
                    identifier=term.name,
                )
            col = (col - np.mean(col)) / sigma
        return col.reshape(-1, 1)

    def build(
        self,
        formula: ModelFormula,
        sample_ids: Sequence[str] | None = None,
        name: str = "model",
    ) -> DesignMatrix:
        """
        Build the design matrix for ``formula``.

        Args:
            formula: Terms and intercept flag.
            sample_ids: Row order. Defaults to the covariate table order.
            name: Model name recorded on the result.

        Raises:
            ConfigurationError: Missing covariate term, bad reference level,
                non-numeric numeric term, empty design.
            DataError: Sample absent from the covariate table, or missing
                covariate value.
        """
        sample_ids = pd.Index(
            list(self.covariates.index if sample_ids is None else sample_ids),
            name='sample_id',
        )
        missing = sample_ids.difference(self.covariates.index)
        if len(missing) > 0:
            raise DataError(
                f"Sample '{missing[0]}' is not in the covariate table",
                identifier=str(missing[0]),
            )
        table = self.covariates.loc[sample_ids]

        parts: list[NDArray[np.float64]] = []
        col_names: list[str] = []
        term_columns: dict[str, tuple[int, ...]] = {}

        if formula.intercept:
            parts.append(np.ones((len(sample_ids), 1)))
            col_names.append(INTERCEPT)

        first_categorical = True
        for term in formula.terms:
            if term.name not in table.columns:
                raise ConfigurationError(
                    f"Covariate term '{term.name}' not found. "
                    f"Available covariates: {list(table.columns)}",
                    identifier=term.name,
                )
            values = table[term.name]
            if values.isna().any():
                bad = values.index[values.isna()][0]
                raise DataError(
                    f"Sample '{bad}' has no value for covariate '{term.name}'",
                    identifier=str(bad),
                )

            start = len(col_names)
            if self._resolve_kind(term, values) == "categorical":
                full_coding = not formula.intercept and first_categorical
                first_categorical = False
                block, names = self._categorical_columns(term, values, full_coding)
            else:
                block, names = self._numeric_column(term, values), [term.name]
            parts.append(block)
            col_names.extend(names)
            term_columns[term.name] = tuple(range(start, len(col_names)))

        if not col_names:
            raise ConfigurationError(f"Formula '{formula}' produces an empty design", identifier=name)

        X = np.hstack(parts)
        rank = int(np.linalg.matrix_rank(X))
        if rank < X.shape[1]:
            warnings.warn(
                f"Design '{name}' is rank-deficient: rank={rank}, n_params={X.shape[1]}. "
                f"Columns: {col_names}. Every feature fit on it will fail."
            )
        else:
            cond_number = np.linalg.cond(X)
            if cond_number > 1e6:
                warnings.warn(
                    f"Design '{name}' condition number is high ({cond_number:.3g}). "
                    f"Near-collinearity may cause unstable estimates."
                )
        logger.debug("Built design '%s' (%d x %d) from %s", name, X.shape[0], X.shape[1], formula)

        return DesignMatrix(
            name=name,
            X=X,
            col_names=tuple(col_names),
            term_columns=term_columns,
            sample_ids=sample_ids,
            formula=formula,
            rank=rank,
        )

    def build_pair(
        self,
        full: ModelFormula,
        reduced: ModelFormula,
        sample_ids: Sequence[str] | None = None,
        full_name: str = "full",
        reduced_name: str = "reduced",
    ) -> tuple[DesignMatrix, DesignMatrix]:
        """Validate nesting, then build the full and reduced designs on the same samples."""
        validate_nested(full, reduced)
        return (
            self.build(full, sample_ids, name=full_name),
            self.build(reduced, sample_ids, name=reduced_name),
        )
