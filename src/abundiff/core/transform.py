"""
Base transformation framework for immutable matrix operations.

Abundance estimates go through a short chain of transformations before any
model is fitted (size-factor normalization, then a log transform). The same
transformation must be applied to the point estimates and to every bootstrap
replicate, otherwise the technical variance would be measured on a different
scale than the one the models are fitted on. A Transform therefore knows how
to act on both an ObservationMatrix and a BootstrapSet.

Engineering Design:
    Pure Functions:
        - No side effects (inputs are never modified)
        - Deterministic (same input + params -> same output)
        - Composable (chain with ``apply_transforms``)

Examples:
    >>> transforms = [SizeFactorNormalization.from_matrix(raw), LogTransform(0.5)]
    >>> observations, bootstraps = apply_transforms(transforms, raw, bootstraps)
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import TYPE_CHECKING, Any, Sequence

if TYPE_CHECKING:
    from abundiff.core.observations import ObservationMatrix
    from abundiff.io.bootstrap import BootstrapSet

__all__ = ['Transform', 'apply_transforms']

logger = logging.getLogger(__name__)


class Transform(ABC):
    """
    Abstract base class for all matrix transformations.

    Attributes:
        name: Human-readable transformation name (e.g., "LogTransform")
        params: Parameters used for this transformation (JSON-serializable)
        timestamp: When this transform instance was created (for audit trail)
    """

    def __init__(self, name: str, params: dict[str, Any]) -> None:
        self.name = name
        self.params = params
        self.timestamp = datetime.now()

    @abstractmethod
    def apply(self, matrix: ObservationMatrix) -> ObservationMatrix:
        """
        Execute transformation and return a new matrix.

        Must never modify the input matrix.

        Raises:
            ValueError: If transformation cannot be applied (check validate() first)
        """

    @abstractmethod
    def apply_bootstraps(self, bootstraps: BootstrapSet) -> BootstrapSet:
        """Apply the identical transformation to every bootstrap replicate."""

    def validate(self, matrix: ObservationMatrix) -> list[str]:
        """
        Check preconditions before applying transformation.

        Subclasses should override and call super().validate() first.

        Returns:
            List of error messages (empty list = valid)
        """
        errors: list[str] = []

        if matrix.data.size == 0:
            errors.append("Cannot process empty matrix")

        return errors

    def __repr__(self) -> str:
        params_str = ", ".join(f"{k}={v}" for k, v in self.params.items())
        return f"{self.name}({params_str})"


def apply_transforms(
    transforms: Sequence[Transform],
    matrix: ObservationMatrix,
    bootstraps: BootstrapSet | None = None,
) -> tuple[ObservationMatrix, BootstrapSet | None]:
    """
    Apply ``transforms`` in order to the matrix and, if given, the bootstraps.

    Raises:
        ValueError: If a transform's validation fails.
    """
    for transform in transforms:
        errors = transform.validate(matrix)
        if errors:
            raise ValueError(f"{transform!r} cannot be applied: {'; '.join(errors)}")
        matrix = transform.apply(matrix)
        if bootstraps is not None:
            bootstraps = transform.apply_bootstraps(bootstraps)
        logger.info("Applied %r", transform)
    return matrix, bootstraps
