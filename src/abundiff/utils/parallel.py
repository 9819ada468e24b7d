"""
Bounded worker pool for per-feature computations.

Variance estimation, model fitting and hypothesis testing are independent
across features. Features are split into contiguous chunks and each chunk is
handed to a joblib worker; chunk results come back in submission order, so
completion order never affects row order.
"""

from __future__ import annotations

from typing import Any, Callable, Sequence, TypeVar

from joblib import Parallel, delayed

__all__ = ['chunk_slices', 'map_chunks']

T = TypeVar('T')


def chunk_slices(n_items: int, batch_size: int) -> list[slice]:
    """Contiguous slices covering ``range(n_items)``."""
    if batch_size < 1:
        raise ValueError(f"batch_size must be >= 1, got {batch_size}")
    return [slice(start, min(start + batch_size, n_items)) for start in range(0, n_items, batch_size)]


def map_chunks(
    func: Callable[..., list[T]],
    n_items: int,
    *args: Any,
    n_jobs: int = 1,
    batch_size: int = 500,
) -> list[T]:
    """
    Call ``func(chunk_slice, *args)`` for each chunk and concatenate results.

    Args:
        func: Worker returning one result per item of its chunk.
        n_items: Number of items (features).
        n_jobs: Maximum concurrent workers; 1 runs sequentially.
        batch_size: Items per chunk.

    Returns:
        Results for all items, in item order.
    """
    slices = chunk_slices(n_items, batch_size)
    if n_jobs == 1 or len(slices) <= 1:
        chunks: Sequence[list[T]] = [func(s, *args) for s in slices]
    else:
        chunks = Parallel(n_jobs=n_jobs, prefer="threads")(
            delayed(func)(s, *args) for s in slices
        )
    results: list[T] = []
    for chunk in chunks:
        results.extend(chunk)
    return results
