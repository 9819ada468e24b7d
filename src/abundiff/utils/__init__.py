"""Utility modules for per-feature batch processing."""

from abundiff.utils.parallel import chunk_slices, map_chunks

__all__ = ['chunk_slices', 'map_chunks']
