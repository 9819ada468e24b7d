"""
Quality flag system for tracking data provenance in observation matrices.

Each value of an ObservationMatrix carries a bitwise flag recording how it
came to be. This lets downstream consumers answer questions such as "which
point estimates were missing in the quantification output?" or "which
features had their technical variance floored?" without re-deriving them.

Examples:
    >>> from abundiff.core.quality import QualityFlag
    >>>
    >>> flag = QualityFlag.MISSING_ORIGINAL | QualityFlag.AGGREGATED
    >>> bool(flag & QualityFlag.AGGREGATED)
    True
"""

from __future__ import annotations

from enum import IntFlag

__all__ = ['QualityFlag']


class QualityFlag(IntFlag):
    """
    Bitwise flags for per-value quality tracking.

    Attributes:
        ORIGINAL: Untouched point estimate (0)
        MISSING_ORIGINAL: No finite bootstrap replicate for this value (1)
        VARIANCE_FLOORED: Feature's technical variance was at or below the
            zero tolerance and was raised to the global floor (2)
        AGGREGATED: Value is a sum over an aggregation group (4)
        NORMALIZED: Value was rescaled by a per-sample size factor (8)
    """

    ORIGINAL = 0
    MISSING_ORIGINAL = 1
    VARIANCE_FLOORED = 2
    AGGREGATED = 4
    NORMALIZED = 8
