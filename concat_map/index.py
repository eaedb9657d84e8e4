"""Nearest-block lookup in the normalized feature space."""

import logging
from typing import Optional, Sequence, Tuple

import numpy as np
from scipy.spatial import cKDTree

from .build import BufferAnalysis
from .errors import EmptyIndexError

logger = logging.getLogger(__name__)

# Relative slack applied to the KDTree distance when collecting tie candidates
_TIE_SLACK = 1e-9


def _readonly(values, dtype) -> np.ndarray:
    array = np.array(values, dtype=dtype, copy=True)
    array.setflags(write=False)
    return array


class FeatureIndex:
    """Normalized feature points and the buffer offsets they point to.

    Query results always match a linear scan over squared Euclidean distance,
    with ties going to the lowest block index. The KDTree only narrows the
    candidate set.
    """

    def __init__(
        self,
        block_starts: Sequence[int],
        norm_x: Sequence[float],
        norm_y: Sequence[float],
        sample_rate: int,
        use_kdtree: bool = True,
    ):
        if not len(block_starts) == len(norm_x) == len(norm_y):
            raise ValueError("block_starts, norm_x and norm_y must have equal length")
        if sample_rate <= 0:
            raise ValueError("Sample rate must be positive")

        self.block_starts = _readonly(block_starts, np.int64)
        self.norm_x = _readonly(norm_x, np.float64)
        self.norm_y = _readonly(norm_y, np.float64)
        self.sample_rate = sample_rate

        self.kdtree: Optional[cKDTree] = None
        if use_kdtree and len(self.block_starts) > 0:
            self.kdtree = cKDTree(np.column_stack([self.norm_x, self.norm_y]))
            logger.debug("KDTree built with %d points", len(self.block_starts))

    @classmethod
    def from_analysis(cls, analysis: BufferAnalysis, use_kdtree: bool = True) -> "FeatureIndex":
        """Build an index with x = normalized ZCR and y = normalized RMS."""
        norm_x, norm_y = analysis.feature_coordinates()
        return cls(analysis.block_starts, norm_x, norm_y, analysis.sample_rate, use_kdtree)

    def __len__(self) -> int:
        return len(self.block_starts)

    @property
    def is_empty(self) -> bool:
        return len(self.block_starts) == 0

    def points(self) -> Tuple[np.ndarray, np.ndarray]:
        """Copies of the normalized coordinates, for drawing a scatter of blocks."""
        return self.norm_x.copy(), self.norm_y.copy()

    def _squared_distances(self, x: float, y: float, candidates=None) -> np.ndarray:
        if candidates is None:
            return (self.norm_x - x) ** 2 + (self.norm_y - y) ** 2
        return (self.norm_x[candidates] - x) ** 2 + (self.norm_y[candidates] - y) ** 2

    def query(self, point) -> Tuple[int, float]:
        """Return ``(index, distance)`` of the block closest to ``point``.

        Args:
            point: Object with ``x`` and ``y`` attributes, or an ``(x, y)`` pair

        Raises:
            EmptyIndexError: If the index holds no blocks
        """
        if self.is_empty:
            raise EmptyIndexError("Feature index is empty; no blocks were analyzed")

        x, y = (point.x, point.y) if hasattr(point, "x") else point

        if self.kdtree is not None:
            distance, _ = self.kdtree.query((x, y), k=1)
            radius = distance * (1.0 + _TIE_SLACK) + _TIE_SLACK
            candidates = np.sort(np.asarray(self.kdtree.query_ball_point((x, y), radius), dtype=np.int64))
            if len(candidates) > 0:
                d2 = self._squared_distances(x, y, candidates)
                best = int(np.argmin(d2))
                return int(candidates[best]), float(np.sqrt(d2[best]))
            logger.debug("KDTree returned no candidates for (%g, %g); using linear scan", x, y)

        d2 = self._squared_distances(x, y)
        best = int(np.argmin(d2))
        return best, float(np.sqrt(d2[best]))

    def nearest(self, point) -> int:
        """Index of the block closest to ``point`` (lowest index on ties)."""
        return self.query(point)[0]

    def buffer_offset_seconds(self, index: int) -> float:
        """Start of block ``index`` in seconds from the beginning of the buffer."""
        return int(self.block_starts[index]) / self.sample_rate
