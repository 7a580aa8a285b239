"""
Per-sample distance and averaging for multivariate time series.

Engineering approach:
- Sum of absolute differences rather than euclidean distance
  (robust to a single noisy channel dominating the match)
- Missing dimensions (NaN) are excluded from the summation; a pair with
  no observed dimension at all is infinitely far apart (never matches)
- Vectorised one-to-many / many-to-many forms for DTW and SPRING inner loops
"""

import logging
import warnings

import numpy as np

logger = logging.getLogger(__name__)


class DistanceMetric:
    """
    Distance between two samples plus an averaging rule for a set of samples.

    Subclasses override `distances_to` and `average`; the scalar and pairwise
    forms are derived from them.
    """

    name = 'base'

    def distance(self, a: np.ndarray, b: np.ndarray) -> float:
        """Scalar distance between two samples."""
        a = np.asarray(a, dtype=float)
        return float(self.distances_to(a, np.asarray(b, dtype=float)[np.newaxis, :])[0])

    def distances_to(self, sample: np.ndarray, points: np.ndarray) -> np.ndarray:
        """Distance from one sample to every row of `points` (shape (n, dim))."""
        raise NotImplementedError

    def pairwise(self, a: np.ndarray, b: np.ndarray) -> np.ndarray:
        """Distance matrix of shape (len(a), len(b))."""
        a = np.asarray(a, dtype=float)
        b = np.asarray(b, dtype=float)
        return np.stack([self.distances_to(row, b) for row in a]) if len(a) else np.zeros((0, len(b)))

    def average(self, points: np.ndarray) -> np.ndarray:
        """Representative sample of a set of samples (shape (n, dim))."""
        raise NotImplementedError


class AbsoluteDistance(DistanceMetric):
    """Sum of absolute differences; element-wise mean for averaging."""

    name = 'absolute'

    def distances_to(self, sample: np.ndarray, points: np.ndarray) -> np.ndarray:
        diff = np.abs(np.asarray(points, dtype=float) - np.asarray(sample, dtype=float))
        return _sum_observed(diff, axis=1)

    def pairwise(self, a: np.ndarray, b: np.ndarray) -> np.ndarray:
        a = np.asarray(a, dtype=float)
        b = np.asarray(b, dtype=float)
        diff = np.abs(a[:, np.newaxis, :] - b[np.newaxis, :, :])
        return _sum_observed(diff, axis=2)

    def average(self, points: np.ndarray) -> np.ndarray:
        points = np.asarray(points, dtype=float)
        # All-NaN columns average to 0 instead of propagating NaN
        with warnings.catch_warnings():
            warnings.simplefilter('ignore', RuntimeWarning)
            mean = np.nanmean(points, axis=0)
        return np.nan_to_num(mean, nan=0.0)


def _sum_observed(diff: np.ndarray, axis: int) -> np.ndarray:
    """Sum over non-NaN dimensions; inf where no dimension was observed."""
    sums = np.nansum(diff, axis=axis)
    unobserved = np.all(np.isnan(diff), axis=axis)
    return np.where(unobserved, np.inf, sums)


def make_distance_metric(name: str = 'absolute') -> DistanceMetric:
    """
    Look up a distance metric by configuration name.

    Raises:
        ValueError: If the name is unknown
    """
    metrics = {
        AbsoluteDistance.name: AbsoluteDistance,
    }
    if name not in metrics:
        raise ValueError(f"Unknown distance metric: {name} (available: {sorted(metrics)})")
    logger.debug(f"Using distance metric: {name}")
    return metrics[name]()
