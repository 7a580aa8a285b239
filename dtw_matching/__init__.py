"""
DTW matching module: prototypes and subsequence search for time series.

This module provides the numerical core of label suggestion:
1. Per-sample distance and averaging (sum of absolute differences, mean)
2. DTW alignment and DTW Barycenter Averaging (DBA) k-means prototypes
3. SPRING subsequence matching, streaming and offline best-match

Engineering approach:
- numpy arrays of shape (length, dim) for every sequence
- Deterministic initialisation so prototypes are reproducible
- Matchers hold all per-reference state; one instance per matching run
"""

from .distance import (
    DistanceMetric,
    AbsoluteDistance,
    make_distance_metric
)
from .dba import (
    KMeansCluster,
    dtw,
    dtw_distance,
    dtw_barycenter,
    compute_kmeans
)
from .spring import (
    MatchResult,
    MultipleSpringMatcher,
    MultipleSpringBestMatch
)

__all__ = [
    'DistanceMetric',
    'AbsoluteDistance',
    'make_distance_metric',
    'KMeansCluster',
    'dtw',
    'dtw_distance',
    'dtw_barycenter',
    'compute_kmeans',
    'MatchResult',
    'MultipleSpringMatcher',
    'MultipleSpringBestMatch',
]
