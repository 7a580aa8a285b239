"""
DTW alignment, DTW Barycenter Averaging (DBA) and DBA-based k-means.

DBA iteratively refines a centroid sequence by aligning every member to it
with DTW and replacing each centroid point by the average of the member
points aligned to it. K-means wraps DBA: members are assigned to their
nearest centroid under DTW, then each centroid is refined by DBA.

Engineering approach:
- Deterministic initialisation (median-length exemplar, then farthest-first)
  so identical inputs always produce identical prototypes
- Centroid length is preserved by DBA, so convergence is measured as the
  mean absolute point movement between iterations
- Cluster spread is reported as the RMS DTW distance of its members, which
  is on the same scale as SPRING matching costs

References:
Petitjean, F., Ketterlin, A., & Gancarski, P. (2011). A global averaging
method for dynamic time warping, with applications to clustering.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np

from .distance import AbsoluteDistance, DistanceMetric

logger = logging.getLogger(__name__)


@dataclass
class KMeansCluster:
    """
    One DBA k-means cluster.

    Attributes:
        mean: Centroid sequence, shape (length, dim)
        variance: RMS DTW distance of members to the centroid
                  (None when the cluster ended up empty)
        size: Number of member sequences
    """
    mean: np.ndarray
    variance: Optional[float]
    size: int = 0


def as_sequence(sequence) -> np.ndarray:
    """
    Convert input to a (length, dim) float array.

    One-dimensional input is treated as a univariate sequence.

    Raises:
        ValueError: If the sequence is empty
    """
    array = np.asarray(sequence, dtype=float)
    if array.ndim == 1:
        array = array[:, np.newaxis]
    if array.ndim != 2 or array.shape[0] == 0:
        raise ValueError(f"Invalid input: expected a non-empty sequence, got shape {array.shape}")
    return array


def validate_sequences(sequences: Sequence) -> List[np.ndarray]:
    """
    Validate a set of sequences for DTW processing.

    Raises:
        ValueError: If the set is empty, a sequence is empty or
                    dimensions disagree
    """
    if sequences is None or len(sequences) == 0:
        raise ValueError("Invalid input: no sequences given")

    arrays = [as_sequence(s) for s in sequences]
    dims = {a.shape[1] for a in arrays}
    if len(dims) != 1:
        raise ValueError(f"Invalid input: inconsistent sample dimensions {sorted(dims)}")
    return arrays


def dtw(
    a,
    b,
    metric: DistanceMetric = None
) -> Tuple[float, List[Tuple[int, int]]]:
    """
    Dynamic time warping between two sequences.

    Recurrence:
        acc[i, j] = d(a_i, b_j) + min(acc[i-1, j-1], acc[i-1, j], acc[i, j-1])

    Args:
        a: First sequence (length n)
        b: Second sequence (length m)
        metric: Per-sample distance (sum of absolute differences by default)

    Returns:
        Tuple of (accumulated cost, warping path as (i, j) pairs from
        (0, 0) to (n-1, m-1))
    """
    metric = metric or AbsoluteDistance()
    a = as_sequence(a)
    b = as_sequence(b)

    local = metric.pairwise(a, b).tolist()
    n, m = len(a), len(b)

    acc = [[0.0] * m for _ in range(n)]
    row = acc[0]
    row[0] = local[0][0]
    for j in range(1, m):
        row[j] = row[j - 1] + local[0][j]

    for i in range(1, n):
        prev = acc[i - 1]
        row = acc[i]
        cost_row = local[i]
        row[0] = prev[0] + cost_row[0]
        for j in range(1, m):
            best = prev[j - 1]
            if prev[j] < best:
                best = prev[j]
            if row[j - 1] < best:
                best = row[j - 1]
            row[j] = cost_row[j] + best

    return float(acc[n - 1][m - 1]), _backtrack(acc)


def _backtrack(acc: List[List[float]]) -> List[Tuple[int, int]]:
    """Recover the warping path, preferring the diagonal on ties."""
    i, j = len(acc) - 1, len(acc[0]) - 1
    path = [(i, j)]
    while i > 0 or j > 0:
        if i == 0:
            j -= 1
        elif j == 0:
            i -= 1
        else:
            diag = acc[i - 1][j - 1]
            up = acc[i - 1][j]
            left = acc[i][j - 1]
            if diag <= up and diag <= left:
                i, j = i - 1, j - 1
            elif up <= left:
                i -= 1
            else:
                j -= 1
        path.append((i, j))
    path.reverse()
    return path


def dtw_distance(a, b, metric: DistanceMetric = None) -> float:
    """DTW accumulated cost only."""
    return dtw(a, b, metric)[0]


def dtw_barycenter(
    sequences: Sequence,
    initial,
    metric: DistanceMetric = None,
    iterations: int = 10,
    tolerance: float = 0.0
) -> np.ndarray:
    """
    Refine a centroid with DTW Barycenter Averaging.

    Args:
        sequences: Member sequences (variable lengths, same dimension)
        initial: Starting centroid; its length is kept
        metric: Distance and averaging rule
        iterations: Maximum number of refinement passes
        tolerance: Stop once the mean absolute centroid movement is below this

    Returns:
        Refined centroid, shape (len(initial), dim)
    """
    metric = metric or AbsoluteDistance()
    sequences = validate_sequences(sequences)
    center = as_sequence(initial).copy()

    for iteration in range(iterations):
        aligned = [[] for _ in range(len(center))]
        for seq in sequences:
            _, path = dtw(center, seq, metric)
            for i, j in path:
                aligned[i].append(seq[j])

        updated = np.array([metric.average(np.array(points)) for points in aligned])
        movement = float(np.mean(np.abs(updated - center)))
        center = updated

        logger.debug(f"DBA iteration {iteration + 1}/{iterations}: movement={movement:.6f}")

        if movement < tolerance:
            break

    return center


def compute_kmeans(
    sequences: Sequence,
    k: int,
    max_iterations: int = 10,
    inner_iterations: int = 10,
    convergence_threshold: float = 0.01,
    metric: DistanceMetric = None
) -> List[KMeansCluster]:
    """
    Cluster variable-length sequences with DBA k-means.

    Algorithm:
    1. Initialise k centroids deterministically (median-length exemplar,
       then the exemplar farthest from all chosen centroids)
    2. Assign every sequence to its nearest centroid under DTW
    3. Refine each non-empty cluster's centroid with DBA
    4. Repeat until total centroid movement < convergence_threshold
       or max_iterations is reached
    5. Report each centroid with the RMS DTW distance of its members

    Args:
        sequences: Exemplar sequences of one class
        k: Number of centroids
        max_iterations: Outer k-means iterations
        inner_iterations: DBA refinement passes per outer iteration
        convergence_threshold: Early-stop threshold on centroid movement
        metric: Distance and averaging rule

    Returns:
        List of k KMeansCluster objects (variance None for empty clusters)

    Raises:
        ValueError: On empty input, empty sequences or k < 1
    """
    metric = metric or AbsoluteDistance()
    sequences = validate_sequences(sequences)
    if k < 1:
        raise ValueError(f"Invalid input: k must be >= 1, got {k}")

    centroids = _initial_centroids(sequences, k, metric)

    for iteration in range(max_iterations):
        assignments, _ = _assign(sequences, centroids, metric)

        movement = 0.0
        updated_centroids = []
        for c, centroid in enumerate(centroids):
            members = [seq for seq, a in zip(sequences, assignments) if a == c]
            if not members:
                updated_centroids.append(centroid)
                continue
            updated = dtw_barycenter(
                members, centroid, metric,
                iterations=inner_iterations,
                tolerance=convergence_threshold
            )
            movement += float(np.mean(np.abs(updated - centroid)))
            updated_centroids.append(updated)

        centroids = updated_centroids

        logger.debug(f"k-means iteration {iteration + 1}/{max_iterations}: movement={movement:.6f}")

        if movement < convergence_threshold:
            break

    assignments, distances = _assign(sequences, centroids, metric)

    clusters = []
    for c, centroid in enumerate(centroids):
        member_distances = [d for d, a in zip(distances, assignments) if a == c]
        if member_distances:
            variance = float(np.sqrt(np.mean(np.square(member_distances))))
        else:
            variance = None
            logger.warning(f"Cluster {c} has no members, disabling it")
        clusters.append(KMeansCluster(mean=centroid, variance=variance, size=len(member_distances)))

    logger.info(
        f"DBA k-means: {len(sequences)} sequences -> {k} centroids "
        f"(sizes {[cl.size for cl in clusters]})"
    )

    return clusters


def _initial_centroids(
    sequences: List[np.ndarray],
    k: int,
    metric: DistanceMetric
) -> List[np.ndarray]:
    order = sorted(range(len(sequences)), key=lambda i: len(sequences[i]))
    chosen = [order[(len(order) - 1) // 2]]

    nearest = [dtw_distance(seq, sequences[chosen[0]], metric) for seq in sequences]
    while len(chosen) < min(k, len(sequences)):
        candidate = max(
            (i for i in range(len(sequences)) if i not in chosen),
            key=lambda i: nearest[i]
        )
        chosen.append(candidate)
        for i, seq in enumerate(sequences):
            nearest[i] = min(nearest[i], dtw_distance(seq, sequences[candidate], metric))

    centroids = [sequences[i].copy() for i in chosen]
    # More clusters than exemplars: the extra centroids never win an assignment
    while len(centroids) < k:
        centroids.append(sequences[chosen[0]].copy())
    return centroids


def _assign(
    sequences: List[np.ndarray],
    centroids: List[np.ndarray],
    metric: DistanceMetric
) -> Tuple[List[int], List[float]]:
    assignments = []
    distances = []
    for seq in sequences:
        costs = [dtw_distance(seq, centroid, metric) for centroid in centroids]
        best = int(np.argmin(costs))
        assignments.append(best)
        distances.append(costs[best])
    return assignments, distances
