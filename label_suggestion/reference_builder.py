"""
Reference-label builder: confirmed labels -> per-class prototypes.

Process:
1. Group confirmed labels by class
2. Resample every exemplar at one uniform sample rate
3. DBA k-means per class -> centroid(s) and spread
4. Re-match each exemplar (with a margin around it) against its class
   centroids to measure systematic start/end bias of the matcher

Engineering approach:
- Sample rate = samples_per_label / longest label duration, so the longest
  exemplar gets ~100 samples and every DTW stays bounded
- Exemplars too short to resample (< 2 samples) are skipped with a warning
- Calibration only accepts matches whose both ends fall inside the margin
"""

import logging
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from dtw_matching import DistanceMetric, AbsoluteDistance, MultipleSpringBestMatch, compute_kmeans
from utils.dataset import TimeSeriesDataset, grid_sample_count, resample_window

from .labels import Label, ReferenceLabel

logger = logging.getLogger(__name__)

DEFAULT_SAMPLES_PER_LABEL = 100
DEFAULT_SAMPLE_RATE = 1.0


def compute_sample_rate(labels: Sequence[Label], samples_per_label: int = DEFAULT_SAMPLES_PER_LABEL) -> float:
    """
    Uniform resampling rate for a label set.

    Returns:
        samples_per_label / longest label duration, or DEFAULT_SAMPLE_RATE
        when there is no label with positive duration
    """
    max_duration = max((label.duration for label in labels), default=0.0)
    if max_duration <= 0:
        logger.warning(f"No label with positive duration, using default sample rate {DEFAULT_SAMPLE_RATE}")
        return DEFAULT_SAMPLE_RATE
    return samples_per_label / max_duration


def group_labels_by_class(labels: Sequence[Label]) -> Dict[str, List[Label]]:
    """Group labels by class name, keeping first-seen class order."""
    groups: Dict[str, List[Label]] = {}
    for label in labels:
        groups.setdefault(label.class_name, []).append(label)
    return groups


def resample_label(dataset: TimeSeriesDataset, label: Label, sample_rate: float) -> Optional[np.ndarray]:
    """Exemplar samples of one label, or None if the label is too short."""
    count = grid_sample_count(label.duration, sample_rate)
    if count < 2:
        return None
    return resample_window(dataset, label.timestamp_start, label.timestamp_end, count)


def estimate_boundary_offsets(
    dataset: TimeSeriesDataset,
    labels: Sequence[Label],
    centroids: Sequence[np.ndarray],
    sample_rate: float,
    margin_ratio: float = 0.1,
    length_tolerance: Tuple[float, float] = (0.8, 1.2),
    metric: DistanceMetric = None
) -> Tuple[float, float, int]:
    """
    Average signed boundary offsets between matches and labels.

    For every label, the window [start - margin, end + margin] (margin =
    margin_ratio * duration) is scanned with the offline matcher. A match
    whose start and end both lie within the margin of the label boundaries
    contributes (matched start - label start, matched end - label end).
    The matcher runs without a distance threshold: the margin check on both
    boundaries is the only acceptance test.

    Returns:
        Tuple of (mean begin offset, mean end offset, number of labels used);
        offsets are 0 when no label produced a usable match
    """
    metric = metric or AbsoluteDistance()
    low, high = length_tolerance
    length_ranges = [(len(c) * low, len(c) * high) for c in centroids]

    begin_offsets = []
    end_offsets = []

    for label in labels:
        margin = margin_ratio * label.duration
        window_start = label.timestamp_start - margin
        window_duration = label.duration + 2 * margin
        count = grid_sample_count(window_duration, sample_rate)
        if count < 2:
            continue

        samples = resample_window(dataset, window_start, label.timestamp_end + margin, count)

        matcher = MultipleSpringBestMatch(centroids, None, length_ranges, metric)
        for sample in samples:
            matcher.feed(sample)
        match = matcher.get_best_match()
        if not match.found:
            continue

        matched_start = match.start_index / (count - 1) * window_duration + window_start
        matched_end = match.end_index / (count - 1) * window_duration + window_start
        if abs(matched_start - label.timestamp_start) < margin and abs(matched_end - label.timestamp_end) < margin:
            begin_offsets.append(matched_start - label.timestamp_start)
            end_offsets.append(matched_end - label.timestamp_end)

    if not begin_offsets:
        return 0.0, 0.0, 0
    return float(np.mean(begin_offsets)), float(np.mean(end_offsets)), len(begin_offsets)


def get_average_labels_per_class(
    dataset: TimeSeriesDataset,
    labels: Sequence[Label],
    sample_rate: float,
    k: int = 1,
    max_iterations: int = 10,
    inner_iterations: int = 10,
    convergence_threshold: float = 0.01,
    margin_ratio: float = 0.1,
    length_tolerance: Tuple[float, float] = (0.8, 1.2),
    metric: DistanceMetric = None
) -> List[ReferenceLabel]:
    """
    Build reference labels (prototypes) from confirmed labels.

    Args:
        dataset: Dataset the labels refer to
        labels: Confirmed labels (training exemplars)
        sample_rate: Uniform resampling rate in samples per second
        k: Centroids per class
        max_iterations: Outer k-means iterations
        inner_iterations: DBA passes per k-means iteration
        convergence_threshold: k-means early-stop threshold
        margin_ratio: Calibration margin as a fraction of label duration
        length_tolerance: Allowed match length relative to the centroid
        metric: Per-sample distance and averaging

    Returns:
        One ReferenceLabel per centroid, classes in first-seen order
    """
    if not labels:
        logger.warning("No labels given, reference set is empty")
        return []

    metric = metric or AbsoluteDistance()
    references = []

    for class_name, class_labels in group_labels_by_class(labels).items():
        exemplars = []
        usable_labels = []
        for label in class_labels:
            if label.duration <= 0:
                logger.warning(
                    f"Skipping label '{class_name}' with non-positive duration "
                    f"[{label.timestamp_start:.2f}, {label.timestamp_end:.2f}]"
                )
                continue
            samples = resample_label(dataset, label, sample_rate)
            if samples is None:
                logger.warning(
                    f"Skipping label '{class_name}' at {label.timestamp_start:.2f}s: "
                    f"too short for sample rate {sample_rate:.3f}"
                )
                continue
            if np.isnan(samples).all(axis=1).any():
                logger.warning(
                    f"Skipping label '{class_name}' at {label.timestamp_start:.2f}s: "
                    f"extends outside the recorded data"
                )
                continue
            exemplars.append(samples)
            usable_labels.append(label)

        if not exemplars:
            logger.warning(f"Class '{class_name}' has no usable exemplars")
            continue

        clusters = compute_kmeans(
            exemplars, k,
            max_iterations=max_iterations,
            inner_iterations=inner_iterations,
            convergence_threshold=convergence_threshold,
            metric=metric
        )

        begin, end, used = estimate_boundary_offsets(
            dataset, usable_labels, [c.mean for c in clusters], sample_rate,
            margin_ratio=margin_ratio,
            length_tolerance=length_tolerance,
            metric=metric
        )

        logger.info(
            f"Class '{class_name}': {len(exemplars)} exemplars, "
            f"variances {[c.variance for c in clusters]}, "
            f"offsets begin={begin:+.3f}s end={end:+.3f}s ({used} calibrated)"
        )

        for cluster in clusters:
            references.append(ReferenceLabel(
                class_name=class_name,
                series=cluster.mean,
                variance=cluster.variance,
                adjustments_begin=begin,
                adjustments_end=end
            ))

    return references
