"""
SPRING subsequence matching under the DTW distance.

SPRING (Sakurai, Faloutsos & Yamamuro, 2007) finds subsequences of a stream
that match a reference under DTW without knowing where the match starts.
The warping cost column of each reference has an open start: the first
reference point always restarts at the current stream position, so every
cell tracks the best alignment ending now over all possible start points,
together with the start index it came from.

Two matchers share the same per-reference state:
- MultipleSpringMatcher: streaming; reports each match as soon as it is a
  local minimum (no live alignment can still improve on it), then consumes
  the matched span so overlapping matches are not reported again
- MultipleSpringBestMatch: offline; keeps only the single best match over a
  whole buffer, used for boundary calibration

Cost per fed sample: O(R * |reference|) time, O(R * |reference|) memory.
"""

import logging
import math
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np

from .dba import as_sequence
from .distance import AbsoluteDistance, DistanceMetric

logger = logging.getLogger(__name__)

INFINITY = math.inf

MatchCallback = Callable[[int, float, int, int], None]


@dataclass
class MatchResult:
    """
    A subsequence match.

    Attributes:
        reference_index: Index of the matched reference (None = no match)
        distance: Accumulated DTW cost of the match (None = no match)
        start_index: Stream index of the first matched sample
        end_index: Stream index of the last matched sample (inclusive)
    """
    reference_index: Optional[int]
    distance: Optional[float]
    start_index: int = -1
    end_index: int = -1

    @property
    def found(self) -> bool:
        return self.reference_index is not None

    @property
    def length(self) -> int:
        return self.end_index - self.start_index + 1 if self.found else 0


class SpringReferenceState:
    """
    Warping cost column of one reference plus its pending match.

    Attributes:
        reference: Reference sequence, shape (m, dim)
        threshold: Maximum accepted match cost
        min_length / max_length: Accepted match lengths in samples
        costs: Cost of the best alignment ending at the current stream
               position for each reference point
        starts: Stream index where each of those alignments started
    """

    def __init__(
        self,
        reference,
        threshold: float = INFINITY,
        length_range: Optional[Tuple[float, float]] = None
    ):
        self.reference = as_sequence(reference)
        self.threshold = INFINITY if threshold is None else float(threshold)
        if length_range is None:
            length_range = (0, INFINITY)
        self.min_length, self.max_length = length_range

        size = len(self.reference)
        self.costs = [INFINITY] * size
        self.starts = [0] * size

        self.pending_distance = INFINITY
        self.pending_start = -1
        self.pending_end = -1

    def advance(self, local: List[float], t: int):
        """Update the column with the local distances of the sample at stream index t."""
        prev_costs = self.costs
        prev_starts = self.starts
        size = len(local)

        costs = [0.0] * size
        starts = [0] * size
        costs[0] = local[0]
        starts[0] = t

        for i in range(1, size):
            # match
            best = prev_costs[i - 1]
            start = prev_starts[i - 1]
            # deletion (stream advanced, reference point repeated)
            if prev_costs[i] < best:
                best = prev_costs[i]
                start = prev_starts[i]
            # insertion (reference advanced at the same stream position)
            if costs[i - 1] < best:
                best = costs[i - 1]
                start = starts[i - 1]
            costs[i] = local[i] + best
            starts[i] = start

        self.costs = costs
        self.starts = starts

    def end_candidate(self, t: int) -> Optional[Tuple[float, int]]:
        """Cost and start of the full-reference alignment ending at t, if acceptable."""
        cost = self.costs[-1]
        if cost > self.threshold:
            return None
        length = t - self.starts[-1] + 1
        if length < self.min_length or length > self.max_length:
            return None
        return cost, self.starts[-1]

    @property
    def has_pending(self) -> bool:
        return self.pending_distance <= self.threshold and self.pending_end >= 0

    def pending_is_local_minimum(self) -> bool:
        """True when no live alignment can still beat or extend the pending match."""
        pending = self.pending_distance
        end = self.pending_end
        return all(
            cost >= pending or start > end
            for cost, start in zip(self.costs, self.starts)
        )

    def consume_pending(self) -> MatchResult:
        """Report the pending match and drop alignments overlapping it."""
        result = MatchResult(None, self.pending_distance, self.pending_start, self.pending_end)
        end = self.pending_end
        self.costs = [
            INFINITY if start <= end else cost
            for cost, start in zip(self.costs, self.starts)
        ]
        self.pending_distance = INFINITY
        self.pending_start = -1
        self.pending_end = -1
        return result


def _build_states(
    references: Sequence,
    thresholds: Optional[Sequence[float]],
    length_ranges: Optional[Sequence[Tuple[float, float]]]
) -> List[SpringReferenceState]:
    if references is None or len(references) == 0:
        raise ValueError("Invalid input: no reference sequences given")
    if thresholds is not None and len(thresholds) != len(references):
        raise ValueError(
            f"Invalid input: {len(thresholds)} thresholds for {len(references)} references"
        )
    if length_ranges is not None and len(length_ranges) != len(references):
        raise ValueError(
            f"Invalid input: {len(length_ranges)} length ranges for {len(references)} references"
        )

    states = []
    for r, reference in enumerate(references):
        states.append(SpringReferenceState(
            reference,
            threshold=thresholds[r] if thresholds is not None else INFINITY,
            length_range=length_ranges[r] if length_ranges is not None else None
        ))

    dims = {state.reference.shape[1] for state in states}
    if len(dims) != 1:
        raise ValueError(f"Invalid input: inconsistent reference dimensions {sorted(dims)}")
    return states


class MultipleSpringMatcher:
    """
    Streaming SPRING over several references at once.

    Usage:
        matcher = MultipleSpringMatcher(references, thresholds, length_ranges,
                                        on_match=lambda r, d, s, e: ...)
        for sample in stream:
            which, distance = matcher.feed(sample)
        matcher.flush()
    """

    def __init__(
        self,
        references: Sequence,
        thresholds: Sequence[float],
        length_ranges: Optional[Sequence[Tuple[float, float]]] = None,
        metric: DistanceMetric = None,
        on_match: Optional[MatchCallback] = None
    ):
        """
        Args:
            references: Reference sequences, each (m_r, dim)
            thresholds: Maximum accepted DTW cost per reference
            length_ranges: Accepted (min, max) match length in samples per reference
            metric: Per-sample distance
            on_match: Called as on_match(reference_index, distance, start, end)
                      for every reported match
        """
        self.states = _build_states(references, thresholds, length_ranges)
        self.metric = metric or AbsoluteDistance()
        self.on_match = on_match
        self.position = 0

        logger.debug(
            f"Streaming SPRING matcher: {len(self.states)} references, "
            f"lengths {[len(s.reference) for s in self.states]}"
        )

    def feed(self, sample) -> Tuple[Optional[int], Optional[float]]:
        """
        Advance every reference by one stream sample.

        Returns:
            (reference_index, distance) of the best match reported at this
            step, or (None, None) when nothing was reported
        """
        sample = np.asarray(sample, dtype=float)
        t = self.position
        reported = []

        for r, state in enumerate(self.states):
            local = self.metric.distances_to(sample, state.reference).tolist()
            state.advance(local, t)

            if state.has_pending and state.pending_is_local_minimum():
                reported.append(self._report(r, state))

            candidate = state.end_candidate(t)
            if candidate is not None and candidate[0] < state.pending_distance:
                state.pending_distance, state.pending_start = candidate
                state.pending_end = t

        self.position += 1
        return _best_of(reported)

    def flush(self) -> Tuple[Optional[int], Optional[float]]:
        """
        Report every pending match at the end of the stream.

        Returns:
            Same as feed()
        """
        reported = []
        for r, state in enumerate(self.states):
            if state.has_pending:
                reported.append(self._report(r, state))
        return _best_of(reported)

    def _report(self, r: int, state: SpringReferenceState) -> MatchResult:
        result = state.consume_pending()
        result.reference_index = r
        logger.debug(
            f"SPRING match: reference={r} distance={result.distance:.4f} "
            f"span=[{result.start_index}, {result.end_index}]"
        )
        if self.on_match is not None:
            self.on_match(r, result.distance, result.start_index, result.end_index)
        return result


def _best_of(results: List[MatchResult]) -> Tuple[Optional[int], Optional[float]]:
    if not results:
        return None, None
    best = min(results, key=lambda m: m.distance)
    return best.reference_index, best.distance


class MultipleSpringBestMatch:
    """
    Offline SPRING: the single best match over a whole buffer.

    No callbacks and no early reporting; feed the buffer, then call
    get_best_match().
    """

    def __init__(
        self,
        references: Sequence,
        thresholds: Optional[Sequence[float]] = None,
        length_ranges: Optional[Sequence[Tuple[float, float]]] = None,
        metric: DistanceMetric = None
    ):
        self.states = _build_states(references, thresholds, length_ranges)
        self.metric = metric or AbsoluteDistance()
        self.position = 0
        self.best = MatchResult(None, None)

    def feed(self, sample):
        sample = np.asarray(sample, dtype=float)
        t = self.position

        for r, state in enumerate(self.states):
            local = self.metric.distances_to(sample, state.reference).tolist()
            state.advance(local, t)

            candidate = state.end_candidate(t)
            if candidate is None:
                continue
            cost, start = candidate
            if self.best.distance is None or cost < self.best.distance:
                self.best = MatchResult(r, cost, start, t)

        self.position += 1

    def get_best_match(self) -> MatchResult:
        """Best match so far; reference_index is None if nothing qualified."""
        return self.best
