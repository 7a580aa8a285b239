"""
Label suggestions with SPRING DTW matching.

A DtwSuggestionModel wraps the class prototypes built from confirmed labels
and scans requested time ranges for new occurrences of them.

Run lifecycle (one run per callback token):
    IDLE -> RUNNING -> COMPLETED | CANCELLED | FAILED

Engineering approach:
- Each run owns a fresh streaming matcher; nothing is shared between runs
- The range is processed in chunks of ceil(chunk_budget / n_references)
  samples; every chunk ends with a callback, then the next chunk is queued
  on the scheduler (never run inline)
- Candidate acceptance is a Gaussian kernel in distance space:
  likelihood = exp(-d^2 / (2 variance^2)), threshold d = sqrt(-2 ln c) * variance
- Failures inside a chunk are delivered through the callback error
  argument and terminate the run
"""

import logging
import math
from enum import Enum
from typing import Dict, Hashable, List, Optional, Sequence, Tuple

from dtw_matching import DistanceMetric, AbsoluteDistance, MultipleSpringMatcher, make_distance_metric
from utils.config_loader import get_nested_config
from utils.dataset import TimeSeriesDataset, grid_sample_count, resample_window

from .deployment import get_deployment_code
from .interfaces import (
    LabelingSuggestionCallback,
    LabelingSuggestionModel,
    LabelingSuggestionModelFactory,
    ModelBuildCallback
)
from .labels import Label, ReferenceLabel, SuggestionCandidate, SuggestionProgress
from .reference_builder import (
    DEFAULT_SAMPLES_PER_LABEL,
    compute_sample_rate,
    get_average_labels_per_class
)
from .scheduler import ChunkScheduler, ScheduledHandle

logger = logging.getLogger(__name__)

HISTOGRAM_BUCKETS = 10
HISTOGRAM_EXPONENT = 0.3


class SuggestionState(Enum):
    """Lifecycle of one suggestion run."""
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


def get_likelihood(variance: float, distance: float) -> float:
    """
    Confidence of a match: exp(-distance^2 / (2 variance^2)).

    A zero-variance reference only accepts exact matches.
    """
    if variance <= 0:
        return 1.0 if distance <= 0 else 0.0
    return math.exp(-distance * distance / (2.0 * variance * variance))


def get_threshold_distance(variance: float, confidence_threshold: float) -> float:
    """Distance at which get_likelihood() equals confidence_threshold."""
    return math.sqrt(-2.0 * math.log(confidence_threshold)) * variance


def get_histogram_index(confidence: float, buckets: int = HISTOGRAM_BUCKETS) -> int:
    """Confidence histogram bucket, floor(confidence^0.3 * (buckets - 1)) clamped."""
    index = int(math.floor(math.pow(confidence, HISTOGRAM_EXPONENT) * (buckets - 1)))
    return max(0, min(buckets - 1, index))


class SuggestionRun:
    """
    One suggestion request, processed chunk by chunk.

    Attributes:
        token: Cancellation token the run is registered under
        generation: Generation tag copied into every candidate and progress
        state: Current SuggestionState
        resampled_length: Number of grid samples in the requested range
        chunk_size: Samples per chunk
    """

    def __init__(
        self,
        model: 'DtwSuggestionModel',
        dataset: TimeSeriesDataset,
        timestamp_start: float,
        timestamp_end: float,
        confidence_threshold: float,
        generation: int,
        callback: LabelingSuggestionCallback,
        references: List[ReferenceLabel],
        token: Hashable
    ):
        self.model = model
        self.dataset = dataset
        self.timestamp_start = timestamp_start
        self.timestamp_end = timestamp_end
        self.generation = generation
        self.callback = callback
        self.references = references
        self.token = token

        self.state = SuggestionState.IDLE
        self.handle: Optional[ScheduledHandle] = None

        self.resampled_length = grid_sample_count(timestamp_end - timestamp_start, model.sample_rate)
        self.chunk_size = int(math.ceil(model.chunk_budget / len(references)))
        self.position = 0

        self.confidence_histogram = [0] * HISTOGRAM_BUCKETS
        self._candidates: List[SuggestionCandidate] = []

        low, high = model.length_tolerance
        self.matcher = MultipleSpringMatcher(
            [ref.series for ref in references],
            [get_threshold_distance(ref.variance, confidence_threshold) for ref in references],
            [(ref.length * low, ref.length * high) for ref in references],
            metric=model.metric,
            on_match=self._on_match
        )

    def index_to_time(self, index: float) -> float:
        """Timestamp of a grid sample index within the requested range."""
        if self.resampled_length <= 1:
            return self.timestamp_start
        return (
            index / (self.resampled_length - 1) * (self.timestamp_end - self.timestamp_start)
            + self.timestamp_start
        )

    def progress(self, timestamp_completed: float) -> SuggestionProgress:
        return SuggestionProgress(
            timestamp_start=self.timestamp_start,
            timestamp_end=self.timestamp_end,
            timestamp_completed=timestamp_completed,
            generation=self.generation,
            confidence_histogram=list(self.confidence_histogram)
        )

    def start(self):
        self.state = SuggestionState.RUNNING
        self.handle = self.model.scheduler.call_soon(self.next_chunk)

    def cancel(self):
        if self.state in (SuggestionState.IDLE, SuggestionState.RUNNING):
            self.state = SuggestionState.CANCELLED
        if self.handle is not None:
            self.handle.cancel()

    def next_chunk(self):
        """Process one chunk, deliver it, then queue the next one or finish."""
        if self.state != SuggestionState.RUNNING:
            return

        try:
            exhausted = self._process_chunk()
        except Exception as e:
            logger.exception(f"Suggestion run (generation {self.generation}) failed")
            self.state = SuggestionState.FAILED
            self._deliver(
                [],
                self.progress(self.index_to_time(min(self.position, self.resampled_length - 1))),
                True,
                f"{type(e).__name__}: {e}"
            )
            return

        candidates = self._candidates
        self._candidates = []
        completed_at = min(self.index_to_time(self.position), self.timestamp_end)
        if not self._deliver(candidates, self.progress(completed_at), False, None):
            return

        # The callback may have cancelled or replaced this run
        if self.state != SuggestionState.RUNNING:
            return

        if exhausted:
            self.state = SuggestionState.COMPLETED
            logger.info(
                f"Suggestion run (generation {self.generation}) completed: "
                f"histogram {self.confidence_histogram}"
            )
            self._deliver([], self.progress(self.timestamp_end), True, None)
        else:
            self.handle = self.model.scheduler.call_soon(self.next_chunk)

    def _deliver(
        self,
        candidates: List[SuggestionCandidate],
        progress: SuggestionProgress,
        completed: bool,
        error: Optional[str]
    ) -> bool:
        """
        Invoke the callback; a raising callback fails the run.

        Returns:
            False if the callback raised
        """
        try:
            self.callback(candidates, progress, completed, error)
        except Exception:
            logger.exception(f"Suggestion callback raised (generation {self.generation}), stopping run")
            if self.state in (SuggestionState.RUNNING, SuggestionState.COMPLETED):
                self.state = SuggestionState.FAILED
            return False
        return True

    def _process_chunk(self) -> bool:
        count = min(self.chunk_size, self.resampled_length - self.position)
        if count > 0:
            chunk_start = self.index_to_time(self.position)
            chunk_end = self.index_to_time(self.position + count - 1)
            samples = resample_window(self.dataset, chunk_start, chunk_end, count)

            for sample in samples:
                which, distance = self.matcher.feed(sample)
                self._count_confidence(which, distance)
            self.position += count

        exhausted = self.position >= self.resampled_length
        if exhausted:
            which, distance = self.matcher.flush()
            self._count_confidence(which, distance)
        return exhausted

    def _count_confidence(self, which: Optional[int], distance: Optional[float]):
        if distance is None:
            return
        confidence = get_likelihood(self.references[which].variance, distance)
        self.confidence_histogram[get_histogram_index(confidence)] += 1

    def _on_match(self, which: int, distance: float, start: int, end: int):
        reference = self.references[which]
        t1 = self.index_to_time(start) - reference.adjustments_begin
        t2 = self.index_to_time(end) - reference.adjustments_end
        if t2 <= t1:
            logger.debug(f"Dropping degenerate match [{t1:.3f}, {t2:.3f}] for '{reference.class_name}'")
            return

        self._candidates.append(SuggestionCandidate(
            timestamp_start=t1,
            timestamp_end=t2,
            class_name=reference.class_name,
            suggestion_confidence=get_likelihood(reference.variance, distance),
            suggestion_generation=self.generation
        ))


class DtwSuggestionModel(LabelingSuggestionModel):
    """
    Suggestion model over a fixed set of reference labels.

    Usage:
        model = DtwSuggestionModel(references, sample_rate, scheduler=scheduler)
        model.compute_suggestion(dataset, 0.0, 60.0, 0.5, generation=1, callback=on_chunk)
        scheduler.run_until_idle()
    """

    def __init__(
        self,
        references: Sequence[ReferenceLabel],
        sample_rate: float,
        scheduler: ChunkScheduler = None,
        chunk_budget: int = 100,
        length_tolerance: Tuple[float, float] = (0.8, 1.2),
        metric: DistanceMetric = None,
        deployment_buffer_size: int = 30
    ):
        """
        Args:
            references: Class prototypes
            sample_rate: Grid rate (samples per second) the prototypes were built at
            scheduler: Continuation queue for chunked runs (a private one if None)
            chunk_budget: Reference-samples processed per chunk, split across references
            length_tolerance: Accepted match length relative to each prototype
            metric: Per-sample distance
            deployment_buffer_size: Sample buffer length of generated deployment code
        """
        self.references = list(references)
        self.sample_rate = sample_rate
        self.scheduler = scheduler if scheduler is not None else ChunkScheduler()
        self.chunk_budget = chunk_budget
        self.length_tolerance = length_tolerance
        self.metric = metric or AbsoluteDistance()
        self.deployment_buffer_size = deployment_buffer_size
        self._runs: Dict[Hashable, SuggestionRun] = {}

        logger.info(
            f"DTW suggestion model: {len(self.references)} references "
            f"({sorted({r.class_name for r in self.references})}), "
            f"sample rate {sample_rate:.3f}/s"
        )

    def snap_to_grid(self, timestamp: float) -> float:
        return round(self.sample_rate * timestamp) / self.sample_rate

    def compute_suggestion(
        self,
        dataset: TimeSeriesDataset,
        timestamp_start: float,
        timestamp_end: float,
        confidence_threshold: float,
        generation: int,
        callback: LabelingSuggestionCallback,
        token: Optional[Hashable] = None
    ) -> None:
        """
        Start suggesting labels over [timestamp_start, timestamp_end].

        The callback is invoked as callback(candidates, progress, completed, error)
        once per chunk with completed=False, then once with completed=True (or
        with an error message). A run already registered under the same token
        is cancelled first.

        Args:
            dataset: Dataset to scan (read-only)
            timestamp_start: Range start in seconds
            timestamp_end: Range end in seconds
            confidence_threshold: Minimum likelihood, in (0, 1]
            generation: Caller-assigned request number, copied into results
            callback: Result sink
            token: Cancellation token (defaults to the callback itself)

        Raises:
            ValueError: If confidence_threshold is outside (0, 1]
        """
        if not 0 < confidence_threshold <= 1:
            raise ValueError(f"confidence_threshold must be in (0, 1], got {confidence_threshold}")

        token = callback if token is None else token
        self.cancel_suggestion(token)
        self._runs.pop(token, None)

        timestamp_start = self.snap_to_grid(timestamp_start)
        timestamp_end = self.snap_to_grid(timestamp_end)
        if timestamp_end < timestamp_start:
            raise ValueError(f"Invalid range: [{timestamp_start}, {timestamp_end}]")

        references = [ref for ref in self.references if ref.variance is not None]
        if not references:
            logger.info("No usable references, nothing to suggest")
            callback(
                [],
                SuggestionProgress(
                    timestamp_start=timestamp_start,
                    timestamp_end=timestamp_end,
                    timestamp_completed=timestamp_end,
                    generation=generation
                ),
                True,
                None
            )
            return

        run = SuggestionRun(
            self, dataset, timestamp_start, timestamp_end,
            confidence_threshold, generation, callback, references, token
        )
        self._runs[token] = run

        logger.info(
            f"Suggesting [{timestamp_start:.2f}, {timestamp_end:.2f}]s "
            f"(generation {generation}, {run.resampled_length} samples, "
            f"chunks of {run.chunk_size})"
        )

        run.start()

    def cancel_suggestion(self, token: Hashable) -> None:
        run = self._runs.get(token)
        if run is not None and run.state == SuggestionState.RUNNING:
            run.cancel()
            logger.debug(f"Cancelled suggestion run (generation {run.generation})")

    def get_run_state(self, token: Hashable) -> SuggestionState:
        """
        State of the last run started under token.

        Finished runs stay registered until the token starts a new run or the
        model is disposed, so COMPLETED, CANCELLED and FAILED are observable.
        IDLE if the token has no run.
        """
        run = self._runs.get(token)
        return run.state if run is not None else SuggestionState.IDLE

    def get_deployment_code(self, platform: str) -> str:
        return get_deployment_code(
            platform, self.sample_rate, self.references,
            buffer_size=self.deployment_buffer_size
        )

    def dispose(self) -> None:
        for token in list(self._runs):
            self.cancel_suggestion(token)
        self._runs.clear()


class SpringDtwSuggestionModelFactory(LabelingSuggestionModelFactory):
    """
    Builds DtwSuggestionModel instances from confirmed labels.

    Usage:
        factory = SpringDtwSuggestionModelFactory.from_config(config)
        model = factory.build_model(dataset, labels)
    """

    def __init__(
        self,
        scheduler: ChunkScheduler = None,
        samples_per_label: int = DEFAULT_SAMPLES_PER_LABEL,
        k: int = 1,
        max_iterations: int = 10,
        inner_iterations: int = 10,
        convergence_threshold: float = 0.01,
        margin_ratio: float = 0.1,
        length_tolerance: Tuple[float, float] = (0.8, 1.2),
        chunk_budget: int = 100,
        deployment_buffer_size: int = 30,
        metric: DistanceMetric = None
    ):
        self.scheduler = scheduler
        self.samples_per_label = samples_per_label
        self.k = k
        self.max_iterations = max_iterations
        self.inner_iterations = inner_iterations
        self.convergence_threshold = convergence_threshold
        self.margin_ratio = margin_ratio
        self.length_tolerance = tuple(length_tolerance)
        self.chunk_budget = chunk_budget
        self.deployment_buffer_size = deployment_buffer_size
        self.metric = metric or AbsoluteDistance()

    @classmethod
    def from_config(cls, config: Dict, scheduler: ChunkScheduler = None) -> 'SpringDtwSuggestionModelFactory':
        """
        Create a factory from the 'prototypes' and 'suggestion' config sections.
        """
        return cls(
            scheduler=scheduler,
            samples_per_label=get_nested_config(config, 'prototypes.samples_per_label', DEFAULT_SAMPLES_PER_LABEL),
            k=get_nested_config(config, 'prototypes.clusters_per_class', 1),
            max_iterations=get_nested_config(config, 'prototypes.max_iterations', 10),
            inner_iterations=get_nested_config(config, 'prototypes.inner_iterations', 10),
            convergence_threshold=get_nested_config(config, 'prototypes.convergence_threshold', 0.01),
            margin_ratio=get_nested_config(config, 'prototypes.calibration_margin', 0.1),
            length_tolerance=get_nested_config(config, 'suggestion.length_tolerance', [0.8, 1.2]),
            chunk_budget=get_nested_config(config, 'suggestion.chunk_budget', 100),
            deployment_buffer_size=get_nested_config(config, 'deployment.buffer_size', 30),
            metric=make_distance_metric(get_nested_config(config, 'prototypes.distance', 'absolute'))
        )

    def get_references(self, dataset: TimeSeriesDataset, labels: Sequence[Label]) -> List[ReferenceLabel]:
        """Class prototypes for labels, at the rate compute_sample_rate() picks."""
        sample_rate = compute_sample_rate(labels, self.samples_per_label)
        return self._build_references(dataset, labels, sample_rate)

    def build_model(
        self,
        dataset: TimeSeriesDataset,
        labels: Sequence[Label],
        callback: Optional[ModelBuildCallback] = None
    ) -> Optional[DtwSuggestionModel]:
        """
        Build a suggestion model from confirmed labels.

        Args:
            dataset: Dataset the labels refer to
            labels: Confirmed labels
            callback: Optional callback(model, progress, error); when given,
                      build failures are reported through it instead of raised

        Returns:
            The model, or None if the build failed and a callback was given
        """
        try:
            sample_rate = compute_sample_rate(labels, self.samples_per_label)
            references = self._build_references(dataset, labels, sample_rate)
            model = DtwSuggestionModel(
                references,
                sample_rate,
                scheduler=self.scheduler,
                chunk_budget=self.chunk_budget,
                length_tolerance=self.length_tolerance,
                metric=self.metric,
                deployment_buffer_size=self.deployment_buffer_size
            )
        except Exception as e:
            if callback is None:
                raise
            logger.exception("Failed to build suggestion model")
            callback(None, 1.0, f"{type(e).__name__}: {e}")
            return None

        if callback is not None:
            callback(model, 1.0, None)
        return model

    def _build_references(
        self,
        dataset: TimeSeriesDataset,
        labels: Sequence[Label],
        sample_rate: float
    ) -> List[ReferenceLabel]:
        return get_average_labels_per_class(
            dataset, labels, sample_rate,
            k=self.k,
            max_iterations=self.max_iterations,
            inner_iterations=self.inner_iterations,
            convergence_threshold=self.convergence_threshold,
            margin_ratio=self.margin_ratio,
            length_tolerance=self.length_tolerance,
            metric=self.metric
        )
