"""
Unit tests for the suggestion orchestrator.

Tests cover:
- Confidence math (likelihood, threshold distance, histogram buckets)
- Candidate timing and confidence for exact occurrences
- Chunk-size independence of results
- Cancellation, same-token restarts and dispose
- Callback ordering and the error channel
- Model factory from confirmed labels
"""

import math

import pytest # pyright: ignore[reportMissingImports]
import numpy as np
from pathlib import Path

# Import modules to test
import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from label_suggestion.labels import Label, ReferenceLabel
from label_suggestion.scheduler import ChunkScheduler
from label_suggestion.suggestion_model import (
    DtwSuggestionModel,
    SpringDtwSuggestionModelFactory,
    SuggestionState,
    get_histogram_index,
    get_likelihood,
    get_threshold_distance
)
from utils.config_loader import load_config
from utils.dataset import TimeSeriesDataset, TimeSeriesTrack


PATTERN = [0.0, 1.0, 2.0, 1.0, 0.0]
PEAK_REFERENCE = ReferenceLabel('peak', np.array(PATTERN)[:, np.newaxis], 1.0)
PATTERN_ONSETS = (20, 60, 110, 150)


class Recorder:
    """Suggestion callback that keeps every call."""

    def __init__(self, on_call=None):
        self.calls = []
        self.on_call = on_call

    def __call__(self, candidates, progress, completed, error):
        self.calls.append((list(candidates), progress, completed, error))
        if self.on_call is not None:
            self.on_call(len(self.calls))

    @property
    def candidates(self):
        return [c for call in self.calls for c in call[0]]


def make_stream_dataset(values, rate=1.0):
    timestamps = np.arange(len(values)) / rate
    return TimeSeriesDataset([TimeSeriesTrack('signal', timestamps, np.asarray(values, dtype=float))])


def make_background_dataset(seed=1):
    """200 samples of background in [2, 4] with the pattern at PATTERN_ONSETS."""
    values = np.random.default_rng(seed).uniform(2.0, 4.0, 200)
    for onset in PATTERN_ONSETS:
        values[onset:onset + len(PATTERN)] = PATTERN
    return make_stream_dataset(values)


def make_event_dataset(events, duration=45.0, rate=100.0, noise=0.02, seed=0):
    """Single-track dataset with 2 second half-sine events of the given amplitudes."""
    timestamps = np.arange(int(duration * rate)) / rate
    values = np.zeros_like(timestamps)
    for onset, amplitude in events:
        inside = (timestamps >= onset) & (timestamps <= onset + 2.0)
        values[inside] += amplitude * np.sin(np.pi * (timestamps[inside] - onset) / 2.0)
    values += np.random.default_rng(seed).normal(0.0, noise, len(values))
    return TimeSeriesDataset([TimeSeriesTrack('signal', timestamps, values)])


def run_suggestion(model, dataset, start, end, generation=1, threshold=0.5):
    recorder = Recorder()
    model.compute_suggestion(dataset, start, end, threshold, generation, recorder)
    model.scheduler.run_until_idle()
    return recorder


class TestConfidence:
    """Test confidence scoring helpers."""

    def test_likelihood_at_zero_distance(self):
        """Test that an exact match has confidence 1."""
        assert get_likelihood(1.0, 0.0) == 1.0

    def test_likelihood_monotonic(self):
        """Test that confidence decreases with distance."""
        values = [get_likelihood(2.0, d) for d in (0.0, 0.5, 1.0, 2.0, 4.0)]
        assert all(a > b for a, b in zip(values, values[1:]))

    def test_zero_variance(self):
        """Test that zero variance only accepts exact matches."""
        assert get_likelihood(0.0, 0.0) == 1.0
        assert get_likelihood(0.0, 0.1) == 0.0

    def test_threshold_distance(self):
        """Test that the threshold distance has the threshold likelihood."""
        assert get_threshold_distance(1.0, 0.5) == pytest.approx(1.1774, abs=1e-4)
        assert get_threshold_distance(1.0, 1.0) == 0.0

        distance = get_threshold_distance(3.0, 0.2)
        assert get_likelihood(3.0, distance) == pytest.approx(0.2)

    def test_histogram_index(self):
        """Test histogram bucket boundaries."""
        assert get_histogram_index(1.0) == 9
        assert get_histogram_index(0.0) == 0
        assert get_histogram_index(0.5) == 7
        assert get_histogram_index(0.01) == 2


class TestSuggestionRun:
    """Test a single suggestion run end to end."""

    def test_exact_occurrence(self):
        """Test timing, confidence and generation of an exact occurrence."""
        scheduler = ChunkScheduler()
        model = DtwSuggestionModel([PEAK_REFERENCE], 1.0, scheduler=scheduler)
        dataset = make_stream_dataset([3, 3, 0, 1, 2, 1, 0, 3, 3, 3])

        recorder = run_suggestion(model, dataset, 0.0, 9.0, generation=7)

        candidates = recorder.candidates
        assert len(candidates) == 1
        candidate = candidates[0]
        assert candidate.class_name == 'peak'
        assert candidate.timestamp_start == pytest.approx(2.0)
        assert candidate.timestamp_end == pytest.approx(6.0)
        assert candidate.suggestion_confidence == 1.0
        assert candidate.suggestion_generation == 7

        _, final_progress, completed, error = recorder.calls[-1]
        assert completed
        assert error is None
        assert final_progress.confidence_histogram[9] == 1
        assert sum(final_progress.confidence_histogram) == 1

    def test_boundary_adjustments_applied(self):
        """Test that calibrated offsets shift suggestion boundaries."""
        reference = ReferenceLabel('peak', PEAK_REFERENCE.series, 1.0, adjustments_begin=0.5, adjustments_end=-0.5)
        model = DtwSuggestionModel([reference], 1.0, scheduler=ChunkScheduler())
        dataset = make_stream_dataset([3, 3, 0, 1, 2, 1, 0, 3, 3, 3])

        candidate = run_suggestion(model, dataset, 0.0, 9.0).candidates[0]

        assert candidate.timestamp_start == pytest.approx(1.5)
        assert candidate.timestamp_end == pytest.approx(6.5)

    def test_chunk_size_does_not_change_results(self):
        """Test identical candidates for tiny and huge chunks."""
        dataset = make_background_dataset()

        small = DtwSuggestionModel([PEAK_REFERENCE], 1.0, scheduler=ChunkScheduler(), chunk_budget=7)
        large = DtwSuggestionModel([PEAK_REFERENCE], 1.0, scheduler=ChunkScheduler(), chunk_budget=1000)

        small_run = run_suggestion(small, dataset, 0.0, 199.0)
        large_run = run_suggestion(large, dataset, 0.0, 199.0)

        small_candidates = small_run.candidates
        large_candidates = large_run.candidates
        assert len(small_candidates) == len(large_candidates) == len(PATTERN_ONSETS)

        for a, b, onset in zip(small_candidates, large_candidates, PATTERN_ONSETS):
            assert a.timestamp_start == pytest.approx(b.timestamp_start)
            assert a.timestamp_end == pytest.approx(b.timestamp_end)
            assert a.suggestion_confidence == pytest.approx(b.suggestion_confidence)
            assert a.timestamp_start == pytest.approx(onset)
            assert a.timestamp_end == pytest.approx(onset + 4)

        assert small_run.calls[-1][1].confidence_histogram == large_run.calls[-1][1].confidence_histogram

    def test_callback_ordering(self):
        """Test monotonic progress and a single final completion."""
        model = DtwSuggestionModel([PEAK_REFERENCE], 1.0, scheduler=ChunkScheduler(), chunk_budget=7)
        recorder = run_suggestion(model, make_background_dataset(), 0.0, 199.0, generation=3)

        completed_flags = [call[2] for call in recorder.calls]
        assert completed_flags.count(True) == 1
        assert completed_flags[-1] is True
        assert len(recorder.calls) == math.ceil(200 / 7) + 1

        completed_times = [call[1].timestamp_completed for call in recorder.calls]
        assert completed_times == sorted(completed_times)
        assert completed_times[-1] == 199.0

        assert all(call[1].generation == 3 for call in recorder.calls)
        assert all(call[3] is None for call in recorder.calls)

    def test_each_chunk_is_a_separate_continuation(self):
        """Test that nothing beyond the first chunk runs inline."""
        scheduler = ChunkScheduler()
        model = DtwSuggestionModel([PEAK_REFERENCE], 1.0, scheduler=scheduler, chunk_budget=7)
        recorder = Recorder()

        model.compute_suggestion(make_background_dataset(), 0.0, 199.0, 0.5, 1, recorder)
        assert recorder.calls == []
        assert model.get_run_state(recorder) == SuggestionState.RUNNING

        scheduler.run_once()
        assert len(recorder.calls) == 1

        scheduler.run_until_idle()
        assert model.get_run_state(recorder) == SuggestionState.COMPLETED

    def test_snaps_range_to_grid(self):
        """Test that the requested range is snapped to the sample grid."""
        model = DtwSuggestionModel([PEAK_REFERENCE], 2.0, scheduler=ChunkScheduler())
        dataset = make_stream_dataset(np.full(20, 3.0), rate=2.0)

        recorder = run_suggestion(model, dataset, 1.3, 4.1)

        progress = recorder.calls[-1][1]
        assert progress.timestamp_start == 1.5
        assert progress.timestamp_end == 4.0

    def test_invalid_threshold(self):
        """Test that the confidence threshold must be in (0, 1]."""
        model = DtwSuggestionModel([PEAK_REFERENCE], 1.0, scheduler=ChunkScheduler())
        dataset = make_stream_dataset([0.0, 1.0, 2.0])

        with pytest.raises(ValueError):
            model.compute_suggestion(dataset, 0.0, 2.0, 0.0, 1, Recorder())

        with pytest.raises(ValueError):
            model.compute_suggestion(dataset, 0.0, 2.0, 1.5, 1, Recorder())

    def test_no_usable_references(self):
        """Test immediate completion without usable references."""
        scheduler = ChunkScheduler()
        disabled = ReferenceLabel('peak', PEAK_REFERENCE.series, None)
        model = DtwSuggestionModel([disabled], 1.0, scheduler=scheduler)
        recorder = Recorder()

        model.compute_suggestion(make_stream_dataset([0.0, 1.0, 2.0]), 0.0, 2.0, 0.5, 4, recorder)

        assert len(recorder.calls) == 1
        candidates, progress, completed, error = recorder.calls[0]
        assert candidates == []
        assert completed
        assert error is None
        assert progress.generation == 4
        assert scheduler.pending == 0

    def test_error_reported_through_callback(self):
        """Test that a failing chunk ends the run with an error message."""
        model = DtwSuggestionModel([PEAK_REFERENCE], 1.0, scheduler=ChunkScheduler())

        recorder = run_suggestion(model, TimeSeriesDataset(), 0.0, 10.0)

        assert len(recorder.calls) == 1
        candidates, _, completed, error = recorder.calls[0]
        assert candidates == []
        assert completed
        assert 'ValueError' in error
        assert model.get_run_state(recorder) == SuggestionState.FAILED


class TestCancellation:
    """Test cancellation and restarts."""

    def test_cancel_inside_callback(self):
        """Test that cancelling from a callback stops further callbacks."""
        model = DtwSuggestionModel([PEAK_REFERENCE], 1.0, scheduler=ChunkScheduler(), chunk_budget=7)

        def cancel_on_third(count):
            if count == 3:
                model.cancel_suggestion(recorder)

        recorder = Recorder(on_call=cancel_on_third)
        model.compute_suggestion(make_background_dataset(), 0.0, 199.0, 0.5, 1, recorder)
        model.scheduler.run_until_idle()

        assert len(recorder.calls) == 3
        assert not any(call[2] for call in recorder.calls)

    def test_cancel_between_chunks(self):
        """Test that cancelling between continuations stops the run."""
        scheduler = ChunkScheduler()
        model = DtwSuggestionModel([PEAK_REFERENCE], 1.0, scheduler=scheduler, chunk_budget=7)
        recorder = Recorder()

        model.compute_suggestion(make_background_dataset(), 0.0, 199.0, 0.5, 1, recorder)
        scheduler.run_once()
        scheduler.run_once()
        model.cancel_suggestion(recorder)

        assert scheduler.run_until_idle() == 0
        assert len(recorder.calls) == 2

    def test_cancel_unknown_token(self):
        """Test that cancelling an unknown token is a no-op."""
        model = DtwSuggestionModel([PEAK_REFERENCE], 1.0, scheduler=ChunkScheduler())
        model.cancel_suggestion('nothing-running')

    def test_same_token_restart(self):
        """Test that a new request on the same token supersedes the old one."""
        scheduler = ChunkScheduler()
        model = DtwSuggestionModel([PEAK_REFERENCE], 1.0, scheduler=scheduler, chunk_budget=7)
        dataset = make_background_dataset()
        recorder = Recorder()

        model.compute_suggestion(dataset, 0.0, 199.0, 0.5, 1, recorder, token='view')
        scheduler.run_once()
        assert recorder.calls[0][1].generation == 1

        model.compute_suggestion(dataset, 0.0, 199.0, 0.5, 2, recorder, token='view')
        scheduler.run_until_idle()

        later = recorder.calls[1:]
        assert all(call[1].generation == 2 for call in later)
        assert all(c.suggestion_generation == 2 for call in later for c in call[0])
        assert [call[2] for call in recorder.calls].count(True) == 1

    def test_independent_tokens(self):
        """Test that runs under different tokens do not interfere."""
        scheduler = ChunkScheduler()
        model = DtwSuggestionModel([PEAK_REFERENCE], 1.0, scheduler=scheduler, chunk_budget=7)
        dataset = make_background_dataset()
        first = Recorder()
        second = Recorder()

        model.compute_suggestion(dataset, 0.0, 199.0, 0.5, 1, first)
        model.compute_suggestion(dataset, 0.0, 199.0, 0.5, 1, second)
        scheduler.run_until_idle()

        assert first.calls[-1][2] and second.calls[-1][2]
        assert len(first.candidates) == len(second.candidates) == len(PATTERN_ONSETS)

    def test_dispose_stops_all_runs(self):
        """Test that dispose cancels every outstanding run."""
        scheduler = ChunkScheduler()
        model = DtwSuggestionModel([PEAK_REFERENCE], 1.0, scheduler=scheduler, chunk_budget=7)
        dataset = make_background_dataset()
        first = Recorder()
        second = Recorder()

        model.compute_suggestion(dataset, 0.0, 199.0, 0.5, 1, first)
        model.compute_suggestion(dataset, 0.0, 199.0, 0.5, 1, second)
        model.dispose()

        assert scheduler.run_until_idle() == 0
        assert first.calls == []
        assert second.calls == []
        assert model.get_run_state(first) == SuggestionState.IDLE
        assert model.get_run_state(second) == SuggestionState.IDLE

    def test_state_after_cancel(self):
        """Test that a cancelled run stays observable as CANCELLED."""
        scheduler = ChunkScheduler()
        model = DtwSuggestionModel([PEAK_REFERENCE], 1.0, scheduler=scheduler, chunk_budget=7)
        recorder = Recorder()

        model.compute_suggestion(make_background_dataset(), 0.0, 199.0, 0.5, 1, recorder)
        scheduler.run_once()
        model.cancel_suggestion(recorder)
        scheduler.run_until_idle()

        assert model.get_run_state(recorder) == SuggestionState.CANCELLED

        # Cancelling a finished run leaves its state alone
        other = run_suggestion(model, make_background_dataset(), 0.0, 199.0)
        model.cancel_suggestion(other)
        assert model.get_run_state(other) == SuggestionState.COMPLETED

    def test_raising_callback_fails_run(self, caplog):
        """Test that an exception from the callback stops the run without escaping the scheduler."""
        scheduler = ChunkScheduler()
        model = DtwSuggestionModel([PEAK_REFERENCE], 1.0, scheduler=scheduler, chunk_budget=7)

        def explode(count):
            raise RuntimeError("callback broke")

        recorder = Recorder(on_call=explode)
        model.compute_suggestion(make_background_dataset(), 0.0, 199.0, 0.5, 1, recorder)

        with caplog.at_level('ERROR'):
            scheduler.run_until_idle()

        assert len(recorder.calls) == 1
        assert scheduler.pending == 0
        assert model.get_run_state(recorder) == SuggestionState.FAILED
        assert 'callback raised' in caplog.text

    def test_restart_after_failed_callback(self):
        """Test that a token whose callback raised can start a fresh run."""
        scheduler = ChunkScheduler()
        model = DtwSuggestionModel([PEAK_REFERENCE], 1.0, scheduler=scheduler)
        dataset = make_stream_dataset([3, 3, 0, 1, 2, 1, 0, 3, 3, 3])
        failures = []

        def callback(candidates, progress, completed, error):
            if not failures:
                failures.append(progress)
                raise RuntimeError("first delivery fails")

        model.compute_suggestion(dataset, 0.0, 9.0, 0.5, 1, callback)
        scheduler.run_until_idle()
        assert model.get_run_state(callback) == SuggestionState.FAILED

        model.compute_suggestion(dataset, 0.0, 9.0, 0.5, 2, callback)
        scheduler.run_until_idle()
        assert model.get_run_state(callback) == SuggestionState.COMPLETED


class TestModelFactory:
    """Test building models from confirmed labels."""

    def test_from_config(self):
        """Test factory settings from the bundled configuration."""
        factory = SpringDtwSuggestionModelFactory.from_config(load_config())

        assert factory.samples_per_label == 100
        assert factory.k == 1
        assert factory.length_tolerance == (0.8, 1.2)
        assert factory.chunk_budget == 100
        assert factory.deployment_buffer_size == 30

    def test_no_labels(self):
        """Test that a model without labels completes immediately."""
        results = []
        factory = SpringDtwSuggestionModelFactory(scheduler=ChunkScheduler())
        dataset = make_stream_dataset([0.0, 1.0, 2.0])

        model = factory.build_model(dataset, [], lambda m, p, e: results.append((m, p, e)))

        assert results == [(model, 1.0, None)]
        assert model.references == []

        recorder = Recorder()
        model.compute_suggestion(dataset, 0.0, 2.0, 0.5, 1, recorder)
        assert len(recorder.calls) == 1
        assert recorder.calls[0][2]

    def test_build_error_through_callback(self):
        """Test that build failures are reported, or raised without a callback."""
        results = []
        factory = SpringDtwSuggestionModelFactory(scheduler=ChunkScheduler())
        labels = [Label(0.0, 2.0, 'a')]

        model = factory.build_model(TimeSeriesDataset(), labels, lambda m, p, e: results.append((m, p, e)))

        assert model is None
        assert len(results) == 1
        assert results[0][0] is None
        assert 'ValueError' in results[0][2]

        with pytest.raises(ValueError):
            factory.build_model(TimeSeriesDataset(), labels)

    def test_suggests_unlabeled_occurrences(self):
        """Test finding unlabeled events from two confirmed exemplars."""
        scheduler = ChunkScheduler()
        factory = SpringDtwSuggestionModelFactory(scheduler=scheduler, max_iterations=3, inner_iterations=3)
        dataset = make_event_dataset([(5.0, 2.0), (15.0, 2.4), (25.0, 2.2), (35.0, 2.1)])
        labels = [Label(5.0, 7.0, 'bump'), Label(15.0, 17.0, 'bump')]

        model = factory.build_model(dataset, labels)
        assert model.sample_rate == 50.0
        assert len(model.references) == 1

        recorder = run_suggestion(model, dataset, 20.0, 44.0, generation=2, threshold=0.1)

        candidates = sorted(recorder.candidates, key=lambda c: c.timestamp_start)
        assert len(candidates) == 2
        for candidate, onset in zip(candidates, (25.0, 35.0)):
            assert candidate.class_name == 'bump'
            assert candidate.timestamp_start == pytest.approx(onset, abs=0.3)
            assert candidate.timestamp_end == pytest.approx(onset + 2.0, abs=0.3)
            assert candidate.suggestion_confidence >= 0.1
            assert candidate.suggestion_generation == 2

        # A stricter threshold keeps a subset of the same matches
        strict = run_suggestion(model, dataset, 20.0, 44.0, generation=3, threshold=0.5).candidates
        loose_starts = [c.timestamp_start for c in candidates]
        assert len(strict) <= len(candidates)
        for candidate in strict:
            assert candidate.suggestion_confidence >= 0.5
            assert candidate.timestamp_start == pytest.approx(
                min(loose_starts, key=lambda s: abs(s - candidate.timestamp_start)))

    def test_range_past_recorded_data(self):
        """Test that samples outside the recorded data never match."""
        model = DtwSuggestionModel([PEAK_REFERENCE], 1.0, scheduler=ChunkScheduler())
        dataset = make_stream_dataset(np.full(10, 3.0))

        recorder = run_suggestion(model, dataset, 0.0, 40.0)

        assert recorder.candidates == []
        _, progress, completed, error = recorder.calls[-1]
        assert completed
        assert error is None
        assert sum(progress.confidence_histogram) == 0
        assert model.get_run_state(recorder) == SuggestionState.COMPLETED


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
