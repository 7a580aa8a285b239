"""
Multi-track time series dataset and window resampling.

A dataset is a set of tracks (sensor channels, video-derived features)
aligned on one reference timeline. Matching works on a single multivariate
stream, so resampling evaluates every track on a common, evenly spaced time
grid and concatenates their dimensions.

Engineering approach:
- Linear interpolation inside each track's coverage
- NaN outside a track's coverage (excluded later by the distance metric)
- Grid end points are inclusive: sample i of n lies at
  t0 + i / (n - 1) * (t1 - t0)
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

import numpy as np
from scipy.interpolate import interp1d

logger = logging.getLogger(__name__)


@dataclass
class TimeSeriesTrack:
    """
    One track of a dataset.

    Attributes:
        name: Track name (e.g. sensor or feature file name)
        timestamps: Sample times in seconds on the reference timeline, shape (n,)
        values: Sample values, shape (n, dim)
    """
    name: str
    timestamps: np.ndarray
    values: np.ndarray

    def __post_init__(self):
        self.timestamps = np.asarray(self.timestamps, dtype=float)
        self.values = np.asarray(self.values, dtype=float)
        if self.values.ndim == 1:
            self.values = self.values[:, np.newaxis]

        if len(self.timestamps) < 2:
            raise ValueError(f"Track '{self.name}' needs at least 2 samples")
        if len(self.timestamps) != len(self.values):
            raise ValueError(
                f"Track '{self.name}': {len(self.timestamps)} timestamps "
                f"but {len(self.values)} value rows"
            )
        if np.any(np.diff(self.timestamps) <= 0):
            raise ValueError(f"Track '{self.name}': timestamps must be strictly increasing")

        self._interpolator = interp1d(
            self.timestamps,
            self.values,
            axis=0,
            kind='linear',
            bounds_error=False,
            fill_value=np.nan,
            assume_sorted=True
        )

    @property
    def dimension(self) -> int:
        return self.values.shape[1]

    @property
    def start_time(self) -> float:
        return float(self.timestamps[0])

    @property
    def end_time(self) -> float:
        return float(self.timestamps[-1])

    def sample(self, times: np.ndarray) -> np.ndarray:
        """Values at arbitrary times, shape (len(times), dim)."""
        return np.asarray(self._interpolator(times), dtype=float).reshape(len(times), self.dimension)


@dataclass
class TimeSeriesDataset:
    """Tracks sharing one reference timeline."""
    tracks: List[TimeSeriesTrack] = field(default_factory=list)

    @property
    def dimension(self) -> int:
        return sum(track.dimension for track in self.tracks)

    @property
    def start_time(self) -> float:
        return min(track.start_time for track in self.tracks)

    @property
    def end_time(self) -> float:
        return max(track.end_time for track in self.tracks)

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time

    def add_track(self, track: TimeSeriesTrack):
        self.tracks.append(track)
        logger.debug(f"Added track '{track.name}' ({track.dimension} dims, {len(track.timestamps)} samples)")


def grid_sample_count(duration: float, sample_rate: float) -> int:
    """
    Number of grid points covering a span at a sample rate, both ends included.

    round(sample_rate * duration) + 1, so consecutive points are 1/sample_rate apart
    whenever sample_rate * duration is a whole number.
    """
    return int(round(sample_rate * duration)) + 1


def resample_window(
    dataset: TimeSeriesDataset,
    timestamp_start: float,
    timestamp_end: float,
    sample_count: int
) -> np.ndarray:
    """
    Resample a window of the dataset into evenly spaced multivariate samples.

    Args:
        dataset: Dataset to read (not modified)
        timestamp_start: Window start in seconds
        timestamp_end: Window end in seconds
        sample_count: Number of samples to return

    Returns:
        Array of shape (sample_count, dataset.dimension)

    Raises:
        ValueError: If sample_count < 1 or the dataset has no tracks
    """
    if sample_count < 1:
        raise ValueError(f"Invalid input: sample_count must be >= 1, got {sample_count}")
    if not dataset.tracks:
        raise ValueError("Invalid input: dataset has no tracks")

    times = np.linspace(timestamp_start, timestamp_end, sample_count)
    columns = [track.sample(times) for track in dataset.tracks]
    return np.concatenate(columns, axis=1)


def load_track_csv(csv_path, name: Optional[str] = None) -> TimeSeriesTrack:
    """
    Load a track from CSV.

    Expected format: a header row, then one row per sample with the
    timestamp (seconds) in the first column and one column per dimension.

    Raises:
        FileNotFoundError: If the CSV doesn't exist
        ValueError: If the file has no value columns
    """
    csv_path = Path(csv_path)
    if not csv_path.exists():
        raise FileNotFoundError(f"Track file not found: {csv_path}")

    data = np.loadtxt(csv_path, delimiter=',', skiprows=1, ndmin=2)
    if data.shape[1] < 2:
        raise ValueError(f"Track file {csv_path} has no value columns")

    track = TimeSeriesTrack(
        name=name or csv_path.stem,
        timestamps=data[:, 0],
        values=data[:, 1:]
    )

    logger.info(
        f"Loaded track '{track.name}': {len(track.timestamps)} samples, "
        f"{track.dimension} dims, {track.start_time:.2f}-{track.end_time:.2f}s"
    )

    return track


def load_dataset(csv_paths: List) -> TimeSeriesDataset:
    """Load several CSV tracks into one dataset."""
    dataset = TimeSeriesDataset()
    for path in csv_paths:
        dataset.add_track(load_track_csv(path))
    return dataset
