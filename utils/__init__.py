"""Shared utilities: configuration, dataset resampling and label I/O."""

from .config_loader import load_config, get_nested_config
from .dataset import TimeSeriesTrack, TimeSeriesDataset, resample_window, load_dataset

__all__ = [
    'load_config',
    'get_nested_config',
    'TimeSeriesTrack',
    'TimeSeriesDataset',
    'resample_window',
    'load_dataset',
]
