"""
Label and suggestion data structures.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

import numpy as np


class LabelConfirmationState(Enum):
    """How much of a label the user has confirmed."""
    UNCONFIRMED = "unconfirmed"
    CONFIRMED_START = "confirmed_start"
    CONFIRMED_END = "confirmed_end"
    CONFIRMED_BOTH = "confirmed_both"


@dataclass
class Label:
    """
    A class span on the reference timeline.

    Attributes:
        timestamp_start: Start time in seconds
        timestamp_end: End time in seconds
        class_name: Label class
        state: Confirmation state
        suggestion_confidence: Confidence if the label came from a suggestion
        suggestion_generation: Generation of the suggestion request
    """
    timestamp_start: float
    timestamp_end: float
    class_name: str
    state: LabelConfirmationState = LabelConfirmationState.CONFIRMED_BOTH
    suggestion_confidence: Optional[float] = None
    suggestion_generation: Optional[int] = None

    @property
    def duration(self) -> float:
        return self.timestamp_end - self.timestamp_start


@dataclass(frozen=True)
class SuggestionCandidate:
    """A suggested label produced by a suggestion run."""
    timestamp_start: float
    timestamp_end: float
    class_name: str
    suggestion_confidence: float
    suggestion_generation: int
    state: LabelConfirmationState = LabelConfirmationState.UNCONFIRMED

    @property
    def duration(self) -> float:
        return self.timestamp_end - self.timestamp_start

    def to_label(self) -> Label:
        return Label(
            timestamp_start=self.timestamp_start,
            timestamp_end=self.timestamp_end,
            class_name=self.class_name,
            state=self.state,
            suggestion_confidence=self.suggestion_confidence,
            suggestion_generation=self.suggestion_generation
        )


@dataclass
class SuggestionProgress:
    """
    How far a suggestion run has advanced.

    Attributes:
        timestamp_start: Start of the requested range (snapped to the sample grid)
        timestamp_end: End of the requested range (snapped)
        timestamp_completed: Time up to which the range has been scanned
        generation: Generation of the request
        confidence_histogram: Counts of reported match confidences (10 buckets)
    """
    timestamp_start: float
    timestamp_end: float
    timestamp_completed: float
    generation: int
    confidence_histogram: Optional[List[int]] = None


@dataclass(frozen=True)
class ReferenceLabel:
    """
    Class prototype used for matching.

    Attributes:
        class_name: Label class
        series: Centroid sequence, shape (length, dim)
        variance: Spread of the class around the centroid in DTW distance
                  units (None = unusable, excluded from matching)
        adjustments_begin: Mean (matched start - label start) in seconds
        adjustments_end: Mean (matched end - label end) in seconds
    """
    class_name: str
    series: np.ndarray = field(compare=False)
    variance: Optional[float]
    adjustments_begin: float = 0.0
    adjustments_end: float = 0.0

    @property
    def length(self) -> int:
        return len(self.series)


def update_label_confirmation_state(label: Label, endpoint: str) -> LabelConfirmationState:
    """
    Confirmation state after the user confirms one end of a label.

    Args:
        label: Label being edited
        endpoint: 'start', 'end' or 'both'

    Returns:
        New confirmation state (unchanged for other endpoints)
    """
    state = label.state
    if endpoint == 'start':
        if state == LabelConfirmationState.UNCONFIRMED:
            return LabelConfirmationState.CONFIRMED_START
        if state == LabelConfirmationState.CONFIRMED_END:
            return LabelConfirmationState.CONFIRMED_BOTH
    elif endpoint == 'end':
        if state == LabelConfirmationState.UNCONFIRMED:
            return LabelConfirmationState.CONFIRMED_END
        if state == LabelConfirmationState.CONFIRMED_START:
            return LabelConfirmationState.CONFIRMED_BOTH
    elif endpoint == 'both':
        return LabelConfirmationState.CONFIRMED_BOTH
    return state
