"""
Label suggestion module: confirmed labels -> suggested labels.

This module turns a user's confirmed labels into suggestions for the rest
of a recording:
1. Build one DTW prototype per class from the confirmed exemplars
2. Calibrate systematic boundary offsets of the matcher per class
3. Scan requested time ranges with streaming SPRING, chunk by chunk
4. Report confidence-scored candidates through callbacks, cancellable
   between chunks

Engineering approach:
- Cooperative scheduling through an explicit continuation queue
- One matcher per run, so concurrent runs never share state
- Generation numbers are passed through untouched; callers discard
  results of superseded generations
"""

from .labels import (
    Label,
    LabelConfirmationState,
    ReferenceLabel,
    SuggestionCandidate,
    SuggestionProgress,
    update_label_confirmation_state
)
from .reference_builder import (
    compute_sample_rate,
    estimate_boundary_offsets,
    get_average_labels_per_class
)
from .scheduler import ChunkScheduler
from .suggestion_model import (
    DtwSuggestionModel,
    SpringDtwSuggestionModelFactory,
    SuggestionState,
    get_likelihood,
    get_threshold_distance
)
from .deployment import get_deployment_code

__all__ = [
    'Label',
    'LabelConfirmationState',
    'ReferenceLabel',
    'SuggestionCandidate',
    'SuggestionProgress',
    'update_label_confirmation_state',
    'compute_sample_rate',
    'estimate_boundary_offsets',
    'get_average_labels_per_class',
    'ChunkScheduler',
    'DtwSuggestionModel',
    'SpringDtwSuggestionModelFactory',
    'SuggestionState',
    'get_likelihood',
    'get_threshold_distance',
    'get_deployment_code',
]
