"""
Interface definitions for labeling suggestion models.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Hashable, List, Optional, Sequence

from .labels import Label, SuggestionCandidate, SuggestionProgress

# callback(candidates, progress, completed, error)
LabelingSuggestionCallback = Callable[
    [List[SuggestionCandidate], SuggestionProgress, bool, Optional[str]], None
]

# callback(model, progress, error)
ModelBuildCallback = Callable[[Optional['LabelingSuggestionModel'], float, Optional[str]], None]


class LabelingSuggestionModel(ABC):
    """A built model that suggests labels over time ranges of a dataset."""

    @abstractmethod
    def compute_suggestion(
        self,
        dataset: Any,
        timestamp_start: float,
        timestamp_end: float,
        confidence_threshold: float,
        generation: int,
        callback: LabelingSuggestionCallback,
        token: Optional[Hashable] = None
    ) -> None:
        """Start a cooperative suggestion run; results arrive through callback."""
        pass

    @abstractmethod
    def cancel_suggestion(self, token: Hashable) -> None:
        """Stop the run registered under token at its next chunk boundary."""
        pass

    @abstractmethod
    def get_deployment_code(self, platform: str) -> str:
        """Source code of a standalone matcher for a target platform."""
        pass

    @abstractmethod
    def dispose(self) -> None:
        """Cancel every run owned by the model."""
        pass


class LabelingSuggestionModelFactory(ABC):
    """Builds suggestion models from confirmed labels."""

    @abstractmethod
    def build_model(
        self,
        dataset: Any,
        labels: Sequence[Label],
        callback: Optional[ModelBuildCallback] = None
    ) -> Optional[LabelingSuggestionModel]:
        """Build a model; also reported through callback(model, progress, error)."""
        pass
