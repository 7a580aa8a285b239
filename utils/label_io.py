"""
Label store I/O: confirmed labels in, suggestions out.

Labels use the project file layout, either a bare list or a labeling
section {"labels": [...], "classes": [...]}, with camelCase fields:

    {"className": "wave", "timestampStart": 12.5, "timestampEnd": 14.0,
     "state": "confirmed_both"}
"""

import json
import logging
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from label_suggestion.labels import Label, LabelConfirmationState, SuggestionCandidate

logger = logging.getLogger(__name__)


def label_from_dict(data: Dict) -> Label:
    """Parse one label record."""
    state = data.get('state', LabelConfirmationState.CONFIRMED_BOTH.value)
    return Label(
        timestamp_start=float(data['timestampStart']),
        timestamp_end=float(data['timestampEnd']),
        class_name=str(data['className']),
        state=LabelConfirmationState(state),
        suggestion_confidence=data.get('suggestionConfidence'),
        suggestion_generation=data.get('suggestionGeneration')
    )


def label_to_dict(label) -> Dict:
    """Serialize a Label or SuggestionCandidate."""
    data = {
        'className': label.class_name,
        'timestampStart': label.timestamp_start,
        'timestampEnd': label.timestamp_end,
        'state': label.state.value,
    }
    if label.suggestion_confidence is not None:
        data['suggestionConfidence'] = label.suggestion_confidence
    if label.suggestion_generation is not None:
        data['suggestionGeneration'] = label.suggestion_generation
    return data


def load_labels(json_path, confirmed_only: bool = True) -> List[Label]:
    """
    Load labels from a JSON file.

    Args:
        json_path: Path to the labels file
        confirmed_only: Keep only labels confirmed at both ends

    Returns:
        Labels in file order

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValueError: If a record is malformed
    """
    json_path = Path(json_path)
    if not json_path.exists():
        raise FileNotFoundError(f"Labels file not found: {json_path}")

    with open(json_path, 'r') as f:
        data = json.load(f)

    records = data['labels'] if isinstance(data, dict) else data

    labels = []
    for i, record in enumerate(records):
        try:
            labels.append(label_from_dict(record))
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"Malformed label record {i} in {json_path}: {e}") from e

    if confirmed_only:
        confirmed = [l for l in labels if l.state == LabelConfirmationState.CONFIRMED_BOTH]
        if len(confirmed) < len(labels):
            logger.info(f"Ignoring {len(labels) - len(confirmed)} labels that are not fully confirmed")
        labels = confirmed

    logger.info(f"Loaded {len(labels)} labels ({len({l.class_name for l in labels})} classes) from {json_path}")

    return labels


def export_suggestions(
    candidates: Sequence[SuggestionCandidate],
    output_path,
    metadata: Optional[Dict] = None
) -> Path:
    """
    Write suggestions to JSON, ordered by start time.

    Returns:
        Path of the written file
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    ordered = sorted(candidates, key=lambda c: (c.timestamp_start, c.class_name))
    payload = dict(metadata or {})
    payload['total_suggestions'] = len(ordered)
    payload['labels'] = [label_to_dict(c) for c in ordered]

    with open(output_path, 'w') as f:
        json.dump(payload, f, indent=2)

    logger.info(f"Exported {len(ordered)} suggestions to {output_path}")

    return output_path
