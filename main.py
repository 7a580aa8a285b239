#!/usr/bin/env python3
"""
Command-line entry point for DTW label suggestion.

This script runs the suggestion pipeline on a recording:
1. Load dataset tracks (CSV) and confirmed labels (JSON)
2. Build per-class DTW prototypes from the confirmed labels
3. Scan a time range with streaming SPRING, chunk by chunk
4. Export the suggested labels (and optionally device code)

Usage:
    python main.py --tracks accel.csv gyro.csv --labels labels.json --output results/
"""

import argparse
import logging
from pathlib import Path
import sys
from typing import Dict, List

from label_suggestion import ChunkScheduler, SpringDtwSuggestionModelFactory
from label_suggestion.deployment import SUPPORTED_PLATFORMS
from utils.config_loader import get_nested_config, load_config
from utils.dataset import load_dataset
from utils.label_io import export_suggestions, load_labels

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler('label_suggestion.log'),
        logging.StreamHandler(sys.stdout)
    ]
)

logger = logging.getLogger(__name__)


def run_suggestion(
    track_paths: List[str],
    labels_path: str,
    config: Dict,
    output_dir: str,
    timestamp_start: float = None,
    timestamp_end: float = None,
    deploy_platform: str = None
) -> Dict:
    """
    Build a model from confirmed labels and suggest labels over a range.

    Args:
        track_paths: CSV files, one per dataset track
        labels_path: JSON file with confirmed labels
        config: Configuration dictionary
        output_dir: Directory for output files
        timestamp_start: Range start (dataset start if None)
        timestamp_end: Range end (dataset end if None)
        deploy_platform: Also write device code for this platform

    Returns:
        Dictionary with output paths and counts

    Raises:
        RuntimeError: If the suggestion run reports an error
    """
    output_path = Path(output_dir)
    output_path.mkdir(parents=True, exist_ok=True)

    dataset = load_dataset(track_paths)
    labels = load_labels(labels_path)

    scheduler = ChunkScheduler()
    factory = SpringDtwSuggestionModelFactory.from_config(config, scheduler=scheduler)
    model = factory.build_model(dataset, labels)

    if timestamp_start is None:
        timestamp_start = dataset.start_time
    if timestamp_end is None:
        timestamp_end = dataset.end_time

    collected = []
    errors = []

    def on_chunk(candidates, progress, completed, error):
        collected.extend(candidates)
        if error is not None:
            errors.append(error)
        elif not completed:
            logger.info(
                f"Progress: {progress.timestamp_completed:.1f}/{progress.timestamp_end:.1f}s, "
                f"{len(collected)} suggestions"
            )

    model.compute_suggestion(
        dataset,
        timestamp_start,
        timestamp_end,
        get_nested_config(config, 'suggestion.confidence_threshold', 0.5),
        generation=1,
        callback=on_chunk
    )
    scheduler.run_until_idle()
    model.dispose()

    if errors:
        raise RuntimeError(f"Suggestion run failed: {errors[0]}")

    suggestions_path = export_suggestions(
        collected,
        output_path / 'suggestions.json',
        metadata={
            'source_labels': str(Path(labels_path).name),
            'tracks': [str(Path(p).name) for p in track_paths],
            'timestamp_start': timestamp_start,
            'timestamp_end': timestamp_end,
            'sample_rate': model.sample_rate,
            'classes': sorted({r.class_name for r in model.references}),
        }
    )

    result = {
        'suggestions_path': str(suggestions_path),
        'num_suggestions': len(collected),
    }

    if deploy_platform:
        extension = '.ino' if deploy_platform == 'arduino' else '.py'
        code_path = output_path / f"matcher_{deploy_platform}{extension}"
        code_path.write_text(model.get_deployment_code(deploy_platform))
        logger.info(f"Deployment code written to {code_path}")
        result['deployment_path'] = str(code_path)

    return result


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description='DTW label suggestion for time-series recordings',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Suggest labels over the whole recording
  python main.py --tracks accel.csv --labels labels.json --output results/

  # Restrict to a time range and lower the confidence threshold
  python main.py --tracks accel.csv --labels labels.json --start 60 --end 120 --threshold 0.3

  # Also generate Arduino code for the learned prototypes
  python main.py --tracks accel.csv --labels labels.json --deploy arduino
        """
    )

    parser.add_argument(
        '--tracks',
        type=str,
        nargs='+',
        required=True,
        help='CSV track files (timestamp column first, header row)'
    )

    parser.add_argument(
        '--labels',
        type=str,
        required=True,
        help='JSON file with confirmed labels'
    )

    parser.add_argument(
        '--config',
        type=str,
        default=None,
        help='Path to configuration YAML file (default: configs/suggestion.yaml)'
    )

    parser.add_argument(
        '--output',
        type=str,
        default='data/outputs',
        help='Output directory for results (default: data/outputs)'
    )

    parser.add_argument('--start', type=float, default=None, help='Range start in seconds')
    parser.add_argument('--end', type=float, default=None, help='Range end in seconds')

    parser.add_argument(
        '--threshold',
        type=float,
        default=None,
        help='Confidence threshold in (0, 1] (overrides config)'
    )

    parser.add_argument(
        '--deploy',
        type=str,
        choices=SUPPORTED_PLATFORMS,
        default=None,
        help='Also generate device code for this platform'
    )

    args = parser.parse_args()

    for path in args.tracks + [args.labels]:
        if not Path(path).exists():
            logger.error(f"Input file not found: {path}")
            sys.exit(1)

    if args.config is not None and not Path(args.config).exists():
        logger.error(f"Config file not found: {args.config}")
        sys.exit(1)

    overrides = {}
    if args.threshold is not None:
        overrides = {'suggestion': {'confidence_threshold': args.threshold}}
    config = load_config(args.config, overrides=overrides)

    try:
        result = run_suggestion(
            track_paths=args.tracks,
            labels_path=args.labels,
            config=config,
            output_dir=args.output,
            timestamp_start=args.start,
            timestamp_end=args.end,
            deploy_platform=args.deploy
        )

        logger.info(f"Done: {result['num_suggestions']} suggestions -> {result['suggestions_path']}")
        sys.exit(0)

    except KeyboardInterrupt:
        logger.warning("Interrupted by user")
        sys.exit(1)

    except Exception as e:
        logger.error(f"Suggestion failed: {type(e).__name__}: {e}")
        logger.exception("Full traceback:")
        sys.exit(1)


if __name__ == '__main__':
    main()
