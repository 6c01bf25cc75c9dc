"""
Command-line interface for training and running CRF segmentation models.

Usage:

    # Train (80/20 split, validation report, model saved to MODEL)
    chaincrf train samples.json model.json

    # Custom hyperparameters
    chaincrf train samples.json model.json --learning-rate 0.5 --max-iterations 200

    # Segment text
    chaincrf segment model.json "wasiypi" "rikuchkani"

    # Evaluate on held-out samples
    chaincrf evaluate model.json test.json

    # Show model information
    chaincrf info model.json

    # 5-fold cross-validation
    chaincrf cv samples.json --folds 5
"""

import argparse
import json
import logging
import os
import sys

from .errors import CRFError
from .evaluation import print_evaluation_summary
from .models import create_config
from .segmenter import CRFSegmenter
from .training import load_samples, run_kfold_cv, train_pipeline, validate_samples

logger = logging.getLogger(__name__)


def setup_logging(verbose=False):
    """Configure logging based on verbosity level."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s %(levelname)-8s %(message)s',
        datefmt='%H:%M:%S'
    )


def _config_from_args(args):
    return create_config(
        learning_rate=args.learning_rate,
        max_iterations=args.max_iterations,
        regularization=args.regularization,
        tolerance=args.tolerance,
    )


def cmd_train(args):
    """Train a segmenter from a JSON sample file and save it."""
    if not os.path.exists(args.data):
        print(f"ERROR: Sample file not found: {args.data}")
        return 1

    print("=" * 60)
    print("CRF Segmentation Training")
    print("=" * 60)

    config = _config_from_args(args)
    print(f"Configuration: {json.dumps(config._asdict())}")

    result = train_pipeline(
        args.data,
        args.model,
        config=config,
        window_size=args.window_size,
        train_ratio=args.train_ratio,
        random_state=args.seed,
    )

    history = result["history"]
    print("-" * 60)
    print("Training Results:")
    print(f"  Model path:      {args.model}")
    print(f"  Train samples:   {result['train_size']:,}")
    print(f"  Val samples:     {result['val_size']:,}")
    print(f"  Features:        {history['num_features']:,}")
    print(f"  Labels:          {history['num_labels']:,}")
    print(f"  Iterations:      {history['iterations']}")
    print(f"  Converged:       {history['converged']}")
    print(f"  Log-likelihood:  {history['log_likelihood'][-1]:.6f}")
    print(f"  Training time:   {result['training_time']:.2f}s")
    return 0


def cmd_segment(args):
    """Segment one or more texts with a saved model."""
    segmenter = CRFSegmenter.from_file(args.model)

    for text in args.text:
        segments = segmenter.segment(text)
        if args.json:
            print(json.dumps({"text": text, "segments": segments}, ensure_ascii=False))
        else:
            print(args.separator.join(segments))
    return 0


def cmd_evaluate(args):
    """Evaluate a saved model on a JSON sample file."""
    segmenter = CRFSegmenter.from_file(args.model)
    samples = load_samples(args.data)
    validate_samples(samples)

    results = segmenter.evaluate(samples)
    print_evaluation_summary(results, name=os.path.basename(args.model))

    if args.show_errors:
        for record in results["per_text"]:
            if not record["exact_match"]:
                print(f"  {record['text']}: gold={record['gold']} predicted={record['prediction']}")
    return 0


def cmd_info(args):
    """Print model information as JSON."""
    segmenter = CRFSegmenter.from_file(args.model)
    print(json.dumps(segmenter.model_info(), indent=2, ensure_ascii=False))
    return 0


def cmd_cv(args):
    """Run k-fold cross-validation on a sample file."""
    samples = load_samples(args.data)
    validate_samples(samples)

    run_kfold_cv(
        samples,
        n_folds=args.folds,
        config=_config_from_args(args),
        window_size=args.window_size,
        random_state=args.seed,
    )
    return 0


def _add_training_options(parser):
    defaults = create_config()
    parser.add_argument('--learning-rate', type=float, default=defaults.learning_rate,
                        help=f'Gradient ascent step size (default: {defaults.learning_rate})')
    parser.add_argument('--max-iterations', type=int, default=defaults.max_iterations,
                        help=f'Iteration cap (default: {defaults.max_iterations})')
    parser.add_argument('--regularization', type=float, default=defaults.regularization,
                        help=f'L2 coefficient (default: {defaults.regularization})')
    parser.add_argument('--tolerance', type=float, default=defaults.tolerance,
                        help=f'Convergence tolerance on log-likelihood (default: {defaults.tolerance})')
    parser.add_argument('--window-size', type=int, default=3,
                        help='Feature context window (default: 3)')
    parser.add_argument('--seed', type=int, default=42,
                        help='Random seed for splitting (default: 42)')


def build_parser():
    parser = argparse.ArgumentParser(
        prog='chaincrf',
        description="Linear-chain CRF segmentation training and inference",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )

    parser.add_argument('-v', '--verbose', action='store_true',
                        help='Enable verbose output')

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    train_parser = subparsers.add_parser('train', help='Train a segmentation model')
    train_parser.add_argument('data', help='JSON file of {"text", "segments"} samples')
    train_parser.add_argument('model', help='Output model path')
    train_parser.add_argument('--train-ratio', type=float, default=0.8,
                              help='Fraction of samples used for training (default: 0.8)')
    _add_training_options(train_parser)

    segment_parser = subparsers.add_parser('segment', help='Segment text')
    segment_parser.add_argument('model', help='Path to model file')
    segment_parser.add_argument('text', nargs='+', help='Text to segment')
    segment_parser.add_argument('-s', '--separator', default=' ',
                                help='Separator printed between segments (default: space)')
    segment_parser.add_argument('--json', action='store_true',
                                help='Print one JSON object per text')

    evaluate_parser = subparsers.add_parser('evaluate', help='Evaluate a model on samples')
    evaluate_parser.add_argument('model', help='Path to model file')
    evaluate_parser.add_argument('data', help='JSON file of samples')
    evaluate_parser.add_argument('--show-errors', action='store_true',
                                 help='List samples that were not segmented exactly')

    info_parser = subparsers.add_parser('info', help='Show model information')
    info_parser.add_argument('model', help='Path to model file')

    cv_parser = subparsers.add_parser('cv', help='Run k-fold cross-validation')
    cv_parser.add_argument('data', help='JSON file of samples')
    cv_parser.add_argument('-k', '--folds', type=int, default=5,
                           help='Number of folds (default: 5)')
    _add_training_options(cv_parser)

    return parser


COMMANDS = {
    'train': cmd_train,
    'segment': cmd_segment,
    'evaluate': cmd_evaluate,
    'info': cmd_info,
    'cv': cmd_cv,
}


def main(argv=None):
    """Main entry point for CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    setup_logging(args.verbose)

    try:
        return COMMANDS[args.command](args)
    except (CRFError, FileNotFoundError, ValueError) as exc:
        logger.debug("Command %s failed", args.command, exc_info=True)
        print(f"ERROR: {exc}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
