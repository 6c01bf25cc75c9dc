"""
Training utilities for CRF segmentation models.

Includes:
- Sample loading and validation
- Train/validation splitting
- Checkpoint management
- Regularization tuning
- Cross-validation
- The end-to-end training pipeline
"""

import hashlib
import json
import logging
import os
import time
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
from sklearn.model_selection import KFold, train_test_split

from .errors import EmptyTrainingSetError, InvalidSampleError, MalformedModelDataError
from .evaluation import print_cv_summary, print_evaluation_summary
from .models import CRFConfig, create_config
from .preprocessing import normalize_text
from .segmenter import CRFSegmenter, sample_fields

logger = logging.getLogger(__name__)


# ==============================================================================
# Samples
# ==============================================================================

def load_samples(path: str) -> List[Dict[str, Any]]:
    """
    Load training samples from a JSON file.

    The file holds a list of ``{"text": ..., "segments": [...]}`` objects.

    Raises:
        FileNotFoundError: If the file doesn't exist
        InvalidSampleError: If the file is not a JSON list
    """
    if not os.path.exists(path):
        raise FileNotFoundError(f"Sample file not found: {path}")

    with open(path, "r", encoding="utf-8") as f:
        try:
            samples = json.load(f)
        except json.JSONDecodeError as exc:
            raise InvalidSampleError(f"Sample file is not valid JSON: {exc}") from exc

    if not isinstance(samples, list):
        raise InvalidSampleError("Sample file must contain a JSON list")

    logger.info("Loaded %d samples from %s", len(samples), path)
    return samples


def validate_samples(samples: List) -> List[str]:
    """
    Check sample structure and that segments reconstruct their text.

    Structural problems raise; text that the segments don't reconstruct is
    reported as a warning and returned.

    Returns:
        List of warning messages

    Raises:
        InvalidSampleError: If samples is not a list or a sample lacks
            its fields
    """
    if not isinstance(samples, list):
        raise InvalidSampleError("Samples must be a list")

    warnings = []
    for i, sample in enumerate(samples):
        try:
            text, segments = sample_fields(sample)
        except InvalidSampleError as exc:
            raise InvalidSampleError(f"Sample {i}: {exc}") from exc

        reconstructed = normalize_text("".join(segments))
        if reconstructed != normalize_text(text):
            message = f"Sample {i}: segments {reconstructed!r} don't match text {text!r}"
            logger.warning(message)
            warnings.append(message)

    return warnings


def split_samples(
    samples: List,
    train_ratio: float = 0.8,
    random_state: Optional[int] = 42
) -> Tuple[List, List]:
    """
    Shuffle and split samples into training and validation sets.

    Returns:
        Tuple of (train_samples, validation_samples)
    """
    if not 0 < train_ratio <= 1:
        raise ValueError(f"train_ratio must be in (0, 1], got {train_ratio}")
    if train_ratio == 1 or len(samples) < 2:
        return list(samples), []

    train, val = train_test_split(
        list(samples), train_size=train_ratio, shuffle=True, random_state=random_state
    )
    return train, val


# ==============================================================================
# Checkpoint Management
# ==============================================================================

def generate_model_id(**params) -> str:
    """Generate unique model ID from hyperparameters."""
    param_str = json.dumps(params, sort_keys=True)
    return hashlib.md5(param_str.encode()).hexdigest()[:16]


def save_checkpoint(
    segmenter: CRFSegmenter,
    model_id: str,
    save_dir: str,
    extra_data: Dict = None
) -> str:
    """
    Save a trained segmenter under save_dir/model_id.

    Returns:
        Path of the checkpoint directory
    """
    model_path = os.path.join(save_dir, model_id)
    os.makedirs(model_path, exist_ok=True)

    segmenter.save(os.path.join(model_path, "model.json"))

    if extra_data:
        with open(os.path.join(model_path, "extra.json"), "w", encoding="utf-8") as f:
            json.dump(extra_data, f)

    logger.info("Saved checkpoint to %s", model_path)
    return model_path


def load_checkpoint(
    model_id: str,
    save_dir: str
) -> Optional[Dict]:
    """
    Load a checkpoint written by save_checkpoint().

    Returns:
        Dict with the segmenter and any extra data, or None if the
        checkpoint doesn't exist
    """
    model_path = os.path.join(save_dir, model_id)

    if not os.path.exists(model_path):
        return None

    segmenter = CRFSegmenter.from_file(os.path.join(model_path, "model.json"))

    extra = {}
    extra_path = os.path.join(model_path, "extra.json")
    if os.path.exists(extra_path):
        with open(extra_path, "r", encoding="utf-8") as f:
            extra = json.load(f)
        if not isinstance(extra, dict):
            raise MalformedModelDataError(f"Checkpoint extra data must be an object: {extra_path}")

    return {"segmenter": segmenter, **extra}


# ==============================================================================
# Regularization Tuning
# ==============================================================================

def tune_regularization(
    train_samples: List,
    val_samples: List,
    config: Optional[CRFConfig] = None,
    values: List[float] = None,
    window_size: int = 3
) -> Tuple[float, float]:
    """
    Pick the regularization coefficient with the best validation boundary F1.

    Args:
        train_samples: Training samples
        val_samples: Validation samples
        config: Base hyperparameters
        values: Regularization values to try
        window_size: Feature window size

    Returns:
        Tuple of (best_regularization, best_f1)
    """
    if values is None:
        values = [0.0, 0.001, 0.01, 0.1, 1.0]
    if config is None:
        config = create_config()

    best_reg = config.regularization
    best_f1 = -1.0

    for reg in values:
        segmenter = CRFSegmenter(config._replace(regularization=float(reg)), window_size=window_size)
        segmenter.train(train_samples)
        f1 = segmenter.evaluate(val_samples)["boundary_metrics"]["f1"]
        logger.info("regularization=%g: boundary F1=%.4f", reg, f1)

        if f1 > best_f1:
            best_f1 = f1
            best_reg = float(reg)

    return best_reg, best_f1


# ==============================================================================
# Cross-Validation
# ==============================================================================

def run_kfold_cv(
    samples: List,
    n_folds: int = 5,
    config: Optional[CRFConfig] = None,
    window_size: int = 3,
    random_state: int = 42,
    verbose: bool = True
) -> List[Dict]:
    """
    Run k-fold cross-validation.

    Args:
        samples: Segmented samples
        n_folds: Number of CV folds
        config: Hyperparameters for every fold
        window_size: Feature window size
        random_state: Random seed
        verbose: Print per-fold and summary results

    Returns:
        List of fold result dicts
    """
    if len(samples) < n_folds:
        raise EmptyTrainingSetError(
            f"Need at least {n_folds} samples for {n_folds}-fold CV, got {len(samples)}"
        )

    kfold = KFold(n_splits=n_folds, shuffle=True, random_state=random_state)
    indices = np.arange(len(samples))

    fold_results = []

    for fold_idx, (train_idx, val_idx) in enumerate(kfold.split(indices), 1):
        logger.info("Fold %d/%d", fold_idx, n_folds)

        train_samples = [samples[i] for i in train_idx]
        val_samples = [samples[i] for i in val_idx]

        segmenter = CRFSegmenter(config, window_size=window_size)
        history = segmenter.train(train_samples)
        results = segmenter.evaluate(val_samples)

        fold_results.append({
            "fold": fold_idx,
            "train_size": len(train_idx),
            "val_size": len(val_idx),
            "iterations": history["iterations"],
            "final_log_likelihood": history["log_likelihood"][-1],
            "exact_match_rate": results["exact_match_rate"],
            "macro_f1": results["macro_f1"],
            "label_accuracy": results["label_accuracy"],
            "boundary_metrics": results["boundary_metrics"],
            "skipped": results["skipped"],
        })

    if verbose:
        print_cv_summary(fold_results, name="CRF segmenter")

    return fold_results


# ==============================================================================
# Pipeline
# ==============================================================================

def train_pipeline(
    data_path: str,
    model_path: str,
    config: Optional[CRFConfig] = None,
    window_size: int = 3,
    train_ratio: float = 0.8,
    random_state: Optional[int] = 42,
    verbose: bool = True
) -> Dict[str, Any]:
    """
    Load samples, split, train, evaluate on the held-out part and save.

    Returns:
        Dict with training history, validation results (or None) and
        timing
    """
    samples = load_samples(data_path)
    validate_samples(samples)

    train_samples, val_samples = split_samples(samples, train_ratio, random_state)
    logger.info("Training samples: %d, validation samples: %d", len(train_samples), len(val_samples))

    segmenter = CRFSegmenter(config, window_size=window_size)
    start = time.time()
    history = segmenter.train(train_samples)
    training_time = time.time() - start
    logger.info("Training completed in %.2f seconds", training_time)

    results = None
    if val_samples:
        results = segmenter.evaluate(val_samples)
        if verbose:
            print_evaluation_summary(results, name="CRF segmenter (validation)")

    segmenter.save(model_path)

    return {
        "segmenter": segmenter,
        "history": history,
        "validation": results,
        "training_time": training_time,
        "train_size": len(train_samples),
        "val_size": len(val_samples),
    }
