"""
Evaluation utilities for CRF segmentation and labelling.

Metrics:
- Boundary F1 (precision, recall, F1 at boundary positions)
- Exact Match (full segmentation accuracy)
- Split-count metrics
- Per-position label accuracy
"""

from typing import Any, Dict, List, Set, Tuple

import numpy as np


# ==============================================================================
# Boundary Metrics
# ==============================================================================

def boundary_positions_from_segments(segments: List[str]) -> Set[int]:
    """
    Extract boundary positions from segment list.

    Boundaries are at character positions between segments.

    Args:
        segments: List of segment strings

    Returns:
        Set of boundary positions (0-indexed, after each character)
    """
    positions = set()
    pos = 0

    for seg in segments[:-1]:
        pos += len(seg)
        positions.add(pos - 1)

    return positions


def compute_boundary_prf(
    pred_positions: Set[int],
    gold_positions: Set[int]
) -> Tuple[float, float, float, int, int, int]:
    """
    Compute precision, recall, F1 from boundary position sets.

    Args:
        pred_positions: Predicted boundary positions
        gold_positions: Gold boundary positions

    Returns:
        Tuple of (precision, recall, f1, tp, fp, fn)
    """
    tp = len(pred_positions & gold_positions)
    fp = len(pred_positions - gold_positions)
    fn = len(gold_positions - pred_positions)

    metrics = aggregate_boundary_metrics(tp, fp, fn)
    return metrics["precision"], metrics["recall"], metrics["f1"], tp, fp, fn


def aggregate_boundary_metrics(
    all_tp: int,
    all_fp: int,
    all_fn: int
) -> Dict[str, float]:
    """
    Compute micro-averaged boundary metrics from aggregated counts.

    With nothing predicted and nothing to find, precision, recall and F1
    are all 1.0.

    Args:
        all_tp: Total true positives
        all_fp: Total false positives
        all_fn: Total false negatives

    Returns:
        Dict with precision, recall, f1 and the counts
    """
    if all_tp + all_fp == 0:
        precision = 1.0 if all_tp + all_fn == 0 else 0.0
    else:
        precision = all_tp / (all_tp + all_fp)

    if all_tp + all_fn == 0:
        recall = 1.0 if all_tp + all_fp == 0 else 0.0
    else:
        recall = all_tp / (all_tp + all_fn)

    if precision + recall == 0:
        f1 = 1.0 if (all_tp + all_fp + all_fn) == 0 else 0.0
    else:
        f1 = 2 * precision * recall / (precision + recall)

    return {
        "precision": precision,
        "recall": recall,
        "f1": f1,
        "tp": all_tp,
        "fp": all_fp,
        "fn": all_fn
    }


# ==============================================================================
# Sequence Metrics
# ==============================================================================

def compute_split_count_metrics(
    predicted: List[str],
    gold: List[str]
) -> Dict[str, bool]:
    """
    Compare the number of predicted segments with the gold count.

    Returns:
        Dict with exact, +1, -1, ±1 match flags
    """
    diff = len(predicted) - len(gold)
    return {
        "exact": diff == 0,
        "plus1": diff == 1,
        "minus1": diff == -1,
        "pm1": abs(diff) <= 1
    }


def label_accuracy(
    predicted: List[List[str]],
    gold: List[List[str]]
) -> float:
    """
    Fraction of positions whose predicted label equals the gold label.

    Raises:
        ValueError: If a predicted and gold sequence differ in length
    """
    correct = 0
    total = 0
    for i, (pred_seq, gold_seq) in enumerate(zip(predicted, gold)):
        if len(pred_seq) != len(gold_seq):
            raise ValueError(
                f"Sequence {i}: {len(pred_seq)} predicted labels but {len(gold_seq)} gold labels"
            )
        correct += sum(p == g for p, g in zip(pred_seq, gold_seq))
        total += len(gold_seq)
    return correct / total if total > 0 else 0.0


# ==============================================================================
# Full Evaluation
# ==============================================================================

def evaluate_predictions(
    texts: List[str],
    predictions: List[List[str]],
    golds: List[List[str]]
) -> Dict[str, Any]:
    """
    Comprehensive evaluation of segmentation predictions.

    Args:
        texts: Input texts
        predictions: Predicted segment lists
        golds: Gold segment lists

    Returns:
        Evaluation results dict
    """
    results = {
        "n_texts": len(texts),
        "exact_matches": 0,
        "micro_tp": 0,
        "micro_fp": 0,
        "micro_fn": 0,
        "text_f1s": [],
        "split_exact": 0,
        "split_plus1": 0,
        "split_minus1": 0,
        "split_pm1": 0,
        "per_text": []
    }

    for text, pred, gold in zip(texts, predictions, golds):
        is_exact = pred == gold
        results["exact_matches"] += int(is_exact)

        p, r, f1, tp, fp, fn = compute_boundary_prf(
            boundary_positions_from_segments(pred),
            boundary_positions_from_segments(gold)
        )
        results["micro_tp"] += tp
        results["micro_fp"] += fp
        results["micro_fn"] += fn
        results["text_f1s"].append(f1)

        split_metrics = compute_split_count_metrics(pred, gold)
        results["split_exact"] += int(split_metrics["exact"])
        results["split_plus1"] += int(split_metrics["plus1"])
        results["split_minus1"] += int(split_metrics["minus1"])
        results["split_pm1"] += int(split_metrics["pm1"])

        results["per_text"].append({
            "text": text,
            "prediction": pred,
            "gold": gold,
            "exact_match": is_exact,
            "boundary_f1": f1,
            "split_metrics": split_metrics
        })

    n = results["n_texts"]

    results["exact_match_rate"] = results["exact_matches"] / n if n > 0 else 0
    results["boundary_metrics"] = aggregate_boundary_metrics(
        results["micro_tp"], results["micro_fp"], results["micro_fn"]
    )
    results["macro_f1"] = float(np.mean(results["text_f1s"])) if results["text_f1s"] else 0

    results["split_exact_rate"] = results["split_exact"] / n if n > 0 else 0
    results["split_plus1_rate"] = results["split_plus1"] / n if n > 0 else 0
    results["split_minus1_rate"] = results["split_minus1"] / n if n > 0 else 0
    results["split_pm1_rate"] = results["split_pm1"] / n if n > 0 else 0

    return results


def print_evaluation_summary(results: Dict[str, Any], name: str = "Model"):
    """Print formatted evaluation summary."""
    print(f"\n{'=' * 60}")
    print(f"Evaluation Results: {name}")
    print(f"{'=' * 60}")
    print(f"Texts evaluated: {results['n_texts']}")
    print(f"\nExact Match: {results['exact_match_rate']:.4f} ({results['exact_matches']}/{results['n_texts']})")

    bm = results['boundary_metrics']
    print(f"\nBoundary Metrics (micro):")
    print(f"  Precision: {bm['precision']:.4f}")
    print(f"  Recall:    {bm['recall']:.4f}")
    print(f"  F1:        {bm['f1']:.4f}")
    print(f"  Macro F1:  {results['macro_f1']:.4f}")

    if "label_accuracy" in results:
        print(f"\nLabel Accuracy: {results['label_accuracy']:.4f}")

    print(f"\nSplit-Count Metrics:")
    print(f"  Exact:  {results['split_exact_rate']:.4f}")
    print(f"  +1:     {results['split_plus1_rate']:.4f}")
    print(f"  -1:     {results['split_minus1_rate']:.4f}")
    print(f"  ±1:     {results['split_pm1_rate']:.4f}")
    print(f"{'=' * 60}\n")


# ==============================================================================
# Cross-Validation Utilities
# ==============================================================================

def compute_cv_summary(fold_results: List[Dict]) -> Dict[str, Any]:
    """
    Compute summary statistics across CV folds.

    Args:
        fold_results: List of per-fold result dicts

    Returns:
        Summary dict with means and stds
    """
    metrics = {}

    for key in ["exact_match_rate", "macro_f1", "label_accuracy"]:
        values = [r[key] for r in fold_results if key in r]
        if values:
            metrics[f"{key}_mean"] = float(np.mean(values))
            metrics[f"{key}_std"] = float(np.std(values))

    f1s = [r["boundary_metrics"]["f1"] for r in fold_results if "boundary_metrics" in r]
    if f1s:
        metrics["boundary_f1_mean"] = float(np.mean(f1s))
        metrics["boundary_f1_std"] = float(np.std(f1s))

    return metrics


def print_cv_summary(fold_results: List[Dict], name: str = "Model"):
    """Print CV summary across folds."""
    print(f"\n{'=' * 60}")
    print(f"Cross-Validation Summary: {name}")
    print(f"{'=' * 60}")

    for i, r in enumerate(fold_results, 1):
        em = r.get("exact_match_rate", 0)
        f1 = r.get("boundary_metrics", {}).get("f1", 0)
        print(f"  Fold {i}: EM={em:.4f}, B-F1={f1:.4f}")

    summary = compute_cv_summary(fold_results)

    print(f"\nMean ± Std over {len(fold_results)} folds:")
    if "exact_match_rate_mean" in summary:
        print(f"  Exact Match: {summary['exact_match_rate_mean']:.4f} ± {summary['exact_match_rate_std']:.4f}")
    if "boundary_f1_mean" in summary:
        print(f"  Boundary F1: {summary['boundary_f1_mean']:.4f} ± {summary['boundary_f1_std']:.4f}")

    print(f"{'=' * 60}\n")
