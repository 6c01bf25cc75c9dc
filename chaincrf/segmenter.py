"""
Text segmentation on top of the linear-chain CRF.

A sample is a text together with its gold segments, e.g.
``{"text": "wasiypi", "segments": ["wasi", "y", "pi"]}``. The text is split
into graphemes, each grapheme gets feature strings from FeatureExtractor and
a B/I label from the segments, and the CRF learns to tag new text.
"""

import json
import logging
import os
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from .errors import (
    EmptyTrainingSetError,
    InvalidSampleError,
    MalformedModelDataError,
    UntrainedModelError,
)
from .evaluation import evaluate_predictions, label_accuracy
from .features import FeatureExtractor
from .models import CRFConfig, LinearChainCRF
from .preprocessing import labels_to_segments, normalize_text, segments_to_labels

logger = logging.getLogger(__name__)

MODEL_FORMAT_VERSION = "1.0"


def sample_fields(sample) -> Tuple[str, List[str]]:
    """
    Pull (text, segments) out of a sample dict or pair.

    Raises:
        InvalidSampleError: If either field is missing or mistyped
    """
    if isinstance(sample, Mapping):
        text = sample.get("text")
        segments = sample.get("segments")
    elif isinstance(sample, (list, tuple)) and len(sample) == 2:
        text, segments = sample
    else:
        raise InvalidSampleError(f"Expected a sample dict or (text, segments) pair, got {sample!r}")

    if not isinstance(text, str):
        raise InvalidSampleError("'text' is required and must be a string")
    if not isinstance(segments, (list, tuple)) or not all(isinstance(s, str) for s in segments):
        raise InvalidSampleError("'segments' is required and must be a list of strings")

    return text, list(segments)


class CRFSegmenter:
    """
    Grapheme-level B/I segmenter.

    Wraps a LinearChainCRF and a FeatureExtractor, and owns the model file
    format (CRF export plus metadata).
    """

    def __init__(
        self,
        config: Optional[CRFConfig] = None,
        window_size: int = 3,
        lowercase: bool = False,
        **overrides
    ):
        self.crf = LinearChainCRF(config, **overrides)
        self.extractor = FeatureExtractor(window_size=window_size, lowercase=lowercase)
        self.metadata: Dict[str, Any] = {}

    @property
    def is_trained(self) -> bool:
        return self.crf.is_trained

    def prepare_sample(self, sample) -> Tuple[List[str], List[List[str]], List[str]]:
        """
        Turn a sample into graphemes, feature sequence and B/I labels.

        Raises:
            InvalidSampleError: If the segments do not reconstruct the text
        """
        text, segments = sample_fields(sample)
        chars, features = self.extractor.extract_sequence(text)
        labels = segments_to_labels(chars, segments)
        return chars, features, labels

    def train(
        self,
        samples: List,
        callback: Optional[Callable[[int, float], None]] = None
    ) -> Dict[str, Any]:
        """
        Train on segmented samples.

        Samples that cannot be labelled are skipped with a warning.

        Args:
            samples: Sample dicts or (text, segments) pairs
            callback: Optional callback(iteration, log_likelihood)

        Returns:
            Training history from LinearChainCRF.train

        Raises:
            EmptyTrainingSetError: If no sample is usable
        """
        sequences = []
        label_sequences = []

        for i, sample in enumerate(samples):
            try:
                chars, features, labels = self.prepare_sample(sample)
            except InvalidSampleError as exc:
                logger.warning("Skipping sample %d: %s", i, exc)
                continue
            if chars:
                sequences.append(features)
                label_sequences.append(labels)

        if not sequences:
            raise EmptyTrainingSetError("No valid training samples found")

        logger.info("Prepared %d of %d samples for training", len(sequences), len(samples))
        history = self.crf.train(sequences, label_sequences, callback=callback)
        self.metadata = self._build_metadata()
        return history

    def predict_labels(self, text: str) -> Tuple[List[str], List[str]]:
        """Graphemes of text and their predicted labels."""
        chars, features = self.extractor.extract_sequence(text)
        return chars, self.crf.predict(features)

    def segment(self, text: str) -> List[str]:
        """
        Segment text.

        Args:
            text: Raw text

        Returns:
            List of segments whose concatenation is the normalized text
        """
        if not self.is_trained:
            raise UntrainedModelError("Model not loaded. Train or load a model first.")
        if not text or not text.strip():
            return []

        chars, labels = self.predict_labels(text)
        return labels_to_segments(chars, labels)

    def segment_batch(self, texts: List[str]) -> List[List[str]]:
        return [self.segment(text) for text in texts]

    def evaluate(self, samples: List) -> Dict[str, Any]:
        """
        Segment every sample's text and score it against the gold segments.

        Gold segments are rebuilt from the normalized graphemes, so they
        compare like for like with the predictions. Samples that cannot be
        labelled are skipped with a warning, as in train().

        Returns:
            Results of evaluate_predictions plus label_accuracy and the
            number of skipped samples
        """
        if not self.is_trained:
            raise UntrainedModelError("Model not loaded. Train or load a model first.")

        texts, predictions, golds = [], [], []
        pred_labels, gold_labels = [], []
        skipped = 0

        for i, sample in enumerate(samples):
            try:
                chars, features, labels = self.prepare_sample(sample)
            except InvalidSampleError as exc:
                logger.warning("Skipping sample %d in evaluation: %s", i, exc)
                skipped += 1
                continue
            predicted = self.crf.predict(features)

            texts.append(normalize_text(sample_fields(sample)[0]))
            golds.append(labels_to_segments(chars, labels))
            predictions.append(labels_to_segments(chars, predicted))
            pred_labels.append(predicted)
            gold_labels.append(labels)

        results = evaluate_predictions(texts, predictions, golds)
        results["label_accuracy"] = label_accuracy(pred_labels, gold_labels)
        results["skipped"] = skipped
        return results

    # --------------------------------------------------------------------------
    # Persistence
    # --------------------------------------------------------------------------

    def _build_metadata(self) -> Dict[str, Any]:
        return {
            "created_at": datetime.now(timezone.utc).isoformat(),
            "version": MODEL_FORMAT_VERSION,
            "description": "CRF grapheme segmentation model",
            "window_size": self.extractor.window_size,
            "lowercase": self.extractor.lowercase,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "crf": self.crf.export_model(),
            "metadata": self.metadata or self._build_metadata(),
        }

    def save(self, path: str) -> None:
        """
        Write the model to a JSON file.

        Raises:
            UntrainedModelError: If there is nothing to save
        """
        data = self.to_dict()
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False)
        logger.info("Model saved to %s", path)

    def load_dict(self, data: Mapping) -> None:
        if not isinstance(data, Mapping) or "crf" not in data:
            raise MalformedModelDataError("Model file has no 'crf' section")

        metadata = data.get("metadata") or {}
        if not isinstance(metadata, Mapping):
            raise MalformedModelDataError("'metadata' must be a mapping")

        try:
            extractor = FeatureExtractor(
                window_size=int(metadata.get("window_size", self.extractor.window_size)),
                lowercase=bool(metadata.get("lowercase", self.extractor.lowercase)),
            )
        except (TypeError, ValueError) as exc:
            raise MalformedModelDataError(f"Invalid feature settings: {exc}") from exc
        self.crf.import_model(data["crf"])
        self.extractor = extractor
        self.metadata = dict(metadata)

    def load(self, path: str) -> None:
        """
        Load a model file written by save().

        Raises:
            FileNotFoundError: If the file doesn't exist
            MalformedModelDataError: If the file is not a valid model
        """
        if not os.path.exists(path):
            raise FileNotFoundError(f"Model file not found: {path}")

        with open(path, "r", encoding="utf-8") as f:
            try:
                data = json.load(f)
            except json.JSONDecodeError as exc:
                raise MalformedModelDataError(f"Model file is not valid JSON: {exc}") from exc

        self.load_dict(data)
        logger.info("Model loaded from %s", path)
        if self.metadata.get("created_at"):
            logger.info("Model created %s (format %s)",
                        self.metadata["created_at"], self.metadata.get("version"))

    @classmethod
    def from_file(cls, path: str) -> "CRFSegmenter":
        segmenter = cls()
        segmenter.load(path)
        return segmenter

    def model_info(self) -> Dict[str, Any]:
        if not self.is_trained:
            return {"loaded": False}

        info = self.crf.info()
        return {
            "loaded": True,
            "num_features": info["num_features"],
            "num_labels": info["num_labels"],
            "labels": info["labels"],
            "config": info["hyperparameters"],
            "window_size": self.extractor.window_size,
            "lowercase": self.extractor.lowercase,
            "metadata": dict(self.metadata),
        }
