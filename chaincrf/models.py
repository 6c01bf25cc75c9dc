"""
Linear-chain Conditional Random Field for sequence labelling.

Includes:
- CRFConfig hyperparameters
- Emission and transition scoring
- Forward-backward in the log domain
- Full-batch L2-regularized gradient ascent
- Viterbi decoding
- Export/import of the model as a plain nested value
"""

import logging
from collections.abc import Mapping
from typing import Any, Callable, Dict, Iterable, List, NamedTuple, Optional, Tuple, Union

import numpy as np

from .errors import (
    EmptyTrainingSetError,
    MalformedModelDataError,
    SequenceLengthMismatchError,
    UntrainedModelError,
)
from .preprocessing import Index, Vocabulary, build_vocabulary, encode_features, encode_labels

logger = logging.getLogger(__name__)

FeatureSequence = List[Iterable[str]]
Label = Union[str, int]

# ==============================================================================
# Configuration
# ==============================================================================


class CRFConfig(NamedTuple):
    """hyperparameters for gradient-ascent training."""

    learning_rate: float = 0.1
    max_iterations: int = 100
    regularization: float = 0.01
    tolerance: float = 1e-6


def create_config(**overrides) -> CRFConfig:
    """factory that applies overrides to the defaults with validation."""
    unknown = set(overrides) - set(CRFConfig._fields)
    if unknown:
        raise ValueError(f"unknown hyperparameters: {', '.join(sorted(unknown))}")

    config = CRFConfig()._replace(**overrides)
    config = CRFConfig(
        learning_rate=float(config.learning_rate),
        max_iterations=int(config.max_iterations),
        regularization=float(config.regularization),
        tolerance=float(config.tolerance),
    )

    if not config.learning_rate > 0:
        raise ValueError(f"learning_rate must be positive, got {config.learning_rate}")
    if config.max_iterations < 1:
        raise ValueError(f"max_iterations must be at least 1, got {config.max_iterations}")
    if config.regularization < 0:
        raise ValueError(f"regularization must be non-negative, got {config.regularization}")
    if config.tolerance < 0:
        raise ValueError(f"tolerance must be non-negative, got {config.tolerance}")

    return config


# ==============================================================================
# Dynamic Programming
# ==============================================================================

class ForwardBackward(NamedTuple):
    """log-domain forward-backward tables for one sequence."""

    log_alpha: np.ndarray  # shape: (n, num_labels)
    log_beta: np.ndarray  # shape: (n, num_labels)
    log_z: float
    marginals: np.ndarray  # P(y_i = j | x), shape: (n, num_labels)


def logsumexp(a: np.ndarray, axis: int = 0) -> np.ndarray:
    """Numerically stable log(sum(exp(a))) along an axis."""
    a_max = np.max(a, axis=axis, keepdims=True)
    a_max = np.where(np.isfinite(a_max), a_max, 0.0)
    out = np.log(np.sum(np.exp(a - a_max), axis=axis, keepdims=True)) + a_max
    return np.squeeze(out, axis=axis)


def forward_backward(emissions: np.ndarray, transitions: np.ndarray) -> ForwardBackward:
    """
    Compute forward/backward tables, the log partition function and marginals.

    Args:
        emissions: Emission scores [n, num_labels]
        transitions: Transition scores [from_label, to_label]

    Returns:
        ForwardBackward tables

    Raises:
        ValueError: If the sequence is empty
    """
    n, num_labels = emissions.shape
    if n == 0:
        raise ValueError("forward-backward needs at least one position")

    log_alpha = np.empty((n, num_labels))
    log_beta = np.zeros((n, num_labels))

    log_alpha[0] = emissions[0]
    for i in range(1, n):
        # [k, j]: arrive at j from k
        log_alpha[i] = logsumexp(log_alpha[i - 1][:, None] + transitions, axis=0) + emissions[i]

    for i in range(n - 2, -1, -1):
        # [j, k]: leave j towards k
        log_beta[i] = logsumexp(transitions + (emissions[i + 1] + log_beta[i + 1])[None, :], axis=1)

    log_z = float(logsumexp(log_alpha[-1], axis=0))
    marginals = np.exp(log_alpha + log_beta - log_z)

    return ForwardBackward(log_alpha, log_beta, log_z, marginals)


def expected_transitions(
    fb: ForwardBackward,
    emissions: np.ndarray,
    transitions: np.ndarray
) -> np.ndarray:
    """Expected (from, to) label-pair counts under the model."""
    expected = np.zeros_like(transitions)
    for i in range(1, len(emissions)):
        expected += np.exp(
            fb.log_alpha[i - 1][:, None]
            + transitions
            + (emissions[i] + fb.log_beta[i])[None, :]
            - fb.log_z
        )
    return expected


def observed_transitions(path: np.ndarray, num_labels: int) -> np.ndarray:
    """Observed (from, to) label-pair counts along a path."""
    observed = np.zeros((num_labels, num_labels))
    np.add.at(observed, (path[:-1], path[1:]), 1.0)
    return observed


def path_score(emissions: np.ndarray, transitions: np.ndarray, path: np.ndarray) -> float:
    """Unnormalized score of one label path."""
    score = emissions[np.arange(len(path)), path].sum()
    score += transitions[path[:-1], path[1:]].sum()
    return float(score)


def viterbi(emissions: np.ndarray, transitions: np.ndarray) -> np.ndarray:
    """
    Find the highest-scoring label path.

    Ties go to the lowest label id, both for backpointers and for the final
    label (np.argmax returns the first maximum).

    Args:
        emissions: Emission scores [n, num_labels]
        transitions: Transition scores [from_label, to_label]

    Returns:
        Label ids, shape (n,)
    """
    n, num_labels = emissions.shape
    path = np.zeros(n, dtype=np.int64)
    if n == 0:
        return path

    dp = np.empty((n, num_labels))
    backpointer = np.zeros((n, num_labels), dtype=np.int64)
    columns = np.arange(num_labels)

    dp[0] = emissions[0]
    for i in range(1, n):
        candidates = dp[i - 1][:, None] + transitions
        backpointer[i] = np.argmax(candidates, axis=0)
        dp[i] = candidates[backpointer[i], columns] + emissions[i]

    path[-1] = np.argmax(dp[-1])
    for i in range(n - 2, -1, -1):
        path[i] = backpointer[i + 1, path[i + 1]]

    return path


def emission_scores(feature_ids: List[np.ndarray], weights: np.ndarray) -> np.ndarray:
    """
    Emission score matrix for an encoded sequence.

    Args:
        feature_ids: Active feature ids per position
        weights: Emission weights [num_features, num_labels]

    Returns:
        Scores [n, num_labels]
    """
    if not feature_ids:
        return np.zeros((0, weights.shape[1]))
    return np.stack([weights[ids].sum(axis=0) for ids in feature_ids])


def accumulate_gradients(
    encoded: List[Tuple[List[np.ndarray], np.ndarray]],
    weights: np.ndarray,
    transitions: np.ndarray
) -> Tuple[float, np.ndarray, np.ndarray]:
    """
    One full pass over the corpus: log-likelihood and unregularized gradients.

    Args:
        encoded: (feature ids per position, gold label ids) pairs
        weights: Emission weights [num_features, num_labels]
        transitions: Transition weights [num_labels, num_labels]

    Returns:
        Tuple of (log_likelihood, emission_gradient, transition_gradient)
    """
    log_likelihood = 0.0
    grad_weights = np.zeros_like(weights)
    grad_transitions = np.zeros_like(transitions)
    num_labels = transitions.shape[0]

    for feature_ids, gold in encoded:
        emissions = emission_scores(feature_ids, weights)
        fb = forward_backward(emissions, transitions)

        log_likelihood += path_score(emissions, transitions, gold) - fb.log_z

        # empirical counts minus model expectations
        delta = -fb.marginals
        delta[np.arange(len(gold)), gold] += 1.0
        for i, ids in enumerate(feature_ids):
            grad_weights[ids] += delta[i]

        grad_transitions += observed_transitions(gold, num_labels)
        grad_transitions -= expected_transitions(fb, emissions, transitions)

    return log_likelihood, grad_weights, grad_transitions


# ==============================================================================
# Linear-Chain CRF
# ==============================================================================

class LinearChainCRF:
    """
    First-order linear-chain CRF over symbolic features.

    Emission weights live in a flat array addressed by
    ``feature_id * num_labels + label_id``; transition weights in a separate
    ``[from_label, to_label]`` matrix. Training is full-batch gradient ascent
    on the L2-regularized conditional log-likelihood.
    """

    def __init__(self, config: Optional[CRFConfig] = None, **overrides):
        if config is None:
            config = create_config(**overrides)
        else:
            config = create_config(**{**config._asdict(), **overrides})
        self.config = config

        self.vocab: Optional[Vocabulary] = None
        self.weights: Optional[np.ndarray] = None
        self.transitions: Optional[np.ndarray] = None

    @property
    def is_trained(self) -> bool:
        return self.weights is not None

    @property
    def num_features(self) -> int:
        return len(self.vocab.features) if self.vocab is not None else 0

    @property
    def num_labels(self) -> int:
        return len(self.vocab.labels) if self.vocab is not None else 0

    @property
    def labels(self) -> List[str]:
        return list(self.vocab.labels) if self.vocab is not None else []

    def _require_trained(self):
        if not self.is_trained:
            raise UntrainedModelError()

    def _weight_matrix(self) -> np.ndarray:
        return self.weights.reshape(self.num_features, self.num_labels)

    def _label_id(self, label: Label) -> Optional[int]:
        if isinstance(label, str):
            return self.vocab.labels.get(label)
        if not 0 <= label < self.num_labels:
            raise IndexError(f"label id {label} out of range for {self.num_labels} labels")
        return int(label)

    def _commit(self, vocab: Vocabulary, weights: np.ndarray, transitions: np.ndarray):
        weights = weights.reshape(-1)
        weights.flags.writeable = False
        transitions.flags.writeable = False
        self.vocab = vocab
        self.weights = weights
        self.transitions = transitions

    def _emissions(self, sequence: FeatureSequence) -> np.ndarray:
        feature_ids = encode_features(sequence, self.vocab.features)
        return emission_scores(feature_ids, self._weight_matrix())

    # --------------------------------------------------------------------------
    # Scoring
    # --------------------------------------------------------------------------

    def score(self, active_features: Iterable[str], label: Label) -> float:
        """
        Emission score of one position for one label.

        Features or labels unknown to the vocabulary contribute 0.
        """
        self._require_trained()
        label_id = self._label_id(label)
        if label_id is None:
            return 0.0
        ids = encode_features([active_features], self.vocab.features)[0]
        return float(self._weight_matrix()[ids, label_id].sum())

    def transition_score(self, from_label: Label, to_label: Label) -> float:
        """Transition score between two labels; unknown labels contribute 0."""
        self._require_trained()
        from_id = self._label_id(from_label)
        to_id = self._label_id(to_label)
        if from_id is None or to_id is None:
            return 0.0
        return float(self.transitions[from_id, to_id])

    def forward_backward(self, sequence: FeatureSequence) -> ForwardBackward:
        """Forward-backward tables for a feature sequence."""
        self._require_trained()
        return forward_backward(self._emissions(sequence), self.transitions)

    def log_likelihood(self, sequence: FeatureSequence, labels: List[str]) -> float:
        """Conditional log-probability of a label sequence (unregularized)."""
        self._require_trained()
        if len(sequence) != len(labels):
            raise SequenceLengthMismatchError(0, len(sequence), len(labels))
        emissions = self._emissions(sequence)
        fb = forward_backward(emissions, self.transitions)
        gold = encode_labels(labels, self.vocab.labels)
        return path_score(emissions, self.transitions, gold) - fb.log_z

    # --------------------------------------------------------------------------
    # Training
    # --------------------------------------------------------------------------

    def train(
        self,
        sequences: List[FeatureSequence],
        label_sequences: List[List[str]],
        callback: Optional[Callable[[int, float], None]] = None
    ) -> Dict[str, Any]:
        """
        Train from scratch on a labelled corpus.

        Gradients are accumulated over the whole corpus before the single
        weight update of each iteration. Training stops when the change in
        log-likelihood drops below the tolerance or at max_iterations. The
        new model is only installed once training finishes.

        Args:
            sequences: Feature sequences
            label_sequences: Gold label sequences, parallel to sequences
            callback: Optional callback(iteration, log_likelihood)

        Returns:
            Training history dict

        Raises:
            EmptyTrainingSetError: If there are no usable examples
            SequenceLengthMismatchError: If a pair differs in length
        """
        if len(sequences) != len(label_sequences):
            raise ValueError(
                f"{len(sequences)} feature sequences but {len(label_sequences)} label sequences"
            )

        for i, (sequence, labels) in enumerate(zip(sequences, label_sequences)):
            if len(sequence) != len(labels):
                raise SequenceLengthMismatchError(i, len(sequence), len(labels))

        usable = [(s, l) for s, l in zip(sequences, label_sequences) if len(s) > 0]
        if not usable:
            raise EmptyTrainingSetError()

        vocab = build_vocabulary([s for s, _ in usable], [l for _, l in usable])
        num_features, num_labels = len(vocab.features), len(vocab.labels)

        encoded = [
            (encode_features(s, vocab.features), encode_labels(l, vocab.labels))
            for s, l in usable
        ]

        weights = np.zeros((num_features, num_labels))
        transitions = np.zeros((num_labels, num_labels))
        cfg = self.config

        logger.info(
            "Training CRF on %d sequences: %d features, %d labels",
            len(encoded), num_features, num_labels
        )

        history = {
            "log_likelihood": [],
            "iterations": 0,
            "converged": False,
            "num_features": num_features,
            "num_labels": num_labels,
        }
        prev_ll = -np.inf

        for iteration in range(1, cfg.max_iterations + 1):
            ll, grad_weights, grad_transitions = accumulate_gradients(encoded, weights, transitions)

            ll -= cfg.regularization * (np.sum(weights ** 2) + np.sum(transitions ** 2)) / 2
            grad_weights -= cfg.regularization * weights
            grad_transitions -= cfg.regularization * transitions

            weights += cfg.learning_rate * grad_weights
            transitions += cfg.learning_rate * grad_transitions

            history["log_likelihood"].append(float(ll))
            history["iterations"] = iteration
            logger.debug("Iteration %d: log-likelihood = %.6f", iteration, ll)
            if callback is not None:
                callback(iteration, float(ll))

            if abs(ll - prev_ll) < cfg.tolerance:
                history["converged"] = True
                break
            prev_ll = ll

        self._commit(vocab, weights, transitions)

        logger.info(
            "Training finished after %d iterations (converged=%s, log-likelihood=%.6f)",
            history["iterations"], history["converged"], history["log_likelihood"][-1]
        )
        return history

    def train_examples(
        self,
        examples: List[Tuple[FeatureSequence, List[str]]],
        callback: Optional[Callable[[int, float], None]] = None
    ) -> Dict[str, Any]:
        """Train on (feature_sequence, label_sequence) pairs."""
        if not examples:
            raise EmptyTrainingSetError()
        sequences = [features for features, _ in examples]
        label_sequences = [labels for _, labels in examples]
        return self.train(sequences, label_sequences, callback=callback)

    # --------------------------------------------------------------------------
    # Inference
    # --------------------------------------------------------------------------

    def predict(self, sequence: FeatureSequence) -> List[str]:
        """
        Viterbi-decode the best label sequence.

        Args:
            sequence: Feature sequence

        Returns:
            Label strings, same length as sequence
        """
        self._require_trained()
        if len(sequence) == 0:
            return []

        path = viterbi(self._emissions(sequence), self.transitions)
        return [self.vocab.labels.lookup(int(j)) for j in path]

    def predict_batch(self, sequences: List[FeatureSequence]) -> List[List[str]]:
        return [self.predict(sequence) for sequence in sequences]

    def predict_marginals(self, sequence: FeatureSequence) -> List[Dict[str, float]]:
        """Per-position label marginals, keyed by label string."""
        self._require_trained()
        if len(sequence) == 0:
            return []
        fb = self.forward_backward(sequence)
        labels = self.labels
        return [dict(zip(labels, row.tolist())) for row in fb.marginals]

    # --------------------------------------------------------------------------
    # Serialization
    # --------------------------------------------------------------------------

    def export_model(self) -> Dict[str, Any]:
        """
        Snapshot the model as plain lists, ints, floats and strings.

        Raises:
            UntrainedModelError: If there is no trained or imported state
        """
        self._require_trained()
        return {
            "weights": self.weights.tolist(),
            "transitions": self.transitions.reshape(-1).tolist(),
            "feature_index": [[s, i] for s, i in self.vocab.features.items()],
            "label_index": [[s, i] for s, i in self.vocab.labels.items()],
            "num_features": self.num_features,
            "num_labels": self.num_labels,
            "hyperparameters": dict(self.config._asdict()),
        }

    def import_model(self, data: Mapping):
        """
        Restore a model from the value produced by export_model().

        Everything is validated before any state changes. A missing
        transitions field yields zero transition weights. Hyperparameters,
        when present, override this instance's values for the keys given.

        Raises:
            MalformedModelDataError: If the data is missing fields or
                inconsistent
        """
        if not isinstance(data, Mapping):
            raise MalformedModelDataError(f"Model data must be a mapping, got {type(data).__name__}")

        for key in ("weights", "feature_index", "label_index"):
            if data.get(key) is None:
                raise MalformedModelDataError(f"Model data is missing {key!r}")
        for key in ("feature_index", "label_index"):
            if not isinstance(data[key], (list, tuple)):
                raise MalformedModelDataError(f"{key!r} must be a list of (string, id) pairs")

        try:
            features = Index.from_pairs(data["feature_index"])
            labels = Index.from_pairs(data["label_index"])
        except (TypeError, ValueError) as exc:
            raise MalformedModelDataError(f"Invalid index: {exc}") from exc

        num_features = data.get("num_features", len(features))
        num_labels = data.get("num_labels", len(labels))
        if num_features != len(features) or num_labels != len(labels):
            raise MalformedModelDataError(
                f"Index sizes ({len(features)}, {len(labels)}) do not match "
                f"num_features={num_features}, num_labels={num_labels}"
            )
        if num_labels == 0:
            raise MalformedModelDataError("Model has no labels")

        weights = _as_float_array(data["weights"], "weights", num_features * num_labels)
        if data.get("transitions") is None:
            transitions = np.zeros(num_labels * num_labels)
        else:
            transitions = _as_float_array(data["transitions"], "transitions", num_labels * num_labels)

        config = self.config
        hyperparameters = data.get("hyperparameters")
        if hyperparameters is not None:
            if not isinstance(hyperparameters, Mapping):
                raise MalformedModelDataError("'hyperparameters' must be a mapping")
            known = {k: v for k, v in hyperparameters.items() if k in CRFConfig._fields}
            ignored = set(hyperparameters) - set(known)
            if ignored:
                logger.warning("Ignoring unknown hyperparameters: %s", ", ".join(sorted(ignored)))
            try:
                config = create_config(**{**config._asdict(), **known})
            except (TypeError, ValueError) as exc:
                raise MalformedModelDataError(f"Invalid hyperparameters: {exc}") from exc

        self.config = config
        self._commit(
            Vocabulary(features=features, labels=labels),
            weights,
            transitions.reshape(num_labels, num_labels),
        )
        logger.debug("Imported CRF: %d features, %d labels", num_features, num_labels)

    @classmethod
    def from_export(cls, data: Mapping, config: Optional[CRFConfig] = None) -> "LinearChainCRF":
        crf = cls(config)
        crf.import_model(data)
        return crf

    def info(self) -> Dict[str, Any]:
        """Summary of the model state."""
        if not self.is_trained:
            return {"trained": False, "hyperparameters": dict(self.config._asdict())}
        return {
            "trained": True,
            "num_features": self.num_features,
            "num_labels": self.num_labels,
            "labels": self.labels,
            "hyperparameters": dict(self.config._asdict()),
        }

    def __repr__(self) -> str:
        return (
            f"LinearChainCRF(num_features={self.num_features}, "
            f"num_labels={self.num_labels}, config={self.config})"
        )


def _as_float_array(values, name: str, expected_size: int) -> np.ndarray:
    try:
        array = np.array(values, dtype=np.float64)
    except (TypeError, ValueError) as exc:
        raise MalformedModelDataError(f"{name!r} must be a list of numbers: {exc}") from exc
    if array.ndim != 1 or array.size != expected_size:
        raise MalformedModelDataError(
            f"{name!r} has {array.size} values, expected {expected_size}"
        )
    if not np.all(np.isfinite(array)):
        raise MalformedModelDataError(f"{name!r} contains non-finite values")
    return array
