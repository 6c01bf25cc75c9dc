# tests/test_models.py - Unit tests for the linear-chain CRF engine

import itertools
import json
from unittest.mock import patch

import numpy as np
import pytest

from chaincrf.errors import (
    EmptyTrainingSetError,
    MalformedModelDataError,
    SequenceLengthMismatchError,
    UntrainedModelError,
)
from chaincrf.models import (
    CRFConfig,
    LinearChainCRF,
    accumulate_gradients,
    create_config,
    forward_backward,
    logsumexp,
    path_score,
    viterbi,
)
from chaincrf.preprocessing import build_vocabulary, encode_features, encode_labels


@pytest.fixture
def corpus():
    """Small tagging corpus with two labels and a few shared features"""
    sequences = [
        [["w=the", "shape=x"], ["w=dog", "shape=x"], ["w=runs", "shape=x"]],
        [["w=a", "shape=x"], ["w=cat", "shape=x"]],
        [["w=the", "shape=x"], ["w=cat", "shape=x"], ["w=sleeps", "shape=x"]],
    ]
    labels = [
        ["DET", "NOUN", "VERB"],
        ["DET", "NOUN"],
        ["DET", "NOUN", "VERB"],
    ]
    return sequences, labels


@pytest.fixture
def trained(corpus):
    crf = LinearChainCRF(learning_rate=0.2, max_iterations=60, regularization=0.01)
    crf.train(*corpus)
    return crf


def brute_force_paths(emissions, transitions):
    n, num_labels = emissions.shape
    for path in itertools.product(range(num_labels), repeat=n):
        path = np.array(path)
        yield path, path_score(emissions, transitions, path)


class TestCreateConfig:
    """Test suite for CRFConfig construction"""

    def test_defaults(self):
        assert create_config() == CRFConfig(0.1, 100, 0.01, 1e-6)

    def test_overrides_are_applied(self):
        config = create_config(learning_rate=0.5, max_iterations=200)
        assert config.learning_rate == 0.5
        assert config.max_iterations == 200
        assert config.regularization == 0.01

    @pytest.mark.parametrize("overrides", [
        {"learning_rate": 0},
        {"learning_rate": -1.0},
        {"max_iterations": 0},
        {"regularization": -0.1},
        {"tolerance": -1e-3},
    ])
    def test_invalid_values_raise(self, overrides):
        with pytest.raises(ValueError):
            create_config(**overrides)

    def test_unknown_key_raises(self):
        with pytest.raises(ValueError, match="unknown hyperparameters"):
            create_config(momentum=0.9)

    @pytest.mark.parametrize("config", [
        CRFConfig(learning_rate=-1.0),
        CRFConfig(max_iterations=0),
        CRFConfig(regularization=-0.5),
    ])
    def test_model_validates_config_instance(self, config):
        with pytest.raises(ValueError):
            LinearChainCRF(config)

    def test_model_accepts_config_and_overrides(self):
        crf = LinearChainCRF(create_config(learning_rate=0.3), max_iterations=7)
        assert crf.config.learning_rate == 0.3
        assert crf.config.max_iterations == 7


class TestScoring:
    """Test suite for emission and transition scores"""

    def test_unseen_feature_scores_zero_for_every_label(self, trained):
        for label in trained.labels:
            assert trained.score(["never-seen-in-training"], label) == 0.0

    def test_unseen_feature_adds_nothing(self, trained):
        base = trained.score(["w=the"], "DET")
        assert trained.score(["w=the", "unknown"], "DET") == pytest.approx(base)

    def test_score_is_sum_of_weights(self, trained):
        num_labels = trained.num_labels
        label_id = trained.vocab.labels["NOUN"]
        expected = sum(
            trained.weights[trained.vocab.features[f] * num_labels + label_id]
            for f in ["w=dog", "shape=x"]
        )
        assert trained.score(["w=dog", "shape=x"], "NOUN") == pytest.approx(expected)
        assert trained.score(["w=dog", "shape=x"], label_id) == pytest.approx(expected)

    def test_duplicate_features_count_once(self, trained):
        assert trained.score(["w=dog", "w=dog"], "NOUN") == pytest.approx(
            trained.score(["w=dog"], "NOUN")
        )

    def test_unknown_label_scores_zero(self, trained):
        assert trained.score(["w=the"], "ADJ") == 0.0
        assert trained.transition_score("ADJ", "NOUN") == 0.0

    def test_transition_score_reads_matrix(self, trained):
        det = trained.vocab.labels["DET"]
        noun = trained.vocab.labels["NOUN"]
        assert trained.transition_score("DET", "NOUN") == trained.transitions[det, noun]

    def test_observed_transition_beats_unobserved(self, trained):
        assert trained.transition_score("DET", "NOUN") > trained.transition_score("DET", "VERB")

    def test_untrained_model_raises(self):
        crf = LinearChainCRF()
        with pytest.raises(UntrainedModelError):
            crf.score(["w=the"], "DET")
        with pytest.raises(UntrainedModelError):
            crf.transition_score("DET", "NOUN")


class TestForwardBackward:
    """Test suite for the log-domain forward-backward pass"""

    @pytest.fixture
    def potentials(self):
        rng = np.random.default_rng(0)
        return rng.normal(size=(4, 3)), rng.normal(size=(3, 3))

    def test_marginals_sum_to_one(self, potentials):
        fb = forward_backward(*potentials)
        np.testing.assert_allclose(fb.marginals.sum(axis=1), np.ones(4))

    def test_partition_function_matches_enumeration(self, potentials):
        emissions, transitions = potentials
        scores = np.array([s for _, s in brute_force_paths(emissions, transitions)])
        assert forward_backward(emissions, transitions).log_z == pytest.approx(logsumexp(scores))

    def test_marginals_match_enumeration(self, potentials):
        emissions, transitions = potentials
        fb = forward_backward(emissions, transitions)

        expected = np.zeros_like(emissions)
        for path, s in brute_force_paths(emissions, transitions):
            expected[np.arange(len(path)), path] += np.exp(s - fb.log_z)

        np.testing.assert_allclose(fb.marginals, expected, atol=1e-10)

    def test_matches_direct_exponential_recursion(self, potentials):
        emissions, transitions = potentials
        n, num_labels = emissions.shape

        alpha = np.zeros((n, num_labels))
        alpha[0] = np.exp(emissions[0])
        for i in range(1, n):
            for j in range(num_labels):
                alpha[i, j] = sum(
                    alpha[i - 1, k] * np.exp(transitions[k, j] + emissions[i, j])
                    for k in range(num_labels)
                )

        fb = forward_backward(emissions, transitions)
        assert np.exp(fb.log_z) == pytest.approx(alpha[-1].sum())
        np.testing.assert_allclose(np.exp(fb.log_alpha), alpha)

    def test_large_scores_stay_finite(self, potentials):
        emissions, transitions = potentials
        fb = forward_backward(emissions * 1000, transitions * 1000)
        assert np.isfinite(fb.log_z)
        assert np.all(np.isfinite(fb.marginals))
        np.testing.assert_allclose(fb.marginals.sum(axis=1), np.ones(4))

    def test_single_position(self):
        fb = forward_backward(np.array([[0.0, np.log(3.0)]]), np.zeros((2, 2)))
        np.testing.assert_allclose(fb.marginals, [[0.25, 0.75]])

    def test_empty_sequence_raises(self):
        with pytest.raises(ValueError):
            forward_backward(np.zeros((0, 2)), np.zeros((2, 2)))

    def test_model_forward_backward(self, trained, corpus):
        sequences, _ = corpus
        fb = trained.forward_backward(sequences[0])
        assert fb.marginals.shape == (3, trained.num_labels)
        marginals = trained.predict_marginals(sequences[0])
        assert set(marginals[0]) == set(trained.labels)
        assert sum(marginals[0].values()) == pytest.approx(1.0)


class TestViterbi:
    """Test suite for Viterbi decoding"""

    def test_matches_enumeration(self):
        rng = np.random.default_rng(1)
        emissions, transitions = rng.normal(size=(5, 3)), rng.normal(size=(3, 3))
        best_path, _ = max(brute_force_paths(emissions, transitions), key=lambda item: item[1])
        np.testing.assert_array_equal(viterbi(emissions, transitions), best_path)

    def test_ties_go_to_lowest_label_id(self):
        path = viterbi(np.zeros((3, 4)), np.zeros((4, 4)))
        np.testing.assert_array_equal(path, [0, 0, 0])

    def test_tie_only_between_higher_labels(self):
        emissions = np.array([[0.0, 2.0, 2.0], [0.0, 1.0, 1.0]])
        path = viterbi(emissions, np.zeros((3, 3)))
        np.testing.assert_array_equal(path, [1, 1])

    def test_empty_emissions(self):
        assert len(viterbi(np.zeros((0, 2)), np.zeros((2, 2)))) == 0

    @pytest.mark.parametrize("label_index,expected", [
        ([["X", 0], ["Y", 1]], ["X", "X"]),
        ([["Y", 0], ["X", 1]], ["Y", "Y"]),
    ])
    def test_model_tie_break_uses_label_ids(self, label_index, expected):
        crf = LinearChainCRF.from_export({
            "weights": [1.0, 1.0],
            "feature_index": [["F", 0]],
            "label_index": label_index,
        })
        assert crf.predict([["F"], ["F"]]) == expected

    def test_predict_preserves_length(self, trained):
        sequence = [["w=the"], ["unseen"], [], ["w=dog", "unseen"]]
        assert len(trained.predict(sequence)) == len(sequence)

    def test_empty_sequence_skips_scoring(self, trained):
        with patch.object(LinearChainCRF, "_emissions") as mock_emissions:
            assert trained.predict([]) == []
        mock_emissions.assert_not_called()

    def test_predict_batch(self, trained, corpus):
        sequences, labels = corpus
        assert trained.predict_batch(sequences) == [trained.predict(s) for s in sequences]

    def test_untrained_predict_raises(self):
        with pytest.raises(UntrainedModelError):
            LinearChainCRF().predict([["F1"]])


class TestTraining:
    """Test suite for gradient-ascent training"""

    def test_two_position_example(self):
        crf = LinearChainCRF(learning_rate=0.5, max_iterations=200, regularization=0.01)
        crf.train([[["F1"], ["F2"]]], [["B", "I"]])
        assert crf.predict([["F1"], ["F2"]]) == ["B", "I"]

    def test_train_examples_pairs(self):
        crf = LinearChainCRF(learning_rate=0.5, max_iterations=200, regularization=0.01)
        crf.train_examples([([["F1"], ["F2"]], ["B", "I"])])
        assert crf.predict([["F1"], ["F2"]]) == ["B", "I"]

    def test_fits_training_corpus(self, trained, corpus):
        sequences, labels = corpus
        assert trained.predict_batch(sequences) == labels

    def test_ids_are_dense_and_first_seen(self, trained):
        assert trained.vocab.labels.items() == [("DET", 0), ("NOUN", 1), ("VERB", 2)]
        feature_ids = [idx for _, idx in trained.vocab.features.items()]
        assert feature_ids == list(range(trained.num_features))
        assert list(trained.vocab.features)[:3] == ["w=the", "shape=x", "w=dog"]

    def test_weight_store_size(self, trained):
        assert trained.weights.shape == (trained.num_features * trained.num_labels,)
        assert trained.transitions.shape == (trained.num_labels, trained.num_labels)

    def test_weights_read_only_after_training(self, trained):
        with pytest.raises(ValueError):
            trained.weights[0] = 1.0
        with pytest.raises(ValueError):
            trained.transitions[0, 0] = 1.0

    def test_history_and_callback(self, corpus):
        calls = []
        crf = LinearChainCRF(max_iterations=5, tolerance=0.0)
        history = crf.train(*corpus, callback=lambda it, ll: calls.append((it, ll)))

        assert history["iterations"] == 5
        assert history["converged"] is False
        assert [it for it, _ in calls] == [1, 2, 3, 4, 5]
        assert [ll for _, ll in calls] == history["log_likelihood"]

    def test_log_likelihood_improves(self, corpus):
        crf = LinearChainCRF(learning_rate=0.1, max_iterations=20, tolerance=0.0)
        history = crf.train(*corpus)
        assert history["log_likelihood"][-1] > history["log_likelihood"][0]

    def test_first_log_likelihood_is_uniform(self, corpus):
        sequences, labels = corpus
        crf = LinearChainCRF(max_iterations=1)
        history = crf.train(sequences, labels)
        # zero weights: every path equally likely
        expected = -sum(len(s) * np.log(3) for s in sequences)
        assert history["log_likelihood"][0] == pytest.approx(expected)

    def test_stops_on_convergence(self, corpus):
        crf = LinearChainCRF(max_iterations=50, tolerance=1e6)
        history = crf.train(*corpus)
        assert history["converged"] is True
        assert history["iterations"] == 2

    def test_gradient_matches_finite_differences(self, corpus):
        sequences, labels = corpus
        vocab = build_vocabulary(sequences, labels)
        encoded = [
            (encode_features(s, vocab.features), encode_labels(l, vocab.labels))
            for s, l in zip(sequences, labels)
        ]
        rng = np.random.default_rng(2)
        weights = rng.normal(scale=0.5, size=(len(vocab.features), len(vocab.labels)))
        transitions = rng.normal(scale=0.5, size=(len(vocab.labels), len(vocab.labels)))

        _, grad_w, grad_t = accumulate_gradients(encoded, weights, transitions)

        eps = 1e-6
        for idx in [(0, 0), (1, 2), (3, 1)]:
            plus, minus = weights.copy(), weights.copy()
            plus[idx] += eps
            minus[idx] -= eps
            numeric = (accumulate_gradients(encoded, plus, transitions)[0]
                       - accumulate_gradients(encoded, minus, transitions)[0]) / (2 * eps)
            assert grad_w[idx] == pytest.approx(numeric, abs=1e-5)

        for idx in [(0, 1), (1, 2), (2, 0)]:
            plus, minus = transitions.copy(), transitions.copy()
            plus[idx] += eps
            minus[idx] -= eps
            numeric = (accumulate_gradients(encoded, weights, plus)[0]
                       - accumulate_gradients(encoded, weights, minus)[0]) / (2 * eps)
            assert grad_t[idx] == pytest.approx(numeric, abs=1e-5)

    def test_stronger_regularization_shrinks_weights(self, corpus):
        norms = []
        for reg in [0.0, 0.1, 1.0]:
            crf = LinearChainCRF(learning_rate=0.05, max_iterations=100, regularization=reg, tolerance=0.0)
            crf.train(*corpus)
            norms.append(np.sum(crf.weights ** 2) + np.sum(crf.transitions ** 2))
        assert norms[0] >= norms[1] >= norms[2]

    def test_empty_corpus_raises(self):
        with pytest.raises(EmptyTrainingSetError):
            LinearChainCRF().train([], [])
        with pytest.raises(EmptyTrainingSetError):
            LinearChainCRF().train_examples([])

    def test_only_empty_sequences_raises(self):
        with pytest.raises(EmptyTrainingSetError):
            LinearChainCRF().train([[], []], [[], []])

    def test_length_mismatch_raises(self):
        with pytest.raises(SequenceLengthMismatchError) as exc_info:
            LinearChainCRF().train([[["F1"]], [["F1"], ["F2"]]], [["B"], ["B"]])
        assert exc_info.value.index == 1

    def test_mismatched_corpus_sizes_raise(self):
        with pytest.raises(ValueError):
            LinearChainCRF().train([[["F1"]]], [["B"], ["I"]])

    def test_failed_training_keeps_previous_model(self, trained):
        before = trained.export_model()
        with pytest.raises(SequenceLengthMismatchError):
            trained.train([[["F1"]]], [["B", "I"]])
        with pytest.raises(EmptyTrainingSetError):
            trained.train([], [])
        assert trained.export_model() == before

    def test_log_likelihood_method(self, trained, corpus):
        sequences, labels = corpus
        ll = trained.log_likelihood(sequences[0], labels[0])
        assert ll < 0
        assert ll > trained.log_likelihood(sequences[0], ["VERB", "VERB", "DET"])


class TestSerialization:
    """Test suite for export_model / import_model"""

    def test_export_structure(self, trained):
        data = trained.export_model()
        assert set(data) == {
            "weights", "transitions", "feature_index", "label_index",
            "num_features", "num_labels", "hyperparameters",
        }
        assert len(data["weights"]) == data["num_features"] * data["num_labels"]
        assert len(data["transitions"]) == data["num_labels"] ** 2
        assert data["hyperparameters"]["learning_rate"] == 0.2
        json.dumps(data)

    def test_round_trip(self, trained):
        first = trained.export_model()
        second = LinearChainCRF.from_export(first).export_model()

        assert second["weights"] == first["weights"]
        assert second["transitions"] == first["transitions"]
        assert sorted(map(tuple, second["feature_index"])) == sorted(map(tuple, first["feature_index"]))
        assert sorted(map(tuple, second["label_index"])) == sorted(map(tuple, first["label_index"]))

    def test_round_trip_through_json(self, trained, corpus):
        sequences, _ = corpus
        restored = LinearChainCRF.from_export(json.loads(json.dumps(trained.export_model())))
        assert restored.predict_batch(sequences) == trained.predict_batch(sequences)

    def test_hyperparameters_overwrite_defaults(self, trained):
        crf = LinearChainCRF(learning_rate=0.9)
        crf.import_model(trained.export_model())
        assert crf.config == trained.config

    def test_missing_hyperparameters_keep_instance_values(self, trained):
        data = trained.export_model()
        del data["hyperparameters"]
        crf = LinearChainCRF(learning_rate=0.9)
        crf.import_model(data)
        assert crf.config.learning_rate == 0.9

    def test_partial_hyperparameters(self, trained):
        data = trained.export_model()
        data["hyperparameters"] = {"max_iterations": 3}
        crf = LinearChainCRF(learning_rate=0.9)
        crf.import_model(data)
        assert crf.config.learning_rate == 0.9
        assert crf.config.max_iterations == 3

    def test_missing_transitions_default_to_zero(self, trained):
        data = trained.export_model()
        del data["transitions"]
        crf = LinearChainCRF.from_export(data)
        assert not np.any(crf.transitions)

    @pytest.mark.parametrize("field", ["weights", "feature_index", "label_index"])
    def test_missing_field_raises(self, trained, field):
        data = trained.export_model()
        del data[field]
        with pytest.raises(MalformedModelDataError):
            LinearChainCRF().import_model(data)

    @pytest.mark.parametrize("mutate", [
        lambda d: d.update(weights=d["weights"][:-1]),
        lambda d: d.update(transitions=d["transitions"][:-1]),
        lambda d: d.update(num_features=d["num_features"] + 1),
        lambda d: d.update(num_labels=d["num_labels"] - 1),
        lambda d: d.update(label_index=[["DET", 0], ["NOUN", 2], ["VERB", 3]]),
        lambda d: d.update(label_index=[["DET", 0], ["DET", 1], ["VERB", 2]]),
        lambda d: d.update(feature_index="not a list"),
        lambda d: d.update(weights=["x"] * len(d["weights"])),
        lambda d: d.update(hyperparameters={"learning_rate": -1}),
        lambda d: d.update(hyperparameters=[1, 2]),
    ])
    def test_inconsistent_data_raises(self, trained, mutate):
        data = trained.export_model()
        mutate(data)
        with pytest.raises(MalformedModelDataError):
            LinearChainCRF().import_model(data)

    def test_non_mapping_raises(self):
        with pytest.raises(MalformedModelDataError):
            LinearChainCRF().import_model([1, 2, 3])

    def test_failed_import_keeps_state(self, trained):
        before = trained.export_model()
        with pytest.raises(MalformedModelDataError):
            trained.import_model({"weights": [], "feature_index": [], "label_index": []})
        assert trained.export_model() == before

    def test_export_untrained_raises(self):
        with pytest.raises(UntrainedModelError):
            LinearChainCRF().export_model()

    def test_info(self, trained):
        assert LinearChainCRF().info()["trained"] is False
        info = trained.info()
        assert info["trained"] is True
        assert info["labels"] == ["DET", "NOUN", "VERB"]
