"""
Exceptions raised by the CRF engine and the segmentation wrapper.
"""


class CRFError(Exception):
    """Base class for all chaincrf errors."""


class UntrainedModelError(CRFError, RuntimeError):
    """Prediction or export requested before a successful train/import."""

    def __init__(self, message: str = "Model not trained yet"):
        super().__init__(message)


class EmptyTrainingSetError(CRFError, ValueError):
    """Training was given zero usable examples."""

    def __init__(self, message: str = "No training examples provided"):
        super().__init__(message)


class SequenceLengthMismatchError(CRFError, ValueError):
    """A training example's feature and label sequences differ in length."""

    def __init__(self, index: int, n_features: int, n_labels: int):
        self.index = index
        self.n_features = n_features
        self.n_labels = n_labels
        super().__init__(
            f"Example {index}: {n_features} feature positions but {n_labels} labels"
        )


class MalformedModelDataError(CRFError, ValueError):
    """Serialized model data is missing fields or internally inconsistent."""


class InvalidSampleError(CRFError, ValueError):
    """A segmentation sample cannot be turned into a labelled sequence."""
