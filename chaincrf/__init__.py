"""
Linear-Chain CRF Segmentation

A toolkit for training first-order Conditional Random Fields over symbolic
features, with a grapheme-level B/I segmenter built on top.
"""

from .errors import (
    CRFError,
    UntrainedModelError,
    EmptyTrainingSetError,
    SequenceLengthMismatchError,
    MalformedModelDataError,
    InvalidSampleError
)

from .preprocessing import (
    normalize_text,
    to_graphemes,
    segments_to_labels,
    labels_to_segments,
    boundary_positions_from_labels,
    build_vocabulary,
    Index,
    Vocabulary,
    BEGIN, INSIDE
)

from .features import (
    FeatureExtractor,
    char_category
)

from .models import (
    CRFConfig,
    create_config,
    LinearChainCRF,
    forward_backward,
    viterbi
)

from .segmenter import CRFSegmenter

from .evaluation import (
    compute_boundary_prf,
    evaluate_predictions,
    label_accuracy,
    print_evaluation_summary,
    compute_cv_summary,
    print_cv_summary
)

from .training import (
    load_samples,
    validate_samples,
    split_samples,
    save_checkpoint,
    load_checkpoint,
    generate_model_id,
    tune_regularization,
    run_kfold_cv,
    train_pipeline
)

__version__ = "0.1.0"
