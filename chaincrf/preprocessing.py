"""
Preprocessing utilities for CRF sequence labelling.

Handles text normalization, grapheme tokenization, B/I segment labels and
the string-to-id vocabularies used by the CRF engine.
"""

import unicodedata
from typing import Dict, Iterable, Iterator, List, NamedTuple, Optional, Sequence, Set, Tuple

import numpy as np
import regex

from .errors import EmptyTrainingSetError, InvalidSampleError

# ==============================================================================
# Text Normalization
# ==============================================================================


def normalize_text(s: str, lowercase: bool = False) -> str:
    """
    Normalize text before tokenization.

    Steps:
    1. NFC Unicode normalization
    2. Optional lowercasing
    3. Strip surrounding whitespace

    Args:
        s: Input string
        lowercase: Whether to lowercase the text

    Returns:
        Normalized string
    """
    s = unicodedata.normalize("NFC", str(s))
    if lowercase:
        s = s.lower()
    return s.strip()


# ==============================================================================
# Grapheme Tokenization
# ==============================================================================

GRAPHEME_PATTERN = regex.compile(r"\X")


def to_graphemes(s: str, normalize: bool = True) -> List[str]:
    """
    Split a string into extended grapheme clusters.

    A base character and its combining marks stay together, so "e" followed
    by a combining acute accent is one token.

    Args:
        s: Input string
        normalize: Whether to apply text normalization first

    Returns:
        List of grapheme tokens
    """
    if normalize:
        s = normalize_text(s)
    return GRAPHEME_PATTERN.findall(s)


# ==============================================================================
# Segment Labels
# ==============================================================================

BEGIN = "B"
INSIDE = "I"


def segments_to_labels(chars: List[str], segments: List[str]) -> List[str]:
    """
    Generate B/I labels for a tokenized text from its gold segmentation.

    The first grapheme of each segment is labelled B, the rest I.

    Args:
        chars: Grapheme tokens for the full text
        segments: Gold segments whose concatenation is the text

    Returns:
        List of labels of same length as chars

    Raises:
        InvalidSampleError: If the segments do not reconstruct the tokens
    """
    labels = []
    idx = 0

    for segment in segments:
        seg_chars = to_graphemes(unicodedata.normalize("NFC", segment), normalize=False)
        for j, ch in enumerate(seg_chars):
            if idx >= len(chars):
                raise InvalidSampleError(
                    f"Segments are longer than the text ({len(chars)} graphemes)"
                )
            if chars[idx] != ch:
                raise InvalidSampleError(
                    f"Grapheme mismatch at {idx}: expected {ch!r}, got {chars[idx]!r}"
                )
            labels.append(BEGIN if j == 0 else INSIDE)
            idx += 1

    if idx != len(chars):
        raise InvalidSampleError(
            f"Segments cover {idx} of {len(chars)} graphemes"
        )

    return labels


def labels_to_segments(chars: List[str], labels: List[str]) -> List[str]:
    """
    Apply B/I labels to join tokens into segments.

    Any label other than B continues the current segment; a leading
    non-B label still opens the first segment.

    Args:
        chars: Grapheme tokens
        labels: Predicted labels

    Returns:
        List of segment strings
    """
    segments = []
    current = []

    for ch, label in zip(chars, labels):
        if label == BEGIN and current:
            segments.append("".join(current))
            current = []
        current.append(ch)

    if current:
        segments.append("".join(current))

    return segments


def boundary_positions_from_labels(labels: List[str]) -> Set[int]:
    """
    Convert B/I labels to the set of boundary positions.

    A B label at position i > 0 is a boundary after token i - 1.
    """
    return {i - 1 for i in range(1, len(labels)) if labels[i] == BEGIN}


# ==============================================================================
# Vocabulary Building
# ==============================================================================

class Index:
    """
    Insertion-ordered bidirectional mapping between strings and dense ids.

    Ids start at 0 and are assigned in first-seen order. Once closed, the
    index rejects new strings; lookups of unknown strings return None.
    """

    def __init__(self, items: Optional[Iterable[str]] = None):
        self._stoi: Dict[str, int] = {}
        self._itos: List[str] = []
        self.closed = False
        if items is not None:
            for item in items:
                self.add(item)

    def add(self, item: str) -> int:
        idx = self._stoi.get(item)
        if idx is not None:
            return idx
        if self.closed:
            raise KeyError(f"Index is closed; cannot add {item!r}")
        idx = len(self._itos)
        self._stoi[item] = idx
        self._itos.append(item)
        return idx

    def get(self, item: str) -> Optional[int]:
        return self._stoi.get(item)

    def lookup(self, idx: int) -> str:
        return self._itos[idx]

    def close(self) -> "Index":
        self.closed = True
        return self

    def items(self) -> List[Tuple[str, int]]:
        """(string, id) pairs in id order."""
        return list(self._stoi.items())

    @classmethod
    def from_pairs(cls, pairs: Iterable[Sequence]) -> "Index":
        """
        Rebuild a closed index from (string, id) pairs.

        Raises:
            ValueError: If the pairs are malformed or the ids are not a
                gap-free permutation of 0..n-1
        """
        entries = []
        for pair in pairs:
            if len(pair) != 2:
                raise ValueError(f"Expected a (string, id) pair, got {pair!r}")
            item, idx = pair
            if not isinstance(item, str) or isinstance(idx, bool) or not isinstance(idx, int):
                raise ValueError(f"Expected a (string, id) pair, got {pair!r}")
            entries.append((item, idx))

        if sorted(idx for _, idx in entries) != list(range(len(entries))):
            raise ValueError("Index ids must be unique and cover 0..n-1")
        if len({item for item, _ in entries}) != len(entries):
            raise ValueError("Index strings must be unique")

        index = cls(item for item, _ in sorted(entries, key=lambda e: e[1]))
        return index.close()

    def __getitem__(self, item: str) -> int:
        return self._stoi[item]

    def __contains__(self, item) -> bool:
        return item in self._stoi

    def __len__(self) -> int:
        return len(self._itos)

    def __iter__(self) -> Iterator[str]:
        return iter(self._itos)

    def __repr__(self) -> str:
        state = "closed" if self.closed else "open"
        return f"Index(size={len(self)}, {state})"


class Vocabulary(NamedTuple):
    """feature and label indexes for one model."""

    features: Index
    labels: Index


def build_vocabulary(
    sequences: List[List[Iterable[str]]],
    label_sequences: List[List[str]]
) -> Vocabulary:
    """
    Build closed feature and label indexes from a training corpus.

    Labels are indexed first, then features, each in first-seen order.

    Args:
        sequences: Feature sequences (list of positions, each an iterable of
            feature strings)
        label_sequences: Label sequences parallel to sequences

    Returns:
        Vocabulary with both indexes closed

    Raises:
        EmptyTrainingSetError: If the corpus is empty
    """
    if not sequences or not label_sequences:
        raise EmptyTrainingSetError()

    labels = Index()
    for label_seq in label_sequences:
        for label in label_seq:
            labels.add(label)

    features = Index()
    for sequence in sequences:
        for position in sequence:
            for feature in position:
                features.add(feature)

    if len(labels) == 0:
        raise EmptyTrainingSetError("Training corpus contains no labels")

    return Vocabulary(features=features.close(), labels=labels.close())


def encode_features(sequence: List[Iterable[str]], index: Index) -> List[np.ndarray]:
    """
    Resolve feature strings to ids, position by position.

    Unknown features are dropped and duplicates within a position are
    counted once.

    Args:
        sequence: Feature sequence
        index: Feature index

    Returns:
        One int array of active feature ids per position
    """
    encoded = []
    for position in sequence:
        ids = {}
        for feature in position:
            idx = index.get(feature)
            if idx is not None:
                ids[idx] = None
        encoded.append(np.fromiter(ids, dtype=np.int64, count=len(ids)))
    return encoded


def encode_labels(labels: List[str], index: Index) -> np.ndarray:
    """Encode a label sequence to ids; every label must be in the index."""
    return np.array([index[label] for label in labels], dtype=np.int64)
