"""
Character-level feature extraction for CRF segmentation.

Every position gets a list of feature strings built from the grapheme
itself, its Unicode category, and a window of neighbouring graphemes. The
extractor knows nothing about any particular script, so the same templates
work for any alphabet.
"""

import unicodedata
from typing import List, Tuple

from .preprocessing import normalize_text, to_graphemes

START = "<START>"
END = "<END>"


def char_category(grapheme: str) -> str:
    """
    Unicode general category of a grapheme's base character.

    Whitespace is reported as "Zs" regardless of its exact category, so
    tabs and spaces share features.
    """
    if not grapheme:
        return ""
    if grapheme.isspace():
        return "Zs"
    return unicodedata.category(grapheme[0])


class FeatureExtractor:
    """
    Template-based feature extractor.

    Features per position:
    - bias, grapheme identity and category
    - sequence-edge flags
    - neighbouring graphemes and categories within the window
    - character bigrams/trigrams and category bigrams
    - category change from the previous grapheme
    """

    def __init__(self, window_size: int = 3, lowercase: bool = False):
        if window_size < 0:
            raise ValueError(f"window_size must be non-negative, got {window_size}")
        self.window_size = window_size
        self.lowercase = lowercase

    def extract(self, chars: List[str], pos: int) -> List[str]:
        """
        Extract features for a single position.

        Args:
            chars: Grapheme tokens
            pos: Position of the current grapheme

        Returns:
            List of feature strings
        """
        c = chars[pos]
        n = len(chars)
        cat = char_category(c)

        features = [
            "bias",
            f"char={c}",
            f"cat={cat}",
        ]

        if pos == 0:
            features.append("is_first")
        if pos == n - 1:
            features.append("is_last")

        # context window
        for offset in range(1, self.window_size + 1):
            prev_pos = pos - offset
            if prev_pos >= 0:
                features.append(f"char[-{offset}]={chars[prev_pos]}")
                features.append(f"cat[-{offset}]={char_category(chars[prev_pos])}")
            else:
                features.append(f"char[-{offset}]={START}")
                features.append(f"cat[-{offset}]={START}")

            next_pos = pos + offset
            if next_pos < n:
                features.append(f"char[+{offset}]={chars[next_pos]}")
                features.append(f"cat[+{offset}]={char_category(chars[next_pos])}")
            else:
                features.append(f"char[+{offset}]={END}")
                features.append(f"cat[+{offset}]={END}")

        # n-grams
        if pos >= 1:
            prev_cat = char_category(chars[pos - 1])
            features.append(f"bigram[-1:0]={chars[pos - 1]}{c}")
            features.append(f"cat_bigram[-1:0]={prev_cat}_{cat}")
            features.append(f"cat_change={prev_cat != cat}")
        if pos < n - 1:
            features.append(f"bigram[0:+1]={c}{chars[pos + 1]}")
            features.append(f"cat_bigram[0:+1]={cat}_{char_category(chars[pos + 1])}")
        if pos >= 2:
            features.append(f"trigram[-2:0]={chars[pos - 2]}{chars[pos - 1]}{c}")
        if pos < n - 2:
            features.append(f"trigram[0:+2]={c}{chars[pos + 1]}{chars[pos + 2]}")

        return features

    def extract_tokens(self, chars: List[str]) -> List[List[str]]:
        """
        Extract features for every position of a tokenized sequence.

        With lowercase=True only the feature strings are lowercased; the
        tokens themselves are left alone.
        """
        if self.lowercase:
            chars = [c.lower() for c in chars]
        return [self.extract(chars, i) for i in range(len(chars))]

    def tokenize(self, text: str) -> List[str]:
        """Normalize and split text into graphemes."""
        return to_graphemes(normalize_text(text), normalize=False)

    def extract_sequence(self, text: str) -> Tuple[List[str], List[List[str]]]:
        """
        Tokenize text and extract features for all positions.

        Args:
            text: Raw text

        Returns:
            Tuple of (graphemes, feature sequence); graphemes keep their
            original case
        """
        chars = self.tokenize(text)
        return chars, self.extract_tokens(chars)
