"""Binary visual vocabulary for appearance-based place retrieval.

A visual vocabulary enables fast image similarity comparison by:
1. Assigning each binary descriptor to its nearest visual word (Hamming)
2. Representing an image as a sparse TF-IDF histogram of word occurrences
3. Comparing images via cosine similarity of the histograms

The vocabulary is built offline; only loading and transforming happen here.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import numpy as np

AppearanceVector = dict[int, float]


@dataclass
class VisualVocabulary:
    """Bag of Words vocabulary for binary (BRIEF) descriptors.

    Attributes:
        words: Binary visual words, shape (n_words, 32) uint8
        idf: Inverse document frequency weights, shape (n_words,)
    """

    words: np.ndarray  # (n_words, 32) uint8
    idf: np.ndarray  # (n_words,) float32

    def __post_init__(self) -> None:
        self.words = np.asarray(self.words, dtype=np.uint8)
        self.idf = np.asarray(self.idf, dtype=np.float32).flatten()
        if self.words.ndim != 2 or len(self.words) == 0:
            raise ValueError(f"Vocabulary words must be a non-empty 2D array, got {self.words.shape}")
        if len(self.idf) != len(self.words):
            raise ValueError(
                f"IDF has {len(self.idf)} weights for {len(self.words)} words"
            )

    @property
    def n_words(self) -> int:
        """Number of visual words."""
        return len(self.words)

    def quantize(self, descriptors: np.ndarray) -> np.ndarray:
        """Assign each descriptor to its nearest word by Hamming distance.

        Args:
            descriptors: (N, 32) uint8 descriptors

        Returns:
            (N,) word indices
        """
        descriptors = np.asarray(descriptors, dtype=np.uint8)
        if len(descriptors) == 0:
            return np.empty(0, dtype=np.int64)
        if descriptors.shape[1] != self.words.shape[1]:
            raise ValueError(
                f"Descriptor width {descriptors.shape[1]} does not match "
                f"vocabulary width {self.words.shape[1]}"
            )

        # (N, n_words, 32) XOR, popcount over the last two axes
        xor = np.bitwise_xor(descriptors[:, np.newaxis, :], self.words[np.newaxis, :, :])
        distances = np.unpackbits(xor, axis=2).sum(axis=2)
        return np.argmin(distances, axis=1)

    def transform(self, descriptors: np.ndarray) -> AppearanceVector:
        """Convert image descriptors to a sparse appearance vector.

        Args:
            descriptors: (N, 32) uint8 descriptors

        Returns:
            Mapping word id -> weight, L2 normalized with TF-IDF weighting.
            Empty if there are no descriptors.
        """
        if descriptors is None or len(descriptors) == 0:
            return {}

        word_indices = self.quantize(descriptors)
        histogram = np.bincount(word_indices, minlength=self.n_words).astype(np.float32)
        tfidf = histogram * self.idf

        norm = np.linalg.norm(tfidf)
        if norm == 0:
            return {}
        tfidf /= norm

        nonzero = np.flatnonzero(tfidf)
        return {int(i): float(tfidf[i]) for i in nonzero}

    @staticmethod
    def score(bow1: AppearanceVector, bow2: AppearanceVector) -> float:
        """Cosine similarity between two normalized appearance vectors.

        Returns:
            Similarity in [0, 1]
        """
        if len(bow1) > len(bow2):
            bow1, bow2 = bow2, bow1
        return float(sum(w * bow2.get(word, 0.0) for word, w in bow1.items()))

    def save(self, path: str | Path) -> None:
        """Save vocabulary to .npz file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        np.savez(path, words=self.words, idf=self.idf)

    @classmethod
    def load(cls, path: str | Path) -> VisualVocabulary:
        """Load vocabulary from .npz file.

        Raises:
            FileNotFoundError: If the file doesn't exist
            ValueError: If the file lacks the expected arrays
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Vocabulary file not found: {path}")
        with np.load(path) as data:
            if "words" not in data or "idf" not in data:
                raise ValueError(f"Vocabulary file {path} must contain 'words' and 'idf'")
            return cls(words=data["words"], idf=data["idf"])

    @classmethod
    def from_words(cls, words: np.ndarray) -> VisualVocabulary:
        """Create vocabulary from binary words with uniform IDF."""
        words = np.asarray(words, dtype=np.uint8)
        return cls(words=words, idf=np.ones(len(words), dtype=np.float32))

    def update_idf(self, document_frequencies: np.ndarray, n_documents: int) -> None:
        """Update IDF weights: IDF(word) = log(N / df(word)).

        Args:
            document_frequencies: Count of documents containing each word, shape (n_words,)
            n_documents: Total number of documents
        """
        df_smoothed = np.maximum(document_frequencies, 1)
        self.idf = np.log(n_documents / df_smoothed).astype(np.float32)
