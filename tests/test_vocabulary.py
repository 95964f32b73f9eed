"""Tests for the binary visual vocabulary."""

from pathlib import Path

import numpy as np
import pytest

from loopgraph.features.vocabulary import VisualVocabulary


@pytest.fixture
def words() -> np.ndarray:
    rng = np.random.default_rng(0)
    return rng.integers(0, 256, (16, 32), dtype=np.uint8)


@pytest.fixture
def vocabulary(words) -> VisualVocabulary:
    return VisualVocabulary.from_words(words)


class TestVisualVocabulary:
    """Test suite for VisualVocabulary."""

    def test_quantize_exact_words(self, vocabulary, words):
        np.testing.assert_array_equal(vocabulary.quantize(words[[3, 7, 3]]), [3, 7, 3])

    def test_transform_is_normalized_and_sparse(self, vocabulary, words):
        bow = vocabulary.transform(words[[1, 1, 2]])
        assert set(bow) == {1, 2}
        assert np.linalg.norm(list(bow.values())) == pytest.approx(1.0)
        assert bow[1] > bow[2]

    def test_transform_empty(self, vocabulary):
        assert vocabulary.transform(np.empty((0, 32), dtype=np.uint8)) == {}

    def test_score(self, vocabulary, words):
        a = vocabulary.transform(words[[0, 1, 2]])
        b = vocabulary.transform(words[[0, 1, 2]])
        c = vocabulary.transform(words[[5, 6]])
        assert VisualVocabulary.score(a, b) == pytest.approx(1.0)
        assert VisualVocabulary.score(a, c) == 0.0

    def test_width_mismatch_raises(self, vocabulary):
        with pytest.raises(ValueError, match="width"):
            vocabulary.quantize(np.zeros((2, 16), dtype=np.uint8))

    def test_idf_length_mismatch_raises(self, words):
        with pytest.raises(ValueError, match="IDF"):
            VisualVocabulary(words=words, idf=np.ones(3))

    def test_save_load(self, vocabulary, tmp_path: Path):
        path = tmp_path / "vocab" / "words.npz"
        vocabulary.save(path)
        loaded = VisualVocabulary.load(path)
        np.testing.assert_array_equal(loaded.words, vocabulary.words)
        np.testing.assert_allclose(loaded.idf, vocabulary.idf)

    def test_load_missing(self, tmp_path: Path):
        with pytest.raises(FileNotFoundError):
            VisualVocabulary.load(tmp_path / "missing.npz")

    def test_load_malformed(self, tmp_path: Path):
        path = tmp_path / "bad.npz"
        np.savez(path, other=np.zeros(3))
        with pytest.raises(ValueError):
            VisualVocabulary.load(path)

    def test_update_idf(self, vocabulary):
        df = np.ones(vocabulary.n_words)
        df[0] = 10
        vocabulary.update_idf(df, n_documents=10)
        assert vocabulary.idf[0] == pytest.approx(0.0)
        assert vocabulary.idf[1] == pytest.approx(np.log(10))
