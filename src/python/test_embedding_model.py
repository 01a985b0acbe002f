"""
Unit tests for the embedding backend module (embedding_model.py).

The sentence-transformers model is replaced with a mock, so these tests run
without downloading all-MiniLM-L6-v2 or having sentence-transformers installed.
"""

import sys
import os
import unittest
from unittest.mock import MagicMock, patch
import numpy as np

# Ensure the python source directory is on the path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import embedding_model
from embedding_model import (
    EmbeddingBackend,
    SentenceTransformerBackend,
    cosine_similarity,
    create_default_backend,
)


def fake_model(dim=4):
    """Mock SentenceTransformer whose encode() returns one unit row per text."""
    model = MagicMock()

    def encode(texts, **kwargs):
        rows = np.zeros((len(texts), dim), dtype=np.float32)
        for i in range(len(texts)):
            rows[i, i % dim] = 1.0
        return rows

    model.encode.side_effect = encode
    return model


class TestCosineSimilarity(unittest.TestCase):

    def test_identical_vectors(self):
        v = np.array([0.3, 0.4, 0.5])
        self.assertAlmostEqual(cosine_similarity(v, v), 1.0, places=5)

    def test_orthogonal_vectors(self):
        self.assertAlmostEqual(cosine_similarity([1, 0], [0, 1]), 0.0)

    def test_opposite_vectors(self):
        self.assertAlmostEqual(cosine_similarity([1, 2], [-1, -2]), -1.0, places=5)

    def test_zero_vector(self):
        self.assertEqual(cosine_similarity([0, 0], [1, 1]), 0.0)
        self.assertEqual(cosine_similarity([], [1, 1]), 0.0)

    def test_shared_prefix_of_unequal_lengths(self):
        self.assertAlmostEqual(cosine_similarity([1, 0], [1, 0, 5]), 1.0, places=5)


class TestEmbeddingBackendInterface(unittest.TestCase):

    def test_embed_texts_stacks_single_embeddings(self):
        class Doubling(EmbeddingBackend):
            def embed(self, text):
                return np.array([len(text), 2 * len(text)])

        matrix = Doubling().embed_texts(["ab", "abc"])
        self.assertEqual(matrix.shape, (2, 2))
        self.assertEqual(matrix.dtype, np.float32)
        np.testing.assert_array_equal(matrix[1], [3, 6])

    def test_embed_not_implemented(self):
        with self.assertRaises(NotImplementedError):
            EmbeddingBackend().embed("text")


class TestSentenceTransformerBackend(unittest.TestCase):

    def setUp(self):
        self.model = fake_model()
        self.constructor = MagicMock(return_value=self.model)
        patcher_cls = patch.object(embedding_model, "SentenceTransformer", self.constructor)
        patcher_flag = patch.object(embedding_model, "SENTENCE_TRANSFORMERS_AVAILABLE", True)
        patcher_cls.start()
        patcher_flag.start()
        self.addCleanup(patcher_cls.stop)
        self.addCleanup(patcher_flag.stop)

    def test_load_is_lazy_and_idempotent(self):
        backend = SentenceTransformerBackend("all-MiniLM-L6-v2")
        self.constructor.assert_not_called()
        self.assertIs(backend.load(), backend.load())
        self.constructor.assert_called_once_with("all-MiniLM-L6-v2", device=None)

    def test_embed_texts_normalizes(self):
        backend = SentenceTransformerBackend()
        matrix = backend.embed_texts(["God is love", "The Lord is my shepherd"])
        self.assertEqual(matrix.shape, (2, 4))
        self.assertEqual(matrix.dtype, np.float32)
        kwargs = self.model.encode.call_args.kwargs
        self.assertTrue(kwargs["normalize_embeddings"])
        self.assertTrue(kwargs["convert_to_numpy"])

    def test_embed_single_returns_vector(self):
        embedding = SentenceTransformerBackend().embed("Faith in Christ")
        self.assertEqual(embedding.shape, (4,))
        self.assertAlmostEqual(float(np.linalg.norm(embedding)), 1.0)

    def test_create_default_backend(self):
        backend = create_default_backend("custom-model")
        self.assertIsInstance(backend, SentenceTransformerBackend)
        self.assertEqual(backend.model_name, "custom-model")


class TestMissingSentenceTransformers(unittest.TestCase):

    def setUp(self):
        patcher = patch.object(embedding_model, "SENTENCE_TRANSFORMERS_AVAILABLE", False)
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_create_default_backend_returns_none(self):
        self.assertIsNone(create_default_backend())

    def test_load_raises(self):
        with self.assertRaises(RuntimeError):
            SentenceTransformerBackend().load()


if __name__ == '__main__':
    unittest.main()
