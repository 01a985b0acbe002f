"""
Embedding Backend for Semantic Verse Scoring

Encapsulates all sentence-transformers logic in one place: model loading,
text encoding, numpy conversion. The matching engine only sees the
EmbeddingBackend interface, so semantic scoring is a capability injected at
construction time rather than something probed on every call.

Uses all-MiniLM-L6-v2 via sentence-transformers, the same small model the live
app uses for offline paraphrase detection. When sentence-transformers is not
installed, create_default_backend() returns None and the engine runs
lexical-only.

Output embeddings are L2-normalized numpy arrays for cosine similarity.
"""

import sys
import numpy as np
from typing import List, Optional

from matcher_config import DEFAULT_EMBEDDING_MODEL

# sentence-transformers is an optional extra (pip install versematch[semantic])
try:
    from sentence_transformers import SentenceTransformer
    SENTENCE_TRANSFORMERS_AVAILABLE = True
except ImportError:
    SentenceTransformer = None
    SENTENCE_TRANSFORMERS_AVAILABLE = False


class EmbeddingBackend:
    """
    Interface for the optional semantic scoring backend.

    load() may raise; the engine treats a failed load as "semantic scoring
    unavailable" and falls back to lexical scoring.
    """

    def load(self):
        """Prepare the backend. Called once before the first embed."""

    def embed(self, text: str) -> np.ndarray:
        raise NotImplementedError

    def embed_texts(self, texts: List[str]) -> np.ndarray:
        """Encode several texts; one row per text."""
        return np.vstack([np.asarray(self.embed(t), dtype=np.float32) for t in texts])


class SentenceTransformerBackend(EmbeddingBackend):
    """Lazily loaded sentence-transformers model."""

    def __init__(self, model_name: str = DEFAULT_EMBEDDING_MODEL,
                 device: Optional[str] = None, batch_size: int = 64):
        self.model_name = model_name
        self.device = device
        self.batch_size = batch_size
        self._model = None

    def load(self):
        if self._model is not None:
            return self._model
        if not SENTENCE_TRANSFORMERS_AVAILABLE:
            raise RuntimeError("sentence-transformers is not installed")

        print(f"[Embedding] Loading embedding model ({self.model_name})...", file=sys.stderr, flush=True)
        self._model = SentenceTransformer(self.model_name, device=self.device)
        print("[Embedding] ✓ Embedding model loaded", file=sys.stderr, flush=True)
        return self._model

    def embed_texts(self, texts: List[str]) -> np.ndarray:
        """
        Encode texts with mean pooling and L2 normalization.

        Args:
            texts: Texts to encode

        Returns:
            numpy array of shape (len(texts), dim)
        """
        model = self.load()
        embeddings = model.encode(
            texts,
            batch_size=self.batch_size,
            convert_to_numpy=True,
            normalize_embeddings=True,
            show_progress_bar=False,
        )
        return np.asarray(embeddings, dtype=np.float32)

    def embed(self, text: str) -> np.ndarray:
        return self.embed_texts([text])[0]


def create_default_backend(model_name: str = DEFAULT_EMBEDDING_MODEL) -> Optional[EmbeddingBackend]:
    """The sentence-transformers backend, or None when it cannot be imported."""
    if not SENTENCE_TRANSFORMERS_AVAILABLE:
        print("[Embedding] ⚠ sentence-transformers not installed; semantic scoring disabled. "
              "Install with: pip install sentence-transformers", file=sys.stderr, flush=True)
        return None
    return SentenceTransformerBackend(model_name)


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """Cosine similarity over the shared prefix of two vectors; 0 for zero vectors."""
    a = np.asarray(a, dtype=np.float32).ravel()
    b = np.asarray(b, dtype=np.float32).ravel()
    length = min(a.shape[0], b.shape[0])
    if length == 0:
        return 0.0
    a, b = a[:length], b[:length]
    denom = float(np.linalg.norm(a) * np.linalg.norm(b))
    if denom == 0.0:
        return 0.0
    return float(np.dot(a, b) / denom)
