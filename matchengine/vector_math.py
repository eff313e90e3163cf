"""
Vector math helpers for aggregate signatures and cosine similarity.
Pure functions over numpy arrays, no I/O.
"""

from typing import List, Optional

import numpy as np

from .config import Config


def mean(vectors: List[np.ndarray], dim: Optional[int] = None) -> np.ndarray:
    """
    Elementwise average of a list of vectors.

    Args:
        vectors: Vectors of equal dimension
        dim: Dimension of the zero vector returned for empty input
             (defaults to the configured embedding dimension)

    Returns:
        Mean vector, or an all-zero vector when `vectors` is empty
    """
    if len(vectors) == 0:
        return np.zeros(dim or Config.EMBEDDING_DIM, dtype=np.float32)

    embeddings_array = np.stack([np.asarray(v, dtype=np.float32) for v in vectors])
    return np.mean(embeddings_array, axis=0).astype(np.float32)


def normalize(v: np.ndarray) -> np.ndarray:
    """L2-normalize a vector; a zero vector is returned unchanged."""
    v = np.asarray(v, dtype=np.float32)
    norm = np.linalg.norm(v)
    return v / norm if norm > 0 else v


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """
    Dot product of two pre-normalized vectors, clamped to [0, 1].

    Vectors of different dimension have zero similarity.
    """
    a = np.asarray(a, dtype=np.float32)
    b = np.asarray(b, dtype=np.float32)
    if a.shape != b.shape:
        return 0.0

    dot_product = float(np.dot(a, b))
    return max(0.0, min(1.0, dot_product))
