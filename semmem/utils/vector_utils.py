"""
Vector helpers shared by the memory, graph and action cache services.
"""

import math
from typing import List, Sequence


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity between two vectors.

    Args:
        a: First vector
        b: Second vector

    Returns:
        Similarity in [-1, 1]; 0.0 when either vector has zero norm

    Raises:
        ValueError: If the vectors differ in length
    """
    if len(a) != len(b):
        raise ValueError(f'Vectors must have same length ({len(a)} != {len(b)})')

    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for x, y in zip(a, b):
        dot += x * y
        norm_a += x * x
        norm_b += y * y

    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return dot / (math.sqrt(norm_a) * math.sqrt(norm_b))


def clamp_score(value: float) -> float:
    """Clamp a similarity into the [0, 1] range used for edge scores."""
    return max(0.0, min(1.0, float(value)))


def is_valid_embedding(vector: Sequence[float], dimension: int) -> bool:
    """True when the vector has the corpus dimension and is not all zeros."""
    if vector is None or len(vector) != dimension:
        return False
    return any(v != 0.0 for v in vector)


def truncate_for_embedding(text: str, max_chars: int) -> str:
    """Trim text to the embedding model's input budget on a word boundary."""
    text = (text or '').strip()
    if len(text) <= max_chars:
        return text
    cut = text[:max_chars]
    space = cut.rfind(' ')
    if space > max_chars // 2:
        cut = cut[:space]
    return cut.rstrip()


def as_float_list(vector: Sequence[float]) -> List[float]:
    """Copy a vector as a plain list of floats (JSON/OpenSearch friendly)."""
    return [float(v) for v in vector]
