"""Deterministic stand-ins for the Bedrock embedding and LLM clients."""

import hashlib
import math
import random
from typing import Callable, Dict, List, Optional

from semmem.utils.bedrock_embed import EmbeddingInvalidInput
from semmem.utils.bedrock_llm import BedrockLLMError

DIMENSION = 64


def normalize(vector: List[float]) -> List[float]:
    norm = math.sqrt(sum(v * v for v in vector))
    return [v / norm for v in vector]


def unit_vector(axis: int, dimension: int = DIMENSION) -> List[float]:
    vector = [0.0] * dimension
    vector[axis] = 1.0
    return vector


def vector_with_similarity(base: List[float], similarity: float, axis: int) -> List[float]:
    """A unit vector whose cosine similarity to `base` is exactly `similarity`.

    `axis` picks the orthogonal direction; it must not be parallel to `base`.
    """
    base = normalize(base)
    other = unit_vector(axis, len(base))
    dot = sum(a * b for a, b in zip(base, other))
    orthogonal = normalize([o - dot * b for o, b in zip(other, base)])
    rest = math.sqrt(max(0.0, 1.0 - similarity * similarity))
    return [similarity * b + rest * o for b, o in zip(base, orthogonal)]


def hashed_vector(text: str, dimension: int = DIMENSION) -> List[float]:
    seed = int(hashlib.sha256(text.encode('utf-8')).hexdigest()[:16], 16)
    rng = random.Random(seed)
    return normalize([rng.gauss(0.0, 1.0) for _ in range(dimension)])


class FakeEmbed:
    """Returns registered vectors for known texts and hashed random vectors otherwise."""

    def __init__(self, dimension: int = DIMENSION):
        self.dimension = dimension
        self.vectors: Dict[str, List[float]] = {}
        self.fail_with: Optional[Exception] = None
        self.calls = 0
        self.batch_calls = 0

    def set_vector(self, text: str, vector: List[float]) -> None:
        self.vectors[text] = list(vector)

    def _vector(self, text: str) -> List[float]:
        if self.fail_with is not None:
            raise self.fail_with
        if not text or not text.strip():
            raise EmbeddingInvalidInput('Empty text provided for embedding')
        return list(self.vectors.get(text) or hashed_vector(text, self.dimension))

    def embed_document(self, text):
        self.calls += 1
        return self._vector(text)

    def embed_query(self, text):
        self.calls += 1
        return self._vector(text)

    def embed_batch(self, texts, input_type='search_document'):
        self.batch_calls += 1
        return [self._vector(text) for text in texts]

    def health_check(self):
        return self.fail_with is None


class FakeLLM:
    """Records prompts and answers from a handler or a queue of canned responses."""

    def __init__(self, responses: Optional[List[str]] = None, handler: Optional[Callable[[str], str]] = None):
        self.responses = list(responses or [])
        self.handler = handler
        self.fail = False
        self.json_calls = 0
        self.complete_calls = 0
        self.prompts: List[str] = []

    def _answer(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.fail:
            raise BedrockLLMError('Simulated LLM outage')
        if self.handler is not None:
            return self.handler(prompt)
        if self.responses:
            return self.responses.pop(0)
        return 'null'

    def generate_json(self, user_message, system_prompt, temperature=None):
        self.json_calls += 1
        return self._answer(user_message)

    def complete(self, prompt, system_prompt, max_tokens=None):
        self.complete_calls += 1
        return self._answer(prompt).strip()

    def health_check(self):
        return not self.fail
