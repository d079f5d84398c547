from __future__ import annotations

import hashlib
import math
import re
import unicodedata
from typing import Iterator

from stratarag.core.config import EMBED_DIM


_WORD_RE = re.compile(r"\w+", re.UNICODE)
# Word pairs count for less than single words so reordered phrasing still matches.
_BIGRAM_WEIGHT = 0.5


def _fold(text: str) -> str:
    # "Évaluation" and "evaluation" must land in the same bucket.
    decomposed = unicodedata.normalize("NFKD", text.lower())
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def _features(text: str) -> Iterator[tuple[str, float]]:
    words = _WORD_RE.findall(_fold(text))
    for word in words:
        yield word, 1.0
    for left, right in zip(words, words[1:]):
        yield f"{left} {right}", _BIGRAM_WEIGHT


def _bucket(feature: str) -> tuple[int, float]:
    digest = hashlib.blake2b(feature.encode("utf-8"), digest_size=8).digest()
    index = int.from_bytes(digest[:4], "big") % EMBED_DIM
    sign = 1.0 if digest[4] & 1 else -1.0
    return index, sign


def embed_text(text: str) -> list[float]:
    """Feature-hashed, L2-normalized embedding used by the fake and Vertex providers.

    Deterministic across processes, so seeded documents and queries agree without
    a model. Text with no word characters maps to the zero vector.
    """
    vector = [0.0] * EMBED_DIM
    for feature, weight in _features(text):
        index, sign = _bucket(feature)
        vector[index] += sign * weight
    norm = math.hypot(*vector)
    if norm == 0:
        return vector
    return [value / norm for value in vector]


def cosine_similarity(left: list[float], right: list[float]) -> float:
    if len(left) != len(right):
        raise ValueError("embedding dimension mismatch")
    denominator = math.hypot(*left) * math.hypot(*right)
    if denominator == 0:
        return 0.0
    return math.fsum(a * b for a, b in zip(left, right)) / denominator
