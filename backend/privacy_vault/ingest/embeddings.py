"""Embedding utilities."""

from __future__ import annotations

import hashlib
import logging
import math
import re
from array import array
from dataclasses import dataclass
from typing import Any, Sequence

import requests

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"\w+")

BACKEND_SENTENCE_TRANSFORMERS = "sentence-transformers"
BACKEND_HASHED = "hashed"


@dataclass(slots=True)
class EmbeddingBatch:
    vectors: list[list[float]]
    model: str
    dim: int
    backend: str


class EmbeddingModel:
    """Local embedding model.

    The default backend is a sentence-transformers encoder, loaded once per
    process. When it cannot be loaded the model degrades to a deterministic
    hashed bag-of-words: unigrams and adjacent bigrams are hashed into ``dim``
    signed buckets. Both paths L2-normalise, so a dot product is a cosine
    similarity. Hashed vectors carry a ``hashed:`` model tag, so the index
    never scores them against sentence-transformer vectors.
    """

    _instances: dict[tuple[str, str, int], "EmbeddingModel"] = {}

    def __init__(self, model_name: str, dim: int = 384, backend: str = BACKEND_SENTENCE_TRANSFORMERS) -> None:
        self.model_name = model_name
        self._dim = dim
        self._backend = BACKEND_HASHED
        self._encoder: Any = None
        self.degraded = False
        self.degraded_reason: str | None = None
        if backend == BACKEND_SENTENCE_TRANSFORMERS:
            self._load_sentence_transformer()

    @classmethod
    def get(cls, model_name: str, dim: int = 384, backend: str = BACKEND_SENTENCE_TRANSFORMERS) -> "EmbeddingModel":
        key = (backend, model_name or "hashed", dim)
        if key not in cls._instances:
            cls._instances[key] = EmbeddingModel(model_name=key[1], dim=dim, backend=backend)
        return cls._instances[key]

    def _load_sentence_transformer(self) -> None:
        try:
            from sentence_transformers import SentenceTransformer

            encoder = SentenceTransformer(self.model_name)
            dim = encoder.get_sentence_embedding_dimension()
        except Exception as exc:  # model download or load failure
            self.degraded = True
            self.degraded_reason = f"{type(exc).__name__}: {exc}"
            logger.warning(
                "Embedding model %s unavailable, using hashed fallback: %s", self.model_name, self.degraded_reason
            )
            return
        self._encoder = encoder
        self._backend = BACKEND_SENTENCE_TRANSFORMERS
        if dim:
            self._dim = int(dim)
        logger.info("Loaded embedding model %s (dim=%s)", self.model_name, self._dim)

    @property
    def dim(self) -> int:
        return self._dim

    @property
    def backend(self) -> str:
        return self._backend

    @property
    def tag(self) -> str:
        """Model identity stored beside every vector."""
        if self._backend == BACKEND_HASHED:
            return f"hashed:{self.model_name}"
        return self.model_name

    def encode(self, texts: Sequence[str]) -> EmbeddingBatch:
        if self._encoder is not None:
            vectors = self._encode_dense(texts)
        else:
            vectors = [self._encode_hashed(text) for text in texts]
        return EmbeddingBatch(vectors=vectors, model=self.tag, dim=self._dim, backend=self._backend)

    def _encode_dense(self, texts: Sequence[str]) -> list[list[float]]:
        if not texts:
            return []
        matrix = self._encoder.encode(
            list(texts),
            batch_size=32,
            convert_to_numpy=True,
            normalize_embeddings=True,
            show_progress_bar=False,
        )
        return [[float(value) for value in row] for row in matrix.tolist()]

    def _encode_hashed(self, text: str) -> list[float]:
        tokens = _tokenize(text)
        features = tokens + [f"{a} {b}" for a, b in zip(tokens, tokens[1:])]
        vector = [0.0] * self._dim
        for feature in features:
            slot, sign = _hash_feature(feature, self._dim)
            vector[slot] += sign
        _normalize(vector)
        return vector

    @staticmethod
    def as_bytes(vector: Sequence[float]) -> bytes:
        return array("f", vector).tobytes()

    @staticmethod
    def from_bytes(blob: bytes) -> list[float]:
        floats = array("f")
        floats.frombytes(blob)
        return list(floats)


class RemoteEmbeddingClient:
    """Client for an optional HTTP embedding provider.

    Expects ``POST {url}`` with ``{"model": ..., "input": [...]}`` to answer
    ``{"embeddings": [[...], ...]}``. Callers only reach this after checking
    the ``remote_inference`` consent purpose.
    """

    def __init__(self, url: str, model_name: str, dim: int, timeout: float = 10.0) -> None:
        self.url = url
        self.model_name = model_name
        self.dim = dim
        self.timeout = timeout

    def encode(self, texts: Sequence[str]) -> EmbeddingBatch:
        resp = requests.post(
            self.url,
            json={"model": self.model_name, "input": list(texts)},
            timeout=self.timeout,
        )
        resp.raise_for_status()
        raw = resp.json().get("embeddings") or []
        if len(raw) != len(texts):
            raise ValueError(f"Remote provider returned {len(raw)} vectors for {len(texts)} inputs")
        vectors: list[list[float]] = []
        for item in raw:
            vector = [float(value) for value in item]
            if len(vector) != self.dim:
                raise ValueError(f"Remote vector dimension {len(vector)} != {self.dim}")
            _normalize(vector)
            vectors.append(vector)
        return EmbeddingBatch(vectors=vectors, model=self.model_name, dim=self.dim, backend="remote")


def embed_texts(
    local: EmbeddingModel,
    texts: Sequence[str],
    remote: RemoteEmbeddingClient | None = None,
    allow_remote: bool = False,
) -> EmbeddingBatch:
    """Embed with the remote provider when permitted, otherwise (or on error) locally."""
    if remote is not None and allow_remote and texts:
        try:
            return remote.encode(texts)
        except (requests.RequestException, ValueError) as exc:
            logger.warning("Remote embedding failed, using local model: %s", exc)
    return local.encode(texts)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def _tokenize(text: str) -> list[str]:
    return _TOKEN_RE.findall(text.lower())


def _hash_feature(feature: str, dim: int) -> tuple[int, float]:
    digest = hashlib.blake2b(feature.encode("utf-8"), digest_size=8).digest()
    value = int.from_bytes(digest, "big")
    return value % dim, 1.0 if (value >> 63) & 1 else -1.0


def _normalize(vector: list[float]) -> None:
    norm = math.sqrt(sum(value * value for value in vector))
    if norm == 0:
        return
    inv = 1.0 / norm
    for idx, value in enumerate(vector):
        vector[idx] = value * inv


__all__ = [
    "BACKEND_HASHED",
    "BACKEND_SENTENCE_TRANSFORMERS",
    "EmbeddingModel",
    "EmbeddingBatch",
    "RemoteEmbeddingClient",
    "embed_texts",
    "cosine_similarity",
]
