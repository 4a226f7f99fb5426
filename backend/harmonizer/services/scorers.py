"""
Similarity Scorers — pluggable oracle comparing two control texts.

Every scorer returns a float in [0, 1] for a pair of texts. The matcher treats
the scorer as stateless per call and may invoke it concurrently.

Backends:
- SbertScorer: sentence-transformers embeddings + cosine similarity
- EmbeddingApiScorer: OpenAI-compatible /v1/embeddings endpoint + cosine
- TokenOverlapScorer: term-frequency cosine, no model required
"""
from __future__ import annotations

import asyncio
import logging
import re
import threading
from abc import ABC, abstractmethod
from collections import Counter

import httpx
import numpy as np

from harmonizer.config import Settings, settings
from harmonizer.services.exceptions import ScorerFailure

logger = logging.getLogger(__name__)

SCORER_BACKENDS = ("sbert", "embedding_api", "token_overlap")

_TOKEN_RE = re.compile(r"[a-z0-9]+")


def cosine(a: np.ndarray, b: np.ndarray) -> float:
    norm_a = np.linalg.norm(a)
    norm_b = np.linalg.norm(b)
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return float(np.dot(a, b) / (norm_a * norm_b))


class SimilarityScorer(ABC):
    """Base scorer for any similarity backend."""

    name: str = "scorer"

    @abstractmethod
    async def score(self, text_a: str, text_b: str) -> float:
        """Return similarity of two texts in [0, 1]."""

    async def prepare(self, texts: list[str]) -> None:
        """Warm up before a batch of score() calls. Backends with a model or
        an embedding cache load it here, outside any per-pair timeout."""


_models: dict = {}
_model_lock = threading.Lock()


def _load_model(model_name: str):
    """Load and cache the sentence-transformers model, once per process."""
    with _model_lock:
        model = _models.get(model_name)
        if model is None:
            from sentence_transformers import SentenceTransformer
            logger.info("Loading SBERT model: %s", model_name)
            model = SentenceTransformer(model_name)
            _models[model_name] = model
        return model


class SbertScorer(SimilarityScorer):
    """Local sentence-transformers scorer.

    Embeddings are memoized per instance. prepare() loads the model and
    batch-encodes every control text of a run up front, so score() is a
    cosine over cached vectors. Encoding runs in a worker thread.
    """

    name = "sbert"

    def __init__(self, model_name: str):
        self.model_name = model_name
        self._embeddings: dict[str, np.ndarray] = {}

    def _encode(self, texts: list[str]) -> np.ndarray:
        model = _load_model(self.model_name)
        return model.encode(texts, convert_to_numpy=True, show_progress_bar=False)

    async def prepare(self, texts):
        missing = [t for t in dict.fromkeys(texts) if t and t not in self._embeddings]
        if not missing:
            return
        logger.info("Encoding %d texts with %s", len(missing), self.model_name)
        vectors = await asyncio.to_thread(self._encode, missing)
        for text, vec in zip(missing, vectors):
            self._embeddings[text] = vec

    async def _embedding(self, text: str) -> np.ndarray:
        vec = self._embeddings.get(text)
        if vec is None:
            vec = (await asyncio.to_thread(self._encode, [text]))[0]
            self._embeddings[text] = vec
        return vec

    async def score(self, text_a, text_b):
        if not text_a or not text_b:
            raise ScorerFailure("Cannot score empty text")
        vec_a = await self._embedding(text_a)
        vec_b = await self._embedding(text_b)
        # Negative cosine means unrelated
        return max(cosine(vec_a, vec_b), 0.0)


class EmbeddingApiScorer(SimilarityScorer):
    """Scorer backed by an OpenAI-compatible embeddings API (OpenAI, vLLM, Ollama, LocalAI)."""

    name = "embedding_api"

    def __init__(self, endpoint: str, api_key: str, model: str, timeout: float = 30):
        self.endpoint = endpoint.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self._embeddings: dict[str, np.ndarray] = {}

    async def _fetch(self, texts: list[str]) -> list[np.ndarray]:
        headers = {"content-type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.endpoint}/v1/embeddings",
                    headers=headers,
                    json={"model": self.model, "input": texts},
                )
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as e:
            raise ScorerFailure(f"Embedding API request failed: {e}") from e

        items = data.get("data") or []
        if len(items) != len(texts):
            raise ScorerFailure(
                f"Embedding API returned {len(items)} vectors for {len(texts)} inputs"
            )
        items = sorted(items, key=lambda item: item.get("index", 0))
        return [np.asarray(item["embedding"], dtype=float) for item in items]

    async def _cache(self, texts) -> None:
        missing = [t for t in dict.fromkeys(texts) if t and t not in self._embeddings]
        if missing:
            for text, vec in zip(missing, await self._fetch(missing)):
                self._embeddings[text] = vec

    async def prepare(self, texts):
        await self._cache(texts)

    async def score(self, text_a, text_b):
        if not text_a or not text_b:
            raise ScorerFailure("Cannot score empty text")
        await self._cache((text_a, text_b))
        return max(cosine(self._embeddings[text_a], self._embeddings[text_b]), 0.0)


class TokenOverlapScorer(SimilarityScorer):
    """Cosine similarity of lower-cased term-frequency vectors."""

    name = "token_overlap"

    @staticmethod
    def _tokens(text: str) -> Counter:
        return Counter(_TOKEN_RE.findall(text.lower()))

    async def score(self, text_a, text_b):
        tokens_a = self._tokens(text_a or "")
        tokens_b = self._tokens(text_b or "")
        if not tokens_a or not tokens_b:
            raise ScorerFailure("Cannot score text without tokens")
        vocab = sorted(set(tokens_a) | set(tokens_b))
        vec_a = np.array([tokens_a[t] for t in vocab], dtype=float)
        vec_b = np.array([tokens_b[t] for t in vocab], dtype=float)
        return cosine(vec_a, vec_b)


def get_scorer(config: Settings) -> SimilarityScorer:
    """Factory: return a fresh scorer for the configured backend."""
    backend = config.SCORER_BACKEND
    if backend == "sbert":
        return SbertScorer(config.SBERT_MODEL)
    elif backend == "embedding_api":
        return EmbeddingApiScorer(
            config.EMBEDDING_API_URL,
            config.EMBEDDING_API_KEY,
            config.EMBEDDING_MODEL,
            timeout=config.SCORER_TIMEOUT_SECONDS,
        )
    elif backend == "token_overlap":
        return TokenOverlapScorer()
    raise ValueError(
        f"Unknown SCORER_BACKEND '{backend}'. Must be one of: {', '.join(SCORER_BACKENDS)}"
    )


def get_similarity_scorer() -> SimilarityScorer:
    """FastAPI dependency: one scorer instance per request."""
    return get_scorer(settings)
