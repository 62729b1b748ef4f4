"""Relevance scoring between two text fragments.

Two interchangeable strategies are provided:

- :class:`EmbeddingScorer` embeds both texts through an external provider and
  returns their cosine similarity, in ``[-1, 1]``.
- :class:`LexicalScorer` compares unique word tokens locally, in ``[0, 1]``.

The strategy is chosen once by :func:`make_scorer`. Neither strategy raises to
its caller: any failure while scoring is logged and reported as a score of 0.
"""
from __future__ import annotations

import asyncio
import logging
import math
import re
from collections import OrderedDict
from typing import List, Optional, Protocol, Sequence, Set

import numpy as np

logger = logging.getLogger(__name__)

_NON_WORD = re.compile(r"\W+")


class EmbeddingProvider(Protocol):
    async def embed(self, text: str) -> Sequence[float]: ...


class RelevanceScorer(Protocol):
    kind: str

    async def score(self, a: str, b: str) -> float: ...

    async def score_many(self, reference: str, texts: Sequence[str]) -> List[float]: ...


# -----------------------------
# Pure functions
# -----------------------------
def cosine_similarity(u: Sequence[float], v: Sequence[float]) -> float:
    """Cosine similarity of two vectors; 0.0 for mismatched or zero-length input."""
    a = np.asarray(u, dtype=np.float64)
    b = np.asarray(v, dtype=np.float64)
    if a.ndim != 1 or a.shape != b.shape or a.size == 0:
        return 0.0
    na = float(np.linalg.norm(a))
    nb = float(np.linalg.norm(b))
    if na == 0.0 or nb == 0.0:
        return 0.0
    sim = float(np.dot(a, b)) / (na * nb)
    if not math.isfinite(sim):
        return 0.0
    # float error can push |sim| a hair past 1
    return max(-1.0, min(1.0, sim))


def tokenize(text: str) -> Set[str]:
    """Lower-cased unique tokens split on runs of non-word characters."""
    return {t for t in _NON_WORD.split((text or "").lower()) if t}


def _token_overlap(ta: Set[str], tb: Set[str]) -> float:
    if not ta or not tb:
        return 0.0
    return len(ta & tb) / math.sqrt(len(ta) * len(tb))


def lexical_similarity(a: str, b: str) -> float:
    """``|A & B| / sqrt(|A| * |B|)`` over unique tokens; 0.0 if either side is empty."""
    return _token_overlap(tokenize(a), tokenize(b))


# -----------------------------
# Strategies
# -----------------------------
class LexicalScorer:
    """Token-overlap scorer; no external calls."""

    kind = "lexical"

    async def score(self, a: str, b: str) -> float:
        return lexical_similarity(a, b)

    async def score_many(self, reference: str, texts: Sequence[str]) -> List[float]:
        ref = tokenize(reference)
        return [_token_overlap(ref, tokenize(t)) for t in texts]


class EmbeddingScorer:
    """Cosine similarity over provider embeddings.

    Each embedding call is bounded by ``timeout`` seconds; a call that fails or
    times out contributes a score of 0 instead of failing the whole operation.
    Successful embeddings are kept in a small LRU keyed by text, so stored
    messages are not re-embedded on every prune or context request.
    """

    kind = "embedding"

    def __init__(
        self,
        provider: EmbeddingProvider,
        *,
        timeout: float = 5.0,
        max_concurrency: int = 8,
        cache_size: int = 256,
    ) -> None:
        if provider is None:
            raise ValueError("EmbeddingScorer requires an embedding provider")
        self.provider = provider
        self.timeout = float(timeout)
        self.max_concurrency = max(1, int(max_concurrency))
        self.cache_size = max(0, int(cache_size))
        self._cache: "OrderedDict[str, np.ndarray]" = OrderedDict()

    async def _embed(self, text: str) -> Optional[np.ndarray]:
        cached = self._cache.get(text)
        if cached is not None:
            self._cache.move_to_end(text)
            return cached

        try:
            raw = await asyncio.wait_for(self.provider.embed(text), timeout=self.timeout)
            vec = np.asarray(raw, dtype=np.float64)
            if vec.ndim != 1 or vec.size == 0:
                raise ValueError(f"malformed embedding with shape {vec.shape}")
        except asyncio.TimeoutError:
            logger.warning("Embedding timed out after %.1fs; scoring as 0", self.timeout)
            return None
        except Exception as e:
            logger.warning("Embedding failed; scoring as 0: %s", e)
            return None

        if self.cache_size:
            self._cache[text] = vec
            while len(self._cache) > self.cache_size:
                self._cache.popitem(last=False)
        return vec

    async def score(self, a: str, b: str) -> float:
        u, v = await asyncio.gather(self._embed(a), self._embed(b))
        if u is None or v is None:
            return 0.0
        return cosine_similarity(u, v)

    async def score_many(self, reference: str, texts: Sequence[str]) -> List[float]:
        if not texts:
            return []
        ref = await self._embed(reference)
        if ref is None:
            return [0.0] * len(texts)

        sem = asyncio.Semaphore(self.max_concurrency)

        async def _one(t: str) -> Optional[np.ndarray]:
            async with sem:
                return await self._embed(t)

        vecs = await asyncio.gather(*(_one(t) for t in texts))
        return [0.0 if v is None else cosine_similarity(ref, v) for v in vecs]


def make_scorer(
    kind: str = "auto",
    provider: Optional[EmbeddingProvider] = None,
    *,
    timeout: float = 5.0,
    max_concurrency: int = 8,
    cache_size: int = 256,
) -> RelevanceScorer:
    """Select a scoring strategy.

    ``auto`` picks the embedding strategy when a provider is given and the
    lexical one otherwise.
    """
    kind = (kind or "auto").strip().lower()
    if kind == "auto":
        kind = "embedding" if provider is not None else "lexical"
    if kind == "embedding":
        return EmbeddingScorer(
            provider,  # type: ignore[arg-type]
            timeout=timeout,
            max_concurrency=max_concurrency,
            cache_size=cache_size,
        )
    if kind == "lexical":
        return LexicalScorer()
    raise ValueError(f"Unknown scorer kind: {kind!r}")
