from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Set, Tuple

from .scoring import EmbeddingProvider, RelevanceScorer, make_scorer
from .typing import ROLES, Message

logger = logging.getLogger(__name__)

DEFAULT_MAX_SIZE_BYTES = 5 * 1024 * 1024
DEFAULT_MAX_MESSAGE_COUNT = 20
DEFAULT_MAX_CONTEXT_SIZE = 1024 * 1024
CONTEXT_SEPARATOR = "\n---\n"

PRUNE_MODES = ("after_append", "before_append")


# -----------------------------
# Size estimation
# -----------------------------
def serialize_message(message: Message) -> str:
    return json.dumps(message.to_dict(), ensure_ascii=False, separators=(",", ":"))


def estimate_size(message: Message) -> int:
    """Estimated byte cost of a message: UTF-8 length of its JSON form."""
    return len(serialize_message(message).encode("utf-8"))


@dataclass
class MemoryPolicy:
    """Capacity limits and eviction ordering."""
    max_size_bytes: int = DEFAULT_MAX_SIZE_BYTES
    max_message_count: int = DEFAULT_MAX_MESSAGE_COUNT
    max_context_size: int = DEFAULT_MAX_CONTEXT_SIZE
    # "before_append" prunes the existing history and then appends, so the
    # store may hold max_message_count + 1 messages afterwards.
    prune_mode: str = "after_append"


# -----------------------------
# ConversationMemory
# -----------------------------
class ConversationMemory:
    """Bounded, relevance-pruned conversation history shared by all requests.

    Public API:
        await add_message(role, text, reference_context) -> None
        await get_relevant_context(query, max_context_size=None) -> str
        await prune(reference_context) -> int

    Messages are kept in insertion order. When adding a message would push the
    estimated byte footprint past ``max_size_bytes`` or the message count past
    ``max_message_count``, the messages least relevant to ``reference_context``
    are evicted until the count limit holds. Ties are evicted oldest first.

    Eviction sets are computed completely before the history is touched, so a
    cancelled request never leaves a half-pruned store behind.
    """

    def __init__(
        self,
        *,
        max_size_bytes: int = DEFAULT_MAX_SIZE_BYTES,
        max_message_count: int = DEFAULT_MAX_MESSAGE_COUNT,
        max_context_size: int = DEFAULT_MAX_CONTEXT_SIZE,
        embedding_provider: Optional[EmbeddingProvider] = None,
        scorer: Optional[RelevanceScorer] = None,
        scorer_kind: str = "auto",
        prune_mode: str = "after_append",
        score_timeout: float = 5.0,
        max_concurrency: int = 8,
    ) -> None:
        if int(max_size_bytes) <= 0:
            raise ValueError("max_size_bytes must be > 0")
        if int(max_message_count) <= 0:
            raise ValueError("max_message_count must be > 0")
        if prune_mode not in PRUNE_MODES:
            raise ValueError(f"prune_mode must be one of {PRUNE_MODES}, got {prune_mode!r}")

        self.policy = MemoryPolicy(
            max_size_bytes=int(max_size_bytes),
            max_message_count=int(max_message_count),
            max_context_size=int(max_context_size),
            prune_mode=prune_mode,
        )
        self.scorer: RelevanceScorer = scorer or make_scorer(
            scorer_kind,
            embedding_provider,
            timeout=score_timeout,
            max_concurrency=max_concurrency,
        )
        self._messages: List[Message] = []
        self._lock = asyncio.Lock()

    # --------- introspection ----------
    @property
    def scorer_kind(self) -> str:
        return getattr(self.scorer, "kind", type(self.scorer).__name__)

    def __len__(self) -> int:
        return len(self._messages)

    def messages(self) -> Tuple[Message, ...]:
        """Snapshot of stored messages, oldest first."""
        return tuple(self._messages)

    def total_size(self) -> int:
        """Sum of estimated sizes, recomputed from current contents."""
        return sum(estimate_size(m) for m in self._messages)

    # --------- core API ----------
    async def add_message(self, role: str, text: str, reference_context: Optional[str] = None) -> None:
        """Record a message, evicting low-relevance history when over capacity."""
        if role not in ROLES:
            raise ValueError(f"role must be one of {ROLES}, got {role!r}")
        message = Message(role=role, text=str(text or ""))  # type: ignore[arg-type]
        cost = estimate_size(message)
        reference = text if reference_context is None else reference_context
        p = self.policy

        async with self._lock:
            current = list(self._messages)
            over_bytes = self.total_size() + cost > p.max_size_bytes

            before = p.prune_mode == "before_append"
            # before_append ranks only the existing history, so the new
            # message is never a candidate for eviction
            pool = current if before else current + [message]
            evict: Set[int] = set()
            if over_bytes or len(current) + 1 > p.max_message_count:
                evict = await self._select_evictions(pool, reference)
            kept = [m for i, m in enumerate(pool) if i not in evict]
            if before:
                kept.append(message)

            self._messages = kept
            if evict:
                logger.debug(
                    "Evicted %d message(s); %d remain (~%d bytes)",
                    len(evict), len(kept), self.total_size(),
                )

    async def prune(self, reference_context: str) -> int:
        """Evict the least relevant messages down to ``max_message_count``.

        Returns the number of messages evicted.
        """
        async with self._lock:
            current = list(self._messages)
            evict = await self._select_evictions(current, reference_context)
            if evict:
                self._messages = [m for i, m in enumerate(current) if i not in evict]
            return len(evict)

    async def get_relevant_context(self, query: str, max_context_size: Optional[int] = None) -> str:
        """Concatenate the most relevant messages for ``query`` within a byte budget.

        Messages are ranked by descending score (oldest first on ties) and taken
        greedily; the walk stops at the first message that would not fit.
        """
        budget = self.policy.max_context_size if max_context_size is None else int(max_context_size)
        async with self._lock:
            snapshot = list(self._messages)
        if not snapshot or budget <= 0:
            return ""

        scores = await self._score_all(query, snapshot)
        order = sorted(range(len(snapshot)), key=lambda i: (-scores[i], i))

        parts: List[str] = []
        used = 0
        for i in order:
            chunk = serialize_message(snapshot[i]) + CONTEXT_SEPARATOR
            size = len(chunk.encode("utf-8"))
            if used + size > budget:
                break
            parts.append(chunk)
            used += size
        return "".join(parts)

    async def clear(self) -> None:
        async with self._lock:
            self._messages = []

    # --------- internals ----------
    async def _score_all(self, reference: str, messages: Sequence[Message]) -> List[float]:
        try:
            scores = await self.scorer.score_many(reference or "", [m.text for m in messages])
        except Exception as e:
            logger.warning("Relevance scoring failed; treating all scores as 0: %s", e)
            return [0.0] * len(messages)
        if len(scores) != len(messages):
            logger.warning("Scorer returned %d scores for %d messages", len(scores), len(messages))
            return [0.0] * len(messages)
        return [float(s) for s in scores]

    async def _select_evictions(self, messages: Sequence[Message], reference: str) -> Set[int]:
        excess = len(messages) - self.policy.max_message_count
        if excess <= 0:
            return set()
        scores = await self._score_all(reference, messages)
        ranked = sorted(range(len(messages)), key=lambda i: (scores[i], i))
        return set(ranked[:excess])
