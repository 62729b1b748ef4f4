"""Bounded conversation memory with relevance-aware eviction."""
from __future__ import annotations

from .scoring import (
    EmbeddingScorer,
    LexicalScorer,
    RelevanceScorer,
    cosine_similarity,
    lexical_similarity,
    make_scorer,
    tokenize,
)
from .store import ConversationMemory, MemoryPolicy, estimate_size, serialize_message
from .typing import Message, Role

__all__ = [
    "ConversationMemory",
    "EmbeddingScorer",
    "LexicalScorer",
    "MemoryPolicy",
    "Message",
    "RelevanceScorer",
    "Role",
    "cosine_similarity",
    "estimate_size",
    "lexical_similarity",
    "make_scorer",
    "serialize_message",
    "tokenize",
]
