"""Pytest configuration and shared fixtures."""
from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Dict, List, Sequence

import pytest

# Ensure src/ is on the import path (for local imports without installing as package)
SRC_PATH = Path(__file__).resolve().parent.parent / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))


class FakeEmbedder:
    """Embedding provider returning fixed vectors; unknown texts get a default."""

    def __init__(self, vectors: Dict[str, Sequence[float]] | None = None, default=(1.0, 0.0, 0.0)):
        self.vectors = dict(vectors or {})
        self.default = list(default)
        self.calls: List[str] = []

    async def embed(self, text: str) -> List[float]:
        self.calls.append(text)
        return list(self.vectors.get(text, self.default))


@pytest.fixture()
def fake_embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch):
    """Ensure tests run with a clean environment (no leftover overrides)."""
    for var in list(os.environ):
        if var == "RAG_SERVER_CONFIG" or var.startswith("RAG_SERVER__"):
            monkeypatch.delenv(var, raising=False)
    yield
