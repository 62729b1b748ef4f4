from __future__ import annotations

import asyncio
import logging
import threading
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence, TypedDict

import faiss
import numpy as np

from utils.io import read_jsonl

logger = logging.getLogger(__name__)


class Document(TypedDict, total=False):
    id: str
    text: str
    metadata: Dict[str, Any]


class SearchHit(TypedDict):
    id: str
    text: str
    metadata: Dict[str, Any]
    score: float


class _Embedder(Protocol):
    async def embed(self, text: str) -> Sequence[float]: ...


def _normalize(v: np.ndarray) -> np.ndarray:
    # Normalize rows to unit length for cosine via inner product
    v = np.array(v, dtype="float32", order="C", copy=True)
    if v.ndim == 1:
        v = v[None, :]
    faiss.normalize_L2(v)
    return v


# -----------------------------
# Document Index
# -----------------------------
class DocumentIndex:
    """
    In-process vector index of reference documents.

    - Embeddings live in a FAISS `IndexFlatIP` over L2-normalized rows (cosine)
    - Dimension is fixed by the first add
    - Rows are parallel to the FAISS ids, so search hits map back by position

    Public API:
        add(texts, vectors, metadata=None, ids=None) -> int
        query(vector, top_k) -> List[SearchHit]
        await seed(embedder, documents) -> int
    """

    def __init__(self) -> None:
        self._index: Optional[faiss.Index] = None
        self._rows: List[Document] = []
        self._ids: set[str] = set()
        self._lock = threading.RLock()

    @property
    def dim(self) -> Optional[int]:
        return None if self._index is None else int(self._index.d)

    def __len__(self) -> int:
        return len(self._rows)

    def __contains__(self, doc_id: object) -> bool:
        return doc_id in self._ids

    def add(
        self,
        texts: Sequence[str],
        vectors: Sequence[Sequence[float]],
        metadata: Optional[Sequence[Dict[str, Any]]] = None,
        ids: Optional[Sequence[str]] = None,
    ) -> int:
        """Add documents with precomputed vectors. Returns the number added."""
        if len(texts) != len(vectors):
            raise ValueError(f"got {len(texts)} texts but {len(vectors)} vectors")
        if not texts:
            return 0
        metadata = list(metadata) if metadata is not None else [{} for _ in texts]
        if len(metadata) != len(texts):
            raise ValueError("metadata must be parallel to texts")

        mat = np.asarray(vectors, dtype="float32")
        if mat.ndim != 2:
            raise ValueError("vectors must all have the same length")

        with self._lock:
            if self._index is None:
                self._index = faiss.IndexFlatIP(int(mat.shape[1]))
            elif mat.shape[1] != self._index.d:
                raise ValueError(f"vector dim {mat.shape[1]} != index dim {self._index.d}")

            start = len(self._rows)
            if ids is None:
                ids = [f"doc_{start + i + 1}" for i in range(len(texts))]
            self._index.add(_normalize(mat))
            for doc_id, text, meta in zip(ids, texts, metadata):
                self._rows.append({"id": str(doc_id), "text": text, "metadata": dict(meta or {})})
                self._ids.add(str(doc_id))
            return len(texts)

    def can_query(self, vector: Sequence[float]) -> bool:
        """True if ``vector`` is non-zero and matches the index dimension."""
        with self._lock:
            if self._index is None or self._index.ntotal == 0:
                return False
            q = np.asarray(vector, dtype="float32")
            return q.ndim == 1 and q.shape[0] == self._index.d and bool(np.any(q))

    def query(self, vector: Sequence[float], top_k: int = 3) -> List[SearchHit]:
        """Return up to ``top_k`` documents ranked by descending cosine score."""
        with self._lock:
            if self._index is None or self._index.ntotal == 0 or top_k <= 0:
                return []
            q = np.asarray(vector, dtype="float32")
            if q.ndim != 1 or q.shape[0] != self._index.d:
                raise ValueError(f"query dim {q.shape} does not match index dim {self._index.d}")

            k = min(int(top_k), self._index.ntotal)
            D, I = self._index.search(_normalize(q), k)
            hits: List[SearchHit] = []
            for idx, score in zip(I[0].tolist(), D[0].tolist()):
                if idx < 0 or idx >= len(self._rows):
                    continue
                row = self._rows[idx]
                hits.append({
                    "id": row["id"],
                    "text": row["text"],
                    "metadata": row.get("metadata", {}),
                    "score": float(score),
                })
            return hits

    async def seed(self, embedder: _Embedder, documents: Iterable[Document]) -> int:
        """Embed and add documents not already indexed (matched by id)."""
        pending = [d for d in documents if d.get("text") and str(d.get("id")) not in self._ids]
        if not pending:
            return 0
        vectors = await asyncio.gather(*(embedder.embed(d["text"]) for d in pending))
        added = self.add(
            [d["text"] for d in pending],
            [list(v) for v in vectors],
            metadata=[d.get("metadata", {}) for d in pending],
            ids=[str(d["id"]) for d in pending],
        )
        logger.info("Indexed %d document(s); %d total", added, len(self))
        return added


# -----------------------------
# Document sources
# -----------------------------
def load_documents(cfg: Dict[str, Any]) -> List[Document]:
    """Collect seed documents from ``documents.inline`` and ``documents.path`` (JSONL)."""
    doc_cfg = (cfg or {}).get("documents", {}) or {}
    out: List[Document] = []

    for i, item in enumerate(doc_cfg.get("inline") or [], 1):
        if isinstance(item, str):
            item = {"text": item}
        if not isinstance(item, dict) or not str(item.get("text") or "").strip():
            continue
        out.append({
            "id": str(item.get("id") or f"inline_doc_{i}"),
            "text": str(item["text"]).strip(),
            "metadata": dict(item.get("metadata") or {}),
        })

    path = doc_cfg.get("path")
    if path:
        if not Path(path).exists():
            logger.warning("Documents file not found: %s", path)
        for i, row in enumerate(read_jsonl(path), 1):
            text = str(row.get("text") or "").strip()
            if not text:
                continue
            meta = {k: v for k, v in row.items() if k not in ("id", "text")}
            out.append({"id": str(row.get("id") or f"file_doc_{i}"), "text": text, "metadata": meta})
    return out
