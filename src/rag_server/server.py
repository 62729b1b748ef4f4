"""FastAPI application answering questions from documents plus conversation memory."""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, Field

from conversation import ConversationMemory

from .config import configure_logging, load_config
from .documents import DocumentIndex, SearchHit, load_documents
from .providers import OllamaClient, ProviderError, create_from_config

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are Virtron AI, a helpful assistant explaining the Virtron Metaverse.\n"
    "Provide a concise, direct response based on the context.\n"
    "Be informative but not overly verbose."
)


# -----------------------------
# Pydantic request/response
# -----------------------------
class ChatRequest(BaseModel):
    query: str = Field(default="", description="User question.")


class ChatResponse(BaseModel):
    response: str


class EmbeddingRequest(BaseModel):
    text: str = Field(default="")


class EmbeddingResponse(BaseModel):
    embedding: List[float]


# -----------------------------
# Utilities
# -----------------------------
def build_prompt(system_prompt: str, documents: List[SearchHit], history: str, query: str) -> str:
    """Render the generation prompt from document hits and conversational context."""
    doc_text = "\n".join(d["text"] for d in documents)
    parts = [system_prompt.strip(), "", f"Context: {doc_text}"]
    if history:
        parts += ["", "Conversation history:", history.rstrip()]
    parts += ["", f"User Query: {query}", "Response:"]
    return "\n".join(parts)


def _make_memory(cfg: Dict[str, Any], provider: Optional[OllamaClient]) -> ConversationMemory:
    mem_cfg = cfg.get("memory", {})
    return ConversationMemory(
        max_size_bytes=int(mem_cfg.get("max_size_bytes", 5 * 1024 * 1024)),
        max_message_count=int(mem_cfg.get("max_message_count", 20)),
        max_context_size=int(mem_cfg.get("max_context_size", 1024 * 1024)),
        embedding_provider=provider,
        scorer_kind=str(mem_cfg.get("scorer", "auto")),
        prune_mode=str(mem_cfg.get("prune_mode", "after_append")),
        score_timeout=float(mem_cfg.get("score_timeout", 5.0)),
        max_concurrency=int(mem_cfg.get("max_concurrency", 8)),
    )


# -----------------------------
# App factory
# -----------------------------
def create_app(
    config_path: Optional[str] = None,
    provider: Optional[OllamaClient] = None,
    memory: Optional[ConversationMemory] = None,
    index: Optional[DocumentIndex] = None,
) -> FastAPI:
    cfg = load_config(config_path)
    configure_logging(cfg)

    server_cfg = cfg.get("server", {})
    cors_origins = server_cfg.get("cors_origins", ["*"])
    system_prompt = str(server_cfg.get("system_prompt") or DEFAULT_SYSTEM_PROMPT)
    top_k = int(cfg.get("documents", {}).get("top_k", 3))

    # Services
    provider = provider if provider is not None else create_from_config(cfg)
    memory = memory or _make_memory(cfg, provider)
    index = index if index is not None else DocumentIndex()
    seed_docs = load_documents(cfg)
    seed_lock = asyncio.Lock()

    app = FastAPI(title="Virtron RAG Server", version="0.1.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.memory = memory
    app.state.index = index

    async def _ensure_seeded() -> None:
        # Seeding retries on the next request if the provider was down.
        if provider is None or all(d["id"] in index for d in seed_docs):
            return
        async with seed_lock:
            try:
                await index.seed(provider, seed_docs)
            except ProviderError as e:
                logger.warning("Document seeding failed, will retry: %s", e)

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {
            "ok": True,
            "provider": provider is not None,
            "scorer": memory.scorer_kind,
            "messages": len(memory),
            "documents": len(index),
        }

    @app.post("/api/chat", response_model=ChatResponse)
    @app.post("/api/virtron-chat", response_model=ChatResponse)
    async def chat(req: ChatRequest):
        query = (req.query or "").strip()
        if not query:
            raise HTTPException(status_code=400, detail="Query is required")
        if provider is None:
            raise HTTPException(status_code=503, detail="No model provider configured")

        try:
            await _ensure_seeded()
            hits: List[SearchHit] = []
            if len(index):
                q_vec = await provider.embed(query)
                # blank/one-character queries embed to a zero vector of the configured size
                if index.can_query(q_vec):
                    hits = index.query(q_vec, top_k)
                else:
                    logger.debug("Skipping document search for query %r", query)
            history = await memory.get_relevant_context(query)
            await memory.add_message("query", query, query)

            prompt = build_prompt(system_prompt, hits, history, query)
            logger.debug("Prompt (%d chars) with %d document(s)", len(prompt), len(hits))
            text = await provider.generate(prompt)
        except ProviderError as e:
            logger.exception("Model provider failed in chat: %s", e)
            raise HTTPException(status_code=502, detail="Model provider error")
        except Exception as e:
            logger.exception("Error in chat: %s", e)
            raise HTTPException(status_code=500, detail="Internal server error")

        await memory.add_message("response", text, query)
        return ChatResponse(response=text)

    @app.post("/api/generate-embedding", response_model=EmbeddingResponse)
    async def generate_embedding(req: EmbeddingRequest):
        if provider is None:
            raise HTTPException(status_code=503, detail="No model provider configured")
        try:
            vec = await provider.embed(req.text)
        except ProviderError as e:
            logger.warning("Embedding generation failed: %s", e)
            raise HTTPException(status_code=502, detail="Embedding generation failed")
        return EmbeddingResponse(embedding=list(vec))

    # Static UI, if shipped alongside the server
    static_dir = Path(str(server_cfg.get("static_dir") or "static"))
    if static_dir.is_dir():
        app.mount("/static", StaticFiles(directory=str(static_dir)), name="static")
        index_html = static_dir / "index.html"
        if index_html.exists():
            @app.get("/", include_in_schema=False)
            def root() -> FileResponse:
                return FileResponse(str(index_html))
    else:
        logger.info("Static dir not found, UI disabled: %s", static_dir)

    return app
