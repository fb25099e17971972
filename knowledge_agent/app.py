"""FastAPI web application for the knowledge agent.

Launch:
    python -m uvicorn knowledge_agent.app:app --port 8501

Or via pipeline:
    python pipeline.py serve --port 8501
"""

import json
import logging
import os
import time
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError
from starlette.background import BackgroundTask
from starlette.concurrency import run_in_threadpool

from knowledge_agent.memory import ConversationMemory
from knowledge_agent.rag.llm import LLMClient
from knowledge_agent.rag.query_engine import GenerationStreamError, QueryEngine
from knowledge_agent.rag.retriever import Retriever
from knowledge_agent.rag.router import LLMEntityResolver, QueryRouter
from schemas import ErrorResponse, QueryRequest
from vectorstore.embedder import Embedder, EmbeddingError
from vectorstore.store import VectorStore

PROJECT_ROOT = Path(__file__).parent.parent

load_dotenv(PROJECT_ROOT / ".env")

logger = logging.getLogger(__name__)

ANONYMOUS_USER = "anonymous"
USER_ID_HEADER = "x-user-id"

INVALID_QUERY_ERROR = "Query is required and must be a non-empty string"
EMBEDDING_FAILED_ERROR = "Failed to generate query embedding."
INTERNAL_ERROR = "Internal Server Error"

# ---------------------------------------------------------------------------
# App setup
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Knowledge Agent",
    description="Retrieval-grounded Q&A with short-term conversational memory",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

# ---------------------------------------------------------------------------
# Global state: lazy-initialized on first request
# ---------------------------------------------------------------------------

_store: Optional[VectorStore] = None
_engine: Optional[QueryEngine] = None
_memory: Optional[ConversationMemory] = None

_settings = {
    "llm_provider": os.getenv("LLM_PROVIDER", "openai"),
    "llm_model": os.getenv("LLM_MODEL") or None,
    "openai_api_key": os.getenv("OPENAI_API_KEY", ""),
    "anthropic_api_key": os.getenv("ANTHROPIC_API_KEY", ""),
}


def _get_memory() -> ConversationMemory:
    global _memory
    if _memory is None:
        _memory = ConversationMemory()
    return _memory


def _get_store() -> VectorStore:
    global _store
    if _store is None:
        _store = VectorStore()
    return _store


def _get_query_engine() -> QueryEngine:
    global _engine
    if _engine is None:
        provider = _settings["llm_provider"]
        if provider == "anthropic":
            api_key = _settings["anthropic_api_key"] or None
        else:
            api_key = _settings["openai_api_key"] or None
        llm = LLMClient(provider=provider, model=_settings["llm_model"], api_key=api_key)
        memory = _get_memory()
        retriever = Retriever(
            _get_store(),
            Embedder(api_key=_settings["openai_api_key"] or None),
        )
        _engine = QueryEngine(
            retriever=retriever,
            llm=llm,
            memory=memory,
            router=QueryRouter(memory, LLMEntityResolver(llm)),
        )
    return _engine


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=ErrorResponse(error=message).model_dump())


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@app.post("/api/query_ai")
async def api_query_ai(req: Request):
    """Answer a query as a plain-text stream grounded on the knowledge index."""
    try:
        body = await req.json()
        query = QueryRequest.model_validate(body).query
    except (json.JSONDecodeError, ValidationError, UnicodeDecodeError):
        return _error(400, INVALID_QUERY_ERROR)

    user_id = req.headers.get(USER_ID_HEADER) or ANONYMOUS_USER
    t_start = time.perf_counter()

    try:
        engine = _get_query_engine()
        prepared = await run_in_threadpool(engine.prepare, query, user_id)
    except EmbeddingError as e:
        logger.error("Embedding failed for %s: %s", user_id, e)
        return _error(500, EMBEDDING_FAILED_ERROR)
    except Exception as e:
        logger.exception("Query setup failed: %s", e)
        return _error(500, INTERNAL_ERROR)

    def body_stream():
        try:
            yield from engine.stream(prepared)
        except GenerationStreamError:
            # logged by the streamer; aborting the body is the error signal
            raise
        except Exception as e:
            logger.exception("Streaming query failed: %s", e)
            raise
        finally:
            logger.info("Total request: %.0fms", (time.perf_counter() - t_start) * 1000)

    return StreamingResponse(
        body_stream(),
        media_type="text/plain",
        background=BackgroundTask(engine.backfill, prepared),
    )


@app.get("/api/status")
async def api_status():
    """Return knowledge index and conversation memory status."""
    try:
        index = _get_store().get_stats()
    except Exception as e:
        logger.warning("Vector store status unavailable: %s", e)
        index = {}
    return {
        "vector_store": index,
        "memory": _get_memory().stats(),
        "llm_provider": _settings["llm_provider"],
    }
