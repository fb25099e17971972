"""Retrieval layer: query embedding, top-K similarity search, context assembly.

Retrieval is semantic-only. Matches are not scoped to the resolved entity at
the index level; the entity only shapes the query text that gets embedded.
"""

import logging
import os
import time
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Optional

import tiktoken

from knowledge_agent.rag.prompts import CONTEXT_SEPARATOR

logger = logging.getLogger(__name__)

TOP_K = 5
DEFAULT_MAX_CONTEXT_TOKENS = 12000


@lru_cache(maxsize=1)
def _get_encoder():
    return tiktoken.get_encoding("cl100k_base")


@dataclass
class RetrievalMatch:
    """A single index hit. ``text`` is None when the item lacks the field."""
    score: float
    text: Optional[str]
    match_id: str = ""
    metadata: dict = field(default_factory=dict)

    @classmethod
    def from_index_result(cls, result: dict) -> "RetrievalMatch":
        meta = dict(result.get("metadata") or {})
        text = meta.pop("text", None)
        return cls(
            score=float(result.get("score", 0.0)),
            text=text if isinstance(text, str) else None,
            match_id=str(result.get("id", "")),
            metadata=meta,
        )


class Retriever:
    """Wraps the Embedder and VectorStore for single-query retrieval."""

    def __init__(self, store, embedder, top_k: int = TOP_K):
        self.store = store
        self.embedder = embedder
        self.top_k = top_k

    def embed(self, text: str) -> list[float]:
        """Embed the query. Raises EmbeddingError when no vector comes back."""
        return self.embedder.embed(text)

    def search(self, vector: list[float], top_k: Optional[int] = None) -> list[RetrievalMatch]:
        """Top-K matches in the order the index ranks them (best first)."""
        t0 = time.perf_counter()
        results = self.store.query(
            vector=vector,
            top_k=top_k or self.top_k,
            include_metadata=True,
        )
        matches = [RetrievalMatch.from_index_result(r) for r in results or []]
        logger.info(
            "Index query: %d matches in %.0fms",
            len(matches), (time.perf_counter() - t0) * 1000,
        )
        return matches


def assemble_context(
    matches: list[RetrievalMatch],
    max_tokens: Optional[int] = None,
) -> Optional[str]:
    """Join match texts into one context string.

    Matches without text (or with whitespace only) are dropped. Returns None
    when nothing usable is left. Snippets that would push the context over
    ``max_tokens`` are dropped whole; the first snippet is always kept.
    """
    if max_tokens is None:
        max_tokens = int(os.getenv("MAX_CONTEXT_TOKENS", DEFAULT_MAX_CONTEXT_TOKENS))

    texts = [m.text for m in matches if m.text and m.text.strip()]
    if not texts:
        return None

    # a token spans at least one character
    if sum(len(t) for t in texts) + len(CONTEXT_SEPARATOR) * (len(texts) - 1) <= max_tokens:
        return CONTEXT_SEPARATOR.join(texts)

    encoder = _get_encoder()
    kept = []
    budget = max_tokens
    for text in texts:
        cost = len(encoder.encode(text))
        if kept and cost > budget:
            logger.debug("Context budget reached, dropping %d snippet(s)", len(texts) - len(kept))
            break
        kept.append(text)
        budget -= cost

    return CONTEXT_SEPARATOR.join(kept)
