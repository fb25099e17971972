"""OpenAI query embedding with retry logic.

Queries are embedded with the same model the knowledge-base index was built
with (text-embedding-ada-002 by default, 1536 dimensions). Transient API
failures are retried with exponential backoff; an empty or missing vector is
fatal to the request and raised as EmbeddingError.
"""

import logging
import os
import time
from typing import Optional

import tiktoken
from openai import BadRequestError, OpenAI
from tenacity import retry, retry_if_not_exception_type, stop_after_attempt, wait_exponential

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "text-embedding-ada-002"
MAX_TOKENS_PER_TEXT = 8000  # model limit is 8191; leave margin


class EmbeddingError(RuntimeError):
    """The embedding provider returned no usable vector."""


class Embedder:
    """Generate query embeddings using the OpenAI embeddings API."""

    def __init__(
        self,
        model: Optional[str] = None,
        api_key: Optional[str] = None,
        client=None,
    ):
        self.model = model or os.getenv("EMBEDDING_MODEL", DEFAULT_MODEL)
        self.client = client or OpenAI(api_key=api_key or os.getenv("OPENAI_API_KEY"))

    def _truncate_text(self, text: str) -> str:
        """Truncate text to fit within the embedding model's token limit."""
        # a token spans at least one character
        if len(text) <= MAX_TOKENS_PER_TEXT:
            return text
        encoder = tiktoken.get_encoding("cl100k_base")
        tokens = encoder.encode(text)
        if len(tokens) <= MAX_TOKENS_PER_TEXT:
            return text
        logger.warning(
            "Truncating query from %d to %d tokens (first 60 chars: '%.60s')",
            len(tokens), MAX_TOKENS_PER_TEXT, text,
        )
        return encoder.decode(tokens[:MAX_TOKENS_PER_TEXT])

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_not_exception_type((BadRequestError, EmbeddingError)),
        reraise=True,
        before_sleep=lambda retry_state: logger.warning(
            "Embedding API retry %d after error: %s",
            retry_state.attempt_number,
            retry_state.outcome.exception() if retry_state.outcome else "unknown",
        ),
    )
    def _create(self, text: str):
        return self.client.embeddings.create(model=self.model, input=text)

    def embed(self, text: str) -> list[float]:
        """Embed a single query string.

        Raises:
            EmbeddingError: when the provider response carries no vector.
        """
        t0 = time.perf_counter()
        response = self._create(self._truncate_text(text))
        data = getattr(response, "data", None) or []
        vector = getattr(data[0], "embedding", None) if data else None
        if not vector:
            raise EmbeddingError("Failed to generate query embedding.")
        logger.info(
            "Embedding: %d dimensions in %.0fms",
            len(vector), (time.perf_counter() - t0) * 1000,
        )
        return list(vector)
