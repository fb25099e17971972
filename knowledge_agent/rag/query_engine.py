"""RAG Query Engine: orchestrates memory, routing, retrieval and generation.

One request runs in two phases:

  prepare()  memory lookup -> router -> memory update -> query embedding.
             Anything raised here happens before a byte is streamed, so the
             HTTP layer can still answer with a structured error.
  stream()   lead-in -> index search -> context assembly -> grounded answer,
             yielded chunk by chunk.

backfill() runs after the stream has closed: when the router resolved no
entity, the entity the answer talks about is remembered for the next turn.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, Optional

from knowledge_agent.memory import ConversationMemory
from knowledge_agent.rag.llm import LLMClient
from knowledge_agent.rag.prompts import (
    EMPTY_CONTEXT_MESSAGE,
    LEAD_IN,
    NO_MATCHES_MESSAGE,
    build_answer_prompt,
)
from knowledge_agent.rag.retriever import TOP_K, Retriever, assemble_context
from knowledge_agent.rag.router import QueryRouter, RouterDecision

logger = logging.getLogger(__name__)

ANSWER_TEMPERATURE = 0.4


class GenerationStreamError(RuntimeError):
    """The generation provider failed after the answer stream had started."""


class StreamState(str, Enum):
    IDLE = "idle"
    STARTED = "started"
    RETRIEVING = "retrieving"
    NO_MATCHES = "no_matches"
    EMPTY_CONTEXT = "empty_context"
    GENERATING = "generating"
    STREAMING = "streaming"
    TERMINAL = "terminal"
    FAILED = "failed"


@dataclass
class StreamedAnswer:
    """Accumulator for the generated answer.

    ``chunks`` holds exactly what was forwarded to the caller, so
    ``text`` is always their concatenation.
    """
    chunks: list[str] = field(default_factory=list)
    state: StreamState = StreamState.IDLE
    completed: bool = False

    def append(self, chunk: str):
        self.chunks.append(chunk)

    @property
    def text(self) -> str:
        return "".join(self.chunks)


@dataclass
class PreparedQuery:
    """Per-request state carried from prepare() to stream() and backfill()."""
    user_id: str
    query: str
    decision: RouterDecision
    vector: list[float]
    answer: StreamedAnswer = field(default_factory=StreamedAnswer)

    @property
    def final_query(self) -> str:
        return self.decision.expanded_query


class AnswerStreamer:
    """Streams a grounded answer from the generation provider."""

    def __init__(self, llm: LLMClient, temperature: float = ANSWER_TEMPERATURE):
        self.llm = llm
        self.temperature = temperature

    def stream(self, filled_prompt: str, final_query: str, answer: StreamedAnswer) -> Iterator[str]:
        """Yield answer chunks as they arrive, appending each to ``answer``.

        Raises:
            GenerationStreamError: on provider failure. Chunks already
                yielded stay with the caller.
        """
        t0 = time.perf_counter()
        answer.state = StreamState.GENERATING
        try:
            for chunk in self.llm.chat_stream(
                system=filled_prompt,
                user=final_query,
                temperature=self.temperature,
            ):
                if not chunk:
                    continue
                answer.state = StreamState.STREAMING
                answer.append(chunk)
                yield chunk
        except Exception as e:
            answer.state = StreamState.FAILED
            logger.error("Generation stream failed after %d chunk(s): %s", len(answer.chunks), e)
            raise GenerationStreamError("The answer stream was interrupted.") from e

        answer.state = StreamState.TERMINAL
        answer.completed = True
        logger.info(
            "Chat completion (streaming): %d chunks, %d chars in %.0fms",
            len(answer.chunks), len(answer.text), (time.perf_counter() - t0) * 1000,
        )


class QueryEngine:
    """Orchestrates the per-request pipeline around shared conversation memory."""

    def __init__(
        self,
        retriever: Retriever,
        llm: LLMClient,
        memory: ConversationMemory,
        router: Optional[QueryRouter] = None,
        top_k: int = TOP_K,
    ):
        self.retriever = retriever
        self.llm = llm
        self.memory = memory
        self.router = router or QueryRouter(memory)
        self.streamer = AnswerStreamer(llm)
        self.top_k = top_k

    # ------------------------------------------------------------------
    # Phase 1: resolve and embed (before the response starts)
    # ------------------------------------------------------------------

    def prepare(self, query: str, user_id: str) -> PreparedQuery:
        """Route the query, update memory and embed the final query.

        Raises:
            EmbeddingError: when no query vector could be produced.
        """
        record = self.memory.get(user_id)
        decision = self.router.route(query, record.last_query, user_id, record)
        logger.info(
            "Router decision for %s: rewrite=%s entity=%r reason=%s",
            user_id, decision.should_rewrite, decision.resolved_entity, decision.reason,
        )

        self.memory.set_query(user_id, decision.expanded_query)
        if decision.resolved_entity:
            self.memory.set_entity(user_id, decision.resolved_entity)

        vector = self.retriever.embed(decision.expanded_query)
        return PreparedQuery(
            user_id=user_id,
            query=query,
            decision=decision,
            vector=vector,
        )

    # ------------------------------------------------------------------
    # Phase 2: retrieve and stream
    # ------------------------------------------------------------------

    def stream(self, prepared: PreparedQuery) -> Iterator[str]:
        """Yield the plain-text response body for a prepared query."""
        answer = prepared.answer
        answer.state = StreamState.STARTED
        yield LEAD_IN

        answer.state = StreamState.RETRIEVING
        matches = self.retriever.search(prepared.vector, self.top_k)
        if not matches:
            answer.state = StreamState.NO_MATCHES
            yield NO_MATCHES_MESSAGE
            answer.state = StreamState.TERMINAL
            return

        context = assemble_context(matches)
        if context is None:
            answer.state = StreamState.EMPTY_CONTEXT
            yield EMPTY_CONTEXT_MESSAGE
            answer.state = StreamState.TERMINAL
            return

        yield from self.streamer.stream(
            build_answer_prompt(context),
            prepared.final_query,
            answer,
        )

    def run(self, query: str, user_id: str) -> Iterator[str]:
        """Prepare, stream and backfill in one pass (CLI use)."""
        prepared = self.prepare(query, user_id)
        yield from self.stream(prepared)
        self.backfill(prepared)

    # ------------------------------------------------------------------
    # Phase 3: entity backfill (after the stream closed)
    # ------------------------------------------------------------------

    def backfill(self, prepared: PreparedQuery) -> Optional[str]:
        """Remember the entity an answer discusses when routing found none.

        Failures are logged and swallowed; memory is then left unchanged.
        """
        if prepared.decision.resolved_entity or not prepared.answer.completed:
            return None
        try:
            entity = self.router.extract_entity_name(prepared.answer.text)
        except Exception as e:
            logger.warning("Entity backfill failed for %s: %s", prepared.user_id, e)
            return None
        if not entity:
            return None
        self.memory.set_entity(prepared.user_id, entity)
        logger.info("Entity remembered from answer for %s: %s", prepared.user_id, entity)
        return entity
