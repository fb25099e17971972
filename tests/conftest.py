from typing import Any, Dict, List, Optional

import pytest

from knowledge_agent.memory import ConversationMemory
from knowledge_agent.rag.prompts import REFUSAL_TEMPLATE
from knowledge_agent.rag.query_engine import QueryEngine
from knowledge_agent.rag.retriever import Retriever
from knowledge_agent.rag.router import QueryRouter

# People the fake model recognizes in a question
KNOWN_PEOPLE = ("Maria Lopez", "John Smith", "José Álvarez")


class FakeEmbedder:
    def __init__(self, vector: Optional[List[float]] = None, error: Optional[Exception] = None) -> None:
        self.vector = vector if vector is not None else [0.1, 0.2, 0.3]
        self.error = error
        self.inputs: List[str] = []

    def embed(self, text: str) -> List[float]:
        self.inputs.append(text)
        if self.error is not None:
            raise self.error
        return list(self.vector)


class FakeStore:
    """Returns canned index results; records every query call."""

    def __init__(self, results: Optional[List[Dict[str, Any]]] = None) -> None:
        self.results = results or []
        self.calls: List[Dict[str, Any]] = []

    def query(self, vector: List[float], top_k: int, include_metadata: bool = True) -> List[Dict[str, Any]]:
        self.calls.append({"vector": vector, "top_k": top_k, "include_metadata": include_metadata})
        return list(self.results[:top_k])

    def get_stats(self) -> Dict[str, Any]:
        return {"collection": "knowledge-base", "db_path": "memory", "items": len(self.results)}


class GroundedFakeLLM:
    """Answers from the system prompt context only.

    When the question names someone the context does not mention, it streams
    the templated refusal; otherwise it echoes the first context passage.
    """

    def __init__(self, chunk_size: int = 7, fail_after: Optional[int] = None) -> None:
        self.chunk_size = chunk_size
        self.fail_after = fail_after
        self.stream_calls: List[Dict[str, Any]] = []
        self.provider = "fake"
        self.model = "fake-model"

    def chat(self, system: str, user: str, temperature: float = 0.0, max_tokens: int = 512) -> str:
        raise AssertionError("chat() is not expected in this test")

    def chat_stream(self, system: str, user: str, temperature: float = 0.4, max_tokens: int = 1024):
        self.stream_calls.append({"system": system, "user": user, "temperature": temperature})
        context = system.split("Context:\n---\n", 1)[1].rsplit("\n---\n", 1)[0]
        asked = next((name for name in KNOWN_PEOPLE if name in user), None)
        if asked and asked not in context:
            answer = REFUSAL_TEMPLATE.format(person=asked)
        else:
            answer = context.split("\n\n---\n\n")[0]
        for i in range(0, len(answer), self.chunk_size):
            if self.fail_after is not None and i // self.chunk_size >= self.fail_after:
                raise RuntimeError("upstream connection reset")
            yield answer[i:i + self.chunk_size]


def index_result(text: Optional[str], score: float = 0.9, item_id: str = "doc-1") -> Dict[str, Any]:
    metadata: Dict[str, Any] = {"source": "handbook"}
    if text is not None:
        metadata["text"] = text
    return {"id": item_id, "score": score, "metadata": metadata}


@pytest.fixture
def memory() -> ConversationMemory:
    return ConversationMemory(ttl_seconds=600, max_users=100)


@pytest.fixture
def make_engine(memory):
    def _make(results=None, llm=None, embedder=None, resolver=None):
        store = FakeStore(results)
        llm = llm or GroundedFakeLLM()
        engine = QueryEngine(
            retriever=Retriever(store, embedder or FakeEmbedder()),
            llm=llm,
            memory=memory,
            router=QueryRouter(memory, resolver),
        )
        return engine, store, llm

    return _make
