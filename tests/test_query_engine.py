import pytest

from knowledge_agent.rag.prompts import (
    EMPTY_CONTEXT_MESSAGE,
    LEAD_IN,
    NO_MATCHES_MESSAGE,
)
from knowledge_agent.rag.query_engine import GenerationStreamError, StreamState
from vectorstore.embedder import EmbeddingError

from conftest import FakeEmbedder, GroundedFakeLLM, index_result

MARIA = index_result("Maria Lopez leads finance at Acme and reports to the board.")


def _run(engine, query: str, user_id: str = "alice"):
    prepared = engine.prepare(query, user_id)
    chunks = list(engine.stream(prepared))
    engine.backfill(prepared)
    return prepared, chunks


def test_empty_index_returns_fixed_message_and_keeps_entity(make_engine, memory) -> None:
    memory.set_entity("alice", "Maria Lopez")
    engine, _, llm = make_engine(results=[])

    prepared, chunks = _run(engine, "Who is the CFO?")

    assert "".join(chunks) == LEAD_IN + NO_MATCHES_MESSAGE
    assert prepared.answer.state == StreamState.TERMINAL
    assert llm.stream_calls == []
    assert memory.get("alice").last_entity == "Maria Lopez"
    assert memory.get("alice").last_query == "Who is the CFO?"


def test_matches_without_text_return_empty_context_message(make_engine, memory) -> None:
    engine, _, llm = make_engine(results=[index_result(None), index_result(None, item_id="doc-2")])

    prepared, chunks = _run(engine, "Who leads finance?")

    assert "".join(chunks) == LEAD_IN + EMPTY_CONTEXT_MESSAGE
    assert llm.stream_calls == []
    assert memory.get("alice").last_entity is None


def test_named_query_streams_grounded_answer_and_remembers_entity(make_engine, memory) -> None:
    engine, _, llm = make_engine(results=[MARIA])

    prepared, chunks = _run(engine, "Tell me about Maria Lopez")

    assert chunks[0] == LEAD_IN
    answer = "".join(chunks[1:])
    assert "Maria Lopez" in answer
    assert "John Smith" not in answer
    assert memory.get("alice").last_entity == "Maria Lopez"
    assert llm.stream_calls[0]["temperature"] == 0.4
    assert "Maria Lopez leads finance" in llm.stream_calls[0]["system"]


def test_follow_up_pronoun_resolves_to_previous_entity(make_engine, memory) -> None:
    engine, store, llm = make_engine(results=[MARIA])
    embedder = engine.retriever.embedder

    _run(engine, "Tell me about Maria Lopez")
    prepared, chunks = _run(engine, "what does she do?")

    assert prepared.decision.resolved_entity == "Maria Lopez"
    assert prepared.final_query == "what does Maria Lopez do?"
    assert embedder.inputs[-1] == "what does Maria Lopez do?"
    assert llm.stream_calls[-1]["user"] == "what does Maria Lopez do?"
    assert "Maria Lopez" in "".join(chunks)
    assert memory.get("alice").last_query == "what does Maria Lopez do?"


def test_person_missing_from_context_gets_templated_refusal(make_engine) -> None:
    engine, _, _ = make_engine(results=[MARIA])

    _, chunks = _run(engine, "Who is John Smith?")

    assert "".join(chunks[1:]) == "The context does not include information about John Smith."


def test_streamed_chunks_equal_backfill_input(make_engine, memory, monkeypatch) -> None:
    engine, _, _ = make_engine(results=[MARIA], llm=GroundedFakeLLM(chunk_size=3))
    seen = []
    original = engine.router.extract_entity_name

    def spy(text):
        seen.append(text)
        return original(text)

    monkeypatch.setattr(engine.router, "extract_entity_name", spy)

    prepared, chunks = _run(engine, "Who leads finance?")

    assert len(chunks) > 3
    assert seen == ["".join(chunks[1:])]
    assert prepared.answer.text == "".join(chunks[1:])
    assert memory.get("alice").last_entity == "Maria Lopez"


def test_backfill_skipped_when_router_resolved_entity(make_engine, monkeypatch) -> None:
    engine, _, _ = make_engine(results=[MARIA])
    monkeypatch.setattr(
        engine.router, "extract_entity_name",
        lambda text: pytest.fail("extract_entity_name should not run"),
    )
    prepared, _ = _run(engine, "Tell me about Maria Lopez")
    assert prepared.decision.resolved_entity == "Maria Lopez"


def test_backfill_failure_is_swallowed(make_engine, memory, monkeypatch) -> None:
    engine, _, _ = make_engine(results=[MARIA])

    def boom(text):
        raise RuntimeError("extraction model down")

    monkeypatch.setattr(engine.router, "extract_entity_name", boom)

    prepared, chunks = _run(engine, "Who leads finance?")

    assert "".join(chunks).startswith(LEAD_IN)
    assert memory.get("alice").last_entity is None


def test_backfill_does_not_run_before_stream_completes(make_engine, memory) -> None:
    engine, _, _ = make_engine(results=[MARIA])
    prepared = engine.prepare("Who leads finance?", "alice")

    assert engine.backfill(prepared) is None
    list(engine.stream(prepared))
    assert engine.backfill(prepared) == "Maria Lopez"


def test_mid_stream_failure_keeps_sent_chunks_and_skips_backfill(make_engine, memory) -> None:
    engine, _, _ = make_engine(results=[MARIA], llm=GroundedFakeLLM(chunk_size=5, fail_after=2))
    prepared = engine.prepare("Who leads finance?", "alice")

    received = []
    with pytest.raises(GenerationStreamError):
        for chunk in engine.stream(prepared):
            received.append(chunk)

    assert received == [LEAD_IN, "Maria", " Lope"]
    assert prepared.answer.text == "Maria Lope"
    assert prepared.answer.state == StreamState.FAILED
    assert engine.backfill(prepared) is None
    assert memory.get("alice").last_entity is None


def test_embedding_error_is_raised_before_streaming(make_engine, memory) -> None:
    embedder = FakeEmbedder(error=EmbeddingError("Failed to generate query embedding."))
    engine, store, _ = make_engine(results=[MARIA], embedder=embedder)

    with pytest.raises(EmbeddingError):
        engine.prepare("Who leads finance?", "alice")
    assert store.calls == []


def test_run_streams_and_backfills(make_engine, memory) -> None:
    engine, _, _ = make_engine(results=[MARIA])
    body = "".join(engine.run("Who leads finance?", "bob"))
    assert body.startswith(LEAD_IN + "Maria Lopez")
    assert memory.get("bob").last_entity == "Maria Lopez"


def test_prepare_reads_memory_once(make_engine, memory, monkeypatch) -> None:
    memory.set_entity("alice", "Maria Lopez")
    engine, _, _ = make_engine(results=[MARIA])
    reads = []
    original = memory.get

    def counting_get(user_id):
        reads.append(user_id)
        return original(user_id)

    monkeypatch.setattr(memory, "get", counting_get)

    prepared = engine.prepare("what does she do?", "alice")

    assert reads == ["alice"]
    assert prepared.final_query == "what does Maria Lopez do?"


def test_accented_name_carries_into_follow_up(make_engine, memory) -> None:
    engine, _, _ = make_engine(results=[MARIA])

    _run(engine, "Tell me about José Álvarez")
    prepared, chunks = _run(engine, "what does he do?")

    assert memory.get("alice").last_entity == "José Álvarez"
    assert prepared.final_query == "what does José Álvarez do?"
    assert "".join(chunks[1:]) == "The context does not include information about José Álvarez."
