#!/usr/bin/env python3
"""Command-line entry point for the knowledge agent.

Usage:
  python pipeline.py serve --port 8501                   # Launch the HTTP API
  python pipeline.py ask "Who is the CFO?"               # Stream one answer
  python pipeline.py ask --user alice                    # Interactive session
  python pipeline.py vector-status                       # ChromaDB stats
  python pipeline.py vector-query "finance leadership"   # Test retrieval
"""

import argparse
import logging
import sys

from dotenv import load_dotenv

load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[logging.StreamHandler(sys.stderr)],
)
logger = logging.getLogger(__name__)


def build_engine():
    """Wire the production pipeline from environment settings."""
    from knowledge_agent.memory import ConversationMemory
    from knowledge_agent.rag.llm import LLMClient
    from knowledge_agent.rag.query_engine import QueryEngine
    from knowledge_agent.rag.retriever import Retriever
    from knowledge_agent.rag.router import LLMEntityResolver, QueryRouter
    from vectorstore.embedder import Embedder
    from vectorstore.store import VectorStore

    llm = LLMClient()
    memory = ConversationMemory()
    return QueryEngine(
        retriever=Retriever(VectorStore(), Embedder()),
        llm=llm,
        memory=memory,
        router=QueryRouter(memory, LLMEntityResolver(llm)),
    )


# ---------------------------------------------------------------------------
# ASK
# ---------------------------------------------------------------------------

def _answer(engine, query: str, user_id: str):
    for chunk in engine.run(query, user_id):
        sys.stdout.write(chunk)
        sys.stdout.flush()
    sys.stdout.write("\n")


def cmd_ask(args):
    """Answer one query, or run an interactive session sharing memory."""
    engine = build_engine()

    if args.query:
        _answer(engine, args.query, args.user)
        return

    print("Interactive session (empty line or Ctrl-D to quit)")
    while True:
        try:
            query = input("> ").strip()
        except EOFError:
            break
        if not query:
            break
        _answer(engine, query, args.user)


# ---------------------------------------------------------------------------
# VECTOR STORE
# ---------------------------------------------------------------------------

def cmd_vector_status(args):
    """Show vector store statistics."""
    from vectorstore.store import VectorStore

    stats = VectorStore().get_stats()

    print("\n" + "=" * 70)
    print("VECTOR STORE STATUS")
    print("=" * 70)
    print(f"\n  Collection: {stats['collection']}")
    print(f"    Path: {stats['db_path']}")
    print(f"    Vectors stored: {stats['items']}")
    print("\n" + "=" * 70)


def cmd_vector_query(args):
    """Run a test query against the vector store."""
    from knowledge_agent.rag.retriever import Retriever, assemble_context
    from vectorstore.embedder import Embedder
    from vectorstore.store import VectorStore

    retriever = Retriever(VectorStore(), Embedder(), top_k=args.top_k)
    matches = retriever.search(retriever.embed(args.query))

    print(f"\nQuery: \"{args.query}\"")
    print(f"Results: {len(matches)}")
    print("-" * 50)

    for i, match in enumerate(matches):
        print(f"\n[{i+1}] Score: {match.score:.4f} | {match.match_id}")
        if match.text is None:
            print("    Text: <missing>")
        else:
            preview = match.text[:200].replace("\n", " ")
            print(f"    Text: {preview}...")

    context = assemble_context(matches)
    print("\nAssembled context: " + (f"{len(context)} chars" if context else "<empty>"))


# ---------------------------------------------------------------------------
# SERVE
# ---------------------------------------------------------------------------

def cmd_serve(args):
    """Launch the HTTP API."""
    import uvicorn

    logger.info("=" * 60)
    logger.info("LAUNCHING KNOWLEDGE AGENT API")
    logger.info("  http://localhost:%d/api/query_ai", args.port)
    logger.info("=" * 60)

    uvicorn.run(
        "knowledge_agent.app:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level="info",
    )


# ---------------------------------------------------------------------------
# MAIN
# ---------------------------------------------------------------------------

def main():
    parser = argparse.ArgumentParser(
        description="Knowledge Agent",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    subparsers = parser.add_subparsers(dest="command", help="Command")

    # Serve
    serve_parser = subparsers.add_parser("serve", help="Launch the HTTP API")
    serve_parser.add_argument(
        "--port", type=int, default=8501, help="Port (default: 8501)"
    )
    serve_parser.add_argument(
        "--host", default="0.0.0.0", help="Host (default: 0.0.0.0)"
    )
    serve_parser.add_argument(
        "--reload", action="store_true", help="Auto-reload on code changes"
    )

    # Ask
    ask_parser = subparsers.add_parser("ask", help="Answer a query from the terminal")
    ask_parser.add_argument("query", nargs="?", default=None, help="Query text (omit for interactive)")
    ask_parser.add_argument("--user", default="anonymous", help="User identity for memory")

    # Vector status
    subparsers.add_parser("vector-status", help="Show vector store statistics")

    # Vector query (test)
    vq_parser = subparsers.add_parser("vector-query", help="Test query against vector store")
    vq_parser.add_argument("query", help="Query text")
    vq_parser.add_argument("--top-k", type=int, default=5, help="Number of results")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    commands = {
        "serve": cmd_serve,
        "ask": cmd_ask,
        "vector-status": cmd_vector_status,
        "vector-query": cmd_vector_query,
    }

    try:
        commands[args.command](args)
    except Exception as e:
        logger.exception("Command failed: %s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
