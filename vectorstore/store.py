"""ChromaDB-backed knowledge index.

The index is populated out of band; this module only reads from it. Each
stored item is expected to carry its passage text in the ``text`` metadata
field (falling back to the Chroma document when the field is missing).
"""

import logging
import os
from pathlib import Path
from typing import Optional

import chromadb

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).parent.parent
DEFAULT_DB_PATH = PROJECT_ROOT / "data" / "chroma"
DEFAULT_COLLECTION = "knowledge-base"


class VectorStore:
    """Thin read-side wrapper around a persistent Chroma collection."""

    def __init__(
        self,
        db_path: Optional[str] = None,
        collection_name: Optional[str] = None,
        client=None,
    ):
        self.db_path = Path(db_path or os.getenv("CHROMA_PATH") or DEFAULT_DB_PATH)
        self.collection_name = collection_name or os.getenv("CHROMA_COLLECTION", DEFAULT_COLLECTION)
        if client is None:
            self.db_path.mkdir(parents=True, exist_ok=True)
            client = chromadb.PersistentClient(path=str(self.db_path))
        self.client = client

    def _collection(self):
        return self.client.get_or_create_collection(
            self.collection_name,
            metadata={"hnsw:space": "cosine"},
        )

    def query(
        self,
        vector: list[float],
        top_k: int,
        include_metadata: bool = True,
    ) -> list[dict]:
        """Return the top_k nearest items, closest first.

        Each item is a dict with ``id``, ``score`` (1 - cosine distance) and,
        when ``include_metadata`` is set, ``metadata`` (text folded in).
        """
        include = ["distances"]
        if include_metadata:
            include += ["metadatas", "documents"]

        results = self._collection().query(
            query_embeddings=[vector],
            n_results=top_k,
            include=include,
        )

        matches = []
        if not results or not results.get("ids") or not results["ids"][0]:
            return matches

        for i, item_id in enumerate(results["ids"][0]):
            match = {
                "id": item_id,
                "score": max(0.0, 1.0 - results["distances"][0][i]),
            }
            if include_metadata:
                meta = dict((results.get("metadatas") or [[]])[0][i] or {})
                documents = (results.get("documents") or [[]])[0]
                doc = documents[i] if i < len(documents) else None
                if not meta.get("text") and doc:
                    meta["text"] = doc
                match["metadata"] = meta
            matches.append(match)
        return matches

    def count(self) -> int:
        return self._collection().count()

    def get_stats(self) -> dict:
        return {
            "collection": self.collection_name,
            "db_path": str(self.db_path),
            "items": self.count(),
        }
