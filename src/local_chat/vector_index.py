"""Vector index service: ChromaDB-backed similarity search over a session's documents."""

import logging
from pathlib import Path
from typing import Protocol, runtime_checkable

import chromadb
from chromadb.errors import ChromaError
from chromadb.utils import embedding_functions

from local_chat.config import RAGConfig
from local_chat.errors import RAGIndexError
from local_chat.models import Chunk, RetrievedPassage

logger = logging.getLogger(__name__)

INDEX_NAME = "RAG_index"

# Similarity metric names mapped to Chroma HNSW spaces.
_SPACES = {"cosine": "cosine", "dotproduct": "ip", "euclidean": "l2"}

_PROMPT_TEMPLATE = (
    "Given the following context sections, answer the question using only "
    "the given context. If you are unsure and the answer is not explicitly "
    "written in the context, say \"Sorry, I don't know how to help with that.\"\n\n"
    "Context sections:\n{context}\n\nQuestion: {query}\nAnswer:"
)

_embedding_fn_cache: dict[str, object] = {}


def get_embedding_function(
    model_name: str = "all-MiniLM-L6-v2",
) -> embedding_functions.SentenceTransformerEmbeddingFunction:
    """Return a SentenceTransformer embedding function, loaded once per model."""
    if model_name not in _embedding_fn_cache:
        _embedding_fn_cache[model_name] = (
            embedding_functions.SentenceTransformerEmbeddingFunction(model_name=model_name)
        )
    return _embedding_fn_cache[model_name]  # type: ignore[return-value]


def _similarity(distance: float, metric: str) -> float:
    """Convert a Chroma distance into a score where higher is closer."""
    if metric == "euclidean":
        return round(1 / (1 + distance), 4)
    return round(1 - distance, 4)


@runtime_checkable
class VectorIndexService(Protocol):
    """Similarity index consumed by the RAG coordinator."""

    def configure(self, embedding_model: str, similarity_metric: str, chunk_method: str) -> None: ...

    def load_index(self, location: str, name: str = INDEX_NAME) -> bool: ...

    def search(self, query: str, top_k: int) -> list[RetrievedPassage] | None: ...

    def render_prompt(self, query: str, results: list[RetrievedPassage]) -> str: ...


def render_prompt(query: str, results: list[RetrievedPassage]) -> str:
    """Render the query and its passages into a single prompt.

    Args:
        query: The user's question.
        results: Passages in the order they should appear.

    Returns:
        The prompt text, with each passage written as ``[source]: text``.
    """
    context = "\n\n".join(f"[{r.source}]: {r.text}" for r in results)
    return _PROMPT_TEMPLATE.format(context=context, query=query)


class ChromaIndexService:
    """VectorIndexService over a persistent Chroma collection.

    ``configure`` must be called before ``load_index``; changing the
    embedding model or metric afterwards requires loading the index again.
    """

    def __init__(self) -> None:
        defaults = RAGConfig()
        self.embedding_model = defaults.embedding_model
        self.similarity_metric = defaults.similarity_metric
        self.chunk_method = defaults.chunk_method
        self._collection: chromadb.Collection | None = None

    def configure(self, embedding_model: str, similarity_metric: str, chunk_method: str) -> None:
        """Set the embedding settings and drop any open collection.

        Args:
            embedding_model: SentenceTransformer model name.
            similarity_metric: One of ``cosine``, ``dotproduct`` or ``euclidean``.
            chunk_method: Chunking the index was built with.
        """
        self.embedding_model = embedding_model
        self.similarity_metric = similarity_metric
        self.chunk_method = chunk_method
        self._collection = None

    def _open(self, location: str, name: str, create: bool) -> chromadb.Collection:
        client = chromadb.PersistentClient(path=location)
        ef = get_embedding_function(self.embedding_model)
        if create:
            return client.get_or_create_collection(
                name=name,
                embedding_function=ef,
                metadata={"hnsw:space": _SPACES[self.similarity_metric]},
            )
        return client.get_collection(name=name, embedding_function=ef)

    def load_index(self, location: str, name: str = INDEX_NAME) -> bool:
        """Open an existing index; False when it is missing or unreadable."""
        if not location or not Path(location).is_dir():
            logger.warning("RAG index directory not found: %s", location)
            return False
        try:
            self._collection = self._open(location, name, create=False)
        except (ChromaError, ValueError):
            logger.exception("Could not load RAG index %s from %s", name, location)
            return False
        logger.info("Loaded RAG index %s (%d chunks)", name, self._collection.count())
        return True

    def search(self, query: str, top_k: int) -> list[RetrievedPassage] | None:
        """Return up to *top_k* passages, most similar first.

        Returns None when no index is loaded.

        Raises:
            RAGIndexError: If the query against the collection fails.
        """
        if self._collection is None:
            return None
        try:
            raw = self._collection.query(query_texts=[query], n_results=top_k)
        except (ChromaError, ValueError) as exc:
            raise RAGIndexError(f"Search failed: {exc}") from exc

        documents = (raw.get("documents") or [[]])[0]
        metadatas = (raw.get("metadatas") or [[]])[0]
        distances = (raw.get("distances") or [[]])[0]
        passages = [
            RetrievedPassage(
                text=doc,
                source=(meta or {}).get("source", "unknown"),
                score=_similarity(dist, self.similarity_metric),
            )
            for doc, meta, dist in zip(documents, metadatas, distances)
        ]
        return sorted(passages, key=lambda p: p.score, reverse=True)

    def render_prompt(self, query: str, results: list[RetrievedPassage]) -> str:
        return render_prompt(query, results)

    def build_index(
        self,
        location: str,
        chunks: list[Chunk],
        name: str = INDEX_NAME,
        batch_size: int = 100,
    ) -> int:
        """Recreate the index at *location* from *chunks*.

        Returns:
            Number of chunks stored.
        """
        Path(location).mkdir(parents=True, exist_ok=True)
        client = chromadb.PersistentClient(path=location)
        try:
            client.delete_collection(name)
        except (ChromaError, ValueError):
            logger.debug("No existing index %s to replace", name)
        collection = self._open(location, name, create=True)

        ids = [f"chunk_{i}" for i in range(len(chunks))]
        for start in range(0, len(chunks), batch_size):
            batch = chunks[start : start + batch_size]
            collection.add(
                documents=[c.text for c in batch],
                metadatas=[c.metadata for c in batch],
                ids=ids[start : start + batch_size],
            )
        self._collection = collection
        logger.info("Indexed %d chunks into %s", len(chunks), location)
        return len(chunks)
