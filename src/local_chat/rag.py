"""RAG coordinator: lazy index loading and prompt augmentation off the event loop."""

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Callable

from local_chat.config import RAGConfig
from local_chat.errors import RAGIndexError
from local_chat.vector_index import INDEX_NAME, VectorIndexService

logger = logging.getLogger(__name__)


class RAGCoordinator:
    """Loads a session's index at most once and turns queries into prompts.

    Index loading and search run on a dedicated single-thread worker so a
    slow first-time load never blocks the event loop.
    """

    def __init__(
        self,
        index: VectorIndexService,
        executor: ThreadPoolExecutor | None = None,
    ) -> None:
        self.index = index
        self.index_loaded = False
        self._executor = executor or ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="rag"
        )

    def reset(self) -> None:
        """Forget the loaded index; the next query loads it again."""
        self.index_loaded = False

    def _load(self, location: str, config: RAGConfig) -> None:
        # Embedding model, metric and chunking must be set before loading.
        self.index.configure(
            config.embedding_model, config.similarity_metric, config.chunk_method
        )
        if not self.index.load_index(location, INDEX_NAME):
            raise RAGIndexError(f"Could not load RAG index at {location!r}")
        self.index_loaded = True

    def _search(self, text: str, top_k: int) -> str:
        results = self.index.search(text, top_k)
        if not results:
            logger.info("RAG search returned no passages for %r", text[:80])
            results = []
        ordered = sorted(results, key=lambda r: r.score, reverse=True)[:top_k]
        return self.index.render_prompt(text, ordered)

    async def ensure_index(self, location: str, config: RAGConfig) -> None:
        """Load the index unless it is already loaded for this session.

        Raises:
            RAGIndexError: If the index cannot be loaded.
        """
        if self.index_loaded:
            return
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(self._executor, self._load, location, config)

    async def search(self, text: str, top_k: int) -> str:
        """Search the loaded index and render the augmented prompt.

        Raises:
            RAGIndexError: If the search fails.
        """
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, self._search, text, top_k)

    async def query(
        self,
        text: str,
        top_k: int,
        location: str,
        config: RAGConfig,
        on_search: Callable[[], None] | None = None,
    ) -> str:
        """Turn *text* into a prompt augmented with the index's best passages.

        Args:
            text: The user's question.
            top_k: Maximum number of passages to include.
            location: Directory of the session's index.
            config: Embedding model, metric and chunk method to load with.
            on_search: Called once the index is ready, before searching.

        Returns:
            The rendered prompt, to be sent in place of *text*.

        Raises:
            RAGIndexError: If the index cannot be loaded or searched.
        """
        await self.ensure_index(location, config)
        if on_search is not None:
            on_search()
        return await self.search(text, top_k)

    def fallback_prompt(self, text: str) -> str:
        """Prompt rendered with no passages, used when the index is unusable."""
        return self.index.render_prompt(text, [])

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)
