"""Tests for the rag module."""

import threading

import pytest

from local_chat.config import RAGConfig
from local_chat.errors import RAGIndexError
from local_chat.models import RetrievedPassage
from local_chat.rag import RAGCoordinator

from .conftest import FakeIndex


@pytest.fixture
def coordinator(index):
    rag = RAGCoordinator(index)
    yield rag
    rag.shutdown()


class TestEnsureIndex:
    async def test_configures_before_loading(self, coordinator, index) -> None:
        cfg = RAGConfig(embedding_model="multi-qa", similarity_metric="cosine", chunk_method="semantic")
        await coordinator.ensure_index("/idx", cfg)
        assert index.configured == [("multi-qa", "cosine", "semantic")]
        assert index.loads == [("/idx", "RAG_index")]
        assert coordinator.index_loaded is True

    async def test_loads_once(self, coordinator, index) -> None:
        await coordinator.query("q", 3, "/idx", RAGConfig())
        await coordinator.query("q2", 3, "/idx", RAGConfig())
        assert len(index.loads) == 1
        assert len(index.searches) == 2

    async def test_reset_forces_reload(self, coordinator, index) -> None:
        await coordinator.ensure_index("/idx", RAGConfig())
        coordinator.reset()
        assert coordinator.index_loaded is False
        await coordinator.ensure_index("/idx", RAGConfig())
        assert len(index.loads) == 2

    async def test_unloadable_index_raises(self) -> None:
        rag = RAGCoordinator(FakeIndex(loadable=False))
        try:
            with pytest.raises(RAGIndexError):
                await rag.ensure_index("/missing", RAGConfig())
            assert rag.index_loaded is False
        finally:
            rag.shutdown()


class TestSearch:
    async def test_renders_passages_by_descending_score(self, coordinator) -> None:
        prompt = await coordinator.query("What is high?", 3, "/idx", RAGConfig())
        assert "Question: What is high?" in prompt
        assert prompt.index("[a.txt]: High") < prompt.index("[b.txt]: Mid") < prompt.index("[c.txt]: Low")

    async def test_limits_to_top_k(self, coordinator, index) -> None:
        prompt = await coordinator.query("q", 2, "/idx", RAGConfig())
        assert index.searches == [("q", 2)]
        assert "Low" not in prompt

    async def test_on_search_runs_between_load_and_search(self, coordinator, index) -> None:
        seen: list[tuple[int, int]] = []

        await coordinator.query(
            "q", 3, "/idx", RAGConfig(), on_search=lambda: seen.append((len(index.loads), len(index.searches)))
        )

        assert seen == [(1, 0)]
        assert len(index.searches) == 1

    async def test_no_results_does_not_crash(self) -> None:
        rag = RAGCoordinator(FakeIndex(passages=None))
        try:
            prompt = await rag.query("nothing?", 3, "/idx", RAGConfig())
        finally:
            rag.shutdown()
        assert "Question: nothing?" in prompt

    async def test_empty_results(self) -> None:
        rag = RAGCoordinator(FakeIndex(passages=[]))
        try:
            prompt = await rag.query("q", 3, "/idx", RAGConfig())
        finally:
            rag.shutdown()
        assert "[" not in prompt.split("Context sections:")[1].split("Question:")[0]


class TestFallback:
    def test_fallback_prompt_has_no_passages(self, coordinator) -> None:
        prompt = coordinator.fallback_prompt("q")
        assert "Question: q" in prompt
        assert "[a.txt]" not in prompt


class TestExecutor:
    async def test_runs_off_the_event_loop(self) -> None:
        seen: list[str] = []

        class ThreadIndex(FakeIndex):
            def load_index(self, location, name="RAG_index") -> bool:
                seen.append(threading.current_thread().name)
                return True

        rag = RAGCoordinator(ThreadIndex(passages=[RetrievedPassage("t", "s", 1.0)]))
        try:
            await rag.ensure_index("/idx", RAGConfig())
        finally:
            rag.shutdown()
        assert seen[0].startswith("rag")
