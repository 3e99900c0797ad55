"""Shared fixtures and test doubles for the test suite."""

import tempfile
import threading
import time
from pathlib import Path
from unittest.mock import patch

import ollama
import pytest

from local_chat.config import ContextConfig, RAGConfig, SessionConfig, StorageConfig
from local_chat.controller import ConversationController
from local_chat.engine import DONE, EngineContext
from local_chat.errors import ModelLoadError
from local_chat.models import (
    ChatSession,
    CompletionEvent,
    Document,
    RetrievedPassage,
    TokenEvent,
)
from local_chat.persistence import JsonFileGateway
from local_chat.rag import RAGCoordinator
from local_chat.vector_index import render_prompt


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class FakeEngine:
    """Scripted InferenceEngine.

    ``tokens`` are streamed in order; with ``hold`` set the stream parks
    after the last token until the context is cancelled.
    """

    def __init__(self, tokens: list[str] | None = None, final_text: str = DONE) -> None:
        self.tokens = tokens if tokens is not None else ["Hi", " there", "!"]
        self.final_text = final_text
        self.hold = False
        self.load_error: str | None = None
        self.reached = threading.Event()
        self.on_token = None
        self.calls: list[dict] = []
        self.loads = 0

    def prepare_context(self, config: SessionConfig, session_name: str) -> EngineContext:
        if config.model == "missing.gguf":
            raise ModelLoadError(f"model file not found: {config.model}")
        return EngineContext(session_name=session_name, config=config)

    def load_model(self, context: EngineContext, on_progress=None) -> None:
        self.loads += 1
        if self.load_error:
            raise ModelLoadError(self.load_error)
        if on_progress is not None:
            on_progress(1.0)
        context.loaded = True

    def converse(self, context, prompt, system_prompt=None, image_path=None):
        self.calls.append(
            {"prompt": prompt, "system_prompt": system_prompt, "image_path": image_path}
        )
        for i, token in enumerate(self.tokens):
            if context.cancelled:
                break
            yield TokenEvent(text=token, latency=0.01)
            if self.on_token is not None:
                self.on_token(i)
        self.reached.set()
        if self.hold:
            deadline = time.monotonic() + 5
            while self.hold and not context.cancelled and time.monotonic() < deadline:
                time.sleep(0.005)
        context.n_past += len(prompt) + len(self.tokens)
        yield CompletionEvent(final_text=self.final_text)

    def snapshot(self, context: EngineContext) -> bytes:
        return f"{context.n_past}".encode()

    def restore(self, context: EngineContext, blob: bytes) -> None:
        context.n_past = int(blob.decode())


class FakeIndex:
    """VectorIndexService double with canned passages."""

    def __init__(self, passages: list[RetrievedPassage] | None = None, loadable: bool = True) -> None:
        self.passages = passages
        self.loadable = loadable
        self.configured: list[tuple] = []
        self.loads: list[tuple] = []
        self.searches: list[tuple] = []

    def configure(self, embedding_model, similarity_metric, chunk_method) -> None:
        self.configured.append((embedding_model, similarity_metric, chunk_method))

    def load_index(self, location, name="RAG_index") -> bool:
        self.loads.append((location, name))
        return self.loadable

    def search(self, query, top_k):
        self.searches.append((query, top_k))
        return self.passages

    def render_prompt(self, query, results) -> str:
        return render_prompt(query, results)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def storage(tmp_path: Path) -> StorageConfig:
    return StorageConfig(
        history_dir=str(tmp_path / "history"),
        chats_dir=str(tmp_path / "chats"),
        state_dir=str(tmp_path / "state"),
        rag_dir=str(tmp_path / "rag"),
        images_dir=str(tmp_path / "images"),
    )


@pytest.fixture
def gateway(storage: StorageConfig) -> JsonFileGateway:
    return JsonFileGateway(storage)


@pytest.fixture
def session_config() -> SessionConfig:
    return SessionConfig(
        title="Alpha",
        model="llama3.2:1b",
        context=ContextConfig(system_prompt="You are helpful.", stop_sequences=["<|eot_id|>"]),
        rag=RAGConfig(top_k=3),
    )


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def index() -> FakeIndex:
    return FakeIndex(
        passages=[
            RetrievedPassage(text="Low", source="c.txt", score=0.2),
            RetrievedPassage(text="High", source="a.txt", score=0.9),
            RetrievedPassage(text="Mid", source="b.txt", score=0.5),
        ]
    )


@pytest.fixture
def controller(engine, gateway, index, storage, clock, session_config):
    gateway.save_config("alpha", session_config)
    rag = RAGCoordinator(index)
    ctrl = ConversationController(engine, gateway, rag, storage=storage, clock=clock)
    ctrl.reload(ChatSession(name="alpha", title="Alpha"))
    yield ctrl
    rag.shutdown()


@pytest.fixture
def sample_documents() -> list[Document]:
    return [
        Document(
            content="First document about Python programming.",
            metadata={"source": "doc1.txt", "file_type": ".txt"},
        ),
        Document(
            content="Second document about machine learning concepts.",
            metadata={"source": "doc2.txt", "file_type": ".txt"},
        ),
    ]


@pytest.fixture
def tmp_docs_dir() -> Path:
    """Create a temporary directory with sample documents."""
    with tempfile.TemporaryDirectory() as tmpdir:
        d = Path(tmpdir)
        (d / "sample.txt").write_text(
            "This is a sample text document for the chat index.",
            encoding="utf-8",
        )
        (d / "notes.md").write_text(
            "# Notes\n\nThis is a **markdown** document with some content.",
            encoding="utf-8",
        )
        # Unsupported file, skipped by the loader.
        (d / "image.png").write_bytes(b"\x89PNG\r\n")
        yield d


@pytest.fixture
def mock_ollama():
    """Replace the ollama module seen by the engine; its exceptions stay real."""
    with patch("local_chat.engine.ollama") as mock:
        mock.ResponseError = ollama.ResponseError
        mock.RequestError = ollama.RequestError
        yield mock
