"""Domain models for the chat engine."""

import uuid
from dataclasses import dataclass, field
from enum import Enum

from local_chat.config import SessionConfig


class Sender(str, Enum):
    """Who produced a message."""

    USER = "user"
    USER_RAG = "user_rag"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class MessageState(str, Enum):
    """Lifecycle of a message. ``PREDICTED`` and ``ERROR`` are final."""

    NONE = "none"
    TYPED = "typed"
    PREDICTING = "predicting"
    PREDICTED = "predicted"
    ERROR = "error"


class TurnState(str, Enum):
    """Controller state for the current turn."""

    IDLE = "idle"
    PREPARING_MODEL = "preparing_model"
    LOADING_MODEL = "loading_model"
    RAG_INDEX_LOADING = "rag_index_loading"
    RAG_SEARCHING = "rag_searching"
    GENERATING = "generating"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass
class Message:
    """An entry in a session's append-only message log.

    ``text`` changes only while the message is ``PREDICTING``; once it is
    ``PREDICTED`` or ``ERROR`` the controller never touches it again.
    """

    sender: Sender
    text: str = ""
    state: MessageState = MessageState.NONE
    header: str = ""
    attachment: str | None = None
    attachment_kind: str | None = None
    tokens_per_second: float = 0.0
    elapsed_seconds: float | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def is_final(self) -> bool:
        return self.state in (MessageState.PREDICTED, MessageState.ERROR)

    def mark_predicted(self, elapsed_seconds: float, tokens_per_second: float) -> None:
        self.state = MessageState.PREDICTED
        self.elapsed_seconds = elapsed_seconds
        self.tokens_per_second = tokens_per_second


@dataclass
class ChatSession:
    """One conversation: its unique name, display title and configuration.

    ``config`` is absent until it has been loaded from storage.
    """

    name: str
    title: str = ""
    multimodal: bool = False
    config: SessionConfig | None = None


@dataclass(frozen=True)
class Document:
    """A loaded document with its text content and metadata."""

    content: str
    metadata: dict = field(default_factory=dict)


@dataclass(frozen=True)
class Chunk:
    """A text chunk produced from a document."""

    text: str
    metadata: dict = field(default_factory=dict)


@dataclass(frozen=True)
class RetrievedPassage:
    """A single retrieved passage with its similarity score."""

    text: str
    source: str
    score: float


@dataclass(frozen=True)
class TokenEvent:
    """One generated token and the time the engine spent producing it."""

    text: str
    latency: float = 0.0


@dataclass(frozen=True)
class CompletionEvent:
    """Final item of a generation stream.

    A ``final_text`` starting with ``[Error]`` marks an engine failure.
    """

    final_text: str


@dataclass(frozen=True)
class ControllerSnapshot:
    """Immutable view of the controller for observers."""

    state: TurnState
    session_name: str
    title: str
    messages: tuple[Message, ...]
    typing: int
    load_progress: float
    tokens_per_second: float
