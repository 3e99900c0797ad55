"""Chat engine exceptions.

These are orchestration errors, not presentation errors. Adapters raise
them at the boundary with the inference engine, the vector index and
storage; the controller turns them into error-state system messages or a
failed ``send`` return value.
"""


class ChatError(Exception):
    """Base class for all chat engine errors."""


class ModelLoadError(ChatError):
    """Raised when the engine cannot prepare or load a model context."""


class GenerationError(ChatError):
    """Raised when the engine fails while streaming a reply."""


class SessionMismatch(ChatError):
    """Raised when output belongs to a session that is no longer active."""


class RAGIndexError(ChatError):
    """Raised when the similarity index is missing, unloadable or unsearchable."""


class ConfigMissing(ChatError):
    """Raised when no configuration exists for a session."""
