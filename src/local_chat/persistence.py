"""Persistence gateway: message history, chat configs and engine state."""

import logging
from pathlib import Path
from typing import Protocol, runtime_checkable

from pydantic import TypeAdapter, ValidationError

from local_chat.config import SessionConfig, StorageConfig
from local_chat.models import Message

logger = logging.getLogger(__name__)

_HISTORY = TypeAdapter(list[Message])


@runtime_checkable
class PersistenceGateway(Protocol):
    """Storage consumed by the controller; all payloads are opaque to it."""

    def load_history(self, session_id: str) -> list[Message]: ...

    def save_history(self, session_id: str, messages: list[Message]) -> None: ...

    def load_config(self, session_id: str) -> SessionConfig | None: ...

    def dump_engine_state(self, session_id: str, blob: bytes) -> None: ...

    def load_engine_state(self, session_id: str) -> bytes | None: ...

    def remove_engine_state_dump(self, session_id: str) -> None: ...


class JsonFileGateway:
    """File-backed gateway.

    Layout under the configured directories:
        history: ``<history_dir>/<session>.json``
        config:  ``<chats_dir>/<session>.json``
        state:   ``<state_dir>/<session>.state``
    """

    def __init__(self, config: StorageConfig | None = None) -> None:
        self.config = config or StorageConfig()

    def history_path(self, session_id: str) -> Path:
        return Path(self.config.history_dir) / f"{session_id}.json"

    def config_path(self, session_id: str) -> Path:
        return Path(self.config.chats_dir) / f"{session_id}.json"

    def state_path(self, session_id: str) -> Path:
        return Path(self.config.state_dir) / f"{session_id}.state"

    def load_history(self, session_id: str) -> list[Message]:
        """Return the stored messages for a session, oldest first.

        A missing or unreadable history file yields an empty list.
        """
        path = self.history_path(session_id)
        if not path.is_file():
            return []
        try:
            return _HISTORY.validate_json(path.read_bytes())
        except ValidationError:
            logger.exception("Corrupt history file %s", path)
            return []

    def save_history(self, session_id: str, messages: list[Message]) -> None:
        """Overwrite the session's history file.

        Args:
            session_id: Chat whose history is written.
            messages: The full log, oldest first.
        """
        path = self.history_path(session_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(_HISTORY.dump_json(messages, indent=2))
        logger.debug("Saved %d messages to %s", len(messages), path)

    def save_config(self, session_id: str, config: SessionConfig) -> None:
        """Write *config* as the chat's configuration file."""
        path = self.config_path(session_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(config.model_dump_json(indent=2), encoding="utf-8")

    def load_config(self, session_id: str) -> SessionConfig | None:
        """Return the session's configuration, or None if it is unconfigured."""
        path = self.config_path(session_id)
        if not path.is_file():
            return None
        try:
            return SessionConfig.model_validate_json(path.read_bytes())
        except ValidationError:
            logger.exception("Invalid chat config %s", path)
            return None

    def dump_engine_state(self, session_id: str, blob: bytes) -> None:
        """Store an engine snapshot for later restore.

        Args:
            session_id: Chat the snapshot belongs to.
            blob: Opaque bytes produced by the engine.
        """
        path = self.state_path(session_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(blob)

    def load_engine_state(self, session_id: str) -> bytes | None:
        """Return the stored engine snapshot, or None if there is none."""
        path = self.state_path(session_id)
        return path.read_bytes() if path.is_file() else None

    def remove_engine_state_dump(self, session_id: str) -> None:
        self.state_path(session_id).unlink(missing_ok=True)
