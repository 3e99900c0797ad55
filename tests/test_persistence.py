"""Tests for the persistence module."""

from pathlib import Path

from local_chat.config import SessionConfig
from local_chat.models import Message, MessageState, Sender
from local_chat.persistence import JsonFileGateway, PersistenceGateway


def _history() -> list[Message]:
    done = Message(sender=Sender.ASSISTANT, text="Hi!", header="sys")
    done.mark_predicted(1.25, 9.6)
    return [
        Message(sender=Sender.USER, state=MessageState.TYPED, text="Hello"),
        Message(
            sender=Sender.USER_RAG,
            state=MessageState.TYPED,
            text="prompt",
            attachment="prompt",
            attachment_kind="rag",
        ),
        done,
        Message(sender=Sender.SYSTEM, state=MessageState.ERROR, text="Eval [Error] boom"),
    ]


class TestProtocol:
    def test_json_gateway_satisfies_protocol(self, gateway) -> None:
        assert isinstance(gateway, PersistenceGateway)


class TestHistory:
    def test_round_trip(self, gateway) -> None:
        messages = _history()
        gateway.save_history("alpha", messages)
        assert gateway.load_history("alpha") == messages

    def test_file_keyed_by_session(self, gateway, storage) -> None:
        gateway.save_history("alpha", _history())
        assert (Path(storage.history_dir) / "alpha.json").is_file()

    def test_missing_history_is_empty(self, gateway) -> None:
        assert gateway.load_history("nobody") == []

    def test_corrupt_history_is_empty(self, gateway, storage) -> None:
        path = Path(storage.history_dir) / "bad.json"
        path.parent.mkdir(parents=True)
        path.write_text("{not json", encoding="utf-8")
        assert gateway.load_history("bad") == []

    def test_stores_enum_values(self, gateway, storage) -> None:
        gateway.save_history("alpha", _history())
        raw = (Path(storage.history_dir) / "alpha.json").read_text(encoding="utf-8")
        assert '"predicted"' in raw
        assert '"user_rag"' in raw


class TestConfig:
    def test_missing_config_is_none(self, gateway) -> None:
        assert gateway.load_config("nobody") is None

    def test_round_trip(self, gateway, session_config) -> None:
        gateway.save_config("alpha", session_config)
        assert gateway.load_config("alpha") == session_config

    def test_invalid_config_is_none(self, gateway, storage) -> None:
        path = Path(storage.chats_dir) / "bad.json"
        path.parent.mkdir(parents=True)
        path.write_text('{"rag": {"top_k": 0}}', encoding="utf-8")
        assert gateway.load_config("bad") is None


class TestEngineState:
    def test_dump_load_remove(self, gateway) -> None:
        gateway.dump_engine_state("alpha", b"state")
        assert gateway.load_engine_state("alpha") == b"state"
        gateway.remove_engine_state_dump("alpha")
        assert gateway.load_engine_state("alpha") is None

    def test_remove_missing_is_noop(self, gateway) -> None:
        gateway.remove_engine_state_dump("nobody")

    def test_default_storage(self) -> None:
        assert JsonFileGateway().state_path("x") == Path("./data/state/x.state")
