"""Conversation controller: drives a chat turn end to end.

A turn moves through ``PREPARING_MODEL -> LOADING_MODEL -> (RAG_INDEX_LOADING
-> RAG_SEARCHING) -> GENERATING -> COMPLETED``, with ``ERROR`` reachable from
preparation, loading and generation. Tokens are consumed on a worker
thread, so every read or write of the message log goes through one lock.
"""

import asyncio
import dataclasses
import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from local_chat.accumulator import StreamAccumulator
from local_chat.config import SessionConfig, StorageConfig
from local_chat.engine import DONE, ERROR_PREFIX, EngineContext, InferenceEngine
from local_chat.errors import (
    ConfigMissing,
    GenerationError,
    ModelLoadError,
    RAGIndexError,
    SessionMismatch,
)
from local_chat.models import (
    ChatSession,
    CompletionEvent,
    ControllerSnapshot,
    Message,
    MessageState,
    Sender,
    TurnState,
)
from local_chat.persistence import PersistenceGateway
from local_chat.rag import RAGCoordinator
from local_chat.stop_sequences import StopSequenceMatcher

logger = logging.getLogger(__name__)

LOADING_TITLE = "loading..."

Subscriber = Callable[[ControllerSnapshot], None]


@dataclass
class Turn:
    """One ``send`` call and the generation it owns."""

    text: str
    append_user_message: bool = True
    system_prompt: str | None = None
    attachment: str | None = None
    attachment_kind: str | None = None
    use_rag: bool = False
    context: EngineContext | None = None
    accumulator: StreamAccumulator | None = None
    cancelled: bool = False


class ConversationController:
    """Owns a session's message log and drives the engine for each turn.

    ``send`` is a coroutine; ``stop``, ``reload`` and ``hard_reload`` are
    plain methods that may be called from any thread. Subscribers are
    notified with a snapshot after every change, possibly from the
    generation worker thread.
    """

    def __init__(
        self,
        engine: InferenceEngine,
        gateway: PersistenceGateway,
        rag: RAGCoordinator | None = None,
        storage: StorageConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if rag is None:
            from local_chat.vector_index import ChromaIndexService

            rag = RAGCoordinator(ChromaIndexService())
        self.engine = engine
        self.gateway = gateway
        self.rag = rag
        self.storage = storage or StorageConfig()
        self.session = ChatSession(name="")
        self.state = TurnState.IDLE
        self.title = ""
        self.typing = 0
        self.load_progress = 0.0
        self.tokens_per_second = 0.0

        self._clock = clock
        self._lock = threading.RLock()
        self._messages: list[Message] = []
        self._context: EngineContext | None = None
        self._turn: Turn | None = None
        self._generation: asyncio.Task | None = None
        self._subscribers: list[Subscriber] = []
        self._title_backup = ""

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    @property
    def messages(self) -> tuple[Message, ...]:
        with self._lock:
            return tuple(dataclasses.replace(m) for m in self._messages)

    @property
    def context(self) -> EngineContext | None:
        return self._context

    def snapshot(self) -> ControllerSnapshot:
        with self._lock:
            return ControllerSnapshot(
                state=self.state,
                session_name=self.session.name,
                title=self.title,
                messages=tuple(dataclasses.replace(m) for m in self._messages),
                typing=self.typing,
                load_progress=self.load_progress,
                tokens_per_second=self.tokens_per_second,
            )

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register *callback*; returns a function that unregisters it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _notify(self) -> None:
        if not self._subscribers:
            return
        snap = self.snapshot()
        for callback in list(self._subscribers):
            callback(snap)

    def _set_state(self, state: TurnState) -> None:
        logger.debug("Chat %s: %s -> %s", self.session.name, self.state.value, state.value)
        self.state = state
        self._notify()

    def _append(self, message: Message) -> None:
        with self._lock:
            self._messages.append(message)
        self._notify()

    # ------------------------------------------------------------------
    # Turn orchestration
    # ------------------------------------------------------------------

    async def send(
        self,
        text: str,
        append_user_message: bool = True,
        system_prompt: str | None = None,
        attachment: str | None = None,
        attachment_kind: str | None = None,
        use_rag: bool = False,
    ) -> bool:
        """Run one turn.

        Returns:
            False when the turn was rejected before touching the message log
            (empty text without an attachment, or no configuration for the
            session). True otherwise, including turns that end in an
            error-state system message.
        """
        if not text and not attachment:
            logger.warning("Refusing to send an empty message without an attachment")
            return False

        turn = Turn(
            text=text,
            append_user_message=append_user_message,
            system_prompt=system_prompt,
            attachment=attachment,
            attachment_kind=attachment_kind,
            use_rag=use_rag,
        )
        session_name = self.session.name

        with self._lock:
            in_flight = self._turn is not None
            if self._context is not None and self._context.session_name != session_name:
                logger.info(
                    "Discarding engine context of chat %s", self._context.session_name
                )
                self._context = None
            needs_context = self._context is None

        if needs_context or self.session.config is None:
            try:
                self.session.config = self._require_config(session_name)
            except ConfigMissing as exc:
                logger.warning("%s", exc)
                return False

        if in_flight:
            self.stop()

        with self._lock:
            self.typing += 1
        if append_user_message:
            self._append(
                Message(
                    sender=Sender.USER,
                    state=MessageState.TYPED,
                    text=text,
                    attachment=attachment,
                    attachment_kind=attachment_kind,
                )
            )

        if needs_context and not self._prepare():
            return True
        if not self._context.loaded and not await self._load(self._context):
            return True
        if use_rag:
            return await self._send_with_rag(turn, session_name)

        self._start_generation(turn)
        return True

    def _require_config(self, session_name: str) -> SessionConfig:
        config = self.gateway.load_config(session_name)
        if config is None:
            raise ConfigMissing(f"No configuration found for chat {session_name!r}")
        return config

    def _check_session(self, context: EngineContext) -> None:
        if self.session.name != context.session_name:
            raise SessionMismatch(
                f"output for chat {context.session_name!r} while {self.session.name!r} is active"
            )

    def _prepare(self) -> bool:
        self._set_state(TurnState.PREPARING_MODEL)
        try:
            context = self.engine.prepare_context(self.session.config, self.session.name)
        except ModelLoadError as exc:
            logger.warning("Preparing chat %s failed: %s", self.session.name, exc)
            self._fail_load(f"Load Model Error: {exc}")
            return False
        with self._lock:
            self._context = context
        return True

    async def _load(self, context: EngineContext) -> bool:
        self._set_state(TurnState.LOADING_MODEL)
        self._title_backup = self.title
        self.title = LOADING_TITLE
        try:
            await asyncio.to_thread(self.engine.load_model, context, self._on_load_progress)
        except ModelLoadError as exc:
            logger.warning("Loading model for chat %s failed: %s", context.session_name, exc)
            self._fail_load(f"Load Model Error: {exc}")
            return False
        except Exception as exc:
            logger.exception("Unexpected failure loading model for chat %s", context.session_name)
            self._fail_load(f"Load Model Error: {exc}")
            return False
        self.title = self._title_backup

        if context.session_name != self.session.name:
            logger.debug("Chat switched while loading %s; turn abandoned", context.session_name)
            return False
        if context.config.context.save_load_state:
            self._restore_engine_state(context)
        return True

    def _on_load_progress(self, value: float) -> None:
        self.load_progress = value
        self._notify()

    def _restore_engine_state(self, context: EngineContext) -> None:
        blob = self.gateway.load_engine_state(context.session_name)
        if blob is None:
            return
        try:
            self.engine.restore(context, blob)
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("Ignoring unreadable engine state for %s: %s", context.session_name, exc)

    def _fail_load(self, text: str) -> None:
        if self.title == LOADING_TITLE:
            self.title = self._title_backup
        self._append(Message(sender=Sender.SYSTEM, state=MessageState.ERROR, text=text))
        self.stop(is_error=True)
        self._set_state(TurnState.ERROR)

    async def _send_with_rag(self, turn: Turn, session_name: str) -> bool:
        rag_config = self.session.config.rag
        location = rag_config.index_dir or str(Path(self.storage.rag_dir) / session_name)
        try:
            if not self.rag.index_loaded:
                self._set_state(TurnState.RAG_INDEX_LOADING)
            prompt = await self.rag.query(
                turn.text,
                rag_config.top_k,
                location,
                rag_config,
                on_search=lambda: self._set_state(TurnState.RAG_SEARCHING),
            )
        except RAGIndexError as exc:
            if rag_config.on_error == "message":
                self._append(
                    Message(sender=Sender.SYSTEM, state=MessageState.ERROR, text=f"RAG Error: {exc}")
                )
                self.stop(is_error=True)
                self._set_state(TurnState.ERROR)
                return True
            logger.warning("RAG unavailable for chat %s, sending without passages: %s", session_name, exc)
            prompt = self.rag.fallback_prompt(turn.text)

        if self.session.name != session_name:
            logger.debug("Chat switched during RAG search for %s; turn abandoned", session_name)
            return True

        return await self.send(
            prompt,
            append_user_message=False,
            system_prompt=turn.system_prompt,
            attachment=prompt,
            attachment_kind="rag",
        )

    def _image_path(self, turn: Turn) -> str | None:
        if turn.attachment_kind != "img" or not turn.attachment:
            return None
        if not self.session.multimodal:
            logger.warning("Chat %s is not multimodal; image ignored", self.session.name)
            return None
        path = Path(self.storage.images_dir) / turn.attachment
        return str(path) if path.is_file() else None

    def _start_generation(self, turn: Turn) -> None:
        context = self._context
        system_prompt = turn.system_prompt
        configured_prompt = context.config.context.system_prompt

        with self._lock:
            if turn.attachment is not None and turn.attachment_kind == "rag":
                self._messages.append(
                    Message(
                        sender=Sender.USER_RAG,
                        state=MessageState.TYPED,
                        text=turn.text,
                        attachment=turn.attachment,
                        attachment_kind=turn.attachment_kind,
                    )
                )
            # Only a context that has consumed nothing yet gets the system prompt.
            if system_prompt is None and configured_prompt and context.n_past == 0:
                system_prompt = configured_prompt
                if self._messages and not self._messages[-1].is_final:
                    self._messages[-1].header = configured_prompt

            context.cancelled = False
            context.session_name = self.session.name
            turn.context = context
            turn.accumulator = StreamAccumulator(clock=self._clock)
            message = Message(sender=Sender.ASSISTANT)
            self._messages.append(message)
            self._turn = turn
            self.tokens_per_second = 0.0
            self.typing += 1

        self._set_state(TurnState.GENERATING)
        matcher = StopSequenceMatcher(context.config.context.stop_sequences)
        image_path = self._image_path(turn)
        self._generation = asyncio.create_task(
            asyncio.to_thread(self._stream, turn, message, matcher, system_prompt, image_path)
        )

    async def wait(self) -> None:
        """Wait for the in-flight generation, if any, to finish."""
        task = self._generation
        if task is not None:
            await task

    def _stream(
        self,
        turn: Turn,
        message: Message,
        matcher: StopSequenceMatcher,
        system_prompt: str | None,
        image_path: str | None,
    ) -> None:
        context = turn.context
        final_text = DONE
        try:
            events = self.engine.converse(
                context, turn.text, system_prompt=system_prompt, image_path=image_path
            )
            for event in events:
                if isinstance(event, CompletionEvent):
                    final_text = event.final_text
                    break
                # Once cancelled, remaining tokens are drained but ignored.
                if not turn.cancelled:
                    self._on_token(turn, message, matcher, event.text)
        except GenerationError as exc:
            final_text = f"{ERROR_PREFIX} {exc}"
        except Exception as exc:
            logger.exception("Generation crashed in chat %s", context.session_name)
            final_text = f"{ERROR_PREFIX} {exc}"
        self._finish_completion(turn, message, final_text)

    def _on_token(
        self,
        turn: Turn,
        message: Message,
        matcher: StopSequenceMatcher,
        token: str,
    ) -> None:
        context = turn.context
        acc = turn.accumulator
        with self._lock:
            if turn.cancelled:
                return
            try:
                self._check_session(context)
            except SessionMismatch as exc:
                logger.debug("Dropping token: %s", exc)
                return
            check = matcher.check(token, acc.text)
            if check.should_continue:
                acc.append(token)
                message.state = MessageState.PREDICTING
                message.text = acc.text
                self.typing += 1
            else:
                # A halting token that is not itself a stop sequence was consumed.
                acc.finish_at(check.text, consumed=token not in matcher.stop_sequences)
                message.text = check.text

        if check.should_continue:
            self._notify()
        else:
            logger.debug("Stop sequence reached in chat %s", context.session_name)
            self.stop()

    def _finish_completion(self, turn: Turn, message: Message, final_text: str) -> None:
        context = turn.context
        acc = turn.accumulator
        with self._lock:
            if self._turn is turn:
                self._turn = None
            try:
                self._check_session(context)
            except SessionMismatch as exc:
                logger.debug("Completion discarded: %s", exc)
                return
            self.typing = 0
            self.load_progress = 0.0
            if not turn.cancelled and not message.is_final:
                elapsed = acc.elapsed_seconds()
                message.mark_predicted(elapsed, acc.tokens_per_second(elapsed))
                self.tokens_per_second = message.tokens_per_second
            failed = final_text.startswith(ERROR_PREFIX)
            if failed:
                self._messages.append(
                    Message(sender=Sender.SYSTEM, state=MessageState.ERROR, text=f"Eval {final_text}")
                )

        if failed:
            logger.warning("Generation failed in chat %s: %s", context.session_name, final_text)
            self.stop(is_error=True)
            self._set_state(TurnState.ERROR)
        else:
            self._save()
            if self._turn is None:
                self._set_state(TurnState.COMPLETED)

    # ------------------------------------------------------------------
    # Stop / reload
    # ------------------------------------------------------------------

    def stop(self, is_error: bool = False) -> None:
        """Stop the current generation and persist the log.

        Safe to call repeatedly and from any thread. With ``is_error`` the
        open message is marked as an error and the engine context is
        discarded, forcing a reload on the next ``send``.
        """
        with self._lock:
            turn = self._turn
            if turn is not None:
                turn.cancelled = True
            for context in (self._context, turn.context if turn else None):
                if context is not None:
                    context.cancelled = True

            elapsed = tps = 0.0
            if turn is not None and turn.accumulator is not None:
                elapsed = turn.accumulator.elapsed_seconds()
                tps = turn.accumulator.tokens_per_second(elapsed)
                self.tokens_per_second = tps

            if self._messages:
                last = self._messages[-1]
                if last.state in (MessageState.PREDICTING, MessageState.NONE):
                    if is_error:
                        last.state = MessageState.ERROR
                    else:
                        last.mark_predicted(elapsed, tps)

            self._turn = None
            self.typing = 0
            if is_error:
                self._context = None

        self._save()
        self._notify()

    def _save(self) -> None:
        with self._lock:
            name = self.session.name
            messages = [dataclasses.replace(m) for m in self._messages]
            context = self._context
        if not name:
            return
        self.gateway.save_history(name, messages)
        if (
            context is not None
            and context.loaded
            and context.session_name == name
            and context.config.context.save_load_state
        ):
            self.gateway.dump_engine_state(name, self.engine.snapshot(context))

    def reload(self, session: ChatSession) -> None:
        """Switch to *session*, replacing the log with its saved history."""
        self.stop()
        history = self.gateway.load_history(session.name)
        with self._lock:
            self.session = session
            self._messages = history
            self.title = session.title
            self._title_backup = session.title
            self.typing = 0
            self.load_progress = 0.0
            if self._context is not None and self._context.session_name != session.name:
                self._context = None
            self.state = TurnState.IDLE
        self.rag.reset()
        logger.info("Reloaded chat %s (%d messages)", session.name, len(history))
        self._notify()

    def hard_reload(self) -> None:
        """Drop the saved engine state and the live context; history stays."""
        self.gateway.remove_engine_state_dump(self.session.name)
        with self._lock:
            self._context = None
        self._notify()

    def update_params(self) -> bool:
        """Apply the session's current sampling and context settings to the live context."""
        try:
            config = self._require_config(self.session.name)
        except ConfigMissing as exc:
            logger.warning("%s", exc)
            return False
        with self._lock:
            self.session.config = config
            if self._context is not None:
                self._context.config = self._context.config.model_copy(
                    update={"sampling": config.sampling, "context": config.context}
                )
        return True
