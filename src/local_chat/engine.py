"""Inference engine interface and its Ollama implementation."""

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Iterator, Protocol, runtime_checkable

import httpx
import ollama

from local_chat.config import EngineConfig, SessionConfig
from local_chat.errors import ModelLoadError
from local_chat.models import CompletionEvent, TokenEvent

logger = logging.getLogger(__name__)

# A final text starting with this marker reports an engine failure.
ERROR_PREFIX = "[Error]"
DONE = "[Done]"

# httpx carries timeouts and transport failures raised by the ollama client.
_CLIENT_ERRORS = (ollama.ResponseError, ollama.RequestError, httpx.HTTPError, ConnectionError)

GenerationEvent = TokenEvent | CompletionEvent


@dataclass
class EngineContext:
    """Handle for a prepared model bound to one chat session.

    ``cancelled`` is the caller-settable stop flag; ``n_past`` counts the
    tokens the model has consumed so far in this context.
    """

    session_name: str
    config: SessionConfig
    loaded: bool = False
    cancelled: bool = False
    n_past: int = 0
    load_progress: float = 0.0
    history: list[dict] = field(default_factory=list)


@runtime_checkable
class InferenceEngine(Protocol):
    """Token generation backend consumed by the controller."""

    def prepare_context(self, config: SessionConfig, session_name: str) -> EngineContext:
        """Create an unloaded context or raise ``ModelLoadError``."""
        ...

    def load_model(
        self,
        context: EngineContext,
        on_progress: Callable[[float], None] | None = None,
    ) -> None:
        """Load the model for *context* or raise ``ModelLoadError``."""
        ...

    def converse(
        self,
        context: EngineContext,
        prompt: str,
        system_prompt: str | None = None,
        image_path: str | None = None,
    ) -> Iterator[GenerationEvent]:
        """Stream ``TokenEvent`` items, then exactly one ``CompletionEvent``."""
        ...

    def snapshot(self, context: EngineContext) -> bytes: ...

    def restore(self, context: EngineContext, blob: bytes) -> None: ...


def _build_options(config: SessionConfig) -> dict:
    """Map session sampling/context settings onto Ollama request options."""
    options = config.sampling.model_dump()
    options["num_ctx"] = config.context.context_size
    options["num_batch"] = config.context.batch_size
    options["num_predict"] = config.context.n_predict
    return options


def _format_prompt(config: SessionConfig, prompt: str) -> str:
    return config.context.prompt_format.replace("{{prompt}}", prompt)


class OllamaEngine:
    """InferenceEngine backed by a local Ollama server.

    Ollama is stateless between requests, so the context keeps the running
    conversation and replays it on every turn.
    """

    def __init__(self, config: EngineConfig | None = None) -> None:
        cfg = config or EngineConfig()
        self._client = ollama.Client(host=cfg.host, timeout=cfg.timeout)

    def prepare_context(self, config: SessionConfig, session_name: str) -> EngineContext:
        if not config.model:
            raise ModelLoadError(f"No model configured for chat '{session_name}'")
        return EngineContext(session_name=session_name, config=config)

    def load_model(
        self,
        context: EngineContext,
        on_progress: Callable[[float], None] | None = None,
    ) -> None:
        """Verify the model exists and warm it into memory.

        Raises:
            ModelLoadError: If the model is unknown or Ollama is unreachable.
        """
        model = context.config.model

        def progress(value: float) -> None:
            context.load_progress = value
            if on_progress is not None:
                on_progress(value)

        progress(0.0)
        try:
            self._client.show(model)
            progress(0.5)
            # An empty prompt loads the model without generating anything.
            self._client.generate(
                model=model,
                prompt="",
                keep_alive=context.config.context.keep_alive,
            )
        except _CLIENT_ERRORS as exc:
            raise ModelLoadError(f"{model}: {exc}") from exc
        progress(1.0)
        context.loaded = True
        logger.info("Loaded model %s for chat %s", model, context.session_name)

    def converse(
        self,
        context: EngineContext,
        prompt: str,
        system_prompt: str | None = None,
        image_path: str | None = None,
    ) -> Iterator[GenerationEvent]:
        """Stream a reply to *prompt* on top of the context's history.

        Args:
            context: Loaded context; its ``cancelled`` flag is checked
                before every chunk.
            prompt: User text, wrapped in the configured prompt format.
            system_prompt: Sent ahead of the prompt when given.
            image_path: Image attached to the user message.

        Returns:
            Iterator of ``TokenEvent`` items followed by one
            ``CompletionEvent``; client failures end the stream with an
            ``[Error]`` completion instead of raising.
        """
        cfg = context.config
        request: list[dict] = []
        if system_prompt:
            request.append({"role": "system", "content": system_prompt})
        user_message: dict = {"role": "user", "content": _format_prompt(cfg, prompt)}
        if image_path:
            user_message["images"] = [image_path]
        request.append(user_message)

        reply: list[str] = []
        counted = False
        try:
            stream = self._client.chat(
                model=cfg.model,
                messages=context.history + request,
                stream=True,
                options=_build_options(cfg),
                keep_alive=cfg.context.keep_alive,
            )
            last = time.monotonic()
            for chunk in stream:
                if context.cancelled:
                    break
                token = chunk["message"]["content"]
                if token:
                    now = time.monotonic()
                    reply.append(token)
                    yield TokenEvent(text=token, latency=now - last)
                    last = now
                if chunk["done"]:
                    context.n_past += (chunk["prompt_eval_count"] or 0) + (
                        chunk["eval_count"] or 0
                    )
                    counted = True
        except _CLIENT_ERRORS as exc:
            logger.warning("Generation failed for chat %s: %s", context.session_name, exc)
            yield CompletionEvent(final_text=f"{ERROR_PREFIX} {exc}")
            return

        if not counted:
            # Token counts only arrive on the final chunk; a cancelled stream
            # never sees it, yet the request below still joins the history.
            context.n_past += len(request) + len(reply)
        context.history.extend(request)
        context.history.append({"role": "assistant", "content": "".join(reply)})
        yield CompletionEvent(final_text=DONE)

    def snapshot(self, context: EngineContext) -> bytes:
        """Serialize the replayed history and token count as JSON."""
        return json.dumps({"n_past": context.n_past, "history": context.history}).encode(
            "utf-8"
        )

    def restore(self, context: EngineContext, blob: bytes) -> None:
        """Load a blob written by ``snapshot`` into *context*.

        Raises:
            ValueError: If *blob* is not valid JSON.
        """
        state = json.loads(blob.decode("utf-8"))
        context.n_past = int(state.get("n_past", 0))
        context.history = list(state.get("history", []))
