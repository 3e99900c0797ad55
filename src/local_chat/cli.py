"""CLI interface for the chat engine."""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from local_chat.config import AppConfig
from local_chat.controller import ConversationController
from local_chat.document_loader import load_documents
from local_chat.engine import OllamaEngine
from local_chat.models import ChatSession, ControllerSnapshot, Sender
from local_chat.persistence import JsonFileGateway
from local_chat.rag import RAGCoordinator
from local_chat.text_chunker import chunk_documents
from local_chat.vector_index import ChromaIndexService


def _setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def ingest(session: str, folder_path: str, config: AppConfig | None = None) -> int:
    """Build the RAG index for *session* from the documents in *folder_path*.

    Returns:
        Number of chunks indexed; 0 when the chat is unconfigured or the
        folder holds no supported documents.
    """
    cfg = config or AppConfig()
    session_config = JsonFileGateway(cfg.storage).load_config(session)
    if session_config is None:
        print(f"Chat '{session}' has no configuration in {cfg.storage.chats_dir}")
        return 0

    documents = load_documents(folder_path)
    if not documents:
        print("No supported documents found (.txt, .pdf, .md)")
        return 0

    rag = session_config.rag
    chunks = chunk_documents(documents, rag)
    index = ChromaIndexService()
    index.configure(rag.embedding_model, rag.similarity_metric, rag.chunk_method)
    location = rag.index_dir or str(Path(cfg.storage.rag_dir) / session)
    added = index.build_index(location, chunks)
    print(f"Indexed {added} chunks from {len(documents)} document(s) into {location}")
    return added


class _TokenPrinter:
    """Prints the growing assistant reply as snapshots arrive."""

    def __init__(self) -> None:
        self.printed = 0

    def reset(self) -> None:
        self.printed = 0

    def __call__(self, snap: ControllerSnapshot) -> None:
        if not snap.messages or snap.messages[-1].sender is not Sender.ASSISTANT:
            return
        text = snap.messages[-1].text
        if len(text) > self.printed:
            sys.stdout.write(text[self.printed :])
            sys.stdout.flush()
        self.printed = len(text)


async def _chat_loop(controller: ConversationController, use_rag: bool) -> None:
    printer = _TokenPrinter()
    controller.subscribe(printer)
    while True:
        try:
            text = input("You: ").strip()
        except (EOFError, KeyboardInterrupt):
            print("\nGoodbye!")
            break

        if not text:
            continue
        if text.lower() in ("quit", "exit", "q"):
            print("Goodbye!")
            break
        if text == "/reload":
            controller.hard_reload()
            print("Engine state cleared.")
            continue

        printer.reset()
        print("Assistant: ", end="", flush=True)
        if not await controller.send(text, use_rag=use_rag):
            print(f"\nChat '{controller.session.name}' is not configured.")
            break
        await controller.wait()
        print()
        last = controller.messages[-1] if controller.messages else None
        if last is not None and last.sender is Sender.SYSTEM:
            print(last.text)
        else:
            print(f"[{controller.tokens_per_second:.1f} tok/s]")


def chat(session: str, use_rag: bool = False, config: AppConfig | None = None) -> None:
    """Start an interactive chat on *session*.

    Exits on 'quit', 'exit', 'q', EOF or Ctrl-C; a reply still streaming is
    stopped and saved on the way out.
    """
    cfg = config or AppConfig()
    gateway = JsonFileGateway(cfg.storage)
    controller = ConversationController(
        OllamaEngine(cfg.engine),
        gateway,
        RAGCoordinator(ChromaIndexService()),
        storage=cfg.storage,
    )
    session_config = gateway.load_config(session)
    title = session_config.title if session_config else session
    controller.reload(ChatSession(name=session, title=title))

    print(f"\nChat: {title} ({len(controller.messages)} messages in history)")
    print("Type your message (or 'quit' to exit, '/reload' to reset the engine):\n")
    try:
        asyncio.run(_chat_loop(controller, use_rag))
    finally:
        controller.stop()
        controller.rag.shutdown()


def main() -> None:
    """CLI entry point: parse arguments and dispatch to ingest or chat."""
    parser = argparse.ArgumentParser(description="Local chat with Ollama")
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable debug logging"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    ingest_p = subparsers.add_parser("ingest", help="Build a chat's RAG index")
    ingest_p.add_argument("--session", required=True, help="Chat name")
    ingest_p.add_argument(
        "--folder", type=str, default="./documents", help="Documents folder path"
    )

    chat_p = subparsers.add_parser("chat", help="Start interactive chat")
    chat_p.add_argument("--session", required=True, help="Chat name")
    chat_p.add_argument(
        "--rag", action="store_true", help="Augment prompts with the chat's RAG index"
    )

    args = parser.parse_args()
    _setup_logging(args.verbose)

    if args.command == "ingest":
        ingest(args.session, args.folder)
    elif args.command == "chat":
        chat(args.session, use_rag=args.rag)
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
