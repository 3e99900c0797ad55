"""Document loader: reads the files a RAG index is built from."""

import logging
import re
from pathlib import Path
from typing import Callable

import markdown
from pypdf import PdfReader
from pypdf.errors import PdfReadError

from local_chat.models import Document

logger = logging.getLogger(__name__)

_TAG_RE = re.compile(r"<[^>]+>")


def _read_text(path: Path) -> str:
    return path.read_text(encoding="utf-8")


def _read_pdf(path: Path) -> str:
    """Join the extracted text of every page; image-only pages are empty."""
    return "\n".join(page.extract_text() or "" for page in PdfReader(str(path)).pages)


def _read_markdown(path: Path) -> str:
    """Render Markdown to HTML and strip the tags."""
    return _TAG_RE.sub("", markdown.markdown(_read_text(path)))


READERS: dict[str, Callable[[Path], str]] = {
    ".txt": _read_text,
    ".md": _read_markdown,
    ".pdf": _read_pdf,
}


def load_documents(folder_path: str | Path) -> list[Document]:
    """Load every supported file in *folder_path*, sorted by name.

    Unsupported, empty and unreadable files are skipped.

    Raises:
        FileNotFoundError: If the folder does not exist.
        NotADirectoryError: If the path is not a directory.
    """
    folder = Path(folder_path)
    if not folder.exists():
        raise FileNotFoundError(f"Folder not found: {folder_path}")
    if not folder.is_dir():
        raise NotADirectoryError(f"Not a directory: {folder_path}")

    documents: list[Document] = []
    for path in sorted(p for p in folder.iterdir() if p.is_file()):
        reader = READERS.get(path.suffix.lower())
        if reader is None:
            continue
        try:
            content = reader(path)
        except (OSError, UnicodeDecodeError, PdfReadError):
            logger.exception("Failed to read %s", path.name)
            continue
        if not content.strip():
            logger.warning("Skipping empty file: %s", path.name)
            continue
        documents.append(
            Document(content=content, metadata={"source": path.name, "file_type": path.suffix.lower()})
        )
        logger.info("Loaded: %s", path.name)
    return documents
