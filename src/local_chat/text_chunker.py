"""Text chunker used when building a session's RAG index."""

import re

import numpy as np

from local_chat.config import RAGConfig
from local_chat.models import Chunk, Document

# Separators tried in order, coarsest first.
_SEPARATORS = ("\n\n", "\n", ". ", "! ", "? ", " ")

_SENTENCE_RE = re.compile(r"(?<=[.!?])\s+(?=[A-Z])|\n\n+")

# Sentences longer than this are hard-split before embedding.
_MAX_SENTENCE = 1000


def split_recursive(text: str, chunk_size: int = 256, chunk_overlap: int = 100) -> list[str]:
    """Split *text* into windows of at most *chunk_size* characters.

    Each window ends on the coarsest separator found in its second half,
    and the next window starts *chunk_overlap* characters before that end.

    Returns:
        Ordered chunks; an empty list for blank input.
    """
    if not text.strip():
        return []
    if len(text) <= chunk_size:
        return [text.strip()]

    chunks: list[str] = []
    start = 0
    while start < len(text):
        end = min(start + chunk_size, len(text))
        if end < len(text):
            for sep in _SEPARATORS:
                pos = text.rfind(sep, start, end)
                if pos > start + chunk_size // 2:
                    end = pos + len(sep)
                    break

        piece = text[start:end].strip()
        if piece:
            chunks.append(piece)
        if end >= len(text):
            break
        start = max(end - chunk_overlap, start + 1)

    return chunks


def _sentences(text: str) -> list[str]:
    result: list[str] = []
    for part in _SENTENCE_RE.split(text):
        part = part.strip()
        if not part:
            continue
        if len(part) > _MAX_SENTENCE:
            step = _MAX_SENTENCE // 2
            for i in range(0, len(part), step):
                segment = part[i : i + step].strip()
                if segment:
                    result.append(segment)
        else:
            result.append(part)
    return result


def _cosine(a: np.ndarray, b: np.ndarray) -> float:
    norm = np.linalg.norm(a) * np.linalg.norm(b)
    if norm == 0:
        return 0.0
    return float(np.dot(a, b) / norm)


def split_semantic(
    text: str,
    embedding_model: str,
    max_size: int = 1024,
    threshold: float = 0.5,
) -> list[str]:
    """Group consecutive sentences until the topic shifts.

    A new chunk starts when the cosine similarity between neighbouring
    sentence embeddings drops below *threshold* or the chunk would exceed
    *max_size* characters.
    """
    if not text.strip():
        return []
    if len(text) <= max_size:
        return [text.strip()]

    sentences = _sentences(text)
    if len(sentences) <= 1:
        return split_recursive(text, chunk_size=max_size, chunk_overlap=0)

    from local_chat.vector_index import get_embedding_function

    vectors = [np.asarray(v) for v in get_embedding_function(embedding_model)(sentences)]

    chunks: list[str] = []
    current = [sentences[0]]
    size = len(sentences[0])
    for prev, vec, sentence in zip(vectors, vectors[1:], sentences[1:]):
        if _cosine(prev, vec) < threshold or size + 1 + len(sentence) > max_size:
            chunks.append(" ".join(current))
            current, size = [sentence], len(sentence)
        else:
            current.append(sentence)
            size += 1 + len(sentence)
    chunks.append(" ".join(current))
    return chunks


def chunk_documents(documents: list[Document], config: RAGConfig | None = None) -> list[Chunk]:
    """Chunk every document with the configured method.

    Chunks inherit their document's metadata plus ``chunk_index`` and
    ``total_chunks``.
    """
    cfg = config or RAGConfig()
    result: list[Chunk] = []
    for doc in documents:
        if cfg.chunk_method == "semantic":
            texts = split_semantic(doc.content, cfg.embedding_model, max_size=cfg.chunk_size * 4)
        else:
            texts = split_recursive(doc.content, cfg.chunk_size, cfg.chunk_overlap)
        result.extend(
            Chunk(text=t, metadata={**doc.metadata, "chunk_index": i, "total_chunks": len(texts)})
            for i, t in enumerate(texts)
        )
    return result
