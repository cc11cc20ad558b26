"""Text Chunker for RAG

Splits document text into overlapping character windows with stable indexing.
"""

from typing import List, Optional

import structlog

from teamrag.config.settings import get_settings
from teamrag.core.exceptions import ExtractionTooShort
from teamrag.rag.models import ChunkSpan

logger = structlog.get_logger(__name__)

MIN_DOCUMENT_LENGTH = 50


class TextChunker:
    """Splits text into fixed-size overlapping windows.

    Windows are ``chunk_size`` characters long and advance by
    ``chunk_size - chunk_overlap``. Spans are exact slices of the source text,
    so the last ``chunk_overlap`` characters of one chunk are the first
    ``chunk_overlap`` characters of the next.
    """

    def __init__(
        self,
        chunk_size: Optional[int] = None,
        chunk_overlap: Optional[int] = None,
        min_length: Optional[int] = None
    ):
        rag = get_settings().rag
        self.chunk_size = chunk_size if chunk_size is not None else rag.chunk_size
        self.chunk_overlap = chunk_overlap if chunk_overlap is not None else rag.chunk_overlap
        self.min_length = min_length if min_length is not None else rag.min_document_length
        _check_window(self.chunk_size, self.chunk_overlap)

    def chunk(
        self,
        text: str,
        chunk_size: Optional[int] = None,
        chunk_overlap: Optional[int] = None
    ) -> List[ChunkSpan]:
        """Split text into chunks.

        Args:
            text: Document text
            chunk_size: Optional window size override
            chunk_overlap: Optional overlap override

        Returns:
            Ordered chunk spans, indexed from zero

        Raises:
            ExtractionTooShort: If the text is shorter than the window or
                below the minimum viable length
        """
        size = chunk_size if chunk_size is not None else self.chunk_size
        overlap = chunk_overlap if chunk_overlap is not None else self.chunk_overlap
        _check_window(size, overlap)

        text = text or ""
        viable = len(text.strip())
        if viable < self.min_length:
            raise ExtractionTooShort(viable, self.min_length)
        if len(text) < size:
            raise ExtractionTooShort(len(text), size, details={
                "text_length": len(text),
                "min_length": self.min_length,
                "chunk_size": size,
            })

        step = size - overlap
        spans = []
        start = 0

        while True:
            end = min(start + size, len(text))
            window = text[start:end]
            # only a trailing whitespace-only window is dropped
            if end < len(text) or window.strip():
                spans.append(ChunkSpan(
                    index=len(spans),
                    text=window,
                    length=len(window),
                    start=start,
                    end=end
                ))
            if end >= len(text):
                break
            start += step

        logger.debug(
            "Text chunked",
            text_length=len(text),
            chunk_size=size,
            chunk_overlap=overlap,
            chunks=len(spans)
        )
        return spans


def _check_window(size: int, overlap: int) -> None:
    if size <= 0:
        raise ValueError("chunk_size must be positive")
    if not 0 <= overlap < size:
        raise ValueError("chunk_overlap must be >= 0 and smaller than chunk_size")


def chunk_text(text: str, target_size: int, overlap: int, min_length: int = MIN_DOCUMENT_LENGTH) -> List[ChunkSpan]:
    """Chunk text with explicit parameters."""
    return TextChunker(target_size, overlap, min_length).chunk(text)
