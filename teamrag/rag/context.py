"""Context Assembly

Turns ranked chunks into a bounded, LLM-ready context string.
"""

from typing import List, Optional

import structlog

from teamrag.config.settings import get_settings
from teamrag.rag.models import ContextBundle, DocumentContext, RankedChunk

logger = structlog.get_logger(__name__)

ENTRY_SEPARATOR = "\n\n"


class ContextAssembler:
    """Builds the context bundle handed to the generation step."""

    def __init__(self, char_budget: Optional[int] = None):
        self.char_budget = char_budget if char_budget is not None else get_settings().rag.context_char_budget

    def assemble(
        self,
        query: str,
        ranked_chunks: List[RankedChunk],
        max_results: int,
        total_candidates: Optional[int] = None
    ) -> ContextBundle:
        """Assemble the context for a query.

        Entries are added best first until the next whole entry would push
        the text past the character budget; a chunk is never cut.
        ``has_relevant_context`` reports whether any chunk passed the relevance
        floor, so it stays true when the budget is too small for even the
        first entry and the text comes back empty.

        Args:
            query: Original query text
            ranked_chunks: Retriever output, already filtered by the relevance floor
            max_results: Maximum number of chunks to include
            total_candidates: Size of the candidate pool that was scored

        Returns:
            Context bundle
        """
        considered = total_candidates if total_candidates is not None else len(ranked_chunks)
        if not ranked_chunks:
            return ContextBundle(query=query, total_candidates_considered=considered)

        parts: List[str] = []
        included: List[DocumentContext] = []
        length = 0

        for position, ranked in enumerate(ranked_chunks[:max_results], start=1):
            entry = format_entry(position, ranked)
            added = len(entry) + (len(ENTRY_SEPARATOR) if parts else 0)
            if length + added > self.char_budget:
                logger.info(
                    "Context budget reached",
                    included=len(included),
                    dropped=len(ranked_chunks[:max_results]) - len(included),
                    budget=self.char_budget
                )
                break
            parts.append(entry)
            length += added
            chunk = ranked.chunk
            included.append(DocumentContext(
                document_id=chunk.document_id,
                file_name=chunk.metadata.file_name,
                file_type=chunk.metadata.file_type,
                chunk_text=chunk.text,
                chunk_index=chunk.chunk_index,
                similarity=ranked.similarity
            ))

        return ContextBundle(
            query=query,
            has_relevant_context=True,
            context_text=ENTRY_SEPARATOR.join(parts),
            included_documents=included,
            total_candidates_considered=considered,
            total_documents=len({d.document_id for d in included})
        )


def format_entry(position: int, ranked: RankedChunk) -> str:
    metadata = ranked.chunk.metadata
    return (
        f"{position}. {metadata.file_name} ({metadata.file_type}, similarity: {ranked.similarity:.3f})\n"
        f"{ranked.chunk.text}"
    )
