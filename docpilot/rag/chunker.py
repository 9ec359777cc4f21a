"""Text chunking with overlap for the ingestion pipeline.

Implements character-based chunking to avoid tokenizer dependencies.
"""
from typing import List, Optional, Sequence

import structlog

from docpilot import config
from docpilot.rag.models import Chunk, Provenance, TextBlock

logger = structlog.get_logger()

SENTENCE_TERMINATORS = (". ", "! ", "? ", ".\n", "!\n", "?\n", "\n\n")
WHITESPACE = (" ", "\n", "\t")


class TextChunker:
    """Character-based chunker with overlap and boundary snapping."""

    def __init__(
        self,
        chunk_size: Optional[int] = None,
        chunk_overlap: Optional[int] = None,
        lookback: Optional[int] = None,
    ):
        """Initialize the text chunker.

        Args:
            chunk_size: Maximum chunk length in characters (default from config)
            chunk_overlap: Overlap between consecutive chunks (default from config)
            lookback: How far back from a cut point to look for a boundary

        Raises:
            InvalidConfig: If overlap >= chunk_size or chunk_size <= 0
        """
        self.chunk_size = config.CHUNK_SIZE if chunk_size is None else chunk_size
        self.chunk_overlap = config.CHUNK_OVERLAP if chunk_overlap is None else chunk_overlap
        self.lookback = config.CHUNK_LOOKBACK if lookback is None else lookback

        config.validate_chunking(self.chunk_size, self.chunk_overlap)

        logger.info(
            "chunker_initialized",
            chunk_size=self.chunk_size,
            chunk_overlap=self.chunk_overlap,
            lookback=self.lookback,
        )

    def span_offsets(self, text: str) -> List[tuple]:
        """Compute (start, end) spans covering text.

        Each span is at most chunk_size long and starts chunk_overlap
        characters before the previous span ended.
        """
        text_length = len(text)
        if text_length == 0:
            return []
        if text_length <= self.chunk_size:
            return [(0, text_length)]

        spans = []
        start = 0
        while True:
            end = start + self.chunk_size
            if end >= text_length:
                spans.append((start, text_length))
                break

            end = self._snap_to_boundary(text, start, end)
            spans.append((start, end))
            start = end - self.chunk_overlap

        return spans

    def _snap_to_boundary(self, text: str, start: int, cut: int) -> int:
        """Move a cut point back to the nearest sentence end or whitespace.

        The search never goes further back than the lookback window, and
        never so far that the next chunk would fail to advance.
        """
        floor = max(start + self.chunk_overlap + 1, cut - self.lookback)
        if floor >= cut:
            return cut

        window = text[floor:cut]
        best = -1
        for terminator in SENTENCE_TERMINATORS:
            pos = window.rfind(terminator)
            if pos != -1:
                best = max(best, pos + len(terminator))
        if best > 0:
            return floor + best

        for space in WHITESPACE:
            pos = window.rfind(space)
            if pos != -1:
                best = max(best, pos + 1)
        if best > 0:
            return floor + best

        return cut

    def chunk_block(self, block: TextBlock, block_index: int) -> List[Chunk]:
        """Split one text block into chunks with inherited provenance."""
        if not block.text.strip():
            return []

        prov = block.provenance
        chunks = []
        for start, end in self.span_offsets(block.text):
            chunks.append(
                Chunk(
                    chunk_id=Chunk.make_id(prov.source_id, block_index, start),
                    text=block.text[start:end],
                    provenance=Provenance(
                        source_id=prov.source_id,
                        page=prov.page,
                        start_offset=prov.start_offset + start,
                        end_offset=prov.start_offset + end,
                        title=prov.title,
                        source_type=prov.source_type,
                    ),
                    block_index=block_index,
                )
            )
        return chunks

    def chunk(self, blocks: Sequence[TextBlock]) -> List[Chunk]:
        """Chunk an ordered sequence of blocks.

        Args:
            blocks: Parsed text blocks of one document

        Returns:
            Chunks in document order
        """
        chunks = []
        for block_index, block in enumerate(blocks):
            chunks.extend(self.chunk_block(block, block_index))

        if chunks:
            logger.debug(
                "blocks_chunked",
                block_count=len(blocks),
                chunk_count=len(chunks),
                avg_chunk_size=sum(c.length for c in chunks) // len(chunks),
            )
        return chunks

    def get_chunk_stats(self, chunks: List[Chunk]) -> dict:
        """Get statistics about a set of chunks."""
        if not chunks:
            return {
                "chunk_count": 0,
                "total_chars": 0,
                "avg_chunk_size": 0,
                "min_chunk_size": 0,
                "max_chunk_size": 0,
            }

        chunk_sizes = [c.length for c in chunks]

        return {
            "chunk_count": len(chunks),
            "total_chars": sum(chunk_sizes),
            "avg_chunk_size": sum(chunk_sizes) // len(chunks),
            "min_chunk_size": min(chunk_sizes),
            "max_chunk_size": max(chunk_sizes),
            "overlap": self.chunk_overlap,
        }


def chunk(
    blocks: Sequence[TextBlock],
    max_len: int,
    overlap: int,
    lookback: Optional[int] = None,
) -> List[Chunk]:
    """Chunk blocks with explicit settings (convenience function).

    Raises:
        InvalidConfig: If overlap >= max_len or max_len <= 0
    """
    return TextChunker(chunk_size=max_len, chunk_overlap=overlap, lookback=lookback).chunk(blocks)
